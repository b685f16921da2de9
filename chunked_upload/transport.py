"""
Interfaces the scheduler consumes: a per-chunk transport and a classifier
deciding whether a rejected upload was a deliberate cancellation.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol


class UploadCancelled(Exception):
    """Raised by a transport when an in-flight chunk upload was aborted on request."""


@dataclass
class ChunkUpload:
    """Handle for one outstanding chunk upload.

    ``settlement`` resolves with the transport's result or raises its error.
    ``cancel`` asks the transport to abort; after settlement it does nothing.
    """

    settlement: Awaitable[Any]
    cancel: Callable[[], None]


class ChunkTransport(Protocol):
    def upload(self, chunk: Any) -> ChunkUpload: ...


CancellationClassifier = Callable[[BaseException], bool]


def is_cancellation(error: BaseException) -> bool:
    return isinstance(error, (asyncio.CancelledError, UploadCancelled))
