"""Pytest configuration and fixtures for chunked_upload tests."""

import asyncio
from typing import Callable, Optional

import pytest

from chunked_upload.transport import ChunkUpload, UploadCancelled


class FakeTransport:
    """In-memory chunk transport.

    With ``auto=True`` every upload settles on the next loop iteration, failing
    with whatever ``fail(chunk, attempt)`` returns. With ``auto=False`` the test
    settles uploads itself through resolve()/reject().
    """

    def __init__(
        self,
        fail: Optional[Callable[[object, int], Optional[BaseException]]] = None,
        auto: bool = True,
        honor_cancel: bool = True,
    ) -> None:
        self.fail = fail or (lambda chunk, attempt: None)
        self.auto = auto
        self.honor_cancel = honor_cancel
        self.calls: list = []
        self.cancel_calls: list = []
        self.futures: dict = {}
        self.in_flight: set = set()
        self.duplicates: list = []
        self.peak = 0

    def upload(self, chunk) -> ChunkUpload:
        loop = asyncio.get_running_loop()
        if chunk in self.in_flight:
            self.duplicates.append(chunk)
        attempt = self.calls.count(chunk)
        self.calls.append(chunk)

        future = loop.create_future()
        future.add_done_callback(lambda _f, c=chunk: self.in_flight.discard(c))
        self.futures[chunk] = future
        self.in_flight.add(chunk)
        self.peak = max(self.peak, len(self.in_flight))

        if self.auto:
            loop.call_soon(self._settle, future, self.fail(chunk, attempt))
        return ChunkUpload(settlement=future, cancel=lambda: self._cancel(chunk, future))

    @staticmethod
    def _settle(future: asyncio.Future, error: Optional[BaseException]) -> None:
        if future.done():
            return
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(error)

    def _cancel(self, chunk, future: asyncio.Future) -> None:
        self.cancel_calls.append(chunk)
        if self.honor_cancel and not future.done():
            future.set_exception(UploadCancelled())

    def resolve(self, chunk) -> None:
        self._settle(self.futures[chunk], None)

    def reject(self, chunk, error: BaseException) -> None:
        self._settle(self.futures[chunk], error)


class Recorder:
    def __init__(self) -> None:
        self.progress: list[float] = []
        self.failures: list[BaseException] = []
        self.successes = 0

    def on_progress(self, pct: float) -> None:
        self.progress.append(pct)

    def on_fail(self, error: BaseException) -> None:
        self.failures.append(error)

    def on_succeed(self) -> None:
        self.successes += 1

    def callbacks(self) -> dict:
        return {
            "on_progress": self.on_progress,
            "on_fail": self.on_fail,
            "on_succeed": self.on_succeed,
        }


async def drain(rounds: int = 10) -> None:
    """Let pending loop callbacks (settlements, admissions) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
