import asyncio
import logging
from typing import Any, Optional, Sequence

from .progress import ProgressCallback
from .scheduler import ChunkScheduler, FailCallback, RetryDelay, SucceedCallback
from .tasks import SessionPhase, SessionState
from .transport import CancellationClassifier, ChunkTransport, is_cancellation


class UploadSession:
    """Start/stop/resume/cancel control over a chunk upload schedule.

    All effects are observed through the callbacks. Calls made outside the
    phase they apply to are ignored, and nothing is valid once the session has
    succeeded, failed or been canceled. Must be driven from the thread running
    the event loop.

    Example::

        session = UploadSession(chunks, transport, max_concurrency=4,
                                on_progress=print, on_fail=log_error,
                                on_succeed=commit)
        session.start()
        phase = await session.wait()
    """

    def __init__(
        self,
        chunks: Sequence[Any],
        transport: ChunkTransport,
        *,
        max_concurrency: int,
        retry_budget: int = 3,
        on_progress: Optional[ProgressCallback] = None,
        on_fail: Optional[FailCallback] = None,
        on_succeed: Optional[SucceedCallback] = None,
        is_cancellation: CancellationClassifier = is_cancellation,
        retry_delay: Optional[RetryDelay] = None,
        cancel_on_failure: bool = False,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.scheduler = ChunkScheduler(
            chunks,
            transport,
            max_concurrency=max_concurrency,
            retry_budget=retry_budget,
            on_progress=on_progress,
            on_fail=on_fail,
            on_succeed=on_succeed,
            is_cancellation=is_cancellation,
            retry_delay=retry_delay,
            cancel_on_failure=cancel_on_failure,
            loop=loop,
            logger=logger,
        )

    @property
    def state(self) -> SessionState:
        return self.scheduler.state

    @property
    def phase(self) -> SessionPhase:
        return self.scheduler.state.phase

    @property
    def progress(self) -> float:
        return self.scheduler.progress.percentage

    def _ignored(self, operation: str) -> None:
        self.logger.debug(f"{operation}() ignored while {self.phase.value}.")

    def start(self) -> None:
        if self.phase is not SessionPhase.IDLE:
            self._ignored("start")
            return
        if self.state.total:
            # fail before touching any state when there is no loop to run on
            self.scheduler.bind_loop()
        self.state.phase = SessionPhase.RUNNING
        self.logger.info(
            f"Upload started: {self.state.total} chunk(s), "
            f"concurrency {self.state.max_concurrency}, retry budget {self.state.retry_budget}."
        )
        self.scheduler.request_admission()

    def stop(self) -> None:
        if self.phase is not SessionPhase.RUNNING:
            self._ignored("stop")
            return
        self.state.phase = SessionPhase.PAUSED
        self.logger.info(
            f"Upload paused: {self.state.active_count} chunk(s) still in flight will settle."
        )

    def resume(self) -> None:
        if self.phase is not SessionPhase.PAUSED:
            self._ignored("resume")
            return
        self.state.phase = SessionPhase.RUNNING
        self.logger.info(
            f"Upload resumed at {self.state.completed_count}/{self.state.total} chunk(s)."
        )
        self.scheduler.request_admission()

    def cancel(self) -> None:
        if self.phase not in (SessionPhase.RUNNING, SessionPhase.PAUSED):
            self._ignored("cancel")
            return
        self.state.phase = SessionPhase.CANCELED
        cancelled = self.scheduler.abort()
        self.logger.info(f"Upload canceled: {cancelled} in-flight chunk(s) asked to abort.")

    async def wait(self) -> SessionPhase:
        return await self.scheduler.wait()
