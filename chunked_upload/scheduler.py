"""
Bounded-concurrency dispatch of chunk uploads.

The scheduler runs entirely on one asyncio event loop. Transport settlements
arrive as ChunkSettled events through a single dispatch queue, so admission is
never re-entered from inside a settlement or a user callback: a request made
while an event is being handled is picked up once that event is done.
"""

import asyncio
import functools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Union

from .progress import ProgressAggregator, ProgressCallback
from .tasks import ChunkTask, ChunkTaskStore, SessionPhase, SessionState
from .transport import CancellationClassifier, ChunkTransport, is_cancellation

RetryDelay = Callable[[int], float]
FailCallback = Callable[[BaseException], None]
SucceedCallback = Callable[[], None]


@dataclass(frozen=True)
class ChunkSettled:
    """One transport call for ``index`` finished, with a value or an error."""

    index: int
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RetryDue:
    index: int


SchedulerEvent = Union[ChunkSettled, RetryDue]


def exponential_backoff(base: float) -> Optional[RetryDelay]:
    """Delay policy of ``base ** attempt`` seconds; None (immediate retry) when base <= 0."""
    if base <= 0:
        return None
    return lambda attempt: float(base) ** attempt


class ChunkScheduler:
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

        if max_concurrency < 1:
            self.logger.warning(f"max_concurrency={max_concurrency} is below 1; using 1.")
            max_concurrency = 1
        if retry_budget < 0:
            self.logger.warning(f"retry_budget={retry_budget} is negative; using 0.")
            retry_budget = 0

        self.chunks = list(chunks)
        self.state = SessionState(
            total=len(self.chunks),
            max_concurrency=max_concurrency,
            retry_budget=retry_budget,
        )
        self.store = ChunkTaskStore(self.state.total)
        self.progress = ProgressAggregator(self.state, on_progress)

        self.transport = transport
        self.is_cancellation = is_cancellation
        self.retry_delay = retry_delay
        self.cancel_on_failure = cancel_on_failure
        self.on_fail = on_fail
        self.on_succeed = on_succeed

        self._loop = loop
        self._events: deque = deque()
        self._dispatching = False
        self._admit_requested = False
        self._outstanding: set = set()
        self._retry_timers: dict[int, asyncio.TimerHandle] = {}
        self._finished: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------
    # Event loop plumbing
    # ------------------------------------------------------------------

    def bind_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def post(self, event: SchedulerEvent) -> None:
        self._events.append(event)
        self._pump()

    def request_admission(self) -> None:
        self._admit_requested = True
        self._pump()

    def _pump(self) -> None:
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._events or self._admit_requested:
                if self._events:
                    self._dispatch(self._events.popleft())
                else:
                    self._admit_requested = False
                    self._admit()
        finally:
            self._dispatching = False
        self.check_drained()

    def _dispatch(self, event: SchedulerEvent) -> None:
        if isinstance(event, ChunkSettled):
            self._settle(event)
        elif isinstance(event, RetryDue):
            self._retry_due(event.index)
        else:
            raise TypeError(f"Unknown scheduler event: {event!r}")

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _admit(self) -> None:
        """Fill free slots in index order until the ceiling or the queue runs out."""
        state = self.state
        while state.phase is SessionPhase.RUNNING:
            if state.active_count >= state.max_concurrency:
                return
            task = self.store.next_pending()
            if task is None:
                self._maybe_succeed()
                return
            self._launch(task)

    def _launch(self, task: ChunkTask) -> None:
        index = task.index
        self.store.mark_in_flight(index)
        self.state.active_count += 1
        self.logger.debug(
            f"Chunk {index}: dispatched (attempt {task.retry_count + 1}, "
            f"active {self.state.active_count}/{self.state.max_concurrency})"
        )

        try:
            upload = self.transport.upload(self.chunks[index])
        except Exception as exc:
            # settles like any other rejection, after this admission pass
            self._events.append(ChunkSettled(index, error=exc))
            return

        task.cancel_handle = upload.cancel
        future = asyncio.ensure_future(upload.settlement, loop=self.bind_loop())
        self._outstanding.add(future)
        future.add_done_callback(functools.partial(self._on_done, index))

    def _on_done(self, index: int, future: asyncio.Future) -> None:
        self._outstanding.discard(future)
        if future.cancelled():
            event = ChunkSettled(index, error=asyncio.CancelledError())
        elif future.exception() is not None:
            event = ChunkSettled(index, error=future.exception())
        else:
            event = ChunkSettled(index, value=future.result())
        self.post(event)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _settle(self, event: ChunkSettled) -> None:
        state = self.state
        index = event.index
        task = self.store[index]
        state.active_count -= 1

        if event.ok:
            self.store.mark_completed(index)
            state.completed_count += 1
            self.logger.debug(f"Chunk {index}: uploaded ({state.completed_count}/{state.total})")
            if state.phase.is_terminal:
                return
            self.progress.report()
            if state.completed_count == state.total:
                self._maybe_succeed()
            else:
                self._admit_requested = True
            return

        error = event.error
        if self.is_cancellation(error):
            # neither completed nor retried; the index is not dispatched again
            self.store.release(index)
            self.logger.debug(f"Chunk {index}: upload cancelled")
            return

        self.store.mark_failed(index)
        if state.phase.is_terminal:
            self.logger.debug(f"Chunk {index}: failed after session ended ({state.phase.value}) — {error}")
            return

        if task.retry_count < state.retry_budget:
            task.retry_count += 1
            self._schedule_retry(task, error)
            return

        state.phase = SessionPhase.FAILED
        self.logger.error(f"Chunk {index}: failed after {task.retry_count} retries — {error}")
        self._cancel_retry_timers()
        if self.cancel_on_failure:
            self.cancel_in_flight()
        if self.on_fail is not None:
            self.on_fail(error)

    def _schedule_retry(self, task: ChunkTask, error: BaseException) -> None:
        index = task.index
        budget = self.state.retry_budget
        delay = self.retry_delay(task.retry_count) if self.retry_delay else 0
        if delay <= 0:
            self.logger.warning(
                f"Chunk {index}: transient error (retry {task.retry_count}/{budget}) — {error}"
            )
            self.store.requeue(index)
            self._admit_requested = True
            return

        self.logger.warning(
            f"Chunk {index}: transient error (retry {task.retry_count}/{budget}), "
            f"retrying in {delay}s — {error}"
        )
        self._retry_timers[index] = self.bind_loop().call_later(delay, self.post, RetryDue(index))

    def _retry_due(self, index: int) -> None:
        self._retry_timers.pop(index, None)
        if self.state.phase.is_terminal:
            return
        self.store.requeue(index)
        self._admit_requested = True

    def _maybe_succeed(self) -> None:
        state = self.state
        if state.phase is not SessionPhase.RUNNING:
            return
        if state.active_count != 0 or state.completed_count != state.total:
            return
        state.phase = SessionPhase.SUCCEEDED
        self.logger.info(f"All {state.total} chunk(s) uploaded.")
        self.progress.finish()
        if self.on_succeed is not None:
            self.on_succeed()

    # ------------------------------------------------------------------
    # Cancellation and completion
    # ------------------------------------------------------------------

    def cancel_in_flight(self) -> int:
        """Invoke every live cancel handle once. Returns how many were invoked."""
        cancelled = 0
        for task in self.store.in_flight():
            handle = task.cancel_handle
            if handle is None:
                continue
            task.cancel_handle = None
            handle()
            cancelled += 1
        return cancelled

    def abort(self) -> int:
        self._cancel_retry_timers()
        cancelled = self.cancel_in_flight()
        self.check_drained()
        return cancelled

    def _cancel_retry_timers(self) -> None:
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()

    def check_drained(self) -> None:
        finished = self._finished
        if finished is None or finished.done():
            return
        if self.state.phase.is_terminal and self.state.active_count == 0:
            finished.set_result(self.state.phase)

    async def wait(self) -> SessionPhase:
        """Block until the session is terminal and no transport call is outstanding."""
        if self._finished is None:
            self._finished = self.bind_loop().create_future()
            self.check_drained()
        return await self._finished
