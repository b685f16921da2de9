from typing import Callable, Optional

from .tasks import SessionState

ProgressCallback = Callable[[float], None]


class ProgressAggregator:
    """Turns the session's completed count into a 0-100 percentage stream.

    Reports never go backwards and 100 is only emitted through finish(), which
    the scheduler calls when the session succeeds.
    """

    def __init__(self, state: SessionState, on_progress: Optional[ProgressCallback]) -> None:
        self.state = state
        self.on_progress = on_progress
        self.last_reported: Optional[float] = None

    @property
    def percentage(self) -> float:
        if self.state.total == 0:
            return 100.0
        return self.state.completed_count * 100 / self.state.total

    def report(self) -> None:
        pct = self.percentage
        if pct >= 100:
            # the final 100 belongs to finish()
            return
        self._emit(pct)

    def finish(self) -> None:
        if self.last_reported != 100.0:
            self._emit(100.0)

    def _emit(self, pct: float) -> None:
        if self.last_reported is not None and pct < self.last_reported:
            return
        self.last_reported = pct
        if self.on_progress is not None:
            self.on_progress(pct)
