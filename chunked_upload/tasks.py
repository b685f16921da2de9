"""
Per-chunk bookkeeping for an upload session.

Every chunk index owns one ChunkTask, allocated on its own when the store is
built. The scheduler is the only writer.
"""

import heapq
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional


class ChunkStatus(Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionPhase(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionPhase.SUCCEEDED, SessionPhase.FAILED, SessionPhase.CANCELED)


@dataclass
class ChunkTask:
    index: int
    status: ChunkStatus = ChunkStatus.PENDING
    retry_count: int = 0
    cancel_handle: Optional[Callable[[], None]] = None


@dataclass
class SessionState:
    total: int
    max_concurrency: int
    retry_budget: int
    completed_count: int = 0
    active_count: int = 0
    phase: SessionPhase = SessionPhase.IDLE


class ChunkTaskStore:
    """Indexed container of ChunkTasks with ordered access to pending work."""

    def __init__(self, total: int) -> None:
        self._tasks = [ChunkTask(index=i) for i in range(total)]
        # min-heap of pending indices; every index starts pending
        self._pending: list[int] = list(range(total))

    def __len__(self) -> int:
        return len(self._tasks)

    def __getitem__(self, index: int) -> ChunkTask:
        return self._tasks[index]

    def __iter__(self) -> Iterator[ChunkTask]:
        return iter(self._tasks)

    def next_pending(self) -> Optional[ChunkTask]:
        """Pop the lowest-index pending task, or None when nothing is waiting."""
        while self._pending:
            index = heapq.heappop(self._pending)
            task = self._tasks[index]
            if task.status is ChunkStatus.PENDING:
                return task
        return None

    def requeue(self, index: int) -> None:
        task = self._tasks[index]
        task.status = ChunkStatus.PENDING
        task.cancel_handle = None
        heapq.heappush(self._pending, index)

    def release(self, index: int) -> ChunkTask:
        """Drop the cancel handle of an aborted call, leaving status and retries as they were."""
        task = self._tasks[index]
        task.cancel_handle = None
        return task

    def mark_in_flight(self, index: int) -> ChunkTask:
        task = self._tasks[index]
        if task.status is not ChunkStatus.PENDING:
            raise RuntimeError(
                f"Chunk {index} cannot be dispatched from status {task.status.value}."
            )
        task.status = ChunkStatus.IN_FLIGHT
        return task

    def mark_completed(self, index: int) -> ChunkTask:
        task = self._tasks[index]
        task.status = ChunkStatus.COMPLETED
        task.cancel_handle = None
        return task

    def mark_failed(self, index: int) -> ChunkTask:
        task = self._tasks[index]
        task.status = ChunkStatus.FAILED
        task.cancel_handle = None
        return task

    def in_flight(self) -> list[ChunkTask]:
        return [t for t in self._tasks if t.status is ChunkStatus.IN_FLIGHT]

    def count(self, status: ChunkStatus) -> int:
        return sum(1 for t in self._tasks if t.status is status)
