import pytest

from chunked_upload.progress import ProgressAggregator
from chunked_upload.tasks import ChunkStatus, ChunkTaskStore, SessionPhase, SessionState


def test_store_allocates_independent_tasks():
    store = ChunkTaskStore(3)

    store[0].retry_count = 2
    assert [t.retry_count for t in store] == [2, 0, 0]
    assert len({id(t) for t in store}) == 3
    assert [t.index for t in store] == [0, 1, 2]


def test_next_pending_follows_index_order_including_requeued():
    store = ChunkTaskStore(4)

    first = store.next_pending()
    second = store.next_pending()
    store.mark_in_flight(first.index)
    store.mark_in_flight(second.index)
    store.requeue(first.index)

    assert store.next_pending().index == 0
    assert store.next_pending().index == 2
    assert store.next_pending().index == 3
    assert store.next_pending() is None


def test_mark_in_flight_refuses_double_dispatch():
    store = ChunkTaskStore(1)
    store.mark_in_flight(0)

    with pytest.raises(RuntimeError):
        store.mark_in_flight(0)


def test_completed_and_failed_clear_cancel_handle():
    store = ChunkTaskStore(2)
    for index in (0, 1):
        store.mark_in_flight(index).cancel_handle = lambda: None

    assert len(store.in_flight()) == 2
    assert store.mark_completed(0).cancel_handle is None
    assert store.mark_failed(1).cancel_handle is None
    assert store.count(ChunkStatus.COMPLETED) == 1
    assert store.in_flight() == []


def test_release_keeps_status_and_retries():
    store = ChunkTaskStore(2)
    task = store.mark_in_flight(store.next_pending().index)
    task.retry_count = 1
    task.cancel_handle = lambda: None

    store.release(0)

    assert task.cancel_handle is None
    assert task.status is ChunkStatus.IN_FLIGHT
    assert task.retry_count == 1
    assert store.next_pending().index == 1
    assert store.next_pending() is None


def test_terminal_phases():
    assert {p for p in SessionPhase if p.is_terminal} == {
        SessionPhase.SUCCEEDED,
        SessionPhase.FAILED,
        SessionPhase.CANCELED,
    }


class TestProgressAggregator:
    def make(self, total):
        reports = []
        state = SessionState(total=total, max_concurrency=1, retry_budget=0)
        return state, ProgressAggregator(state, reports.append), reports

    def test_empty_session_is_complete(self):
        state, progress, reports = self.make(0)

        assert progress.percentage == 100
        progress.finish()
        assert reports == [100.0]

    def test_report_leaves_final_hundred_to_finish(self):
        state, progress, reports = self.make(2)

        state.completed_count = 1
        progress.report()
        state.completed_count = 2
        progress.report()
        assert reports == [50.0]

        progress.finish()
        progress.finish()
        assert reports == [50.0, 100.0]

    def test_reports_never_decrease(self):
        state, progress, reports = self.make(4)

        state.completed_count = 3
        progress.report()
        state.completed_count = 1
        progress.report()

        assert reports == [75.0]
