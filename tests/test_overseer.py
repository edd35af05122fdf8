"""EncodeQueue slot accounting, with workers the test starts by hand."""

import pytest

from encodelab.models import EncodeOutcome, EncodeRequest, JobStatus, ProbeResult
from encodelab.overseer import EncodeQueue
from encodelab.workers import EncodeWorker


class ManualWorker(EncodeWorker):
    """An EncodeWorker whose start() only records the call; tests call run()."""

    def __init__(self, item, config, parent=None):
        super().__init__(
            item, config, parent,
            runner=lambda request, cfg, **kwargs: self._fake_run(request, cfg, **kwargs),
            metadata_probe=lambda source, cfg: ProbeResult(path=source, duration_seconds=1.0),
        )
        self.started = False
        self.result = EncodeOutcome(success=True, exit_code=0)

    def start(self):
        self.started = True

    def _fake_run(self, request, config, *, abort, **kwargs):
        if abort.is_set():
            return EncodeOutcome(success=False, cancelled=True, error="cancelled")
        return self.result


@pytest.fixture
def workers():
    return []


@pytest.fixture
def queue(qapp, config, workers):
    def factory(item, cfg, parent):
        worker = ManualWorker(item, cfg, parent)
        workers.append(worker)
        return worker

    q = EncodeQueue(config, slots=2, worker_factory=factory)
    yield q
    q.deleteLater()


def request(tmp_path, name: str) -> EncodeRequest:
    return EncodeRequest(source=tmp_path / f"{name}.mov", destination=tmp_path / f"{name}.mp4", codec="h264")


def test_never_more_workers_than_slots(queue, workers, tmp_path) -> None:
    items = [queue.submit(request(tmp_path, f"clip{i}")) for i in range(5)]

    assert queue.active_count == 2
    assert queue.pending_count == 3
    assert [w.item.item_id for w in workers] == [items[0].item_id, items[1].item_id]

    workers[0].run()
    assert queue.active_count == 2
    assert len(workers) == 3
    assert items[0].status is JobStatus.DONE


def test_drained_after_everything_finishes(queue, workers, tmp_path) -> None:
    drained = []
    finished = []
    queue.drained.connect(lambda: drained.append(True))
    queue.item_finished.connect(lambda item_id, outcome: finished.append(item_id))

    items = [queue.submit(request(tmp_path, f"clip{i}")) for i in range(3)]
    for worker in list(workers):
        worker.run()
    workers[-1].run()

    assert drained == [True]
    assert queue.idle
    assert sorted(finished) == sorted(i.item_id for i in items)


def test_cancel_pending_item(queue, workers, tmp_path) -> None:
    statuses = []
    finished = []
    queue.item_status_changed.connect(lambda item_id, status: statuses.append((item_id, status)))
    queue.item_finished.connect(lambda item_id, outcome: finished.append((item_id, outcome)))

    items = [queue.submit(request(tmp_path, f"clip{i}")) for i in range(3)]
    queue.cancel(items[2].item_id)

    assert items[2].status is JobStatus.CANCELLED
    assert (items[2].item_id, JobStatus.CANCELLED) in statuses
    assert finished == [(items[2].item_id, None)]
    assert queue.pending_count == 0
    assert len(workers) == 2


def test_cancel_running_item(queue, workers, tmp_path) -> None:
    item = queue.submit(request(tmp_path, "clip"))
    queue.cancel(item.item_id)
    workers[0].run()

    assert item.status is JobStatus.CANCELLED
    assert queue.idle


def test_failure_does_not_affect_siblings(queue, workers, tmp_path) -> None:
    bad = queue.submit(request(tmp_path, "bad"))
    good = queue.submit(request(tmp_path, "good"))
    workers[0].result = EncodeOutcome(success=False, exit_code=1, error="Invalid data found")

    workers[0].run()
    workers[1].run()

    assert bad.status is JobStatus.ERROR
    assert good.status is JobStatus.DONE


def test_progress_is_forwarded(queue, workers, tmp_path) -> None:
    durations = []
    queue.item_duration.connect(lambda item_id, seconds: durations.append(seconds))
    queue.submit(request(tmp_path, "clip"))
    workers[0].run()
    assert durations == [1.0]


def test_unknown_item_cancel_is_ignored(queue) -> None:
    queue.cancel("does-not-exist")
    assert queue.idle
