"""
encodelab.overseer
~~~~~~~~~~~~~~~~~~
EncodeQueue runs production encodes through a fixed number of slots.

Items wait as QUEUED until a slot frees up; each running item owns one
EncodeWorker. A rejected or failing item ends as ERROR without affecting
its siblings.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from typing import Callable

from PySide6.QtCore import QObject, Signal

from encodelab.config import EngineConfig
from encodelab.models import EncodeRequest, JobStatus, WorkItem
from encodelab.workers import EncodeWorker

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[WorkItem, EngineConfig, QObject], EncodeWorker]


def _default_worker(item: WorkItem, config: EngineConfig, parent: QObject) -> EncodeWorker:
    return EncodeWorker(item, config, parent=parent)


class EncodeQueue(QObject):

    item_added          = Signal(str)
    item_status_changed = Signal(str, object)          # (item_id, JobStatus)
    item_progress       = Signal(str, float)
    item_duration       = Signal(str, float)
    item_notice         = Signal(str, object)          # (item_id, BuildNotice)
    item_finished       = Signal(str, object)          # (item_id, EncodeOutcome | None)
    drained             = Signal()                     # nothing queued, nothing running

    def __init__(
        self,
        config: EngineConfig,
        parent=None,
        *,
        slots: int | None = None,
        worker_factory: WorkerFactory = _default_worker,
    ):
        super().__init__(parent)
        self.config = config
        self.slots = max(1, slots if slots is not None else config.encode_slots)
        self._worker_factory = worker_factory
        self._items: dict[str, WorkItem] = {}
        self._pending: deque[str] = deque()
        self._workers: dict[str, EncodeWorker] = {}

    # ── Queue management ──────────────────────────────────────────────────────

    def submit(self, request: EncodeRequest) -> WorkItem:
        item = WorkItem(item_id=uuid.uuid4().hex, request=request)
        self._items[item.item_id] = item
        self._pending.append(item.item_id)
        logger.info("Queued '%s' → '%s' (%s)", request.source.name, request.destination.name, item.item_id[:8])
        self.item_added.emit(item.item_id)
        self._pump()
        return item

    def cancel(self, item_id: str) -> None:
        item = self._items.get(item_id)
        if item is None:
            logger.debug("cancel: no item %s", item_id)
            return
        if item_id in self._pending:
            self._pending.remove(item_id)
            self._set_status(item, JobStatus.CANCELLED)
            self.item_finished.emit(item_id, None)
            self._check_drained()
            return
        worker = self._workers.get(item_id)
        if worker is not None:
            worker.cancel()

    def cancel_all(self) -> None:
        for item_id in list(self._pending) + list(self._workers):
            self.cancel(item_id)

    def items(self) -> list[WorkItem]:
        return list(self._items.values())

    def get(self, item_id: str) -> WorkItem | None:
        return self._items.get(item_id)

    @property
    def active_count(self) -> int:
        return len(self._workers)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def idle(self) -> bool:
        return not self._workers and not self._pending

    # ── Worker lifecycle ──────────────────────────────────────────────────────

    def _pump(self) -> None:
        while self._pending and len(self._workers) < self.slots:
            self._start_worker(self._items[self._pending.popleft()])

    def _start_worker(self, item: WorkItem) -> None:
        worker = self._worker_factory(item, self.config, self)
        worker.status_changed.connect(self._on_worker_status)
        worker.progress_changed.connect(self.item_progress)
        worker.duration_known.connect(self.item_duration)
        worker.notice_emitted.connect(self.item_notice)
        worker.completed.connect(self._on_worker_completed)

        self._workers[item.item_id] = worker
        logger.debug("Starting worker for %s (%d/%d slots busy)", item.item_id[:8], len(self._workers), self.slots)
        worker.start()

    def _on_worker_status(self, item_id: str, status: JobStatus) -> None:
        logger.debug("Item %s → %s", item_id[:8], status.name)
        self.item_status_changed.emit(item_id, status)

    def _on_worker_completed(self, item_id: str, outcome) -> None:
        worker = self._workers.pop(item_id, None)
        if worker is not None:
            worker.wait()
            worker.deleteLater()
        item = self._items.get(item_id)
        if item is not None:
            logger.info("Item %s finished: %s", item_id[:8], item.status.name)
        self.item_finished.emit(item_id, outcome)
        self._pump()
        self._check_drained()

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _set_status(self, item: WorkItem, status: JobStatus) -> None:
        item.status = status
        self.item_status_changed.emit(item.item_id, status)

    def _check_drained(self) -> None:
        if self.idle:
            self.drained.emit()
