"""
encodelab.workers
~~~~~~~~~~~~~~~~~
QThreads that run engine operations and turn the engine's event stream
into signals the UI can connect to directly.

Each worker runs the engine call in a plain producer thread and consumes
its EventChannel in QThread.run(), emitting one signal per event. The
engine never touches Qt, so it stays usable from the CLI and from tests.

EncodeWorker signals (item id first, so one slot can serve many workers)
-------------------------------------------------------------------------
duration_known(str, float)    emitted once, right after probing the source
progress_changed(str, float)  0.0 – 100.0 as ffmpeg advances through the file
progress_event(str, object)   the full ProgressEvent
notice_emitted(str, object)   a BuildNotice (e.g. downgraded to software)
status_changed(str, object)   JobStatus
error_occurred(str, str)      human-readable error message; item.error_analysis
                              carries a category and a suggestion
completed(str, object)        EncodeOutcome, or None if the request was rejected
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable

from PySide6.QtCore import QThread, Signal

from encodelab.benchmark import BenchmarkScheduler
from encodelab.capabilities import CapabilityProber
from encodelab.channel import EventChannel
from encodelab.config import EngineConfig
from encodelab.errors import EngineError, InvalidRequestError
from encodelab.models import (
    BuildNotice,
    CapabilityEntry,
    JobStatus,
    ProbeProgress,
    ProgressEvent,
    TestMedia,
    TrialUpdate,
    WorkItem,
)
from encodelab.pipeline import run_request
from encodelab.probe import probe
from encodelab.progress import analyze_error
from encodelab.store import BenchmarkStore, CapabilityCache

logger = logging.getLogger(__name__)


class _ChannelWorker(QThread):
    """Runs `produce(channel)` on a helper thread and dispatches its events here."""

    def __init__(self, config: EngineConfig, parent=None):
        super().__init__(parent)
        self.config = config

    def _drive(self, produce: Callable[[EventChannel], object]):
        channel: EventChannel = EventChannel(self.config.channel_size)
        box: dict[str, object] = {}

        def target():
            try:
                box["result"] = produce(channel)
            except Exception as exc:  # re-raised on the consuming thread below
                box["error"] = exc
            finally:
                channel.close()

        producer = threading.Thread(target=target, name=f"encodelab-{type(self).__name__}", daemon=True)
        producer.start()
        for event in channel:
            self._dispatch(event)
        producer.join()

        if "error" in box:
            raise box["error"]
        return box.get("result")

    def _dispatch(self, event) -> None:
        raise NotImplementedError


# ── Production encode ─────────────────────────────────────────────────────────

class EncodeWorker(_ChannelWorker):

    duration_known   = Signal(str, float)
    progress_changed = Signal(str, float)
    progress_event   = Signal(str, object)
    notice_emitted   = Signal(str, object)
    status_changed   = Signal(str, object)
    error_occurred   = Signal(str, str)
    completed        = Signal(str, object)

    def __init__(
        self,
        item: WorkItem,
        config: EngineConfig,
        parent=None,
        *,
        runner=run_request,
        metadata_probe=probe,
    ):
        super().__init__(config, parent)
        self.item = item
        self._runner = runner
        self._metadata_probe = metadata_probe
        self._abort = threading.Event()
        logger.debug("Worker created for '%s' → '%s'", item.request.source.name, item.request.destination.name)

    # ── QThread entry point ───────────────────────────────────────────────────

    def run(self):
        item = self.item
        self._set_status(JobStatus.RUNNING)

        source_info = None
        try:
            source_info = self._metadata_probe(item.request.source, self.config)
        except (OSError, EngineError) as exc:
            logger.warning("Could not probe '%s': %s", item.request.source, exc)
        if source_info is not None and source_info.duration_seconds > 0:
            self.duration_known.emit(item.item_id, source_info.duration_seconds)

        try:
            outcome = self._drive(
                lambda channel: self._runner(
                    item.request,
                    self.config,
                    source_info=source_info,
                    channel=channel,
                    abort=self._abort,
                )
            )
        except InvalidRequestError as exc:
            self._fail(f"Invalid request: {exc}")
            return
        except EngineError as exc:
            self._fail(str(exc))
            return

        item.outcome = outcome
        if outcome.success:
            item.progress = 100.0
            self._set_status(JobStatus.DONE)
        elif outcome.cancelled:
            self._set_status(JobStatus.CANCELLED)
        else:
            item.error_message = outcome.error
            item.error_analysis = analyze_error(outcome.diagnostics or outcome.error)
            self._set_status(JobStatus.ERROR)
            self.error_occurred.emit(item.item_id, outcome.error)
        self.completed.emit(item.item_id, outcome)

    # ── Cancel ────────────────────────────────────────────────────────────────

    def cancel(self):
        logger.info("Cancel requested for '%s'", self.item.request.source.name)
        self._abort.set()

    # ── Internal ──────────────────────────────────────────────────────────────

    def _dispatch(self, event) -> None:
        item_id = self.item.item_id
        if isinstance(event, ProgressEvent):
            self.progress_event.emit(item_id, event)
            if event.percent is not None:
                self.item.progress = event.percent
                self.progress_changed.emit(item_id, event.percent)
        elif isinstance(event, BuildNotice):
            self.notice_emitted.emit(item_id, event)

    def _set_status(self, status: JobStatus) -> None:
        self.item.status = status
        self.status_changed.emit(self.item.item_id, status)

    def _fail(self, message: str):
        logger.error("Encode of '%s' failed: %s", self.item.request.source.name, message)
        self.item.error_message = message
        self.item.error_analysis = analyze_error(message)
        self._set_status(JobStatus.ERROR)
        self.error_occurred.emit(self.item.item_id, message)
        self.completed.emit(self.item.item_id, None)


# ── Capability probe ──────────────────────────────────────────────────────────

class ProbeWorker(_ChannelWorker):
    """
    Signals: probe_progress(int index, int total, object entry),
    completed(list of CapabilityEntry), error_occurred(str).
    """

    probe_progress = Signal(int, int, object)
    completed      = Signal(list)
    error_occurred = Signal(str)

    def __init__(
        self,
        config: EngineConfig,
        parent=None,
        *,
        prober: CapabilityProber | None = None,
        cache: CapabilityCache | None = None,
        test_input: Path | None = None,
    ):
        super().__init__(config, parent)
        self.prober = prober or CapabilityProber(config)
        self.cache = cache
        self.test_input = test_input

    def run(self):
        try:
            entries: list[CapabilityEntry] = self._drive(
                lambda channel: self.prober.probe(self.test_input, channel)
            )
            if self.cache is not None:
                self.cache.merge(entries)
        except EngineError as exc:
            logger.error("Capability probe failed: %s", exc)
            self.error_occurred.emit(str(exc))
            return
        self.completed.emit(entries)

    def _dispatch(self, event) -> None:
        if isinstance(event, ProbeProgress):
            self.probe_progress.emit(event.index, event.total, event.entry)


# ── Benchmark ─────────────────────────────────────────────────────────────────

class BenchmarkWorker(_ChannelWorker):
    """
    Signals: trial_updated(object TrialUpdate), trial_progress(float),
    completed(object BenchmarkRun), error_occurred(str).
    """

    trial_updated  = Signal(object)
    trial_progress = Signal(float)
    completed      = Signal(object)
    error_occurred = Signal(str)

    def __init__(
        self,
        config: EngineConfig,
        selected: list[CapabilityEntry],
        test_media: TestMedia,
        parent=None,
        *,
        scheduler: BenchmarkScheduler | None = None,
        store: BenchmarkStore | None = None,
    ):
        super().__init__(config, parent)
        self.selected = list(selected)
        self.test_media = test_media
        self.scheduler = scheduler or BenchmarkScheduler(config)
        self.store = store

    def run(self):
        try:
            benchmark_run = self._drive(
                lambda channel: self.scheduler.run(self.selected, self.test_media, channel)
            )
            if self.store is not None:
                self.store.save(benchmark_run)
        except EngineError as exc:
            logger.error("Benchmark failed: %s", exc)
            self.error_occurred.emit(str(exc))
            return
        self.completed.emit(benchmark_run)

    def cancel(self, terminate_in_flight: bool = False):
        self.scheduler.cancel(terminate_in_flight)

    def _dispatch(self, event) -> None:
        if isinstance(event, TrialUpdate):
            self.trial_updated.emit(event)
        elif isinstance(event, ProgressEvent) and event.percent is not None:
            self.trial_progress.emit(event.percent)
