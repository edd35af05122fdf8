"""
encodelab.benchmark
~~~~~~~~~~~~~~~~~~~
Benchmark scheduler: encodes one real test clip with each selected
capability, one after another, and records what happened.

Trials run strictly in sequence. They share the machine's encode hardware
and would distort each other's timings if they overlapped.

Cancellation comes in two strengths:

    scheduler.cancel()                          finish the current trial, stop
    scheduler.cancel(terminate_in_flight=True)  kill the current trial too;
                                                it is not recorded

Either way the run contains exactly the trials that finished, nothing padded.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from encodelab.channel import ChannelClosed, EventChannel
from encodelab.command_builder import build_trial_command
from encodelab.config import EngineConfig
from encodelab.errors import InvalidRequestError, LaunchFailureError
from encodelab.models import (
    BenchmarkRun,
    BenchmarkTrial,
    CapabilityEntry,
    EncodeOutcome,
    SystemInfo,
    TestMedia,
    TrialStatus,
    TrialUpdate,
)
from encodelab.paths import require_tool
from encodelab.pipeline import run_encode
from encodelab.probe import get_duration
from encodelab.sysinfo import collect_system_info

logger = logging.getLogger(__name__)

TrialRunner = Callable[..., EncodeOutcome]
MetadataProbe = Callable[[Path], float]

# Downloadable clips for machines without their own test footage.
TEST_VIDEOS: tuple[TestMedia, ...] = (
    TestMedia(
        name="Big Buck Bunny 480p",
        url="http://download.blender.org/peach/bigbuckbunny_movies/big_buck_bunny_480p_surround-fix.avi",
        resolution="480p",
    ),
    TestMedia(
        name="Big Buck Bunny 720p",
        url="http://mirror.bigbuckbunny.de/peach/bigbuckbunny_movies/big_buck_bunny_720p_surround.avi",
        resolution="720p",
    ),
    TestMedia(
        name="Big Buck Bunny 1080p 30fps",
        url="http://distribution.bbb3d.renderfarming.net/video/mp4/bbb_sunflower_1080p_30fps_normal.mp4",
        resolution="1080p",
    ),
    TestMedia(
        name="Big Buck Bunny 4K",
        url="http://distribution.bbb3d.renderfarming.net/video/mp4/bbb_sunflower_2160p_30fps_normal.mp4",
        resolution="2160p",
    ),
)


def find_test_video(name_or_resolution: str) -> TestMedia | None:
    key = name_or_resolution.lower()
    return next(
        (m for m in TEST_VIDEOS if key in (m.name.lower(), m.resolution.lower())),
        None,
    )


class BenchmarkScheduler:
    """
    Runs BenchmarkRuns. One scheduler runs one benchmark at a time; call
    cancel() from any thread.

    `runner` has run_encode()'s signature and `metadata_probe` maps a path
    to its duration in seconds. Both are injectable for tests.
    """

    def __init__(
        self,
        config: EngineConfig,
        runner: TrialRunner | None = None,
        metadata_probe: MetadataProbe | None = None,
        *,
        system_info: Callable[[EngineConfig], SystemInfo] = collect_system_info,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.runner = runner or run_encode
        self.metadata_probe = metadata_probe or (lambda path: get_duration(path, config))
        self._system_info = system_info
        self._clock = clock
        self._cancel = threading.Event()
        self._abort = threading.Event()

    # ── Control ───────────────────────────────────────────────────────────────

    def cancel(self, terminate_in_flight: bool = False) -> None:
        """
        Stop after the current trial. With *terminate_in_flight* the running
        encode is terminated as well and left out of the run.
        """
        logger.info("Benchmark cancel requested (terminate in flight: %s)", terminate_in_flight)
        self._cancel.set()
        if terminate_in_flight:
            self._abort.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ── Run ───────────────────────────────────────────────────────────────────

    def run(
        self,
        selected: list[CapabilityEntry],
        test_media: TestMedia,
        channel: EventChannel | None = None,
    ) -> BenchmarkRun:
        """
        Benchmark every entry in *selected*, in order.

        A failing trial is recorded as FAILED and the run carries on.

        A cancel() issued before run() is entered still applies to this run;
        the flags are reset only once it returns.

        Raises:
            ToolNotFoundError   – ffmpeg is missing (checked before any trial)
            InvalidRequestError – the test media is missing or has no duration
        """
        try:
            return self._run(selected, test_media, channel)
        finally:
            self._cancel.clear()
            self._abort.clear()

    def _run(
        self,
        selected: list[CapabilityEntry],
        test_media: TestMedia,
        channel: EventChannel | None,
    ) -> BenchmarkRun:
        require_tool(self.config.ffmpeg)
        media = self._validate_media(test_media)
        sink = _Sink(channel)

        run_id = uuid.uuid4().hex
        started_at = datetime.now(timezone.utc)
        system_info = self._system_info(self.config)
        total = len(selected)
        trials: list[BenchmarkTrial] = []

        logger.info("Benchmark %s: %d trials on %s", run_id[:8], total, media.name)
        for index, entry in enumerate(selected, start=1):
            sink.publish(TrialUpdate(index, total, entry, TrialStatus.PENDING))

        for index, entry in enumerate(selected, start=1):
            if self._cancel.is_set():
                logger.info("Benchmark cancelled before trial %d of %d", index, total)
                break

            sink.publish(TrialUpdate(index, total, entry, TrialStatus.RUNNING))
            outcome = self._run_trial(entry, media, sink.channel)

            if self._abort.is_set() and outcome.cancelled:
                logger.info("Trial %d (%s) terminated, not recorded", index, entry.label)
                break

            status = TrialStatus.COMPLETE if outcome.success else TrialStatus.FAILED
            trials.append(BenchmarkTrial(entry=entry, status=status, outcome=outcome))
            sink.publish(TrialUpdate(index, total, entry, status, outcome))
            if outcome.success:
                logger.info(
                    "[%d/%d] %s: %.2fs, %.1f fps, %d bytes",
                    index, total, entry.label, outcome.wall_seconds, outcome.fps, outcome.file_size,
                )
            else:
                logger.info("[%d/%d] %s failed: %s", index, total, entry.label, outcome.error)

        return BenchmarkRun(
            run_id=run_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            system_info=system_info,
            test_media=media,
            trials=tuple(trials),
            cancelled=self._cancel.is_set(),
        )

    # ── Internal ──────────────────────────────────────────────────────────────

    def _validate_media(self, media: TestMedia) -> TestMedia:
        if media.path is None or not media.path.is_file():
            raise InvalidRequestError(f"Test media not found: {media.path or media.name}")
        duration = self.metadata_probe(media.path)
        if not duration or duration <= 0:
            raise InvalidRequestError(f"Could not determine the duration of {media.path}")
        return dataclasses.replace(media, duration=duration)

    def _run_trial(
        self,
        entry: CapabilityEntry,
        media: TestMedia,
        channel: EventChannel | None,
    ) -> EncodeOutcome:
        output = self.config.work_dir / f"bench_{entry.codec}_{entry.acceleration.value}_{uuid.uuid4().hex[:8]}.mkv"
        output.parent.mkdir(parents=True, exist_ok=True)

        started = self._clock()
        try:
            command = build_trial_command(entry.codec, entry.acceleration, media.path, output)
            outcome = self.runner(
                command,
                self.config,
                output_path=output,
                duration=media.duration,
                timeout=self.config.benchmark_timeout,
                channel=channel,
                abort=self._abort,
            )
        except (InvalidRequestError, LaunchFailureError) as exc:
            logger.warning("Trial for %s could not start: %s", entry.label, exc)
            return EncodeOutcome(success=False, error=str(exc))
        finally:
            wall = self._clock() - started
            output.unlink(missing_ok=True)

        return _with_measured_rates(outcome, wall, media.duration)


def _with_measured_rates(outcome: EncodeOutcome, wall: float, media_duration: float) -> EncodeOutcome:
    """
    Replace self-reported rates with ones derived from the scheduler's own
    wall clock: speed as media seconds per wall second and bitrate from the
    output size.
    """
    if wall <= 0:
        return dataclasses.replace(outcome, wall_seconds=0.0)
    return dataclasses.replace(
        outcome,
        wall_seconds=wall,
        speed=media_duration / wall if outcome.success else outcome.speed,
        bitrate_kbps=outcome.file_size * 8 / wall / 1000,
    )


class _Sink:
    def __init__(self, channel: EventChannel | None):
        self.channel = channel

    def publish(self, event) -> None:
        if self.channel is None:
            return
        try:
            self.channel.publish(event)
        except ChannelClosed:
            logger.debug("Benchmark consumer went away; no more updates published")
            self.channel = None
