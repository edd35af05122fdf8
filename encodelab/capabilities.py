"""
encodelab.capabilities
~~~~~~~~~~~~~~~~~~~~~~
Empirically discovers which (codec, accelerator) pairs work on this machine.

ffmpeg can list hundreds of encoders that are compiled in yet unusable
(no GPU, wrong driver, missing runtime), so the only reliable answer is to
try: every pair gets a disposable trial encode of a tiny synthetic clip.

Order is fixed: accelerations in PROBE_ACCELERATIONS order (software
first), codecs in PROBE_CODECS order within each. Partial-progress reports
("12 of 15 tested") are therefore reproducible run to run.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from encodelab.channel import ChannelClosed, EventChannel
from encodelab.command_builder import build_test_pattern_command, build_trial_command
from encodelab.config import EngineConfig
from encodelab.errors import EncodeFailureError, LaunchFailureError, TrialTimeoutError
from encodelab.models import AccelerationChoice, CapabilityEntry, EncodeOutcome, ProbeProgress
from encodelab.paths import require_tool
from encodelab.pipeline import run_encode
from encodelab.presets import PROBE_ACCELERATIONS, PROBE_CODECS, hardware_encoder, resolve_codec
from encodelab.process import run_capture
from encodelab.progress import UNAVAILABLE_MARKERS, find_unavailable_marker
from encodelab.store import CapabilityCache

logger = logging.getLogger(__name__)

TRIAL_FRAMES = 2

# " V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC ..."
_ENCODER_LINE = re.compile(r"^\s*[VAS][F.][S.][X.][B.][D.]\s+(\w[\w-]*)")

TrialRunner = Callable[..., EncodeOutcome]

__all__ = [
    "CapabilityCache",
    "CapabilityProber",
    "ensure_probe_input",
    "list_compiled_encoders",
]


# ── Synthetic input ───────────────────────────────────────────────────────────

def ensure_probe_input(config: EngineConfig, *, force: bool = False) -> Path:
    """
    Return the path of the tiny synthetic clip used by every trial,
    rendering it first if it does not exist yet.

    The clip is written to a temporary name and renamed into place, so a
    concurrent reader never sees a truncated file.

    Raises:
        ToolNotFoundError  – ffmpeg is not installed
        EncodeFailureError – ffmpeg could not render the clip
    """
    target = config.probe_input_path
    if target.exists() and not force:
        return target

    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_name(f".{target.stem}-{uuid.uuid4().hex[:8]}{target.suffix}")
    try:
        status, _, stderr = run_capture(
            config.ffmpeg, build_test_pattern_command(partial), timeout=config.probe_timeout
        )
        if not status.success or not partial.exists():
            raise EncodeFailureError(
                f"Could not generate the probe input (exit code {status.returncode})",
                diagnostics=stderr,
                exit_code=status.returncode,
            )
        os.replace(partial, target)
    except TrialTimeoutError as exc:
        raise EncodeFailureError(f"Generating the probe input timed out: {exc}") from exc
    finally:
        partial.unlink(missing_ok=True)

    logger.info("Probe input written to %s", target)
    return target


def list_compiled_encoders(config: EngineConfig) -> set[str]:
    """Names of the encoders this ffmpeg build was compiled with."""
    status, stdout, _ = run_capture(
        config.ffmpeg, ["-hide_banner", "-encoders"], timeout=config.probe_timeout
    )
    if not status.success:
        logger.warning("ffmpeg -encoders exited with %d", status.returncode)
        return set()
    return {m.group(1) for m in map(_ENCODER_LINE.match, stdout.splitlines()) if m}


# ── Prober ────────────────────────────────────────────────────────────────────

class CapabilityProber:
    """
    Runs the capability matrix.

    `runner` has run_encode()'s signature; tests inject a fake so no real
    ffmpeg is needed. With `prefilter_compiled=True` the prober first asks
    ffmpeg which encoders exist and records the rest as unavailable without
    a trial.
    """

    def __init__(
        self,
        config: EngineConfig,
        runner: TrialRunner | None = None,
        *,
        prefilter_compiled: bool = False,
        codecs: tuple[str, ...] = PROBE_CODECS,
        accelerations: tuple[AccelerationChoice, ...] = PROBE_ACCELERATIONS,
        markers: list[str] | None = None,
    ):
        self.config = config
        self.runner = runner or run_encode
        self.prefilter_compiled = prefilter_compiled
        self.codecs = codecs
        self.accelerations = accelerations
        self.markers = list(UNAVAILABLE_MARKERS) if markers is None else markers

    def plan(self) -> list[tuple[str, AccelerationChoice]]:
        """The full cross product, in probing order."""
        return [(codec, accel) for accel in self.accelerations for codec in self.codecs]

    def probe(
        self,
        test_input: Path | None = None,
        channel: EventChannel | None = None,
    ) -> list[CapabilityEntry]:
        """
        Probe every pair and return one CapabilityEntry per pair, in plan()
        order. Failing trials become `available=False` entries; they never
        raise.

        Raises:
            ToolNotFoundError – ffmpeg is missing (checked before any trial)
        """
        require_tool(self.config.ffmpeg)
        if test_input is None:
            test_input = ensure_probe_input(self.config)

        self.config.work_dir.mkdir(parents=True, exist_ok=True)
        compiled = list_compiled_encoders(self.config) if self.prefilter_compiled else None
        plan = self.plan()
        total = len(plan)
        entries: list[CapabilityEntry] = []

        logger.info("Probing %d codec/accelerator combinations", total)
        for index, (codec, acceleration) in enumerate(plan, start=1):
            entry = self._probe_one(codec, acceleration, test_input, compiled)
            entries.append(entry)
            logger.info(
                "[%d/%d] %s: %s", index, total, entry.label,
                "available" if entry.available else f"unavailable ({entry.error})",
            )
            if channel is not None:
                try:
                    channel.publish(ProbeProgress(index=index, total=total, entry=entry))
                except ChannelClosed:
                    channel = None

        found = sum(e.available for e in entries)
        logger.info("Probe complete: %d of %d combinations available", found, total)
        return entries

    def probe_and_store(
        self,
        cache: CapabilityCache,
        test_input: Path | None = None,
        channel: EventChannel | None = None,
    ) -> list[CapabilityEntry]:
        """probe() then replace the matching entries in *cache*."""
        entries = self.probe(test_input, channel)
        cache.merge(entries)
        return entries

    # ── Internal ──────────────────────────────────────────────────────────────

    def _probe_one(
        self,
        codec: str,
        acceleration: AccelerationChoice,
        test_input: Path,
        compiled: set[str] | None,
    ) -> CapabilityEntry:
        if acceleration.is_hardware:
            encoder = hardware_encoder(codec, acceleration)
        else:
            config = resolve_codec(codec)
            encoder = config.software_encoder if config else None

        if encoder is None:
            return self._entry(codec, acceleration, "", f"no {acceleration.value} encoder for {codec}")
        if compiled is not None and encoder not in compiled:
            return self._entry(codec, acceleration, encoder, f"{encoder} is not compiled into ffmpeg")

        output = self.config.work_dir / f"trial_{codec}_{acceleration.value}_{uuid.uuid4().hex[:8]}.mkv"
        try:
            command = build_trial_command(codec, acceleration, test_input, output, frames=TRIAL_FRAMES)
            outcome = self.runner(
                command,
                self.config,
                output_path=output,
                timeout=self.config.probe_timeout,
                strict=True,
            )
        except LaunchFailureError as exc:
            return self._entry(codec, acceleration, encoder, str(exc))
        finally:
            output.unlink(missing_ok=True)

        marker = find_unavailable_marker(outcome.diagnostics, self.markers)
        if outcome.success and marker is None:
            return self._entry(codec, acceleration, encoder, "", available=True)
        return self._entry(codec, acceleration, encoder, outcome.error or marker or "trial failed")

    @staticmethod
    def _entry(
        codec: str,
        acceleration: AccelerationChoice,
        encoder: str,
        error: str,
        *,
        available: bool = False,
    ) -> CapabilityEntry:
        return CapabilityEntry(
            codec=codec,
            acceleration=acceleration,
            available=available,
            probed_at=datetime.now(timezone.utc),
            encoder=encoder,
            error=error,
        )
