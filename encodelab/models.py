"""
encodelab.models
~~~~~~~~~~~~~~~~
Pure dataclasses with no Qt and no I/O.
These travel freely between the engine, the Qt workers and the CLI.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path


# ── Enums ─────────────────────────────────────────────────────────────────────

class AccelerationChoice(str, Enum):
    NONE   = "none"
    NVIDIA = "nvidia"
    AMD    = "amd"
    INTEL  = "intel"
    APPLE  = "apple"

    @property
    def is_hardware(self) -> bool:
        return self is not AccelerationChoice.NONE


class CodecKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"


class TrialStatus(str, Enum):
    PENDING  = "pending"
    RUNNING  = "running"
    COMPLETE = "complete"
    FAILED   = "failed"


class JobStatus(Enum):
    QUEUED    = auto()  # waiting for a free encode slot
    RUNNING   = auto()  # worker is active
    DONE      = auto()  # encode finished successfully
    ERROR     = auto()  # request rejected or encode failed
    CANCELLED = auto()  # stopped by the user


# ── Encode request / command ──────────────────────────────────────────────────

@dataclass(frozen=True)
class EncodeRequest:
    """
    Declarative description of one encode.

    Exactly one quality knob is authoritative, in this order:
        target_size_bytes  >  bitrate  >  crf

    `codec` is a generic id ("h264", "h265", "av1", "aac", ...); it may be
    left empty when `preset_id` names a preset that supplies one.
    `extra_args` are appended verbatim just before the output path.
    """
    source: Path
    destination: Path
    codec: str = ""
    preset_id: str = ""
    crf: int | None = None
    bitrate: str | None = None            # e.g. "2500k", "5M"
    target_size_bytes: int | None = None
    resolution: str | None = None         # "1280x720" or "720p"
    framerate: float | None = None
    encoder_speed: str | None = None      # x264-style preset, e.g. "medium"
    audio_codec: str | None = None
    audio_bitrate: str | None = None
    acceleration: AccelerationChoice = AccelerationChoice.NONE
    hardware_decode: bool = False
    duration: float | None = None         # seconds; needed for target size
    tone_map: bool = False                # HDR source to SDR output
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class BuildNotice:
    """An observable decision the command builder took on the caller's behalf."""
    kind: str                             # "downgraded_to_software", "ignored_option", "unknown_preset"
    message: str
    detail: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class EncodeCommand:
    args: list[str]
    encoder: str = ""
    container: str = ""
    notices: tuple[BuildNotice, ...] = ()

    @property
    def downgraded(self) -> bool:
        return any(n.kind == "downgraded_to_software" for n in self.notices)


# ── Progress / outcome ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProgressEvent:
    elapsed: float = 0.0                  # media seconds processed
    speed: float = 0.0                    # x realtime
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    frame: int = 0
    duration: float | None = None
    percent: float | None = None          # None until the duration is known


@dataclass(frozen=True)
class EncodeOutcome:
    success: bool
    exit_code: int | None = None
    wall_seconds: float = 0.0
    file_size: int = 0
    fps: float = 0.0
    speed: float = 0.0
    error: str = ""                       # reduced, display-sized diagnostic
    diagnostics: str = field(default="", repr=False)  # full captured text
    timed_out: bool = False
    cancelled: bool = False
    bitrate_kbps: float = 0.0


@dataclass(frozen=True)
class ErrorAnalysis:
    """Best-guess category of a failed run, with a suggestion for the user."""
    category: str
    title: str
    suggestion: str
    severity: str = "medium"


# ── Capability matrix ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CapabilityEntry:
    codec: str
    acceleration: AccelerationChoice
    available: bool
    probed_at: datetime
    encoder: str = ""
    error: str = ""

    @property
    def key(self) -> tuple[str, AccelerationChoice]:
        return (self.codec, self.acceleration)

    @property
    def label(self) -> str:
        vendor = "Software" if not self.acceleration.is_hardware else self.acceleration.value.upper()
        return f"{self.codec.upper()} ({vendor})"


@dataclass(frozen=True)
class ProbeProgress:
    index: int                            # 1-based
    total: int
    entry: CapabilityEntry


# ── Benchmark ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TestMedia:
    """Descriptor of the real input a benchmark runs against."""
    __test__ = False                      # not a pytest class

    name: str
    path: Path | None = None
    url: str = ""
    resolution: str = ""
    duration: float = 0.0


@dataclass(frozen=True)
class SystemInfo:
    platform: str = ""
    release: str = ""
    machine: str = ""
    processor: str = ""
    cpu_count: int = 0
    physical_cores: int = 0
    cpu_model: str = ""
    cpu_freq_mhz: float = 0.0             # current, as psutil reports it
    memory_total: int = 0                 # bytes
    memory_available: int = 0
    memory_used: int = 0
    python_version: str = ""
    ffmpeg_version: str = ""


@dataclass(frozen=True)
class BenchmarkTrial:
    entry: CapabilityEntry
    status: TrialStatus
    outcome: EncodeOutcome | None = None


@dataclass(frozen=True)
class TrialUpdate:
    index: int                            # 1-based
    total: int
    entry: CapabilityEntry
    status: TrialStatus
    outcome: EncodeOutcome | None = None


@dataclass(frozen=True)
class BenchmarkRun:
    run_id: str
    started_at: datetime
    finished_at: datetime | None
    system_info: SystemInfo
    test_media: TestMedia
    trials: tuple[BenchmarkTrial, ...] = ()
    cancelled: bool = False


# ── Metadata probe result (returned by encodelab.probe) ───────────────────────

@dataclass(frozen=True)
class HdrInfo:
    is_hdr: bool = False
    kind: str = "SDR"                     # SDR, HDR10, HLG, Dolby Vision, HDR10+
    color_transfer: str = ""
    color_primaries: str = ""
    color_space: str = ""
    bit_depth: int = 8


@dataclass(frozen=True)
class StreamInfo:
    index: int
    kind: str                             # "video", "audio", "subtitle"
    codec: str = ""
    width: int = 0
    height: int = 0
    fps: float = 0.0
    bitrate: int = 0
    channels: int = 0
    sample_rate: int = 0
    language: str = ""
    hdr: HdrInfo | None = None


@dataclass(frozen=True)
class ProbeResult:
    """Metadata extracted from a media file via ffprobe."""
    path: Path
    duration_seconds: float               # 0.0 if unknown
    container: str = ""
    size: int = 0
    bitrate: int = 0
    streams: tuple[StreamInfo, ...] = ()

    @property
    def video(self) -> StreamInfo | None:
        return next((s for s in self.streams if s.kind == "video"), None)

    @property
    def audio(self) -> StreamInfo | None:
        return next((s for s in self.streams if s.kind == "audio"), None)


@dataclass(frozen=True)
class QualityMetrics:
    psnr: float | None = None
    ssim: float | None = None
    vmaf: float | None = None


# ── Encode queue item ─────────────────────────────────────────────────────────

@dataclass
class WorkItem:
    """
    Represents a single queued production encode.
    The encode queue creates these; the UI can display them in a list.
    """
    item_id: str
    request: EncodeRequest
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0                 # 0.0 – 100.0
    outcome: EncodeOutcome | None = None
    error_message: str = ""
    error_analysis: ErrorAnalysis | None = None
