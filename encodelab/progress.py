"""
encodelab.progress
~~~~~~~~~~~~~~~~~~
Streaming parser for ffmpeg's diagnostic (stderr) text.

ffmpeg's human-readable output is not a stable format, so the parser is a
small state machine driven by a table of independent line matchers:

    AWAITING_DURATION ──(Duration: / first stats line)──▶ STREAMING_PROGRESS
    STREAMING_PROGRESS ──finish(exit_code)──▶ SUCCEEDED | FAILED

Supporting a new ffmpeg output variant means adding a LineMatcher to
PROGRESS_MATCHERS (or passing a custom table), not touching the states.

The parser owns no resources. feed() takes decoded text chunks of any size
and returns the ProgressEvents that are due; finish() turns the exit code
into the single EncodeOutcome for the run.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterable

from encodelab.models import EncodeOutcome, ErrorAnalysis, ProgressEvent

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL = 0.1
MAX_SUMMARY_LENGTH = 300
MAX_SUMMARY_LINES = 2
MAX_DIAGNOSTIC_CHARS = 1_000_000

ERROR_KEYWORDS: tuple[str, ...] = (
    "error",
    "failed",
    "unknown",
    "invalid",
    "not found",
    "cannot find",
    "unrecognized",
    "no such",
)

# Any of these in the output means the encoder is unusable, whatever the
# exit code says. Some ffmpeg builds exit 0 on argument-parse failures.
UNAVAILABLE_MARKERS: list[str] = [
    "unknown encoder",
    "encoder not found",
    "no capable devices found",
    "no device available",
    "device creation failed",
    "cannot load",
]

_LINE_SPLIT = re.compile(r"[\r\n]+")


class ParserState(Enum):
    AWAITING_DURATION  = auto()
    STREAMING_PROGRESS = auto()
    SUCCEEDED          = auto()
    FAILED             = auto()

    @property
    def terminal(self) -> bool:
        return self in (ParserState.SUCCEEDED, ParserState.FAILED)


# ── Matcher table ─────────────────────────────────────────────────────────────

def _hms(match: re.Match) -> float:
    h, m, s = match.group(1), match.group(2), match.group(3)
    return int(h) * 3600 + int(m) * 60 + float(s)


@dataclass(frozen=True)
class LineMatcher:
    """
    One field extractor. `convert` returns the parsed value, or None for an
    explicit "unknown" (e.g. "Duration: N/A").
    """
    field: str
    pattern: re.Pattern
    convert: Callable[[re.Match], float | int | None]


PROGRESS_MATCHERS: tuple[LineMatcher, ...] = (
    LineMatcher("duration",     re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)"), _hms),
    LineMatcher("duration",     re.compile(r"Duration:\s*N/A"), lambda m: None),
    LineMatcher("elapsed",      re.compile(r"\b(?:out_)?time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)"), _hms),
    LineMatcher("frame",        re.compile(r"\bframe=\s*(\d+)"), lambda m: int(m.group(1))),
    LineMatcher("fps",          re.compile(r"\bfps=\s*(\d+(?:\.\d+)?)"), lambda m: float(m.group(1))),
    LineMatcher("speed",        re.compile(r"\bspeed=\s*(\d+(?:\.\d+)?)x"), lambda m: float(m.group(1))),
    LineMatcher("bitrate_kbps", re.compile(r"\bbitrate=\s*(\d+(?:\.\d+)?)\s*kbits/s"), lambda m: float(m.group(1))),
)

PROGRESS_FIELDS = ("elapsed", "frame", "fps", "speed", "bitrate_kbps")


# ── Parser ────────────────────────────────────────────────────────────────────

class ProgressParser:

    def __init__(
        self,
        *,
        duration: float | None = None,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        strict: bool = False,
        matchers: Iterable[LineMatcher] = PROGRESS_MATCHERS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        duration      known media duration (e.g. from ffprobe); skips the
                      AWAITING_DURATION state when given
        min_interval  minimum seconds between two emitted events
        strict        capability-probe mode: an unavailable-encoder marker
                      forces failure even on exit code 0
        """
        self.min_interval = min_interval
        self.strict = strict
        self._matchers = tuple(matchers)
        self._clock = clock

        self.state = ParserState.AWAITING_DURATION
        self.duration: float | None = None
        if duration is not None and duration > 0:
            self.duration = duration
            self.state = ParserState.STREAMING_PROGRESS

        self._values: dict[str, float | int] = {
            "elapsed": 0.0, "frame": 0, "fps": 0.0, "speed": 0.0, "bitrate_kbps": 0.0,
        }
        self._partial = ""
        self._text: list[str] = []
        self._text_len = 0
        self._dirty = False
        self._last_emit: float | None = None
        self.outcome: EncodeOutcome | None = None

    # ── Streaming ─────────────────────────────────────────────────────────────

    def feed(self, chunk: str) -> list[ProgressEvent]:
        """Consume a decoded chunk; return the events that are due now."""
        if self.state.terminal:
            raise RuntimeError(f"Parser already finished ({self.state.name})")
        if not chunk:
            return []

        self._keep_text(chunk)
        pieces = _LINE_SPLIT.split(self._partial + chunk)
        self._partial = pieces.pop()

        for line in pieces:
            self._consume_line(line)
        return self._maybe_emit()

    def flush(self) -> list[ProgressEvent]:
        """Emit the latest values now if an update is still pending."""
        if self._partial:
            self._consume_line(self._partial)
            self._partial = ""
        if not self._dirty:
            return []
        return [self._emit()]

    @property
    def diagnostics(self) -> str:
        return "".join(self._text)

    # ── Terminal transition ───────────────────────────────────────────────────

    def finish(
        self,
        exit_code: int | None,
        *,
        output_path: Path | None = None,
        wall_seconds: float = 0.0,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> EncodeOutcome:
        """
        Classify the run and build its EncodeOutcome. Call exactly once.
        File size comes from the filesystem, not from ffmpeg's report.
        """
        if self.state.terminal:
            raise RuntimeError(f"Parser already finished ({self.state.name})")
        if self._partial:
            self._consume_line(self._partial)
            self._partial = ""

        text = self.diagnostics
        error = ""
        if timed_out:
            error = f"timed out after {wall_seconds:.1f}s"
        elif cancelled:
            error = "cancelled"
        else:
            _, error = classify_exit(exit_code, text, strict=self.strict)

        success = not error
        self.state = ParserState.SUCCEEDED if success else ParserState.FAILED

        file_size = 0
        if output_path is not None and output_path.is_file():
            file_size = output_path.stat().st_size

        self.outcome = EncodeOutcome(
            success=success,
            exit_code=exit_code,
            wall_seconds=wall_seconds,
            file_size=file_size,
            fps=float(self._values["fps"]),
            speed=float(self._values["speed"]),
            error=error,
            diagnostics=text,
            timed_out=timed_out,
            cancelled=cancelled,
        )
        logger.debug("Parser finished: %s (exit=%s)", self.state.name, exit_code)
        return self.outcome

    # ── Internal ──────────────────────────────────────────────────────────────

    def _consume_line(self, line: str) -> None:
        if not line.strip():
            return

        found: dict[str, float | int | None] = {}
        for matcher in self._matchers:
            if matcher.field in found:
                continue
            match = matcher.pattern.search(line)
            if match:
                found[matcher.field] = matcher.convert(match)

        if self.state is ParserState.AWAITING_DURATION:
            if "duration" in found:
                self.duration = found["duration"]
                self.state = ParserState.STREAMING_PROGRESS
                logger.debug("Duration announced: %s", self.duration)
            elif any(f in found for f in PROGRESS_FIELDS):
                # stats before any duration: progress without a percentage
                self.state = ParserState.STREAMING_PROGRESS

        if self.state is not ParserState.STREAMING_PROGRESS:
            return

        updated = False
        for name in PROGRESS_FIELDS:
            value = found.get(name)
            if value is None:
                continue
            if name == "elapsed":
                value = max(value, self._values["elapsed"])
            self._values[name] = value
            updated = True
        if updated:
            self._dirty = True

    def _maybe_emit(self) -> list[ProgressEvent]:
        if not self._dirty:
            return []
        now = self._clock()
        if self._last_emit is not None and now - self._last_emit < self.min_interval:
            return []
        return [self._emit(now)]

    def _emit(self, now: float | None = None) -> ProgressEvent:
        self._last_emit = self._clock() if now is None else now
        self._dirty = False
        return self._event()

    def _event(self) -> ProgressEvent:
        elapsed = float(self._values["elapsed"])
        percent = None
        if self.duration:
            percent = min(elapsed / self.duration * 100.0, 100.0)
        return ProgressEvent(
            elapsed=elapsed,
            speed=float(self._values["speed"]),
            fps=float(self._values["fps"]),
            bitrate_kbps=float(self._values["bitrate_kbps"]),
            frame=int(self._values["frame"]),
            duration=self.duration,
            percent=percent,
        )

    def _keep_text(self, chunk: str) -> None:
        self._text.append(chunk)
        self._text_len += len(chunk)
        while self._text_len > MAX_DIAGNOSTIC_CHARS and len(self._text) > 1:
            self._text_len -= len(self._text.pop(0))


# ── Classification helpers ────────────────────────────────────────────────────

def find_unavailable_marker(text: str, markers: Iterable[str] | None = None) -> str | None:
    """First output line that says the encoder cannot be used, if any."""
    needles = [m.lower() for m in (UNAVAILABLE_MARKERS if markers is None else markers)]
    for line in _LINE_SPLIT.split(text):
        lowered = line.lower()
        if any(n in lowered for n in needles):
            return line.strip()
    return None


def classify_exit(exit_code: int | None, text: str, *, strict: bool = False) -> tuple[bool, str]:
    """
    (success, error message). The message is empty on success.

    In strict mode an unavailable-encoder marker wins over exit code 0.
    """
    if strict:
        marker_line = find_unavailable_marker(text)
        if marker_line:
            return False, _truncate(marker_line, MAX_SUMMARY_LENGTH)
    if exit_code == 0:
        return True, ""
    return False, summarize_diagnostics(text, exit_code)


def summarize_diagnostics(
    text: str,
    exit_code: int | None,
    *,
    max_length: int = MAX_SUMMARY_LENGTH,
    max_lines: int = MAX_SUMMARY_LINES,
) -> str:
    """
    Reduce a full stderr dump to something a person can read in one glance:
    the most recent unique lines that look like errors, truncated.
    """
    matches = [
        line.strip() for line in _LINE_SPLIT.split(text)
        if line.strip() and any(k in line.lower() for k in ERROR_KEYWORDS)
    ]

    recent: list[str] = []
    for line in reversed(matches):
        if line not in recent:
            recent.append(line)
        if len(recent) == max_lines:
            break

    if not recent:
        return f"encoding failed (exit code {exit_code})"
    return _truncate("; ".join(reversed(recent)), max_length)


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3].rstrip() + "..."


# ── Error analysis ────────────────────────────────────────────────────────────

_ERROR_RULES: tuple[tuple[tuple[str, ...], ErrorAnalysis], ...] = (
    (("Impossible to convert between the formats",), ErrorAnalysis(
        "format_conversion", "Format Conversion Error",
        "The input format is not compatible with the selected output format. "
        "Try a different output format or codec.", "high")),
    (("No such file or directory",), ErrorAnalysis(
        "file_access", "File Access Error",
        "The input file cannot be found. Check the file path.", "high")),
    (("Permission denied",), ErrorAnalysis(
        "permissions", "Permission Error",
        "Check read access to the input and write access to the output directory.", "high")),
    (("Unknown encoder", "Unknown codec", "Encoder not found"), ErrorAnalysis(
        "codec", "Codec Error",
        "The selected codec is not available in this ffmpeg build. Try another codec.")),
    (("No such filter", "Error initializing filter", "filter"), ErrorAnalysis(
        "filter", "Filter Error",
        "A video/audio filter failed. Try different quality settings or disable advanced options.")),
    (("Invalid data found when processing input",), ErrorAnalysis(
        "invalid_input", "Invalid Input File",
        "The input file appears to be corrupted or in an unsupported format.", "high")),
    (("hwaccel", "cuda", "nvenc", "qsv", "amf", "videotoolbox"), ErrorAnalysis(
        "hardware_acceleration", "Hardware Acceleration Error",
        "Hardware acceleration failed. Try encoding without hardware acceleration.")),
)

_UNKNOWN_ERROR = ErrorAnalysis(
    "unknown", "Encoding Error",
    "Try different encoding settings or check the input file.",
)


def analyze_error(text: str) -> ErrorAnalysis:
    """Best-guess category and suggestion for a failed run's stderr."""
    for needles, analysis in _ERROR_RULES:
        if any(n in text for n in needles):
            return analysis
    return _UNKNOWN_ERROR
