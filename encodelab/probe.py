"""
encodelab.probe
~~~~~~~~~~~~~~~
Thin wrapper around the ffprobe CLI.
Returns structured ProbeResult dataclasses.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from encodelab.command_builder import build_probe_command
from encodelab.config import EngineConfig
from encodelab.errors import EncodeFailureError, EngineError
from encodelab.models import HdrInfo, ProbeResult, StreamInfo
from encodelab.process import run_capture

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 30.0

# ffprobe reports still images as one-frame video streams with a bogus duration
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".tiff", ".tif"})

_HDR_TRANSFERS = {"smpte2084": "HDR10", "arib-std-b67": "HLG"}
_DOVI_SIDE_DATA = "DOVI configuration record"
_HDR10_PLUS_SIDE_DATA = "HDR10+ dynamic metadata"
_PIX_FMT_DEPTH = re.compile(r"p(1[02])(?:le|be)$")


# ── Public API ────────────────────────────────────────────────────────────────

def probe(file: Path, config: EngineConfig | None = None) -> ProbeResult:
    """
    Run ffprobe on *file* and return a ProbeResult.

    Raises:
        FileNotFoundError  – if the input file does not exist
        ToolNotFoundError  – if ffprobe is not installed
        EncodeFailureError – if ffprobe exits with a non-zero code
    """
    if not file.exists():
        raise FileNotFoundError(f"Input file not found: {file}")

    raw = _run_ffprobe(file, config or EngineConfig())
    return parse_probe_output(file, raw)


def get_duration(file: Path, config: EngineConfig | None = None) -> float:
    """
    Convenience shortcut: returns duration in seconds only.
    Returns 0.0 if the duration cannot be determined.
    """
    try:
        return probe(file, config).duration_seconds
    except (OSError, EngineError) as exc:
        logger.debug("No duration for %s: %s", file, exc)
        return 0.0


def parse_probe_output(file: Path, data: dict) -> ProbeResult:
    """Extract the fields we care about from raw ffprobe JSON."""
    fmt = data.get("format", {})
    is_image = file.suffix.lower() in IMAGE_EXTENSIONS

    streams = tuple(
        _parse_stream(s) for s in data.get("streams", [])
        if s.get("codec_type") in ("video", "audio", "subtitle")
    )

    return ProbeResult(
        path=file,
        duration_seconds=0.0 if is_image else _to_float(fmt.get("duration")),
        container=fmt.get("format_name", ""),
        size=_to_int(fmt.get("size")),
        bitrate=0 if is_image else _to_int(fmt.get("bit_rate")),
        streams=streams,
    )


def detect_hdr(stream: dict) -> HdrInfo:
    """Classify a raw ffprobe video stream as SDR, HDR10, HLG, Dolby Vision or HDR10+."""
    transfer = stream.get("color_transfer", "") or ""
    kind = _HDR_TRANSFERS.get(transfer, "SDR")

    side_data = {sd.get("side_data_type", "") for sd in stream.get("side_data_list", [])}
    if _DOVI_SIDE_DATA in side_data:
        kind = "Dolby Vision"
    if _HDR10_PLUS_SIDE_DATA in side_data:
        kind = "HDR10+"

    return HdrInfo(
        is_hdr=kind != "SDR",
        kind=kind,
        color_transfer=transfer,
        color_primaries=stream.get("color_primaries", "") or "",
        color_space=stream.get("color_space", "") or "",
        bit_depth=_to_int(stream.get("bits_per_raw_sample")) or _pix_fmt_depth(stream.get("pix_fmt", "")),
    )


# ── Internal helpers ──────────────────────────────────────────────────────────

def _run_ffprobe(file: Path, config: EngineConfig) -> dict:
    """Execute ffprobe and return parsed JSON output."""
    status, stdout, stderr = run_capture(config.ffprobe, build_probe_command(file), timeout=PROBE_TIMEOUT)
    if not status.success:
        raise EncodeFailureError(
            f"ffprobe failed on {file.name}",
            diagnostics=stderr.strip(),
            exit_code=status.returncode,
        )
    try:
        return json.loads(stdout)
    except ValueError as exc:
        raise EncodeFailureError(f"ffprobe returned unreadable output for {file.name}") from exc


def _parse_stream(s: dict) -> StreamInfo:
    kind = s.get("codec_type", "")
    return StreamInfo(
        index=_to_int(s.get("index")),
        kind=kind,
        codec=s.get("codec_name", ""),
        width=_to_int(s.get("width")),
        height=_to_int(s.get("height")),
        fps=_parse_fraction(s.get("r_frame_rate", "0/1")),
        bitrate=_to_int(s.get("bit_rate")),
        channels=_to_int(s.get("channels")),
        sample_rate=_to_int(s.get("sample_rate")),
        language=s.get("tags", {}).get("language", ""),
        hdr=detect_hdr(s) if kind == "video" else None,
    )


def _parse_fraction(frac: str) -> float:
    """Convert a fraction string like '24000/1001' to a float."""
    try:
        num, den = frac.split("/")
        return float(num) / float(den) if float(den) != 0 else 0.0
    except (ValueError, ZeroDivisionError):
        return 0.0


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _pix_fmt_depth(pix_fmt: str) -> int:
    # yuv420p10le, p010le -> 10; yuv420p12le -> 12
    pix_fmt = pix_fmt or ""
    if pix_fmt.startswith("p010"):
        return 10
    match = _PIX_FMT_DEPTH.search(pix_fmt)
    return int(match.group(1)) if match else 8
