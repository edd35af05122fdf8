"""
encodelab.quality
~~~~~~~~~~~~~~~~~
PSNR / SSIM / VMAF of an encode against its source, using ffmpeg's own
comparison filters. Runs after an encode has succeeded and never as part
of the encode pipeline itself.

libvmaf is an optional ffmpeg component; without it `vmaf` stays None.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from encodelab.config import EngineConfig
from encodelab.errors import TrialTimeoutError
from encodelab.models import QualityMetrics
from encodelab.process import run_capture

logger = logging.getLogger(__name__)

METRIC_TIMEOUT = 3600.0

_METRICS: dict[str, tuple[str, re.Pattern]] = {
    "psnr": ("psnr",    re.compile(r"PSNR.*average:(\d+(?:\.\d+)?|inf)")),
    "ssim": ("ssim",    re.compile(r"SSIM.*All:(\d+(?:\.\d+)?)")),
    "vmaf": ("libvmaf", re.compile(r"VMAF score:\s*(\d+(?:\.\d+)?)")),
}


def build_metric_command(reference: Path, encoded: Path, filter_name: str) -> list[str]:
    # ffmpeg's comparison filters take the distorted stream first
    return [
        "-hide_banner", "-nostats",
        "-i", str(encoded),
        "-i", str(reference),
        "-lavfi", filter_name,
        "-f", "null", "-",
    ]


def parse_metric(name: str, text: str) -> float | None:
    match = _METRICS[name][1].search(text)
    if not match:
        return None
    value = match.group(1)
    return float("inf") if value == "inf" else float(value)


def analyze_quality(
    reference: Path,
    encoded: Path,
    config: EngineConfig | None = None,
    *,
    vmaf: bool = True,
    timeout: float = METRIC_TIMEOUT,
) -> QualityMetrics:
    """
    Compare *encoded* against *reference*. A metric that cannot be computed
    (filter missing, comparison failed, timed out) is left as None.

    Raises:
        ToolNotFoundError – ffmpeg is not installed
    """
    config = config or EngineConfig()
    results: dict[str, float | None] = {}
    for name, (filter_name, _) in _METRICS.items():
        if name == "vmaf" and not vmaf:
            results[name] = None
            continue
        try:
            status, _, stderr = run_capture(
                config.ffmpeg, build_metric_command(reference, encoded, filter_name), timeout=timeout
            )
        except TrialTimeoutError:
            logger.warning("%s comparison timed out after %.0fs", name.upper(), timeout)
            results[name] = None
            continue
        results[name] = parse_metric(name, stderr) if status.success else None
        if results[name] is None:
            logger.info("%s not available for %s", name.upper(), encoded.name)

    return QualityMetrics(**results)
