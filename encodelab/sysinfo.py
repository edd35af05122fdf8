"""
encodelab.sysinfo
~~~~~~~~~~~~~~~~~
Host and tool details recorded alongside every benchmark run, so results
from different machines can be told apart.
"""

from __future__ import annotations

import logging
import os
import platform
import re
from pathlib import Path

import psutil

from encodelab.config import EngineConfig
from encodelab.errors import EngineError
from encodelab.models import SystemInfo
from encodelab.paths import find_tool
from encodelab.process import run_capture

logger = logging.getLogger(__name__)

VERSION_TIMEOUT = 10.0
CPUINFO = Path("/proc/cpuinfo")

_VERSION = re.compile(r"\b(?:ffmpeg|ffprobe) version (\S+)")
_MODEL_NAME = re.compile(r"^model name\s*:\s*(.+)$", re.MULTILINE)


def tool_version(executable: str) -> str | None:
    """Version string reported by `<executable> -version`, or None if unavailable."""
    if find_tool(executable) is None:
        return None
    try:
        status, stdout, _ = run_capture(executable, ["-version"], timeout=VERSION_TIMEOUT)
    except EngineError as exc:
        logger.warning("Could not query %s version: %s", executable, exc)
        return None
    if not status.success:
        return None
    match = _VERSION.search(stdout)
    if match:
        return match.group(1)
    first_line = stdout.strip().splitlines()[:1]
    return first_line[0] if first_line else None


def check_tools(config: EngineConfig) -> dict[str, str | None]:
    """{"ffmpeg": version or None, "ffprobe": version or None}."""
    return {
        "ffmpeg":  tool_version(config.ffmpeg),
        "ffprobe": tool_version(config.ffprobe),
    }


def cpu_model() -> str:
    """Marketing name of the CPU; platform.processor() is often just "x86_64" on Linux."""
    try:
        match = _MODEL_NAME.search(CPUINFO.read_text(encoding="utf-8", errors="replace"))
    except OSError:
        match = None
    return match.group(1).strip() if match else platform.processor()


def collect_system_info(config: EngineConfig) -> SystemInfo:
    memory = psutil.virtual_memory()
    freq = psutil.cpu_freq()
    return SystemInfo(
        platform=platform.system(),
        release=platform.release(),
        machine=platform.machine(),
        processor=platform.processor(),
        cpu_count=psutil.cpu_count() or os.cpu_count() or 0,
        physical_cores=psutil.cpu_count(logical=False) or 0,
        cpu_model=cpu_model(),
        cpu_freq_mhz=float(freq.current) if freq else 0.0,
        memory_total=memory.total,
        memory_available=memory.available,
        memory_used=memory.used,
        python_version=platform.python_version(),
        ffmpeg_version=tool_version(config.ffmpeg) or "",
    )
