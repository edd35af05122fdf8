"""Shared fixtures.

The running Python interpreter stands in for ffmpeg wherever a real child
process is needed: `config.ffmpeg` points at sys.executable and tests pass
`-c <script>` arguments that print ffmpeg-like output.
"""

import sys
import textwrap
from pathlib import Path

import pytest

from encodelab.config import EngineConfig


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        ffmpeg=sys.executable,
        ffprobe=sys.executable,
        probe_timeout=10.0,
        benchmark_timeout=30.0,
        kill_grace=1.0,
        progress_interval=0.0,
        data_dir=tmp_path / "data",
        work_dir=tmp_path / "work",
    )


@pytest.fixture(scope="session")
def qapp():
    from PySide6.QtCore import QCoreApplication

    return QCoreApplication.instance() or QCoreApplication([])


def script(source: str) -> list[str]:
    """Arguments that make the Python interpreter run *source*."""
    return ["-c", textwrap.dedent(source)]
