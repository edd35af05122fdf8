"""
encodelab.paths
~~~~~~~~~~~~~~~
Single source of truth for locating the external tools.

ffmpeg and ffprobe are looked up on the operating system's PATH unless the
config points at an explicit file. Absence is reported as ToolNotFoundError
at invocation time, never as a crash at import.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from encodelab.config import EngineConfig
from encodelab.errors import ToolNotFoundError


def find_tool(name: str) -> str | None:
    """
    Resolve *name* to an executable path.

    Accepts a bare command ("ffmpeg"), which is searched on PATH, or an
    explicit path, which must exist and be executable.
    """
    candidate = Path(name)
    if candidate.parent != Path("."):
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        return None
    return shutil.which(name)


def require_tool(name: str) -> str:
    """Like find_tool() but raises ToolNotFoundError instead of returning None."""
    resolved = find_tool(name)
    if resolved is None:
        raise ToolNotFoundError(name)
    return resolved


def validate_binaries(config: EngineConfig) -> list[str]:
    """
    Return a list of error strings for any missing/non-executable binaries.
    Empty list means all good.

    Call this at startup and tell the user to install ffmpeg if non-empty.
    """
    errors: list[str] = []
    for binary in (config.ffmpeg, config.ffprobe):
        if find_tool(binary) is None:
            errors.append(f"Binary not found: {binary}")
    return errors
