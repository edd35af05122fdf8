"""
encodelab.errors
~~~~~~~~~~~~~~~~
Exception hierarchy for the encoding engine.

    EngineError
    ├── ToolNotFoundError     executable missing from PATH
    ├── LaunchFailureError    the OS refused to spawn the process
    ├── TrialTimeoutError     a supervised process ran past its time limit
    ├── EncodeFailureError    ffmpeg ran and exited non-zero
    ├── InvalidRequestError   the command builder rejected a request
    └── PersistenceError      a cache / benchmark file could not be read or written
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by encodelab."""


class ToolNotFoundError(EngineError):
    """An external tool (ffmpeg / ffprobe) could not be located."""

    def __init__(self, tool: str, message: str | None = None):
        self.tool = tool
        super().__init__(
            message or f"'{tool}' was not found on PATH. Install ffmpeg and try again."
        )


class LaunchFailureError(EngineError):
    """The executable exists but the process could not be started."""

    def __init__(self, executable: str, cause: OSError):
        self.executable = executable
        self.cause = cause
        super().__init__(f"Could not start '{executable}': {cause}")


class TrialTimeoutError(EngineError):
    """A supervised process exceeded its time limit and was killed."""

    def __init__(self, timeout: float, command: str = ""):
        self.timeout = timeout
        self.command = command
        super().__init__(f"Process killed after {timeout:g}s time limit")


class EncodeFailureError(EngineError):
    """
    ffmpeg exited unsuccessfully.

    `summary` is the short message meant for display; `diagnostics` holds the
    complete captured stderr for a "technical details" view.
    """

    def __init__(self, summary: str, diagnostics: str = "", exit_code: int | None = None):
        self.summary = summary
        self.diagnostics = diagnostics
        self.exit_code = exit_code
        super().__init__(summary)


class InvalidRequestError(EngineError):
    """An EncodeRequest is missing something the command builder needs."""


class PersistenceError(EngineError):
    """A persisted record could not be read back or written."""
