"""
encodelab.process
~~~~~~~~~~~~~~~~~
Process supervisor: the only code that spawns, signals or reaps an
external tool.

    with launch(ffmpeg, args) as handle:
        stream = handle.stderr()
        while (chunk := stream.read(timeout=0.1)) != b"":
            ...
        status = handle.wait(timeout=10)

Each pipe is drained by its own reader thread into a bounded queue. If the
consumer falls behind, the queue fills, the reader blocks, the OS pipe
fills and the child blocks on write; nothing is buffered without limit.

Leaving the `with` block always terminates (if still running) and reaps
the child. Handles that were never closed are reaped at interpreter exit.
"""

from __future__ import annotations

import atexit
import logging
import queue
import subprocess
import threading
import time
import weakref
from dataclasses import dataclass

from encodelab.command_builder import command_as_string
from encodelab.errors import LaunchFailureError, ToolNotFoundError, TrialTimeoutError
from encodelab.paths import find_tool

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096
QUEUE_CHUNKS = 64
DEFAULT_KILL_GRACE = 5.0

_EOF = b""

_live_handles: "weakref.WeakSet[ProcessHandle]" = weakref.WeakSet()


@dataclass(frozen=True)
class ExitStatus:
    returncode: int
    terminated: bool = False              # terminate()/kill was requested by us

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.terminated


# ── Output stream ─────────────────────────────────────────────────────────────

class OutputStream:
    """Live byte stream of one child pipe."""

    def __init__(self, pipe, name: str, max_chunks: int = QUEUE_CHUNKS):
        self.name = name
        self._queue: queue.Queue[bytes] = queue.Queue(maxsize=max_chunks)
        self._eof = False
        self._thread = threading.Thread(
            target=self._drain, args=(pipe,), name=f"encodelab-{name}", daemon=True
        )
        self._thread.start()

    def _drain(self, pipe) -> None:
        try:
            while True:
                chunk = pipe.read1(CHUNK_SIZE) if hasattr(pipe, "read1") else pipe.read(CHUNK_SIZE)
                if not chunk:
                    break
                self._queue.put(chunk)
        except (OSError, ValueError) as exc:
            # pipe closed underneath us during teardown
            logger.debug("Reader for %s stopped: %s", self.name, exc)
        finally:
            self._queue.put(_EOF)

    def read(self, timeout: float | None = None) -> bytes | None:
        """
        Next chunk of output.
        Returns b"" once the pipe is closed, or None if nothing arrived
        within *timeout* seconds.
        """
        if self._eof:
            return _EOF
        try:
            chunk = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if chunk == _EOF:
            self._eof = True
        return chunk

    def __iter__(self):
        while True:
            chunk = self.read()
            if not chunk:
                return
            yield chunk

    def discard(self) -> None:
        """Unblock the reader by throwing away whatever is still queued."""
        while True:
            try:
                if self._queue.get_nowait() == _EOF:
                    self._eof = True
            except queue.Empty:
                break

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)


# ── Handle ────────────────────────────────────────────────────────────────────

class ProcessHandle:

    def __init__(self, popen: subprocess.Popen, command: str, kill_grace: float = DEFAULT_KILL_GRACE):
        self._popen = popen
        self.command = command
        self.kill_grace = kill_grace
        self.started_at = time.monotonic()
        self._terminated = False
        self._lock = threading.Lock()
        self._stdout = OutputStream(popen.stdout, "stdout") if popen.stdout else None
        self._stderr = OutputStream(popen.stderr, "stderr") if popen.stderr else None
        _live_handles.add(self)

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def running(self) -> bool:
        return self._popen.poll() is None

    def stdout(self) -> OutputStream:
        if self._stdout is None:
            raise RuntimeError("stdout was not captured for this process")
        return self._stdout

    def stderr(self) -> OutputStream:
        if self._stderr is None:
            raise RuntimeError("stderr was not captured for this process")
        return self._stderr

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def terminate(self, grace: float | None = None) -> None:
        """
        Ask the process to stop, then kill it if it is still alive after
        *grace* seconds. Safe to call more than once or after exit.
        """
        grace = self.kill_grace if grace is None else grace
        with self._lock:
            if self._popen.poll() is not None:
                return
            self._terminated = True
            logger.debug("Terminating pid %d", self.pid)
            self._popen.terminate()
        try:
            self._popen.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning("pid %d ignored SIGTERM for %.1fs, killing", self.pid, grace)
            self.kill()

    def kill(self) -> None:
        with self._lock:
            if self._popen.poll() is not None:
                return
            self._terminated = True
            self._popen.kill()
        self._popen.wait()

    def wait(self, timeout: float | None = None) -> ExitStatus:
        """
        Block until the process exits.

        Raises:
            TrialTimeoutError – *timeout* elapsed; the process has been killed
                                and reaped before this is raised
        """
        try:
            returncode = self._popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("pid %d exceeded %.1fs, killing", self.pid, timeout)
            self.kill()
            raise TrialTimeoutError(timeout, self.command) from None
        return ExitStatus(returncode=returncode, terminated=self._terminated)

    def close(self) -> None:
        """Terminate if needed, reap, and release the reader threads."""
        self.terminate()
        for stream in (self._stdout, self._stderr):
            if stream is not None:
                stream.discard()
                stream.join(timeout=1.0)
        for pipe in (self._popen.stdout, self._popen.stderr):
            if pipe is not None:
                pipe.close()
        _live_handles.discard(self)

    def __enter__(self) -> "ProcessHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ── Public API ────────────────────────────────────────────────────────────────

def launch(
    executable: str,
    args: list[str],
    *,
    capture_stdout: bool = True,
    kill_grace: float = DEFAULT_KILL_GRACE,
) -> ProcessHandle:
    """
    Start *executable* with *args*.

    Raises:
        ToolNotFoundError   – executable not found on PATH / at the given path
        LaunchFailureError  – the OS refused to start it (permissions, limits)
    """
    resolved = find_tool(executable)
    if resolved is None:
        raise ToolNotFoundError(executable)

    command = command_as_string(executable, args)
    logger.debug("Launching: %s", command)
    try:
        popen = subprocess.Popen(
            [resolved, *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE if capture_stdout else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ToolNotFoundError(executable) from exc
    except OSError as exc:
        raise LaunchFailureError(executable, exc) from exc

    logger.debug("PID = %d", popen.pid)
    return ProcessHandle(popen, command, kill_grace=kill_grace)


def run_capture(
    executable: str,
    args: list[str],
    *,
    timeout: float | None = None,
) -> tuple[ExitStatus, str, str]:
    """
    Run a short-lived tool to completion and return (status, stdout, stderr).
    Both pipes are drained concurrently, so large outputs cannot deadlock.
    """
    with launch(executable, args) as handle:
        out: list[bytes] = []
        err: list[bytes] = []
        readers = [
            threading.Thread(target=lambda: out.extend(handle.stdout()), daemon=True),
            threading.Thread(target=lambda: err.extend(handle.stderr()), daemon=True),
        ]
        for reader in readers:
            reader.start()
        status = handle.wait(timeout=timeout)
        for reader in readers:
            reader.join()

    return status, _decode(out), _decode(err)


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


@atexit.register
def _reap_all() -> None:
    for handle in list(_live_handles):
        try:
            handle.close()
        except OSError as exc:
            logger.debug("Could not reap pid %d: %s", handle.pid, exc)
