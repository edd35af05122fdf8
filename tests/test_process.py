"""Process supervisor tests against real child processes."""

import sys
import time

import pytest

from conftest import script
from encodelab.errors import ToolNotFoundError, TrialTimeoutError
from encodelab.process import launch, run_capture


def test_missing_executable_is_tool_not_found() -> None:
    with pytest.raises(ToolNotFoundError) as info:
        launch("definitely-not-a-real-encoder-binary", ["-version"])
    assert info.value.tool == "definitely-not-a-real-encoder-binary"


def test_missing_explicit_path_is_tool_not_found(tmp_path) -> None:
    with pytest.raises(ToolNotFoundError):
        launch(str(tmp_path / "ffmpeg"), [])


def test_streams_stderr_in_chunks() -> None:
    args = script("""
        import sys
        for i in range(3):
            sys.stderr.write(f"line {i}\\n")
            sys.stderr.flush()
    """)
    with launch(sys.executable, args) as handle:
        data = b"".join(handle.stderr())
        status = handle.wait(timeout=10)

    assert status.success
    assert data.decode().splitlines() == ["line 0", "line 1", "line 2"]


def test_read_returns_none_while_nothing_arrives() -> None:
    args = script("import time; time.sleep(2)")
    with launch(sys.executable, args) as handle:
        assert handle.stderr().read(timeout=0.05) is None


def test_eof_is_empty_bytes() -> None:
    with launch(sys.executable, script("pass")) as handle:
        stream = handle.stderr()
        assert list(stream) == []
        assert stream.read(timeout=1) == b""


def test_wait_timeout_kills_and_raises() -> None:
    with launch(sys.executable, script("import time; time.sleep(30)")) as handle:
        started = time.monotonic()
        with pytest.raises(TrialTimeoutError):
            handle.wait(timeout=0.5)
        assert not handle.running
        assert time.monotonic() - started < 10


def test_terminate_stops_process() -> None:
    with launch(sys.executable, script("import time; time.sleep(30)"), kill_grace=2) as handle:
        handle.terminate()
        status = handle.wait(timeout=5)
    assert status.terminated
    assert not status.success


def test_leaving_context_reaps_child() -> None:
    with launch(sys.executable, script("import time; time.sleep(30)"), kill_grace=1) as handle:
        pass
    assert not handle.running


def test_nonzero_exit_code_is_reported() -> None:
    with launch(sys.executable, script("import sys; sys.exit(3)")) as handle:
        status = handle.wait(timeout=10)
    assert status.returncode == 3
    assert not status.success
    assert not status.terminated


def test_stdout_not_captured_raises() -> None:
    with launch(sys.executable, script("pass"), capture_stdout=False) as handle:
        with pytest.raises(RuntimeError):
            handle.stdout()


def test_run_capture_drains_both_pipes() -> None:
    # more than a pipe buffer on each stream would deadlock a naive reader
    args = script("""
        import sys
        sys.stdout.write("o" * 200_000)
        sys.stderr.write("e" * 200_000)
    """)
    status, out, err = run_capture(sys.executable, args, timeout=20)
    assert status.success
    assert len(out) == 200_000
    assert len(err) == 200_000
