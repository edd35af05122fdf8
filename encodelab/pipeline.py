"""
encodelab.pipeline
~~~~~~~~~~~~~~~~~~
One encode, end to end: supervisor → progress parser → outcome.

This is the single orchestration loop shared by production encodes,
capability trials and benchmark trials. It suspends in exactly three
places, all bounded and interruptible:

  - waiting for the next stderr chunk  (polled, so abort/deadline are seen)
  - waiting for the process to exit    (bounded by the remaining deadline)
  - the deadline itself                (the process is killed, not abandoned)
"""

from __future__ import annotations

import codecs
import logging
import threading
import time
from pathlib import Path

from encodelab.channel import ChannelClosed, EventChannel
from encodelab.command_builder import build_encode_command
from encodelab.config import EngineConfig
from encodelab.errors import TrialTimeoutError
from encodelab.models import EncodeCommand, EncodeOutcome, EncodeRequest, ProbeResult
from encodelab.process import launch
from encodelab.progress import ProgressParser

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


def run_encode(
    command: EncodeCommand | list[str],
    config: EngineConfig,
    *,
    output_path: Path | None = None,
    duration: float | None = None,
    timeout: float | None = None,
    strict: bool = False,
    channel: EventChannel | None = None,
    abort: threading.Event | None = None,
) -> EncodeOutcome:
    """
    Run ffmpeg with *command* and return its EncodeOutcome.

    Trial-level failures (non-zero exit, timeout, abort) come back as a
    failed outcome. Only setup failures propagate:

    Raises:
        ToolNotFoundError   – config.ffmpeg is not installed
        LaunchFailureError  – the OS refused to start it
    """
    args = command.args if isinstance(command, EncodeCommand) else list(command)
    parser = ProgressParser(
        duration=duration,
        min_interval=config.progress_interval,
        strict=strict,
    )
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    sink = _Sink(channel)

    started = time.monotonic()
    deadline = started + timeout if timeout else None
    timed_out = cancelled = False
    exit_code: int | None = None

    with launch(config.ffmpeg, args, capture_stdout=False, kill_grace=config.kill_grace) as handle:
        logger.info("Encoding (pid %d): %s", handle.pid, handle.command)
        stream = handle.stderr()

        while True:
            if abort is not None and abort.is_set():
                logger.info("Abort requested, terminating pid %d", handle.pid)
                handle.terminate()
                cancelled = True
                break
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("pid %d hit its %.1fs limit, killing", handle.pid, timeout)
                handle.kill()
                timed_out = True
                break

            chunk = stream.read(timeout=POLL_INTERVAL)
            if chunk is None:
                continue
            if chunk == b"":
                break
            sink.publish_all(parser.feed(decoder.decode(chunk)))

        if not (timed_out or cancelled):
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            try:
                exit_code = handle.wait(timeout=remaining).returncode
            except TrialTimeoutError:
                timed_out = True
        if exit_code is None:
            exit_code = handle.wait().returncode

        # keep whatever the reader had already queued for the diagnostics view
        for leftover in iter(lambda: stream.read(timeout=0), None):
            if leftover == b"":
                break
            parser.feed(decoder.decode(leftover))

    tail = decoder.decode(b"", final=True)
    if tail:
        parser.feed(tail)
    sink.publish_all(parser.flush())

    wall = time.monotonic() - started
    outcome = parser.finish(
        exit_code,
        output_path=output_path,
        wall_seconds=wall,
        timed_out=timed_out,
        cancelled=cancelled,
    )
    if outcome.success:
        logger.info("Encode finished in %.2fs (%d bytes)", wall, outcome.file_size)
    else:
        logger.info("Encode failed after %.2fs: %s", wall, outcome.error)
    return outcome


def run_request(
    request: EncodeRequest,
    config: EngineConfig,
    *,
    source_info: ProbeResult | None = None,
    channel: EventChannel | None = None,
    abort: threading.Event | None = None,
    timeout: float | None = None,
) -> EncodeOutcome:
    """
    Build and run a production encode. Builder notices (e.g. a downgrade to
    software) are published on *channel* ahead of any progress.

    Raises:
        InvalidRequestError – the request could not be turned into a command
        ToolNotFoundError / LaunchFailureError – see run_encode()
    """
    command = build_encode_command(request, source_info=source_info)
    _Sink(channel).publish_all(command.notices)

    request.destination.parent.mkdir(parents=True, exist_ok=True)
    duration = request.duration
    if duration is None and source_info is not None and source_info.duration_seconds > 0:
        duration = source_info.duration_seconds

    return run_encode(
        command,
        config,
        output_path=request.destination,
        duration=duration,
        timeout=config.encode_timeout if timeout is None else timeout,
        channel=channel,
        abort=abort,
    )


class _Sink:
    """Publishes to an optional channel; stops quietly once the consumer closes it."""

    def __init__(self, channel: EventChannel | None):
        self._channel = channel

    def publish_all(self, events) -> None:
        if self._channel is None:
            return
        for event in events:
            try:
                self._channel.publish(event)
            except ChannelClosed:
                logger.debug("Consumer closed the channel; no more events published")
                self._channel = None
                return
