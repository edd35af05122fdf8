"""
encodelab.downloader
~~~~~~~~~~~~~~~~~~~~
Fetches benchmark test media. Kept apart from the engine: the scheduler
only ever sees the local path this produces.

download() is the plain function; TestMediaDownloader wraps it in a QThread.

Signals
-------
progress(int)             0–100 percentage of the current file
status(str)               human-readable status line
completed(bool, str)      success flag, local path (empty on failure)
"""

from __future__ import annotations

import dataclasses
import logging
import os
import urllib.request
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse

from PySide6.QtCore import QThread, Signal

from encodelab.models import TestMedia

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 64
DOWNLOAD_TIMEOUT = 60

ProgressCallback = Callable[[int, int], None]


class DownloadCancelled(Exception):
    """The caller asked the download to stop."""


def media_path(media: TestMedia, media_dir: Path) -> Path:
    """Where *media* lives (or will live) once downloaded."""
    if media.path is not None:
        return media.path
    name = Path(urlparse(media.url).path).name or f"{media.name}.mp4"
    return media_dir / name


def download(
    url: str,
    dest: Path,
    progress: ProgressCallback | None = None,
    *,
    should_stop: Callable[[], bool] | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """
    Stream *url* to *dest* and return *dest*.

    Data goes to `<dest>.part` first and is renamed into place only when
    complete; a failed or cancelled download leaves nothing behind.
    `progress(downloaded, total)` is called after every chunk; total is 0
    when the server does not say.

    Raises:
        DownloadCancelled – should_stop() returned True
        OSError           – network or filesystem failure (URLError included)
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")
    logger.info("Downloading %s → %s", url, dest)

    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            content_length = response.headers.get("Content-Length")
            total = int(content_length) if content_length else 0

            downloaded = 0
            with open(partial, "wb") as f:
                while True:
                    if should_stop is not None and should_stop():
                        raise DownloadCancelled(url)
                    chunk = response.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
                    downloaded += len(chunk)
                    if progress is not None:
                        progress(downloaded, total)

        os.replace(partial, dest)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise

    logger.info("Downloaded %s (%d bytes)", dest.name, downloaded)
    return dest


def ensure_media(
    media: TestMedia,
    media_dir: Path,
    progress: ProgressCallback | None = None,
) -> TestMedia:
    """Return *media* with a local path, downloading it first if needed."""
    path = media_path(media, media_dir)
    if not path.is_file():
        if not media.url:
            raise FileNotFoundError(f"Test media not found and no URL to fetch it: {path}")
        download(media.url, path, progress)
    return dataclasses.replace(media, path=path)


class TestMediaDownloader(QThread):
    __test__ = False

    progress  = Signal(int)        # 0–100
    status    = Signal(str)
    completed = Signal(bool, str)  # success, local path

    def __init__(self, media: TestMedia, media_dir: Path, parent=None):
        super().__init__(parent)
        self.media = media
        self.media_dir = media_dir

    def run(self):
        dest = media_path(self.media, self.media_dir)
        if dest.is_file():
            self.progress.emit(100)
            self.completed.emit(True, str(dest))
            return

        self.status.emit(f"Downloading {self.media.name}…")
        try:
            download(
                self.media.url,
                dest,
                self._on_progress,
                should_stop=self.isInterruptionRequested,
            )
        except DownloadCancelled:
            self.status.emit("Download cancelled.")
            self.completed.emit(False, "")
            return
        except OSError as exc:
            logger.error("Download of %s failed: %s", self.media.url, exc)
            self.status.emit(f"Failed to download {self.media.name}: {exc}")
            self.completed.emit(False, "")
            return

        self.progress.emit(100)
        self.status.emit(f"{self.media.name} ready.")
        self.completed.emit(True, str(dest))

    def _on_progress(self, downloaded: int, total: int) -> None:
        if total:
            self.progress.emit(int(downloaded / total * 100))
