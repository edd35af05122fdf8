"""Test media downloads, using file:// URLs instead of the network."""

import pytest

from encodelab.downloader import (
    DownloadCancelled,
    TestMediaDownloader,
    download,
    ensure_media,
    media_path,
)
from encodelab.models import TestMedia


@pytest.fixture
def remote(tmp_path):
    source = tmp_path / "remote" / "bbb_720p.mp4"
    source.parent.mkdir()
    source.write_bytes(b"\x01" * 200_000)
    return source


def test_download_writes_destination_and_reports_progress(remote, tmp_path) -> None:
    dest = tmp_path / "media" / "clip.mp4"
    seen = []

    result = download(remote.as_uri(), dest, lambda done, total: seen.append((done, total)))

    assert result == dest
    assert dest.read_bytes() == remote.read_bytes()
    assert not dest.with_name("clip.mp4.part").exists()
    assert seen[-1] == (200_000, 200_000)
    assert [done for done, _ in seen] == sorted(done for done, _ in seen)


def test_cancel_leaves_nothing_behind(remote, tmp_path) -> None:
    dest = tmp_path / "media" / "clip.mp4"
    with pytest.raises(DownloadCancelled):
        download(remote.as_uri(), dest, should_stop=lambda: True)
    assert list(dest.parent.iterdir()) == []


def test_failure_leaves_nothing_behind(tmp_path) -> None:
    dest = tmp_path / "media" / "clip.mp4"
    with pytest.raises(OSError):
        download((tmp_path / "missing.mp4").as_uri(), dest)
    assert list(dest.parent.iterdir()) == []


def test_media_path_uses_url_file_name(tmp_path) -> None:
    media = TestMedia(name="BBB", url="http://example.invalid/movies/bbb_sunflower.mp4")
    assert media_path(media, tmp_path) == tmp_path / "bbb_sunflower.mp4"


class TestEnsureMedia:

    def test_downloads_once(self, remote, tmp_path) -> None:
        media = TestMedia(name="BBB 720p", url=remote.as_uri(), resolution="720p")
        first = ensure_media(media, tmp_path / "media")
        assert first.path == tmp_path / "media" / "bbb_720p.mp4"
        assert first.path.is_file()

        remote.unlink()
        assert ensure_media(media, tmp_path / "media").path == first.path

    def test_local_media_without_url(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            ensure_media(TestMedia(name="gone", path=tmp_path / "gone.mp4"), tmp_path)


def test_downloader_thread_run(qapp, remote, tmp_path) -> None:
    media = TestMedia(name="BBB 720p", url=remote.as_uri())
    worker = TestMediaDownloader(media, tmp_path / "media")
    finished = []
    percents = []
    worker.completed.connect(lambda ok, path: finished.append((ok, path)))
    worker.progress.connect(percents.append)

    worker.run()

    assert finished == [(True, str(tmp_path / "media" / "bbb_720p.mp4"))]
    assert percents[-1] == 100
