"""Config location and JSON round trip."""

import json

import pytest

from encodelab.config import EngineConfig, config_dir, load_config, save_config
from encodelab.errors import PersistenceError, ToolNotFoundError
from encodelab.paths import find_tool, require_tool, validate_binaries


def test_home_override(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("ENCODELAB_HOME", str(tmp_path / "home"))
    assert config_dir() == tmp_path / "home"
    assert EngineConfig().capability_cache_path == tmp_path / "home" / "capabilities.json"


def test_missing_file_gives_defaults(tmp_path) -> None:
    config = load_config(tmp_path / "config.json")
    assert config.ffmpeg == "ffmpeg"
    assert config.encode_timeout is None


def test_save_then_load(tmp_path) -> None:
    config = EngineConfig(ffmpeg="/opt/ffmpeg/bin/ffmpeg", probe_timeout=3.0, encode_slots=2,
                          data_dir=tmp_path, work_dir=tmp_path / "work")
    path = save_config(config)

    assert path == tmp_path / "config.json"
    assert load_config(path) == config


def test_unknown_keys_are_ignored(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"ffprobe": "/usr/local/bin/ffprobe", "theme": "dark"}), encoding="utf-8")
    config = load_config(path)
    assert config.ffprobe == "/usr/local/bin/ffprobe"
    assert not hasattr(config, "theme")


@pytest.mark.parametrize("text", ["[1, 2]", "{ nope"])
def test_unreadable_config(tmp_path, text) -> None:
    path = tmp_path / "config.json"
    path.write_text(text, encoding="utf-8")
    with pytest.raises(PersistenceError):
        load_config(path)


class TestToolLookup:

    def test_explicit_path(self, config) -> None:
        assert find_tool(config.ffmpeg) == config.ffmpeg
        assert require_tool(config.ffmpeg) == config.ffmpeg

    def test_missing(self, tmp_path) -> None:
        assert find_tool(str(tmp_path / "ffmpeg")) is None
        with pytest.raises(ToolNotFoundError):
            require_tool(str(tmp_path / "ffmpeg"))

    def test_validate_binaries(self, config, tmp_path) -> None:
        assert validate_binaries(config) == []
        config.ffprobe = str(tmp_path / "ffprobe")
        assert validate_binaries(config) == [f"Binary not found: {tmp_path / 'ffprobe'}"]
