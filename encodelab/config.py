"""
encodelab.config
~~~~~~~~~~~~~~~~
Engine configuration, passed explicitly into every entry point.

Config location
---------------
  Windows  : %APPDATA%\\EncodeLab\\config.json
  macOS    : ~/Library/Application Support/EncodeLab/config.json
  Linux    : ~/.config/EncodeLab/config.json

Setting ENCODELAB_HOME overrides the directory. The capability cache and
saved benchmark runs live next to config.json.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from encodelab.errors import PersistenceError
from encodelab.store import atomic_write_json

logger = logging.getLogger(__name__)

APP_DIR_NAME = "EncodeLab"


# ── Config directory ──────────────────────────────────────────────────────────

def config_dir() -> Path:
    override = os.environ.get("ENCODELAB_HOME")
    if override:
        return Path(override)

    if sys.platform == "win32":
        base = Path.home() / "AppData" / "Roaming"
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path.home() / ".config"
    return base / APP_DIR_NAME


# ── Engine configuration ──────────────────────────────────────────────────────

@dataclass
class EngineConfig:
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"

    probe_timeout: float = 10.0             # per capability trial
    benchmark_timeout: float = 600.0        # per benchmark trial
    encode_timeout: float | None = None     # production encodes; None = unbounded
    kill_grace: float = 5.0                 # SIGTERM → SIGKILL escalation

    progress_interval: float = 0.1          # minimum seconds between progress events
    channel_size: int = 256
    encode_slots: int = 1

    data_dir: Path = field(default_factory=config_dir)
    work_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "encodelab")

    # ── Derived locations ─────────────────────────────────────────────────────

    @property
    def config_file(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def capability_cache_path(self) -> Path:
        return self.data_dir / "capabilities.json"

    @property
    def benchmark_dir(self) -> Path:
        return self.data_dir / "benchmarks"

    @property
    def media_dir(self) -> Path:
        return self.data_dir / "media"

    @property
    def probe_input_path(self) -> Path:
        return self.work_dir / "probe_input.mkv"


# ── Public API ────────────────────────────────────────────────────────────────

def load_config(path: Path | None = None) -> EngineConfig:
    """
    Read config.json and return an EngineConfig.
    Missing file → defaults. Unknown keys are ignored so older files keep working.
    """
    path = path or config_dir() / "config.json"
    if not path.exists():
        logger.debug("No config at %s, using defaults", path)
        return EngineConfig()

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise PersistenceError(f"Could not read config {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise PersistenceError(f"Config {path} is not a JSON object")

    known = {f.name for f in fields(EngineConfig)}
    kwargs = {k: v for k, v in payload.items() if k in known}
    for key in ("data_dir", "work_dir"):
        if key in kwargs:
            kwargs[key] = Path(kwargs[key])
    return EngineConfig(**kwargs)


def save_config(config: EngineConfig) -> Path:
    """Serialise *config* to its config.json, replacing any previous file."""
    payload = asdict(config)
    payload["data_dir"] = str(config.data_dir)
    payload["work_dir"] = str(config.work_dir)
    atomic_write_json(config.config_file, payload)
    return config.config_file
