"""
encodelab.store
~~~~~~~~~~~~~~~
JSON persistence for the capability matrix and benchmark runs.

Every write goes to a temporary file in the same directory and is then
renamed over the target, so a reader never sees a half-written file.
Only the fields of the records are stored.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from encodelab.errors import PersistenceError
from encodelab.models import (
    AccelerationChoice,
    BenchmarkRun,
    BenchmarkTrial,
    CapabilityEntry,
    EncodeOutcome,
    SystemInfo,
    TestMedia,
    TrialStatus,
)

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


# ── Atomic file helpers ───────────────────────────────────────────────────────

def atomic_write_json(path: Path, payload) -> None:
    """Write *payload* as JSON to *path* via write-temp-then-rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except (OSError, TypeError, ValueError) as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise PersistenceError(f"Could not write {path}: {exc}") from exc


def read_json(path: Path):
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise PersistenceError(f"Could not read {path}: {exc}") from exc


# ── Capability cache ──────────────────────────────────────────────────────────

class CapabilityCache:
    """
    The persisted capability matrix: a flat list of entries plus the time of
    the last probe. Never invalidated automatically; a user-triggered
    re-probe replaces entries by (codec, acceleration).
    """

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> list[CapabilityEntry]:
        """Entries in stored order. Missing file → empty list."""
        if not self.path.exists():
            return []
        payload = read_json(self.path)
        try:
            return [_dict_to_entry(d) for d in payload.get("entries", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Malformed capability cache {self.path}: {exc}") from exc

    @property
    def last_probed_at(self) -> datetime | None:
        if not self.path.exists():
            return None
        stamp = read_json(self.path).get("probed_at")
        return datetime.fromisoformat(stamp) if stamp else None

    def save(self, entries: list[CapabilityEntry], probed_at: datetime | None = None) -> None:
        probed_at = probed_at or _now()
        atomic_write_json(self.path, {
            "version":   FORMAT_VERSION,
            "probed_at": probed_at.isoformat(),
            "entries":   [_entry_to_dict(e) for e in entries],
        })
        logger.info("Saved %d capability entries to %s", len(entries), self.path)

    def merge(self, entries: list[CapabilityEntry]) -> list[CapabilityEntry]:
        """
        Replace stored entries that share a key with *entries*, keep the
        rest, append new keys at the end. Returns the merged list.
        """
        fresh = {e.key: e for e in entries}
        merged = [fresh.pop(e.key, e) for e in self.load()]
        merged += [e for e in entries if e.key in fresh]
        self.save(merged)
        return merged

    def get(self, codec: str, acceleration: AccelerationChoice) -> CapabilityEntry | None:
        return next((e for e in self.load() if e.key == (codec, acceleration)), None)

    def available(self) -> list[CapabilityEntry]:
        return [e for e in self.load() if e.available]


# ── Benchmark runs ────────────────────────────────────────────────────────────

class BenchmarkStore:
    """One JSON file per BenchmarkRun inside *directory*."""

    def __init__(self, directory: Path):
        self.directory = directory

    def save(self, run: BenchmarkRun) -> Path:
        stamp = run.started_at.strftime("%Y%m%d-%H%M%S")
        path = self.directory / f"benchmark-{stamp}-{run.run_id[:8]}.json"
        atomic_write_json(path, run_to_dict(run))
        logger.info("Benchmark saved to %s", path)
        return path

    def load(self, path: Path) -> BenchmarkRun:
        payload = read_json(path)
        try:
            return dict_to_run(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Malformed benchmark file {path}: {exc}") from exc

    def list_runs(self) -> list[Path]:
        """Saved run files, oldest first."""
        if not self.directory.is_dir():
            return []
        return sorted(self.directory.glob("benchmark-*.json"))


# ── Serialisation helpers ─────────────────────────────────────────────────────

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _entry_to_dict(entry: CapabilityEntry) -> dict:
    return {
        "codec":        entry.codec,
        "acceleration": entry.acceleration.value,
        "available":    entry.available,
        "probed_at":    entry.probed_at.isoformat(),
        "encoder":      entry.encoder,
        "error":        entry.error,
    }


def _dict_to_entry(d: dict) -> CapabilityEntry:
    return CapabilityEntry(
        codec        = d["codec"],
        acceleration = AccelerationChoice(d["acceleration"]),
        available    = bool(d["available"]),
        probed_at    = datetime.fromisoformat(d["probed_at"]),
        encoder      = d.get("encoder", ""),
        error        = d.get("error", ""),
    )


def _outcome_to_dict(outcome: EncodeOutcome) -> dict:
    return {
        "success":      outcome.success,
        "exit_code":    outcome.exit_code,
        "wall_seconds": outcome.wall_seconds,
        "file_size":    outcome.file_size,
        "fps":          outcome.fps,
        "speed":        outcome.speed,
        "error":        outcome.error,
        "diagnostics":  outcome.diagnostics,
        "timed_out":    outcome.timed_out,
        "cancelled":    outcome.cancelled,
        "bitrate_kbps": outcome.bitrate_kbps,
    }


def _dict_to_outcome(d: dict) -> EncodeOutcome:
    return EncodeOutcome(
        success      = bool(d["success"]),
        exit_code    = d.get("exit_code"),
        wall_seconds = float(d.get("wall_seconds", 0.0)),
        file_size    = int(d.get("file_size", 0)),
        fps          = float(d.get("fps", 0.0)),
        speed        = float(d.get("speed", 0.0)),
        error        = d.get("error", ""),
        diagnostics  = d.get("diagnostics", ""),
        timed_out    = bool(d.get("timed_out", False)),
        cancelled    = bool(d.get("cancelled", False)),
        bitrate_kbps = float(d.get("bitrate_kbps", 0.0)),
    )


def _media_to_dict(media: TestMedia) -> dict:
    return {
        "name":       media.name,
        "path":       str(media.path) if media.path else None,
        "url":        media.url,
        "resolution": media.resolution,
        "duration":   media.duration,
    }


def _dict_to_media(d: dict) -> TestMedia:
    return TestMedia(
        name       = d["name"],
        path       = Path(d["path"]) if d.get("path") else None,
        url        = d.get("url", ""),
        resolution = d.get("resolution", ""),
        duration   = float(d.get("duration", 0.0)),
    )


def _sysinfo_to_dict(info: SystemInfo) -> dict:
    return {
        "platform":         info.platform,
        "release":          info.release,
        "machine":          info.machine,
        "processor":        info.processor,
        "cpu_count":        info.cpu_count,
        "physical_cores":   info.physical_cores,
        "cpu_model":        info.cpu_model,
        "cpu_freq_mhz":     info.cpu_freq_mhz,
        "memory_total":     info.memory_total,
        "memory_available": info.memory_available,
        "memory_used":      info.memory_used,
        "python_version":   info.python_version,
        "ffmpeg_version":   info.ffmpeg_version,
    }


def _dict_to_sysinfo(d: dict) -> SystemInfo:
    return SystemInfo(**{k: d[k] for k in _sysinfo_to_dict(SystemInfo()) if k in d})


def run_to_dict(run: BenchmarkRun) -> dict:
    return {
        "version":     FORMAT_VERSION,
        "run_id":      run.run_id,
        "started_at":  run.started_at.isoformat(),
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "cancelled":   run.cancelled,
        "system_info": _sysinfo_to_dict(run.system_info),
        "test_media":  _media_to_dict(run.test_media),
        "trials": [
            {
                "entry":   _entry_to_dict(t.entry),
                "status":  t.status.value,
                "outcome": _outcome_to_dict(t.outcome) if t.outcome else None,
            }
            for t in run.trials
        ],
    }


def dict_to_run(d: dict) -> BenchmarkRun:
    return BenchmarkRun(
        run_id      = d["run_id"],
        started_at  = datetime.fromisoformat(d["started_at"]),
        finished_at = datetime.fromisoformat(d["finished_at"]) if d.get("finished_at") else None,
        system_info = _dict_to_sysinfo(d.get("system_info", {})),
        test_media  = _dict_to_media(d["test_media"]),
        trials      = tuple(
            BenchmarkTrial(
                entry   = _dict_to_entry(t["entry"]),
                status  = TrialStatus(t["status"]),
                outcome = _dict_to_outcome(t["outcome"]) if t.get("outcome") else None,
            )
            for t in d.get("trials", [])
        ),
        cancelled   = bool(d.get("cancelled", False)),
    )
