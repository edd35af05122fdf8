"""
encodelab.reducer
~~~~~~~~~~~~~~~~~
Pure "best by" rankings over benchmark results.

Every function accepts EncodeOutcomes or BenchmarkTrials (anything with an
`.outcome`), considers only successful results, keeps the first one on ties
and returns None when nothing succeeded. Callers must handle None.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, TypeVar

from encodelab.models import BenchmarkRun, BenchmarkTrial, EncodeOutcome

T = TypeVar("T")

MIB = 1024 * 1024


def _outcome(item) -> EncodeOutcome | None:
    return getattr(item, "outcome", item)


def _succeeded(item) -> bool:
    outcome = _outcome(item)
    return outcome is not None and outcome.success


def efficiency(outcome: EncodeOutcome) -> float | None:
    """Speed per MiB of output; None for an empty output."""
    if outcome.file_size <= 0:
        return None
    return outcome.speed / (outcome.file_size / MIB)


def _best(items: Iterable[T], key: Callable[[EncodeOutcome], float | None]) -> T | None:
    best: T | None = None
    best_value: float | None = None
    for item in items:
        if not _succeeded(item):
            continue
        value = key(_outcome(item))
        if value is None:
            continue
        # strictly greater: the first of equal values wins
        if best_value is None or value > best_value:
            best, best_value = item, value
    return best


def best_by_speed(items: Iterable[T]) -> T | None:
    return _best(items, lambda o: o.speed)


def best_by_fps(items: Iterable[T]) -> T | None:
    return _best(items, lambda o: o.fps)


def best_by_efficiency(items: Iterable[T]) -> T | None:
    return _best(items, efficiency)


_SORT_KEYS: dict[str, Callable[[EncodeOutcome], float]] = {
    "speed":      lambda o: o.speed,
    "fps":        lambda o: o.fps,
    "efficiency": lambda o: efficiency(o) or 0.0,
    "size":       lambda o: -o.file_size,
    "time":       lambda o: -o.wall_seconds,
}


def sort_results(items: Iterable[T], by: str = "speed") -> list[T]:
    """
    Successful results best-first by *by* (speed, fps, efficiency, size or
    time; smaller is better for size and time), failures after them in
    their original order.
    """
    try:
        key = _SORT_KEYS[by]
    except KeyError:
        raise ValueError(f"Unknown sort key {by!r}; expected one of {', '.join(_SORT_KEYS)}") from None
    items = list(items)
    ok = [i for i in items if _succeeded(i)]
    failed = [i for i in items if not _succeeded(i)]
    return sorted(ok, key=lambda i: key(_outcome(i)), reverse=True) + failed


@dataclass(frozen=True)
class BenchmarkSummary:
    total: int
    succeeded: int
    failed: int
    fastest: BenchmarkTrial | None
    highest_fps: BenchmarkTrial | None
    most_efficient: BenchmarkTrial | None


def summarize(run: BenchmarkRun) -> BenchmarkSummary:
    trials = list(run.trials)
    succeeded = sum(_succeeded(t) for t in trials)
    return BenchmarkSummary(
        total=len(trials),
        succeeded=succeeded,
        failed=len(trials) - succeeded,
        fastest=best_by_speed(trials),
        highest_fps=best_by_fps(trials),
        most_efficient=best_by_efficiency(trials),
    )
