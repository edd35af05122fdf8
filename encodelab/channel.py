"""
encodelab.channel
~~~~~~~~~~~~~~~~~
EventChannel: a bounded, closable, thread-safe stream of engine events.

The engine is the producer (progress parser, prober, scheduler); the UI or
a Qt worker is the consumer. Backpressure rules when the channel is full:

  - a new event may evict the *oldest coalescible* event already queued
    (progress snapshots: a later one supersedes an earlier one)
  - if nothing queued is coalescible, publish() blocks until the consumer
    makes room or the channel is closed

Relative order of the events that are delivered is never changed.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Generic, Iterator, TypeVar

from encodelab.models import ProgressEvent

T = TypeVar("T")

COALESCIBLE_TYPES: tuple[type, ...] = (ProgressEvent,)


class ChannelClosed(Exception):
    """publish() was called on a closed channel."""


class EventChannel(Generic[T]):

    def __init__(self, maxsize: int = 256, coalescible: tuple[type, ...] = COALESCIBLE_TYPES):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self._coalescible = coalescible
        self._items: deque[T] = deque()
        self._closed = False
        self._cond = threading.Condition()
        self.dropped = 0

    # ── Producer side ─────────────────────────────────────────────────────────

    def publish(self, event: T) -> None:
        with self._cond:
            while True:
                if self._closed:
                    raise ChannelClosed("channel is closed")
                if len(self._items) < self.maxsize:
                    break
                if self._evict_coalescible():
                    break
                self._cond.wait()
            self._items.append(event)
            self._cond.notify_all()

    def close(self) -> None:
        """No more events will be published; consumers drain what is left."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Consumer side ─────────────────────────────────────────────────────────

    def get(self, timeout: float | None = None) -> T | None:
        """
        Next event, or None when the channel is closed and drained, or when
        *timeout* elapses with nothing to deliver.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout=timeout):
                return None
            if not self._items:
                return None
            event = self._items.popleft()
            self._cond.notify_all()
            return event

    def drain(self) -> list[T]:
        """Everything queued right now, without blocking."""
        with self._cond:
            items = list(self._items)
            self._items.clear()
            self._cond.notify_all()
            return items

    def __iter__(self) -> Iterator[T]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    # ── Internal ──────────────────────────────────────────────────────────────

    def _evict_coalescible(self) -> bool:
        for index, queued in enumerate(self._items):
            if isinstance(queued, self._coalescible):
                del self._items[index]
                self.dropped += 1
                return True
        return False
