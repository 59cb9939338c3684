"""Append-only run event log.

Every record is one JSON line ``{"v": 1, "ts": ..., "event": ..., ...}``.
Writes go through a single lock so concurrent completions never interleave
partial lines. Subscribers (the console reporter) see a record only after
it has been written.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from specloop.protocol.io import append_jsonl
from specloop.protocol.models import utc_now_iso

logger = logging.getLogger(__name__)

EVENT_LOG_VERSION = 1

Subscriber = Callable[[dict[str, Any]], Any]


class EventLog:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []
        self._history: list[dict[str, Any]] = []

    def emit(self, event: str, **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {"v": EVENT_LOG_VERSION, "ts": utc_now_iso(), "event": event, **fields}
        with self._lock:
            if self._path is not None:
                try:
                    append_jsonl(self._path, record)
                except (OSError, TypeError, ValueError) as exc:
                    logger.warning("event log write failed for %s: %s", event, exc)
            self._history.append(record)
            subscribers = list(self._subscribers)

        for cb in subscribers:
            try:
                cb(record)
            except Exception as exc:
                logger.debug("event subscriber error: %s", exc)
        return record

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb is not callback]

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    def recent(self, n: int = 20) -> list[dict[str, Any]]:
        return self._history[-n:]

    def names(self) -> list[str]:
        return [r["event"] for r in self._history]


def read_events(path: Path) -> list[dict[str, Any]]:
    """Read an event log, skipping lines that are not valid JSON objects."""
    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            records.append(record)
    return records
