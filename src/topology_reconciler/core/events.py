"""
Event sinks.

Operation results and errors are emitted as structured events.
The sink backend is not part of the core, so we keep the interface narrow.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def emit(self, event: dict[str, Any]) -> None:
        """Emit one structured event. The event must contain a type key."""


@dataclass(frozen=True)
class LoggingEventSink(EventSink):
    """Send events to the standard logging tree."""

    level: int = logging.INFO

    def emit(self, event: dict[str, Any]) -> None:
        etype = str(event.get("type", "event"))
        level = logging.WARNING if event.get("status") == "failed" or event.get("error") else self.level
        logger.log(level, "%s %s", etype, json.dumps(event, sort_keys=True, default=str))


@dataclass
class JsonlEventSink(EventSink):
    """
    JSON line event sink.

    Each call appends one JSON object per line.
    Region workers emit from several threads, so writes are serialized.
    """

    path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def emit(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload["ts_unix"] = int(time.time())
        line = json.dumps(payload, sort_keys=True, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")


@dataclass
class MemoryEventSink(EventSink):
    """Collect events in a list. Used by tests and by callers that render later."""

    events: list[dict[str, Any]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def emit(self, event: dict[str, Any]) -> None:
        with self._lock:
            self.events.append(dict(event))

    def of_type(self, etype: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e.get("type") == etype]


@dataclass(frozen=True)
class FanoutEventSink(EventSink):
    sinks: tuple[EventSink, ...]

    def emit(self, event: dict[str, Any]) -> None:
        for sink in self.sinks:
            sink.emit(event)
