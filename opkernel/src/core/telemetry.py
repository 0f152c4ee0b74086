"""Structured telemetry for the kernel.

Components emit namespaced events (``dispatcher.*``, ``guardian.*``,
``orchestrator.*``...) carrying a human readable ``message``.  Sinks decide
what to do with them; a failing sink never interrupts a task.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Deque, Dict, Iterable, List, MutableMapping, Protocol


class TelemetrySink(Protocol):
    """A destination for telemetry events."""

    def write(self, event: Dict[str, Any]) -> None:
        """Persist or forward a telemetry event."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Telemetry:
    """Fan events out to the configured sinks.

    ``context`` is merged into every event.  :meth:`bind` derives a telemetry
    object with extra context that shares the same sinks.
    """

    sinks: Iterable[TelemetrySink] = field(default_factory=tuple)
    context: MutableMapping[str, Any] = field(default_factory=dict)
    dropped: int = field(default=0, init=False)

    def emit(self, event: str, **payload: Any) -> None:
        if not self.sinks:
            return
        record: Dict[str, Any] = {"event": event, "time": _now_iso(), **self.context, **payload}
        for sink in self.sinks:
            try:
                sink.write(dict(record))
            except Exception:
                self.dropped += 1

    def bind(self, **context: Any) -> "Telemetry":
        return Telemetry(sinks=self.sinks, context={**self.context, **context})


@dataclass
class InMemorySink:
    """Sink that keeps telemetry in-memory for inspection in tests."""

    events: List[Dict[str, Any]] = field(default_factory=list)

    def write(self, event: Dict[str, Any]) -> None:
        self.events.append(event)

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [item for item in self.events if item.get("event") == event]


@dataclass
class JsonLinesSink:
    """Append-only JSONL file; values that are not JSON are stringified."""

    path: Path
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def write(self, event: Dict[str, Any]) -> None:
        line = json.dumps(event, sort_keys=True, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")


@dataclass
class EventLogSink:
    """Bounded, human readable operator log.

    Each event becomes one ``[HH:MM:SS] message`` line; events without a
    ``message`` fall back to their name.
    """

    limit: int = 500
    _lines: Deque[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._lines = deque(maxlen=max(1, int(self.limit)))

    def write(self, event: Dict[str, Any]) -> None:
        stamp = event.get("time") or _now_iso()
        try:
            clock = datetime.fromisoformat(str(stamp)).strftime("%H:%M:%S")
        except ValueError:
            clock = str(stamp)
        message = event.get("message") or event.get("event", "")
        self._lines.append(f"[{clock}] {message}")

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def clear(self) -> None:
        self._lines.clear()


__all__ = ["EventLogSink", "InMemorySink", "JsonLinesSink", "Telemetry", "TelemetrySink"]
