"""Release run counters and snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import threading
from typing import Any

from .contracts import (
    OUTCOME_CLIPPED,
    OUTCOME_DELIVERED,
    OUTCOME_FAILED,
    OUTCOME_REJECTED,
    ReleaseEvent,
)


_REQUIRED_COUNTERS: tuple[str, ...] = (
    "ticks_total",
    "events_total",
    "delivered_total",
    "clipped_total",
    "rejected_total",
    "failed_total",
    "units_delivered_total",
    "completions_total",
    "skipped_total",
)

_OUTCOME_COUNTERS: dict[str, str] = {
    OUTCOME_DELIVERED: "delivered_total",
    OUTCOME_CLIPPED: "clipped_total",
    OUTCOME_REJECTED: "rejected_total",
    OUTCOME_FAILED: "failed_total",
}


@dataclass
class ReleaseRunMetrics:
    counters: dict[str, int] = field(default_factory=dict)
    recent_events: list[dict[str, Any]] = field(default_factory=list)
    max_recent_events: int = 25
    _lock: threading.Lock = field(init=False, repr=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        if self.max_recent_events <= 0:
            raise ValueError("max_recent_events must be > 0")
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def record_tick(self, *, tick: int, event_count: int) -> None:
        with self._lock:
            self.counters["ticks_total"] += 1
            self._append("tick", {"tick": tick, "event_count": event_count})

    def record_event(self, event: ReleaseEvent) -> None:
        with self._lock:
            self.counters["events_total"] += 1
            self.counters[_OUTCOME_COUNTERS[event.outcome]] += 1
            self.counters["units_delivered_total"] += event.delivered_units
            self._append("release", event.as_dict())

    def record_completion(self, *, allocation_id: str, total_released: int) -> None:
        with self._lock:
            self.counters["completions_total"] += 1
            self._append("completed", {"allocation_id": allocation_id, "total_released": total_released})

    def record_skip(self, *, allocation_id: str, reason: str) -> None:
        with self._lock:
            self.counters["skipped_total"] += 1
            self._append("skipped", {"allocation_id": allocation_id, "reason": reason})

    def snapshot(self, *, generated_at_utc: str | None = None) -> dict[str, Any]:
        with self._lock:
            return {
                "generated_at_utc": generated_at_utc or _utc_now(),
                "metrics": dict(self.counters),
                "recent_events": list(self.recent_events),
            }

    def _append(self, kind: str, payload: dict[str, Any]) -> None:
        self.recent_events.append({"kind": kind, **payload})
        if len(self.recent_events) > self.max_recent_events:
            del self.recent_events[: len(self.recent_events) - self.max_recent_events]


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
