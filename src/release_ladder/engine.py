"""Release engine: one registry, policy engine and scheduler behind a single facade."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from .clock import SimulatedClock, TickSource
from .contracts import Allocation, ReleaseEvent
from .observability import ReleaseRunMetrics
from .policy import PolicyConfig, PolicyEngine
from .providers import DeliveryProvider
from .registry import ActiveAllocationView, AllocationRegistry
from .scheduler import ReleaseScheduler


logger = logging.getLogger(__name__)

_ASYNC_LOCK_POLL_SECONDS = 0.005


class ReleaseEngine:
    def __init__(
        self,
        provider: DeliveryProvider,
        policy: PolicyConfig | None = None,
        clock: TickSource | None = None,
        *,
        max_recent_events: int = 25,
    ) -> None:
        self.policy_config = policy or PolicyConfig()
        self.clock: TickSource = clock or SimulatedClock()
        self.metrics = ReleaseRunMetrics(max_recent_events=max_recent_events)
        self.registry = AllocationRegistry(
            clock=self.clock,
            max_concurrent_allocations=self.policy_config.max_concurrent_allocations,
            registration_check=self.policy_config.registration_check,
        )
        self.policy = PolicyEngine(self.policy_config)
        self.scheduler = ReleaseScheduler(
            registry=self.registry,
            policy=self.policy,
            provider=provider,
            metrics=self.metrics,
        )
        # Shared by sync and async drivers so ticks never overlap.
        self._tick_lock = threading.Lock()

    # ---- registry surface ----
    def register(self, allocation_id: str | None = None, *, cap: int, base_units: int) -> Allocation:
        return self.registry.register(allocation_id, cap=cap, base_units=base_units)

    def activate(self, allocation_id: str) -> Allocation:
        return self.registry.activate(allocation_id)

    def pause(self, allocation_id: str) -> Allocation:
        return self.registry.pause(allocation_id)

    def remove(self, allocation_id: str) -> Allocation:
        return self.registry.remove(allocation_id)

    def get(self, allocation_id: str) -> Allocation:
        return self.registry.get(allocation_id)

    def list_active(self) -> ActiveAllocationView:
        return self.registry.list_active()

    # ---- tick driver ----
    def advance_tick(self) -> list[ReleaseEvent]:
        with self._tick_lock:
            tick = self.clock.tick()
            events = self.scheduler.run_pass(tick)
        self._log_tick(tick, events)
        return events

    async def advance_tick_async(self) -> list[ReleaseEvent]:
        while not self._tick_lock.acquire(blocking=False):
            await asyncio.sleep(_ASYNC_LOCK_POLL_SECONDS)
        try:
            tick = self.clock.tick()
            events = await self.scheduler.run_pass_async(tick)
        finally:
            self._tick_lock.release()
        self._log_tick(tick, events)
        return events

    def run(self, ticks: int) -> list[ReleaseEvent]:
        if ticks < 0:
            raise ValueError("ticks must be >= 0")
        events: list[ReleaseEvent] = []
        for _ in range(ticks):
            events.extend(self.advance_tick())
        return events

    def run_until_idle(self, *, max_ticks: int = 128) -> list[ReleaseEvent]:
        if max_ticks <= 0:
            raise ValueError("max_ticks must be > 0")
        events: list[ReleaseEvent] = []
        for _ in range(max_ticks):
            if self.registry.active_count() == 0:
                break
            events.extend(self.advance_tick())
        return events

    def run_forever(self, *, poll_seconds: float = 1.0, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        while not stop.is_set():
            self.advance_tick()
            stop.wait(max(0.0, poll_seconds))

    def metrics_snapshot(self) -> dict[str, Any]:
        snapshot = self.metrics.snapshot()
        snapshot["policy"] = self.policy_config.as_dict()
        snapshot["active_allocations"] = self.registry.active_count()
        return snapshot

    def _log_tick(self, tick: int, events: list[ReleaseEvent]) -> None:
        logger.info(
            "release tick complete tick=%s events=%s units_delivered=%s active=%s",
            tick,
            len(events),
            sum(event.delivered_units for event in events),
            self.registry.active_count(),
        )
