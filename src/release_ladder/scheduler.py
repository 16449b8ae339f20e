"""Doubling release scheduler.

Each pass walks the registry's active allocations in ``list_active()`` order.
For every allocation it computes the doubling candidate, clips it to the
allocation cap, runs it through the policy engine, hands admitted events to
the delivery provider and settles the outcome back into the registry.

Rejected and failed releases still consume their doubling step.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import Future
import inspect
import logging
from typing import Any

from .contracts import (
    OUTCOME_CLIPPED,
    OUTCOME_DELIVERED,
    OUTCOME_FAILED,
    REASON_CAP_CLIP,
    REASON_DELIVERY_ERROR,
    STATE_COMPLETED,
    Allocation,
    ReleaseEvent,
    clip_to_remaining,
    doubling_units,
)
from .errors import AllocationNotFound, reason_code
from .observability import ReleaseRunMetrics
from .policy import PolicyEngine
from .providers import DeliveryError, DeliveryProvider, DeliveryReceipt
from .registry import AllocationRegistry


logger = logging.getLogger(__name__)


class ReleaseScheduler:
    def __init__(
        self,
        *,
        registry: AllocationRegistry,
        policy: PolicyEngine,
        provider: DeliveryProvider,
        metrics: ReleaseRunMetrics | None = None,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self.provider = provider
        self.metrics = metrics or ReleaseRunMetrics()

    def run_pass(self, tick: int) -> list[ReleaseEvent]:
        self.policy.begin_tick(tick)
        events: list[ReleaseEvent] = []
        for allocation_id in list(self.registry.list_active()):
            event = self._prepare(allocation_id, tick)
            if event is None:
                continue
            admitted = event.admitted
            if admitted:
                event = self._deliver(event)
            events.append(self._settle(event, admitted=admitted))
        self.metrics.record_tick(tick=tick, event_count=len(events))
        return events

    async def run_pass_async(self, tick: int) -> list[ReleaseEvent]:
        self.policy.begin_tick(tick)
        events: list[ReleaseEvent] = []
        for allocation_id in list(self.registry.list_active()):
            event = self._prepare(allocation_id, tick)
            if event is None:
                continue
            admitted = event.admitted
            if admitted:
                event = await self._deliver_async(event)
            events.append(self._settle(event, admitted=admitted))
        self.metrics.record_tick(tick=tick, event_count=len(events))
        return events

    def _prepare(self, allocation_id: str, tick: int) -> ReleaseEvent | None:
        try:
            allocation = self.registry.begin_release(allocation_id)
        except AllocationNotFound:
            self._skip(allocation_id, "ALLOCATION_NOT_FOUND")
            return None
        if allocation is None:
            reason = "RELEASE_IN_FLIGHT" if self.registry.is_in_flight(allocation_id) else "NOT_ACTIVE"
            self._skip(allocation_id, reason)
            return None

        if allocation.total_released >= self.policy.allocation_ceiling(allocation):
            self._complete(allocation)
            return None

        units = doubling_units(allocation.base_units, allocation.tick_count)
        delivered = clip_to_remaining(units, total_released=allocation.total_released, ceiling=allocation.cap)
        clipped = delivered < units
        candidate = ReleaseEvent(
            allocation_id=allocation.id,
            release_time=tick,
            units=units,
            delivered_units=delivered,
            outcome=OUTCOME_CLIPPED if clipped else OUTCOME_DELIVERED,
            tick_index=allocation.tick_count,
            reason_code=REASON_CAP_CLIP if clipped else None,
        )
        return self.policy.admit(candidate, allocation).event

    def _deliver(self, event: ReleaseEvent) -> ReleaseEvent:
        try:
            result = self.provider.deliver(event)
            if isinstance(result, Future):
                result = result.result()
            elif inspect.isawaitable(result):
                result = _run_awaitable(result)
        except Exception as exc:
            return _failed(event, exc)
        return _apply_receipt(event, result)

    async def _deliver_async(self, event: ReleaseEvent) -> ReleaseEvent:
        try:
            result = self.provider.deliver(event)
            if isinstance(result, Future):
                result = await asyncio.wrap_future(result)
            elif inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            return _failed(event, exc)
        return _apply_receipt(event, result)

    def _settle(self, event: ReleaseEvent, *, admitted: bool) -> ReleaseEvent:
        try:
            updated = self.registry.settle_release(
                event.allocation_id,
                delivered_units=event.delivered_units,
                limit=self.policy.config.limit_for(event.allocation_id),
            )
        except AllocationNotFound:
            updated = None
        # The post-release hook still sees a delivery whose allocation was removed meanwhile.
        if admitted:
            self.policy.after_release(event)
        if updated is None:
            self._skip(event.allocation_id, "REMOVED_MID_RELEASE")
            return event
        logger.debug(
            "release settled allocation_id=%s outcome=%s units=%s delivered_units=%s",
            event.allocation_id,
            event.outcome,
            event.units,
            event.delivered_units,
        )
        self.metrics.record_event(event)
        if updated.state == STATE_COMPLETED:
            self.metrics.record_completion(allocation_id=updated.id, total_released=updated.total_released)
        return event

    def _complete(self, allocation: Allocation) -> None:
        try:
            updated = self.registry.mark_completed(allocation.id)
        except AllocationNotFound:
            self._skip(allocation.id, "ALLOCATION_NOT_FOUND")
            return
        self.metrics.record_completion(allocation_id=updated.id, total_released=updated.total_released)

    def _skip(self, allocation_id: str, reason: str) -> None:
        logger.info("allocation skipped this tick id=%s reason=%s", allocation_id, reason)
        self.metrics.record_skip(allocation_id=allocation_id, reason=reason)


def _apply_receipt(event: ReleaseEvent, result: Any) -> ReleaseEvent:
    if isinstance(result, DeliveryReceipt) and not result.accepted:
        return _failed(event, DeliveryError(result.provider_code, result.message))
    return event


def _failed(event: ReleaseEvent, exc: BaseException) -> ReleaseEvent:
    if isinstance(exc, DeliveryError):
        code = exc.provider_code
    else:
        code = reason_code(exc)
    logger.warning(
        "delivery failed allocation_id=%s delivered_units=%s code=%s error=%s",
        event.allocation_id,
        event.delivered_units,
        code,
        exc,
    )
    return ReleaseEvent(
        allocation_id=event.allocation_id,
        release_time=event.release_time,
        units=event.units,
        delivered_units=0,
        outcome=OUTCOME_FAILED,
        tick_index=event.tick_index,
        reason_code=f"{REASON_DELIVERY_ERROR}:{code}",
    )


def _run_awaitable(awaitable: Any) -> Any:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_await(awaitable))
    if inspect.iscoroutine(awaitable):
        awaitable.close()
    raise DeliveryError("ASYNC_PROVIDER_IN_RUNNING_LOOP", "use advance_tick_async from async code")


async def _await(awaitable: Any) -> Any:
    return await awaitable
