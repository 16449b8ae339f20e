"""Allocation registry: the authoritative store of allocations and their lifecycle."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
import logging
import threading
from typing import Any
import uuid

from .clock import SimulatedClock, TickSource
from .contracts import (
    STATE_ACTIVE,
    STATE_COMPLETED,
    STATE_PAUSED,
    STATE_REGISTERED,
    STATE_REMOVED,
    UNITS_MAX,
    Allocation,
)
from .errors import (
    AllocationNotFound,
    AlreadyCompleted,
    CapacityExceeded,
    DuplicateAllocation,
    InvalidConfig,
    Unauthorized,
)


logger = logging.getLogger(__name__)

RegistrationCheck = Callable[[Allocation], Any]


@dataclass(frozen=True)
class ActiveAllocationView:
    """Lazy, restartable view over active allocation ids.

    Ordering is computed when iteration starts: ``created_at`` then ``id``.
    """

    registry: "AllocationRegistry"

    def __iter__(self) -> Iterator[str]:
        return iter(self.registry._ordered_active_ids())


class AllocationRegistry:
    def __init__(
        self,
        *,
        clock: TickSource | None = None,
        max_concurrent_allocations: int | None = None,
        registration_check: RegistrationCheck | None = None,
    ) -> None:
        if max_concurrent_allocations is not None and max_concurrent_allocations < 1:
            raise InvalidConfig("max_concurrent_allocations must be >= 1 when set")
        self.clock: TickSource = clock or SimulatedClock()
        self.max_concurrent_allocations = max_concurrent_allocations
        self.registration_check = registration_check
        self._records: dict[str, Allocation] = {}
        self._retired_ids: set[str] = set()
        self._in_flight: set[str] = set()
        self._lock = threading.RLock()

    # ---- caller operations ----
    def register(
        self,
        allocation_id: str | None = None,
        *,
        cap: int,
        base_units: int,
    ) -> Allocation:
        allocation_id = _normalize_id(allocation_id)
        _validate_units(cap=cap, base_units=base_units)
        with self._lock:
            if allocation_id in self._records or allocation_id in self._retired_ids:
                raise DuplicateAllocation(allocation_id)
            allocation = Allocation(
                id=allocation_id,
                cap=cap,
                base_units=base_units,
                tick_count=0,
                total_released=0,
                state=STATE_REGISTERED,
                created_at=self.clock.now(),
            )
            self._authorize(allocation)
            self._records[allocation_id] = allocation
        logger.info("allocation registered id=%s cap=%s base_units=%s", allocation_id, cap, base_units)
        return allocation

    def activate(self, allocation_id: str) -> Allocation:
        with self._lock:
            current = self._require(allocation_id)
            if current.state == STATE_ACTIVE:
                if current.pause_requested:
                    logger.info("allocation deferred pause cancelled id=%s", allocation_id)
                    return self._store(replace(current, pause_requested=False))
                return current
            if current.state == STATE_COMPLETED:
                raise AlreadyCompleted(allocation_id)
            limit = self.max_concurrent_allocations
            if limit is not None and self.active_count() >= limit:
                raise CapacityExceeded(f"{allocation_id}:max_concurrent_allocations={limit}")
            updated = self._store(replace(current, state=STATE_ACTIVE, pause_requested=False))
        logger.info("allocation activated id=%s from=%s", allocation_id, current.state)
        return updated

    def pause(self, allocation_id: str) -> Allocation:
        with self._lock:
            current = self._require(allocation_id)
            if current.state != STATE_ACTIVE:
                return current
            if allocation_id in self._in_flight:
                # Applied by settle_release once the current release is done.
                logger.info("allocation pause deferred id=%s reason=RELEASE_IN_FLIGHT", allocation_id)
                return self._store(replace(current, pause_requested=True))
            updated = self._store(replace(current, state=STATE_PAUSED))
        logger.info("allocation paused id=%s", allocation_id)
        return updated

    def remove(self, allocation_id: str) -> Allocation:
        with self._lock:
            current = self._require(allocation_id)
            del self._records[allocation_id]
            self._retired_ids.add(allocation_id)
            self._in_flight.discard(allocation_id)
        logger.info("allocation removed id=%s prior_state=%s", allocation_id, current.state)
        return replace(current, state=STATE_REMOVED, pause_requested=False)

    def get(self, allocation_id: str) -> Allocation:
        with self._lock:
            return self._require(allocation_id)

    def list_active(self) -> ActiveAllocationView:
        return ActiveAllocationView(registry=self)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for record in self._records.values() if record.state == STATE_ACTIVE)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ---- scheduler operations ----
    def begin_release(self, allocation_id: str) -> Allocation | None:
        with self._lock:
            current = self._require(allocation_id)
            if current.state != STATE_ACTIVE or allocation_id in self._in_flight:
                return None
            self._in_flight.add(allocation_id)
            return current

    def is_in_flight(self, allocation_id: str) -> bool:
        with self._lock:
            return allocation_id in self._in_flight

    def settle_release(self, allocation_id: str, *, delivered_units: int, limit: int | None = None) -> Allocation:
        """Record a finished release attempt.

        ``limit`` is the policy ceiling for the allocation; reaching it (or the
        cap) completes the allocation.
        """
        if delivered_units < 0:
            raise InvalidConfig("delivered_units must be >= 0")
        with self._lock:
            self._in_flight.discard(allocation_id)
            current = self._require(allocation_id)
            total = current.total_released + delivered_units
            if total > current.cap:
                raise InvalidConfig(
                    f"{allocation_id}:release of {delivered_units} would exceed cap {current.cap}"
                )
            ceiling = current.cap if limit is None else min(current.cap, limit)
            state = current.state
            if total >= ceiling:
                state = STATE_COMPLETED
            elif current.pause_requested:
                state = STATE_PAUSED
            updated = self._store(
                replace(
                    current,
                    tick_count=current.tick_count + 1,
                    total_released=total,
                    state=state,
                    pause_requested=False,
                )
            )
        if state != current.state:
            logger.info("allocation transitioned id=%s from=%s to=%s", allocation_id, current.state, state)
        return updated

    def mark_completed(self, allocation_id: str) -> Allocation:
        with self._lock:
            self._in_flight.discard(allocation_id)
            current = self._require(allocation_id)
            if current.state == STATE_COMPLETED:
                return current
            updated = self._store(replace(current, state=STATE_COMPLETED, pause_requested=False))
        logger.info(
            "allocation completed id=%s total_released=%s cap=%s",
            allocation_id,
            updated.total_released,
            updated.cap,
        )
        return updated

    # ---- internals ----
    def _ordered_active_ids(self) -> list[str]:
        with self._lock:
            active = [record for record in self._records.values() if record.state == STATE_ACTIVE]
        active.sort(key=lambda record: (record.created_at, record.id))
        return [record.id for record in active]

    def _require(self, allocation_id: str) -> Allocation:
        record = self._records.get(allocation_id)
        if record is None:
            raise AllocationNotFound(allocation_id)
        return record

    def _store(self, allocation: Allocation) -> Allocation:
        self._records[allocation.id] = allocation
        return allocation

    def _authorize(self, allocation: Allocation) -> None:
        if self.registration_check is None:
            return
        verdict = self.registration_check(allocation)
        if verdict is False:
            raise Unauthorized(allocation.id)


def _normalize_id(allocation_id: str | None) -> str:
    if allocation_id is None:
        return uuid.uuid4().hex
    if not isinstance(allocation_id, str):
        raise InvalidConfig("allocation id must be a string")
    normalized = allocation_id.strip()
    if not normalized:
        raise InvalidConfig("allocation id cannot be blank")
    return normalized


def _validate_units(*, cap: int, base_units: int) -> None:
    for name, value in (("cap", cap), ("base_units", base_units)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidConfig(f"{name} must be an integer")
    if base_units < 1:
        raise InvalidConfig("base_units must be >= 1")
    if cap < base_units:
        raise InvalidConfig("cap must be >= base_units")
    if cap > UNITS_MAX:
        raise InvalidConfig(f"cap must be <= {UNITS_MAX}")
