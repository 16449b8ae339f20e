"""Policy engine: safety caps and hooks gating every candidate release."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
import logging
import threading
from typing import Any

from .contracts import (
    OUTCOME_CLIPPED,
    OUTCOME_REJECTED,
    REASON_ALLOCATION_CAP,
    REASON_GLOBAL_TICK_CAP,
    REASON_PRE_HOOK_CLIP,
    REASON_PRE_HOOK_ERROR,
    REASON_PRE_HOOK_VETO,
    Allocation,
    ReleaseEvent,
)
from .errors import InvalidConfig
from .registry import RegistrationCheck


logger = logging.getLogger(__name__)

PreReleaseHook = Callable[[ReleaseEvent], Any]
PostReleaseHook = Callable[[ReleaseEvent], Any]


@dataclass(frozen=True)
class PolicyConfig:
    """Caps and hooks applied to every allocation served by one engine.

    ``None`` limits are unlimited. ``allocation_overrides`` replaces
    ``max_units_per_allocation`` for the listed allocation ids.
    """

    max_units_per_allocation: int | None = None
    max_concurrent_allocations: int | None = None
    max_units_per_tick: int | None = None
    pre_release_hook: PreReleaseHook | None = None
    post_release_hook: PostReleaseHook | None = None
    allocation_overrides: Mapping[str, int] = field(default_factory=dict)
    registration_check: RegistrationCheck | None = None

    def __post_init__(self) -> None:
        for name in ("max_units_per_allocation", "max_concurrent_allocations", "max_units_per_tick"):
            _require_optional_positive(getattr(self, name), name)
        for allocation_id, limit in self.allocation_overrides.items():
            _require_optional_positive(limit, f"allocation_overrides.{allocation_id}")
        object.__setattr__(self, "allocation_overrides", dict(self.allocation_overrides))

    def limit_for(self, allocation_id: str) -> int | None:
        if allocation_id in self.allocation_overrides:
            return self.allocation_overrides[allocation_id]
        return self.max_units_per_allocation

    def as_dict(self) -> dict[str, Any]:
        return {
            "max_units_per_allocation": self.max_units_per_allocation,
            "max_concurrent_allocations": self.max_concurrent_allocations,
            "max_units_per_tick": self.max_units_per_tick,
            "allocation_overrides": dict(sorted(self.allocation_overrides.items())),
            "pre_release_hook": self.pre_release_hook is not None,
            "post_release_hook": self.post_release_hook is not None,
            "registration_check": self.registration_check is not None,
        }


@dataclass(frozen=True)
class PolicyDecision:
    event: ReleaseEvent

    @property
    def admitted(self) -> bool:
        return self.event.admitted


class PolicyEngine:
    def __init__(self, config: PolicyConfig | None = None) -> None:
        self.config = config or PolicyConfig()
        self._admitted_this_tick = 0
        self._lock = threading.Lock()

    @property
    def admitted_this_tick(self) -> int:
        with self._lock:
            return self._admitted_this_tick

    def begin_tick(self, tick: int) -> None:
        with self._lock:
            self._admitted_this_tick = 0
        logger.debug("policy tick budget reset tick=%s max_units_per_tick=%s", tick, self.config.max_units_per_tick)

    def allocation_ceiling(self, allocation: Allocation) -> int:
        limit = self.config.limit_for(allocation.id)
        if limit is None:
            return allocation.cap
        return min(allocation.cap, limit)

    def admit(self, event: ReleaseEvent, allocation: Allocation) -> PolicyDecision:
        with self._lock:
            limit = self.config.max_units_per_tick
            if limit is not None:
                remaining = limit - self._admitted_this_tick
                if remaining <= 0:
                    return self._decided(_reject(event, REASON_GLOBAL_TICK_CAP))
                if event.delivered_units > remaining:
                    event = _clip(event, remaining, REASON_GLOBAL_TICK_CAP)

            room = self.allocation_ceiling(allocation) - allocation.total_released
            if room <= 0:
                return self._decided(_reject(event, REASON_ALLOCATION_CAP))
            if event.delivered_units > room:
                event = _clip(event, room, REASON_ALLOCATION_CAP)

            # Reserved before the hook runs; the hook may only shrink the reservation.
            reserved = event.delivered_units
            self._admitted_this_tick += reserved

        final = self._apply_pre_release_hook(event)
        if final.delivered_units != reserved:
            with self._lock:
                self._admitted_this_tick -= reserved - final.delivered_units
        return self._decided(final)

    def _decided(self, event: ReleaseEvent) -> PolicyDecision:
        if not event.admitted:
            logger.debug("release rejected allocation_id=%s reason=%s", event.allocation_id, event.reason_code)
        return PolicyDecision(event=event)

    def after_release(self, event: ReleaseEvent) -> None:
        hook = self.config.post_release_hook
        if hook is None:
            return
        try:
            hook(event)
        except Exception:
            logger.warning(
                "post-release hook failed allocation_id=%s outcome=%s",
                event.allocation_id,
                event.outcome,
                exc_info=True,
            )

    def _apply_pre_release_hook(self, event: ReleaseEvent) -> ReleaseEvent:
        hook = self.config.pre_release_hook
        if hook is None:
            return event
        try:
            verdict = hook(event)
        except Exception:
            logger.warning("pre-release hook failed allocation_id=%s", event.allocation_id, exc_info=True)
            return _reject(event, REASON_PRE_HOOK_ERROR)
        if verdict is None or verdict is True:
            return event
        if verdict is False:
            return _reject(event, REASON_PRE_HOOK_VETO)
        if isinstance(verdict, int):
            if verdict <= 0:
                return _reject(event, REASON_PRE_HOOK_VETO)
            if verdict < event.delivered_units:
                return _clip(event, verdict, REASON_PRE_HOOK_CLIP)
            return event
        logger.warning(
            "pre-release hook returned unsupported verdict allocation_id=%s verdict=%r",
            event.allocation_id,
            verdict,
        )
        return _reject(event, REASON_PRE_HOOK_ERROR)


def _reject(event: ReleaseEvent, reason: str) -> ReleaseEvent:
    return replace(event, delivered_units=0, outcome=OUTCOME_REJECTED, reason_code=reason)


def _clip(event: ReleaseEvent, delivered_units: int, reason: str) -> ReleaseEvent:
    return replace(event, delivered_units=delivered_units, outcome=OUTCOME_CLIPPED, reason_code=reason)


def _require_optional_positive(value: Any, field_name: str) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfig(f"{field_name} must be an integer when set")
    if value < 1:
        raise InvalidConfig(f"{field_name} must be >= 1 when set")
