"""Release ladder contracts: allocation snapshots, release events, doubling math."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


UNITS_MAX = 2**63 - 1

STATE_REGISTERED = "REGISTERED"
STATE_ACTIVE = "ACTIVE"
STATE_PAUSED = "PAUSED"
STATE_COMPLETED = "COMPLETED"
STATE_REMOVED = "REMOVED"
ALLOCATION_STATES: tuple[str, ...] = (
    STATE_REGISTERED,
    STATE_ACTIVE,
    STATE_PAUSED,
    STATE_COMPLETED,
    STATE_REMOVED,
)

OUTCOME_DELIVERED = "DELIVERED"
OUTCOME_CLIPPED = "CLIPPED"
OUTCOME_REJECTED = "REJECTED"
OUTCOME_FAILED = "FAILED"
RELEASE_OUTCOMES: tuple[str, ...] = (
    OUTCOME_DELIVERED,
    OUTCOME_CLIPPED,
    OUTCOME_REJECTED,
    OUTCOME_FAILED,
)

REASON_CAP_CLIP = "CAP_CLIP"
REASON_GLOBAL_TICK_CAP = "GLOBAL_TICK_CAP"
REASON_ALLOCATION_CAP = "ALLOCATION_CAP"
REASON_PRE_HOOK_VETO = "PRE_HOOK_VETO"
REASON_PRE_HOOK_CLIP = "PRE_HOOK_CLIP"
REASON_PRE_HOOK_ERROR = "PRE_HOOK_ERROR"
REASON_DELIVERY_ERROR = "DELIVERY_ERROR"


class ReleaseContractError(ValueError):
    """Raised when a release event violates the event contract."""


@dataclass(frozen=True)
class Allocation:
    """Read-only snapshot of one registered allocation."""

    id: str
    cap: int
    base_units: int
    tick_count: int
    total_released: int
    state: str
    created_at: int
    pause_requested: bool = False

    @property
    def remaining(self) -> int:
        return self.cap - self.total_released

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cap": self.cap,
            "base_units": self.base_units,
            "tick_count": self.tick_count,
            "total_released": self.total_released,
            "state": self.state,
            "created_at": self.created_at,
            "pause_requested": self.pause_requested,
        }


@dataclass(frozen=True)
class ReleaseEvent:
    allocation_id: str
    release_time: int
    units: int
    delivered_units: int
    outcome: str
    tick_index: int
    reason_code: str | None = None

    def __post_init__(self) -> None:
        if self.outcome not in RELEASE_OUTCOMES:
            raise ReleaseContractError(f"outcome must be one of {list(RELEASE_OUTCOMES)}")
        if self.units < 0 or self.delivered_units < 0:
            raise ReleaseContractError("units and delivered_units must be >= 0")
        if self.delivered_units > self.units:
            raise ReleaseContractError("delivered_units cannot exceed units")
        if self.outcome in (OUTCOME_REJECTED, OUTCOME_FAILED) and self.delivered_units != 0:
            raise ReleaseContractError(f"{self.outcome} events must carry delivered_units=0")

    @property
    def admitted(self) -> bool:
        return self.outcome in (OUTCOME_DELIVERED, OUTCOME_CLIPPED)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "allocation_id": self.allocation_id,
            "release_time": self.release_time,
            "units": self.units,
            "delivered_units": self.delivered_units,
            "outcome": self.outcome,
            "tick_index": self.tick_index,
        }
        if self.reason_code:
            payload["reason_code"] = self.reason_code
        return payload


def doubling_units(base_units: int, tick_index: int) -> int:
    """Return ``base_units * 2**tick_index`` saturated at ``UNITS_MAX``.

    Saturation is decided from bit lengths so the power is never materialised
    for long-lived allocations.
    """
    if base_units < 1:
        raise ReleaseContractError("base_units must be >= 1")
    if tick_index < 0:
        raise ReleaseContractError("tick_index must be >= 0")
    if base_units.bit_length() + tick_index > UNITS_MAX.bit_length():
        return UNITS_MAX
    return min(base_units << tick_index, UNITS_MAX)


def clip_to_remaining(units: int, *, total_released: int, ceiling: int) -> int:
    return max(0, min(units, ceiling - total_released))
