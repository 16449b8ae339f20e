"""Release ladder: capped doubling release of discrete units through pluggable sinks."""

from .clock import ElapsedTickClock, SimulatedClock, TickSource
from .config import PolicyConfigError, RunProfile, load_policy_config, load_run_profile
from .contracts import (
    ALLOCATION_STATES,
    OUTCOME_CLIPPED,
    OUTCOME_DELIVERED,
    OUTCOME_FAILED,
    OUTCOME_REJECTED,
    RELEASE_OUTCOMES,
    STATE_ACTIVE,
    STATE_COMPLETED,
    STATE_PAUSED,
    STATE_REGISTERED,
    STATE_REMOVED,
    UNITS_MAX,
    Allocation,
    ReleaseContractError,
    ReleaseEvent,
    doubling_units,
)
from .engine import ReleaseEngine
from .errors import (
    AllocationNotFound,
    AlreadyCompleted,
    CapacityExceeded,
    DuplicateAllocation,
    InvalidConfig,
    ReleaseLadderError,
    Unauthorized,
    reason_code,
)
from .observability import ReleaseRunMetrics
from .policy import PolicyConfig, PolicyDecision, PolicyEngine
from .providers import (
    ConsoleDeliveryProvider,
    DeliveryError,
    DeliveryProvider,
    DeliveryReceipt,
    JsonlDeliveryProvider,
    QueueDeliveryProvider,
    RecordingDeliveryProvider,
    ThreadPoolDeliveryProvider,
)
from .registry import ActiveAllocationView, AllocationRegistry
from .scheduler import ReleaseScheduler

__all__ = [
    "ElapsedTickClock",
    "SimulatedClock",
    "TickSource",
    "PolicyConfigError",
    "RunProfile",
    "load_policy_config",
    "load_run_profile",
    "ALLOCATION_STATES",
    "OUTCOME_CLIPPED",
    "OUTCOME_DELIVERED",
    "OUTCOME_FAILED",
    "OUTCOME_REJECTED",
    "RELEASE_OUTCOMES",
    "STATE_ACTIVE",
    "STATE_COMPLETED",
    "STATE_PAUSED",
    "STATE_REGISTERED",
    "STATE_REMOVED",
    "UNITS_MAX",
    "Allocation",
    "ReleaseContractError",
    "ReleaseEvent",
    "doubling_units",
    "ReleaseEngine",
    "AllocationNotFound",
    "AlreadyCompleted",
    "CapacityExceeded",
    "DuplicateAllocation",
    "InvalidConfig",
    "ReleaseLadderError",
    "Unauthorized",
    "reason_code",
    "ReleaseRunMetrics",
    "PolicyConfig",
    "PolicyDecision",
    "PolicyEngine",
    "ConsoleDeliveryProvider",
    "DeliveryError",
    "DeliveryProvider",
    "DeliveryReceipt",
    "JsonlDeliveryProvider",
    "QueueDeliveryProvider",
    "RecordingDeliveryProvider",
    "ThreadPoolDeliveryProvider",
    "ActiveAllocationView",
    "AllocationRegistry",
    "ReleaseScheduler",
]
