from .listing import STATUS_LABELS, Listing, ListingStatus
from .release import (
    AttemptStatus,
    EnqueueSource,
    FailureKind,
    OperationResult,
    OutcomeKind,
    ReleaseAction,
    ReleaseAttempt,
    ReleaseOutcome,
    ScanResult,
    ServiceState,
    ServiceStatus,
)

__all__ = [
    "STATUS_LABELS",
    "Listing",
    "ListingStatus",
    "AttemptStatus",
    "EnqueueSource",
    "FailureKind",
    "OperationResult",
    "OutcomeKind",
    "ReleaseAction",
    "ReleaseAttempt",
    "ReleaseOutcome",
    "ScanResult",
    "ServiceState",
    "ServiceStatus",
]
