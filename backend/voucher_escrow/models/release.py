"""
Voucher Escrow - Release Schemas
Attempt bookkeeping, outcomes and service envelopes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from voucher_escrow.core.types import ListingId, TokenAmount


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class ReleaseAction(str, Enum):
    """Admin transaction kinds the executor may submit."""
    RELEASE = "release"
    REFUND = "refund"


class AttemptStatus(str, Enum):
    """ReleaseAttempt lifecycle."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    """Result of one executor run."""
    RELEASED = "released"
    REFUNDED = "refunded"
    SKIPPED = "skipped"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Distinguishes retryable from structural failures."""
    TRANSIENT = "transient"
    STRUCTURAL = "structural"


class EnqueueSource(str, Enum):
    """Where a release attempt came from."""
    SCAN = "scan"
    EVENT = "event"
    MANUAL = "manual"


class ServiceState(str, Enum):
    """Service controller states."""
    STOPPED = "STOPPED"
    INITIALIZING = "INITIALIZING"
    READY = "READY"
    SUBSCRIBED = "SUBSCRIBED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


# =============================================================================
# ATTEMPTS & OUTCOMES
# =============================================================================

class ReleaseAttempt(BaseModel):
    """In-memory bookkeeping for one listing's release/refund."""
    listing_id: ListingId
    action: ReleaseAction = ReleaseAction.RELEASE
    status: AttemptStatus = AttemptStatus.PENDING
    source: EnqueueSource = EnqueueSource.SCAN
    attempt_count: int = 0
    last_error: Optional[str] = None
    failure: Optional[FailureKind] = None
    tx_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def touch(self, status: AttemptStatus) -> None:
        self.status = status
        self.updated_at = _utcnow()


class ReleaseOutcome(BaseModel):
    """What `execute(listing_id)` reports back."""
    listing_id: int
    action: ReleaseAction
    kind: OutcomeKind
    reason: Optional[str] = None
    failure: Optional[FailureKind] = None
    tx_ref: Optional[str] = None
    amount: Optional[TokenAmount] = None
    recipient: Optional[str] = None
    fee_used: Optional[int] = None

    @property
    def is_benign(self) -> bool:
        """Completed, or nothing left to do because the listing is terminal."""
        if self.kind in (OutcomeKind.RELEASED, OutcomeKind.REFUNDED):
            return True
        return self.kind == OutcomeKind.SKIPPED and self.reason == "already terminal"

    @property
    def message(self) -> str:
        if self.kind == OutcomeKind.RELEASED:
            return f"Payment released for listing #{self.listing_id}"
        if self.kind == OutcomeKind.REFUNDED:
            return f"Payment refunded for listing #{self.listing_id}"
        if self.kind == OutcomeKind.SKIPPED:
            return f"Listing #{self.listing_id} skipped: {self.reason}"
        return f"{self.action.value.capitalize()} failed for listing #{self.listing_id} ({self.failure.value if self.failure else 'unknown'}): {self.reason}"


class ScanResult(BaseModel):
    """Summary of one reconciliation pass."""
    processed: int = 0
    errors: int = 0
    scanned: int = 0
    next_id: Optional[int] = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None


# =============================================================================
# SERVICE ENVELOPES
# =============================================================================

class OperationResult(BaseModel):
    """Success/failure envelope for lifecycle operations."""
    success: bool
    message: str
    failure: Optional[FailureKind] = None
    data: Optional[dict[str, Any]] = None


class ServiceStatus(BaseModel):
    """Operator / health-check view of the service."""
    running: bool
    state: ServiceState
    admin_identity: Optional[str] = None
    ledger_endpoint: Optional[str] = None
    escrow_address: Optional[str] = None
    marketplace_address: Optional[str] = None
    subscribed: bool = False
    last_error: Optional[str] = None
    last_scan: Optional[ScanResult] = None
    active_attempts: list[ReleaseAttempt] = Field(default_factory=list)
