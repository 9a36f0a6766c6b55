"""
Voucher Escrow - Escrow State Validator

Local re-derivation of the ledger's escrow state machine.

The ledger remains the authority. This table exists so the service never
submits a transaction the ledger is certain to refuse.

Lifecycle:
    NONE → LISTED → LOCKED → REVEALED → {BUYER_CONFIRMED | BUYER_DISPUTED}
         → AWAITING_ADMIN → {RELEASED | REFUNDED}
    LISTED → CANCELLED

Admin actions:
    release  ← BUYER_CONFIRMED
    refund   ← LOCKED | BUYER_DISPUTED
"""

from typing import Optional

from pydantic import BaseModel

from voucher_escrow.models.listing import ListingStatus
from voucher_escrow.models.release import ReleaseAction

TERMINAL_STATUSES: frozenset[ListingStatus] = frozenset({
    ListingStatus.RELEASED,
    ListingStatus.REFUNDED,
    ListingStatus.CANCELLED,
})

# Valid lifecycle transitions: current_status -> allowed_next_statuses
LIFECYCLE_TRANSITIONS: dict[ListingStatus, frozenset[ListingStatus]] = {
    ListingStatus.NONE: frozenset({ListingStatus.LISTED}),
    ListingStatus.LISTED: frozenset({ListingStatus.LOCKED, ListingStatus.CANCELLED}),
    ListingStatus.LOCKED: frozenset({ListingStatus.REVEALED, ListingStatus.REFUNDED}),
    ListingStatus.REVEALED: frozenset({ListingStatus.BUYER_CONFIRMED, ListingStatus.BUYER_DISPUTED}),
    ListingStatus.BUYER_CONFIRMED: frozenset({ListingStatus.AWAITING_ADMIN, ListingStatus.RELEASED}),
    ListingStatus.BUYER_DISPUTED: frozenset({ListingStatus.AWAITING_ADMIN, ListingStatus.REFUNDED}),
    ListingStatus.AWAITING_ADMIN: frozenset({ListingStatus.RELEASED, ListingStatus.REFUNDED}),
    ListingStatus.RELEASED: frozenset(),
    ListingStatus.REFUNDED: frozenset(),
    ListingStatus.CANCELLED: frozenset(),
}

RELEASABLE_STATUSES: frozenset[ListingStatus] = frozenset({ListingStatus.BUYER_CONFIRMED})

REFUNDABLE_STATUSES: frozenset[ListingStatus] = frozenset({
    ListingStatus.LOCKED,
    ListingStatus.BUYER_DISPUTED,
})

ALREADY_TERMINAL = "already terminal"


class ValidationResult(BaseModel):
    """Allowed, or rejected with a reason."""
    allowed: bool
    reason: Optional[str] = None


def is_terminal(status: ListingStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_legal_transition(current: ListingStatus, target: ListingStatus) -> bool:
    """Whether the ledger's lifecycle permits current -> target."""
    return target in LIFECYCLE_TRANSITIONS.get(current, frozenset())


def can_release(status: ListingStatus) -> bool:
    return status in RELEASABLE_STATUSES


def can_refund(status: ListingStatus) -> bool:
    return status in REFUNDABLE_STATUSES


def check_release(status: ListingStatus) -> ValidationResult:
    if can_release(status):
        return ValidationResult(allowed=True)
    if is_terminal(status):
        return ValidationResult(allowed=False, reason=ALREADY_TERMINAL)
    if status == ListingStatus.BUYER_DISPUTED:
        return ValidationResult(allowed=False, reason="disputed by buyer")
    if status == ListingStatus.AWAITING_ADMIN:
        return ValidationResult(allowed=False, reason="awaiting admin decision")
    return ValidationResult(allowed=False, reason=f"not confirmed (status {status.name})")


def check_refund(status: ListingStatus) -> ValidationResult:
    if can_refund(status):
        return ValidationResult(allowed=True)
    if is_terminal(status):
        return ValidationResult(allowed=False, reason=ALREADY_TERMINAL)
    if status == ListingStatus.BUYER_CONFIRMED:
        return ValidationResult(allowed=False, reason="buyer confirmed; release instead")
    return ValidationResult(allowed=False, reason=f"not refundable (status {status.name})")


def check_action(action: ReleaseAction, status: ListingStatus) -> ValidationResult:
    if action == ReleaseAction.REFUND:
        return check_refund(status)
    return check_release(status)
