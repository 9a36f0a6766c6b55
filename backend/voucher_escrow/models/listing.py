"""
Voucher Escrow - Listing Schemas
Read-side view of a marketplace listing as the ledger reports it.
"""

from enum import IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from voucher_escrow.core.types import ListingId, TokenAmount


class ListingStatus(IntEnum):
    """Escrow lifecycle states. Values match the ledger's on-chain enum."""
    NONE = 0
    LISTED = 1
    LOCKED = 2
    REVEALED = 3
    BUYER_CONFIRMED = 4
    BUYER_DISPUTED = 5
    AWAITING_ADMIN = 6
    RELEASED = 7
    REFUNDED = 8
    CANCELLED = 9


STATUS_LABELS: dict[ListingStatus, str] = {
    ListingStatus.NONE: "None",
    ListingStatus.LISTED: "Listed",
    ListingStatus.LOCKED: "Locked",
    ListingStatus.REVEALED: "Revealed",
    ListingStatus.BUYER_CONFIRMED: "Confirmed",
    ListingStatus.BUYER_DISPUTED: "Disputed",
    ListingStatus.AWAITING_ADMIN: "Awaiting Admin",
    ListingStatus.RELEASED: "Released",
    ListingStatus.REFUNDED: "Refunded",
    ListingStatus.CANCELLED: "Cancelled",
}


class Listing(BaseModel):
    """One voucher sale offer."""
    model_config = ConfigDict(from_attributes=True)

    id: ListingId
    seller: str
    buyer: Optional[str] = None
    price: TokenAmount
    value: TokenAmount = 0
    expiry: int = Field(0, ge=0)  # unix seconds, 0 = no expiry
    status: ListingStatus
    metadata_ref: str = ""
