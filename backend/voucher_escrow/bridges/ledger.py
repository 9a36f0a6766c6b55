"""
Voucher Escrow - Ledger Client Interface

Abstract base class every ledger integration must implement.

Contract:
    - The service does NOT own escrow state; the ledger does
    - Reads are always re-fetched, never cached across attempts
    - Only the admin signer may submit release/refund transactions
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from voucher_escrow.models.listing import Listing
from voucher_escrow.models.release import ReleaseAction

BUYER_CONFIRMED_EVENT = "BuyerConfirmed"

EventCallback = Callable[[int], Awaitable[None]]


# =============================================================================
# ERRORS
# =============================================================================

class LedgerError(Exception):
    """Base exception for ledger clients."""
    pass


class ListingNotFound(LedgerError):
    """Raised when a listing id has not been assigned."""

    def __init__(self, listing_id: int):
        super().__init__(f"Listing #{listing_id} not found")
        self.listing_id = listing_id


class LedgerRevertError(LedgerError):
    """Raised when the ledger refuses a transaction."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class LedgerTransportError(LedgerError):
    """Raised when the ledger gave no definitive answer."""
    pass


class LedgerTimeoutError(LedgerTransportError):
    """Raised when a transaction was not final within the allowed time."""
    pass


# =============================================================================
# HANDLES
# =============================================================================

class TransactionHandle(BaseModel):
    """A submitted, not yet final, transaction."""
    tx_ref: str
    listing_id: int
    action: ReleaseAction


class TransactionReceipt(BaseModel):
    """Final ledger acknowledgment of a transaction."""
    tx_ref: str
    success: bool
    fee_used: int = 0
    block_number: Optional[int] = None


class SubscriptionHandle(BaseModel):
    """Registration of a callback on a ledger event stream."""
    subscription_id: str
    event_name: str


# =============================================================================
# CLIENT
# =============================================================================

class LedgerClient(ABC):
    """
    Narrow interface to the escrow/marketplace ledger.

    All methods are I/O boundaries and therefore coroutines.
    """

    @property
    @abstractmethod
    def endpoint(self) -> str:
        """Human-readable ledger endpoint (RPC URL or 'mock')."""
        pass

    @property
    @abstractmethod
    def signer_identity(self) -> str:
        """Identity the client signs admin transactions with."""
        pass

    @property
    def escrow_address(self) -> Optional[str]:
        return None

    @property
    def marketplace_address(self) -> Optional[str]:
        return None

    @abstractmethod
    async def connect(self) -> None:
        """Establish connectivity. Raises LedgerTransportError if unreachable."""
        pass

    @abstractmethod
    async def get_listing(self, listing_id: int) -> Listing:
        """Read a listing. Raises ListingNotFound for unassigned ids."""
        pass

    @abstractmethod
    async def get_next_id(self) -> int:
        """Exclusive upper bound of assigned listing ids."""
        pass

    @abstractmethod
    async def get_admin_identity(self) -> str:
        """Admin identity recorded on the ledger."""
        pass

    @abstractmethod
    async def submit_release(self, listing_id: int) -> TransactionHandle:
        pass

    @abstractmethod
    async def submit_refund(self, listing_id: int) -> TransactionHandle:
        pass

    @abstractmethod
    async def await_confirmation(self, handle: TransactionHandle) -> TransactionReceipt:
        """
        Wait for finality.

        Raises:
            LedgerRevertError: The ledger refused the transaction
            LedgerTimeoutError: No final answer in time
        """
        pass

    @abstractmethod
    async def subscribe(self, event_name: str, callback: EventCallback) -> SubscriptionHandle:
        pass

    @abstractmethod
    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None

    async def submit(self, action: ReleaseAction, listing_id: int) -> TransactionHandle:
        if action == ReleaseAction.REFUND:
            return await self.submit_refund(listing_id)
        return await self.submit_release(listing_id)
