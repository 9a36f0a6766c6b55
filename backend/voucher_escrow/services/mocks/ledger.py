"""
Voucher Escrow - Ledger Mock Interface
In-memory escrow/marketplace ledger

This is a MOCK implementation.
In production, the service talks to the EVM contracts (see bridges/evm_ledger.py).

Contract:
    - Same interface and error types as the real ledger client
    - Enforces the admin signer and the escrow lifecycle on submission
    - Fault injection for reads, submissions and confirmations
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Optional

from voucher_escrow.bridges.ledger import (
    BUYER_CONFIRMED_EVENT,
    EventCallback,
    LedgerClient,
    LedgerRevertError,
    LedgerTransportError,
    ListingNotFound,
    SubscriptionHandle,
    TransactionHandle,
    TransactionReceipt,
)
from voucher_escrow.models.listing import Listing, ListingStatus
from voucher_escrow.models.release import ReleaseAction
from voucher_escrow.services.validator import can_refund, is_legal_transition, is_terminal

DEFAULT_ADMIN = "0x00000000000000000000000000000000000a11ce"
MOCK_FEE = 21_000


class LedgerMock(LedgerClient):
    """
    Mock Ledger System Interface

    Listings advance through the lifecycle via the helper methods below.
    Every successful admin transaction is recorded in `submissions`.
    """

    def __init__(
        self,
        admin_identity: str = DEFAULT_ADMIN,
        signer_identity: Optional[str] = None,
    ) -> None:
        self._admin = admin_identity
        self._signer = signer_identity or admin_identity
        self._listings: dict[int, Listing] = {}
        self._next_id = 1
        self._subscriptions: dict[str, tuple[str, EventCallback]] = {}
        self._tx_counter = 0
        self._pending: dict[str, TransactionReceipt] = {}
        self._block = 0

        self.submissions: list[TransactionHandle] = []
        self.read_count = 0
        self.event_log: list[dict] = []

        # Fault injection
        self.unreachable = False
        self.fail_reads: set[int] = set()
        self.revert_next: Optional[str] = None
        self.hang_confirmations = False
        self.confirmation_delay = 0.0
        self.confirmation_error: Optional[Exception] = None

    # =========================================================================
    # LEDGER INTERFACE
    # =========================================================================

    @property
    def endpoint(self) -> str:
        return "mock://ledger"

    @property
    def signer_identity(self) -> str:
        return self._signer

    async def connect(self) -> None:
        if self.unreachable:
            raise LedgerTransportError("mock ledger unreachable")

    async def get_listing(self, listing_id: int) -> Listing:
        self.read_count += 1
        self._check_reachable()
        if listing_id in self.fail_reads:
            raise LedgerTransportError(f"read failed for listing #{listing_id}")
        listing = self._listings.get(listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        return listing.model_copy()

    async def get_next_id(self) -> int:
        self._check_reachable()
        return self._next_id

    async def get_admin_identity(self) -> str:
        self._check_reachable()
        return self._admin

    async def submit_release(self, listing_id: int) -> TransactionHandle:
        return self._submit(listing_id, ReleaseAction.RELEASE)

    async def submit_refund(self, listing_id: int) -> TransactionHandle:
        return self._submit(listing_id, ReleaseAction.REFUND)

    async def await_confirmation(self, handle: TransactionHandle) -> TransactionReceipt:
        if self.hang_confirmations:
            await asyncio.Event().wait()
        if self.confirmation_delay:
            await asyncio.sleep(self.confirmation_delay)
        if self.confirmation_error is not None:
            raise self.confirmation_error
        receipt = self._pending.pop(handle.tx_ref, None)
        if receipt is None:
            raise LedgerTransportError(f"unknown transaction {handle.tx_ref}")
        return receipt

    async def subscribe(self, event_name: str, callback: EventCallback) -> SubscriptionHandle:
        handle = SubscriptionHandle(subscription_id=uuid.uuid4().hex, event_name=event_name)
        self._subscriptions[handle.subscription_id] = (event_name, callback)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self._subscriptions.pop(handle.subscription_id, None)

    # =========================================================================
    # LIFECYCLE HELPERS
    # =========================================================================

    def create_listing(
        self,
        seller: str,
        price: int,
        value: Optional[int] = None,
        expiry: int = 0,
        metadata_ref: str = "",
    ) -> int:
        """Seller lists a voucher. Returns the assigned id."""
        listing_id = self._next_id
        self._next_id += 1
        self._listings[listing_id] = Listing(
            id=listing_id,
            seller=seller,
            price=price,
            value=price if value is None else value,
            expiry=expiry,
            status=ListingStatus.LISTED,
            metadata_ref=metadata_ref,
        )
        return listing_id

    def add_listing(
        self,
        status: ListingStatus,
        price: int = 100,
        seller: str = "0xseller",
        buyer: Optional[str] = "0xbuyer",
    ) -> int:
        """Insert a listing directly at `status`, bypassing the lifecycle."""
        listing_id = self.create_listing(seller=seller, price=price)
        listing = self._listings[listing_id]
        listing.status = status
        if status not in (ListingStatus.LISTED, ListingStatus.CANCELLED):
            listing.buyer = buyer
        return listing_id

    def lock(self, listing_id: int, buyer: str) -> None:
        self._advance(listing_id, ListingStatus.LOCKED)
        self._listings[listing_id].buyer = buyer

    def reveal(self, listing_id: int) -> None:
        self._advance(listing_id, ListingStatus.REVEALED)

    async def confirm(self, listing_id: int) -> None:
        """Buyer confirms; delivers the confirmation event to subscribers."""
        self._advance(listing_id, ListingStatus.BUYER_CONFIRMED)
        await self.emit(BUYER_CONFIRMED_EVENT, listing_id)

    def dispute(self, listing_id: int) -> None:
        self._advance(listing_id, ListingStatus.BUYER_DISPUTED)

    def cancel(self, listing_id: int) -> None:
        self._advance(listing_id, ListingStatus.CANCELLED)

    def set_status(self, listing_id: int, status: ListingStatus) -> None:
        self._listings[listing_id].status = status

    async def emit(self, event_name: str, listing_id: int) -> None:
        """Deliver an event to every subscriber of `event_name`."""
        for name, callback in list(self._subscriptions.values()):
            if name == event_name:
                await callback(listing_id)

    def listener_count(self, event_name: str) -> int:
        return sum(1 for name, _ in self._subscriptions.values() if name == event_name)

    def status_of(self, listing_id: int) -> ListingStatus:
        return self._listings[listing_id].status

    def reset(self) -> None:
        """Reset mock state."""
        self._listings = {}
        self._next_id = 1
        self._pending = {}
        self.submissions = []
        self.read_count = 0
        self.event_log = []

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise LedgerTransportError("mock ledger unreachable")

    def _advance(self, listing_id: int, target: ListingStatus) -> None:
        listing = self._listings.get(listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        if not is_legal_transition(listing.status, target):
            raise LedgerRevertError(f"Invalid transition {listing.status.name} -> {target.name}")
        listing.status = target

    def _submit(self, listing_id: int, action: ReleaseAction) -> TransactionHandle:
        self._check_reachable()
        if self.revert_next is not None:
            reason, self.revert_next = self.revert_next, None
            raise LedgerRevertError(reason)
        if self._signer.lower() != self._admin.lower():
            raise LedgerRevertError("Not admin")

        listing = self._listings.get(listing_id)
        if listing is None:
            raise LedgerRevertError("Listing does not exist")
        if is_terminal(listing.status):
            raise LedgerRevertError("Escrow: already finalized")

        if action == ReleaseAction.RELEASE:
            if listing.status not in (ListingStatus.BUYER_CONFIRMED, ListingStatus.AWAITING_ADMIN):
                raise LedgerRevertError("Not BUYER_CONFIRMED")
            listing.status = ListingStatus.RELEASED
            event = {"event": "Released", "id": listing_id, "seller": listing.seller, "amount": listing.price}
        else:
            if not (can_refund(listing.status) or listing.status == ListingStatus.AWAITING_ADMIN):
                raise LedgerRevertError("Not refundable")
            listing.status = ListingStatus.REFUNDED
            event = {"event": "Refunded", "id": listing_id, "buyer": listing.buyer, "amount": listing.price}

        self._tx_counter += 1
        self._block += 1
        tx_ref = f"0x{self._tx_counter:064x}"
        handle = TransactionHandle(tx_ref=tx_ref, listing_id=listing_id, action=action)
        self._pending[tx_ref] = TransactionReceipt(
            tx_ref=tx_ref,
            success=True,
            fee_used=MOCK_FEE,
            block_number=self._block,
        )
        self.submissions.append(handle)
        self.event_log.append({**event, "tx_ref": tx_ref, "timestamp": datetime.now(timezone.utc).isoformat()})
        return handle
