"""
Voucher Escrow - EVM Ledger Bridge

Talks to the deployed marketplace and escrow contracts over JSON-RPC.

- Reads listing state from the marketplace contract
- Signs releasePayment / refundPayment with the admin key
- Follows escrow events by polling logs (works on plain HTTP RPC endpoints)
"""

import asyncio
import logging
import uuid
from typing import Any, Optional

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted

from voucher_escrow.bridges.ledger import (
    EventCallback,
    LedgerClient,
    LedgerRevertError,
    LedgerTimeoutError,
    LedgerTransportError,
    ListingNotFound,
    SubscriptionHandle,
    TransactionHandle,
    TransactionReceipt,
)
from voucher_escrow.core.config import Settings
from voucher_escrow.models.listing import Listing, ListingStatus
from voucher_escrow.models.release import ReleaseAction

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
REVERT_PREFIX = "execution reverted:"

MARKETPLACE_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "getListing",
        "stateMutability": "view",
        "inputs": [{"name": "id", "type": "uint256"}],
        "outputs": [
            {"name": "listingId", "type": "uint256"},
            {"name": "seller", "type": "address"},
            {"name": "metadataHash", "type": "bytes32"},
            {"name": "partialPattern", "type": "string"},
            {"name": "price", "type": "uint256"},
            {"name": "value", "type": "uint256"},
            {"name": "expiryTimestamp", "type": "uint256"},
            {"name": "status", "type": "uint8"},
            {"name": "buyer", "type": "address"},
            {"name": "createdAt", "type": "uint256"},
            {"name": "aiInitialProof", "type": "bytes32"},
        ],
    },
    {
        "type": "function",
        "name": "nextId",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

ESCROW_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "admin",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "releasePayment",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "id", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "refundPayment",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "id", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "BuyerConfirmed",
        "anonymous": False,
        "inputs": [{"name": "id", "type": "uint256", "indexed": True}],
    },
    {
        "type": "event",
        "name": "Released",
        "anonymous": False,
        "inputs": [
            {"name": "id", "type": "uint256", "indexed": True},
            {"name": "seller", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "Refunded",
        "anonymous": False,
        "inputs": [
            {"name": "id", "type": "uint256", "indexed": True},
            {"name": "buyer", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
]

CONTRACT_FUNCTIONS: dict[ReleaseAction, str] = {
    ReleaseAction.RELEASE: "releasePayment",
    ReleaseAction.REFUND: "refundPayment",
}


def _revert_reason(exc: ContractLogicError) -> str:
    message = getattr(exc, "message", None) or str(exc)
    if message.startswith(REVERT_PREFIX):
        message = message[len(REVERT_PREFIX):]
    return message.strip() or "execution reverted"


class EvmLedgerClient(LedgerClient):
    """Ledger client for the voucher marketplace + escrow contracts."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        marketplace_address: str,
        escrow_address: str,
        confirmation_depth: int = 1,
        tx_timeout: float = 120.0,
        poll_interval: float = 5.0,
    ) -> None:
        self._rpc_url = rpc_url
        self._account = Account.from_key(private_key)
        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self._marketplace_address = AsyncWeb3.to_checksum_address(marketplace_address)
        self._escrow_address = AsyncWeb3.to_checksum_address(escrow_address)
        self._marketplace = self._w3.eth.contract(address=self._marketplace_address, abi=MARKETPLACE_ABI)
        self._escrow = self._w3.eth.contract(address=self._escrow_address, abi=ESCROW_ABI)
        self.confirmation_depth = max(1, confirmation_depth)
        self.tx_timeout = tx_timeout
        self.poll_interval = poll_interval

        self._chain_id: Optional[int] = None
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._unsettled_nonces = 0
        self._nonce_stale = False
        self._pending_hashes: dict[str, Any] = {}
        self._poll_tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "EvmLedgerClient":
        return cls(
            rpc_url=settings.LEDGER_RPC_URL,
            private_key=settings.ADMIN_PRIVATE_KEY,
            marketplace_address=settings.MARKETPLACE_ADDRESS,
            escrow_address=settings.ESCROW_ADDRESS,
            confirmation_depth=settings.CONFIRMATION_DEPTH,
            tx_timeout=settings.TX_TIMEOUT_SECONDS,
            poll_interval=settings.EVENT_POLL_INTERVAL_SECONDS,
        )

    # =========================================================================
    # IDENTITY
    # =========================================================================

    @property
    def endpoint(self) -> str:
        return self._rpc_url

    @property
    def signer_identity(self) -> str:
        return self._account.address

    @property
    def escrow_address(self) -> Optional[str]:
        return self._escrow_address

    @property
    def marketplace_address(self) -> Optional[str]:
        return self._marketplace_address

    # =========================================================================
    # READS
    # =========================================================================

    async def connect(self) -> None:
        try:
            connected = await self._w3.is_connected()
            if connected:
                self._chain_id = await self._w3.eth.chain_id
        except Exception as e:
            raise LedgerTransportError(f"Ledger unreachable at {self._rpc_url}: {e}") from e
        if not connected:
            raise LedgerTransportError(f"Ledger unreachable at {self._rpc_url}")
        logger.info(f"[LEDGER] Connected to chain {self._chain_id} via {self._rpc_url}")

    async def get_listing(self, listing_id: int) -> Listing:
        try:
            raw = await self._marketplace.functions.getListing(listing_id).call()
        except ContractLogicError as e:
            raise ListingNotFound(listing_id) from e
        except Exception as e:
            raise LedgerTransportError(f"getListing({listing_id}) failed: {e}") from e

        (
            raw_id, seller, metadata_hash, _pattern, price, value,
            expiry, status, buyer, _created_at, _proof,
        ) = raw
        if raw_id == 0 or seller == ZERO_ADDRESS:
            raise ListingNotFound(listing_id)

        return Listing(
            id=raw_id,
            seller=seller,
            buyer=None if buyer == ZERO_ADDRESS else buyer,
            price=price,
            value=value,
            expiry=expiry,
            status=ListingStatus(status),
            metadata_ref=AsyncWeb3.to_hex(metadata_hash),
        )

    async def get_next_id(self) -> int:
        try:
            return int(await self._marketplace.functions.nextId().call())
        except Exception as e:
            raise LedgerTransportError(f"nextId() failed: {e}") from e

    async def get_admin_identity(self) -> str:
        try:
            return await self._escrow.functions.admin().call()
        except Exception as e:
            raise LedgerTransportError(f"admin() failed: {e}") from e

    # =========================================================================
    # ADMIN TRANSACTIONS
    # =========================================================================

    async def submit_release(self, listing_id: int) -> TransactionHandle:
        return await self._send(ReleaseAction.RELEASE, listing_id)

    async def submit_refund(self, listing_id: int) -> TransactionHandle:
        return await self._send(ReleaseAction.REFUND, listing_id)

    async def _allocate_nonce(self) -> int:
        async with self._nonce_lock:
            if self._next_nonce is None:
                self._next_nonce = await self._w3.eth.get_transaction_count(
                    self._account.address, "pending"
                )
            nonce = self._next_nonce
            self._next_nonce += 1
            self._unsettled_nonces += 1
            return nonce

    async def _settle_nonce(self, broadcast: bool) -> None:
        """
        Mark an allocated nonce as broadcast or abandoned.

        An abandoned nonce leaves a gap, so the counter is re-read from the
        node, but only once no other allocation is still waiting to broadcast.
        """
        async with self._nonce_lock:
            self._unsettled_nonces -= 1
            if not broadcast:
                self._nonce_stale = True
            if self._nonce_stale and self._unsettled_nonces == 0:
                self._next_nonce = None
                self._nonce_stale = False

    async def _send(self, action: ReleaseAction, listing_id: int) -> TransactionHandle:
        name = CONTRACT_FUNCTIONS[action]
        fn = getattr(self._escrow.functions, name)(listing_id)

        # Gas estimation happens here; a revert costs no nonce.
        try:
            tx = await fn.build_transaction({
                "from": self._account.address,
                "chainId": self._chain_id or await self._w3.eth.chain_id,
            })
        except ContractLogicError as e:
            raise LedgerRevertError(_revert_reason(e)) from e
        except Exception as e:
            raise LedgerTransportError(f"{name}({listing_id}) not built: {e}") from e

        try:
            nonce = await self._allocate_nonce()
        except Exception as e:
            raise LedgerTransportError(f"Nonce lookup failed for {name}({listing_id}): {e}") from e

        broadcast = False
        try:
            tx["nonce"] = nonce
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            broadcast = True
        except ContractLogicError as e:
            raise LedgerRevertError(_revert_reason(e)) from e
        except Exception as e:
            raise LedgerTransportError(f"{name}({listing_id}) not sent: {e}") from e
        finally:
            await self._settle_nonce(broadcast)

        tx_ref = AsyncWeb3.to_hex(tx_hash)
        self._pending_hashes[tx_ref] = tx_hash
        logger.info(f"[LEDGER] {name} sent for listing #{listing_id} with nonce {nonce}: {tx_ref}")
        return TransactionHandle(tx_ref=tx_ref, listing_id=listing_id, action=action)

    async def await_confirmation(self, handle: TransactionHandle) -> TransactionReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.tx_timeout
        tx_hash = self._pending_hashes.pop(handle.tx_ref, handle.tx_ref)

        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.tx_timeout, poll_latency=self.poll_interval / 2
            )
        except TimeExhausted as e:
            raise LedgerTimeoutError(f"No receipt for {handle.tx_ref} after {self.tx_timeout}s") from e
        except Exception as e:
            raise LedgerTransportError(f"Receipt lookup failed for {handle.tx_ref}: {e}") from e

        if receipt["status"] != 1:
            raise LedgerRevertError("transaction reverted")

        mined_in = receipt["blockNumber"]
        while True:
            try:
                head = await self._w3.eth.block_number
            except Exception as e:
                raise LedgerTransportError(f"block_number failed: {e}") from e
            if head - mined_in + 1 >= self.confirmation_depth:
                break
            if loop.time() >= deadline:
                raise LedgerTimeoutError(
                    f"{handle.tx_ref} not {self.confirmation_depth} blocks deep after {self.tx_timeout}s"
                )
            await asyncio.sleep(self.poll_interval)

        fee = receipt["gasUsed"] * receipt.get("effectiveGasPrice", 0)
        return TransactionReceipt(
            tx_ref=handle.tx_ref,
            success=True,
            fee_used=fee,
            block_number=mined_in,
        )

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def subscribe(self, event_name: str, callback: EventCallback) -> SubscriptionHandle:
        event = getattr(self._escrow.events, event_name)
        try:
            from_block = await self._w3.eth.block_number
        except Exception as e:
            raise LedgerTransportError(f"Cannot subscribe to {event_name}: {e}") from e

        handle = SubscriptionHandle(subscription_id=uuid.uuid4().hex, event_name=event_name)
        self._poll_tasks[handle.subscription_id] = asyncio.create_task(
            self._poll_logs(event, callback, from_block, handle)
        )
        logger.info(f"[LEDGER] Polling {event_name} on {self._escrow_address} from block {from_block}")
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        task = self._poll_tasks.pop(handle.subscription_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll_logs(self, event, callback: EventCallback, from_block: int, handle: SubscriptionHandle) -> None:
        next_block = from_block
        while True:
            try:
                head = await self._w3.eth.block_number
                if head >= next_block:
                    logs = await event.get_logs(from_block=next_block, to_block=head)
                    for log in logs:
                        await callback(int(log["args"]["id"]))
                    next_block = head + 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Retry the same block range next tick
                logger.warning(f"[LEDGER] {handle.event_name} poll failed at block {next_block}: {e}")
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        for subscription_id in list(self._poll_tasks):
            await self.unsubscribe(SubscriptionHandle(subscription_id=subscription_id, event_name=""))
        provider = self._w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
