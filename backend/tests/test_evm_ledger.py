"""
Voucher Escrow - EVM Ledger Bridge Tests

Contract reads are stubbed; nothing here touches a network.
"""

import asyncio
from types import SimpleNamespace

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from voucher_escrow.bridges.evm_ledger import ZERO_ADDRESS, EvmLedgerClient, _revert_reason
from voucher_escrow.bridges.ledger import (
    BUYER_CONFIRMED_EVENT,
    LedgerRevertError,
    LedgerTimeoutError,
    LedgerTransportError,
    ListingNotFound,
    TransactionHandle,
)
from voucher_escrow.core.config import Settings
from voucher_escrow.models.listing import ListingStatus
from voucher_escrow.models.release import ReleaseAction

PRIVATE_KEY = "0x" + "11" * 32
SELLER = "0x5E11E50000000000000000000000000000000001"
BUYER = "0xB0b0000000000000000000000000000000000002"


class StubCall:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    async def call(self):
        if self.error is not None:
            raise self.error
        return self.result


class StubFunctions:
    def __init__(self, call: StubCall):
        self._call = call

    def getListing(self, listing_id):
        return self._call


class StubContract:
    def __init__(self, call: StubCall):
        self.functions = StubFunctions(call)


def _raw(listing_id=5, seller=SELLER, buyer=BUYER, status=4):
    return (listing_id, seller, b"\x01" * 32, "A***-****", 100, 120, 0, status, buyer, 1700000000, b"\x00" * 32)


@pytest.fixture
def client():
    settings = Settings(
        _env_file=None,
        LEDGER_BACKEND="evm",
        ADMIN_PRIVATE_KEY=PRIVATE_KEY,
        LEDGER_RPC_URL="http://127.0.0.1:8545",
        MARKETPLACE_ADDRESS="0x00000000000000000000000000000000000000aa",
        ESCROW_ADDRESS="0x00000000000000000000000000000000000000bb",
        CONFIRMATION_DEPTH=3,
    )
    return EvmLedgerClient.from_settings(settings)


def _read(client, call: StubCall, listing_id=5):
    client._marketplace = StubContract(call)
    return asyncio.run(client.get_listing(listing_id))


class TestConstruction:
    def test_signer_from_private_key(self, client):
        assert client.signer_identity == Account.from_key(PRIVATE_KEY).address
        assert client.endpoint == "http://127.0.0.1:8545"
        assert client.confirmation_depth == 3

    def test_addresses_are_checksummed(self, client):
        assert client.escrow_address == Web3.to_checksum_address("0x00000000000000000000000000000000000000bb")
        assert client.marketplace_address == Web3.to_checksum_address("0x00000000000000000000000000000000000000aa")

    def test_invalid_key_rejected(self):
        with pytest.raises(ValueError):
            EvmLedgerClient(
                rpc_url="http://127.0.0.1:8545",
                private_key="not-a-key",
                marketplace_address="0x00000000000000000000000000000000000000aa",
                escrow_address="0x00000000000000000000000000000000000000bb",
            )


class TestGetListing:
    def test_maps_contract_tuple(self, client):
        listing = _read(client, StubCall(result=_raw()))

        assert listing.id == 5
        assert listing.seller == SELLER
        assert listing.buyer == BUYER
        assert listing.price == 100
        assert listing.value == 120
        assert listing.status == ListingStatus.BUYER_CONFIRMED
        assert listing.metadata_ref == "0x" + "01" * 32

    def test_zero_buyer_is_absent(self, client):
        listing = _read(client, StubCall(result=_raw(buyer=ZERO_ADDRESS, status=1)))
        assert listing.buyer is None

    def test_empty_slot_is_not_found(self, client):
        with pytest.raises(ListingNotFound):
            _read(client, StubCall(result=_raw(listing_id=0, seller=ZERO_ADDRESS, buyer=ZERO_ADDRESS, status=0)))

    def test_contract_revert_is_not_found(self, client):
        with pytest.raises(ListingNotFound):
            _read(client, StubCall(error=ContractLogicError("execution reverted: Listing does not exist")))

    def test_rpc_failure_is_transport_error(self, client):
        with pytest.raises(LedgerTransportError):
            _read(client, StubCall(error=ConnectionError("connection refused")))


class TestRevertReason:
    def test_prefix_stripped(self):
        assert _revert_reason(ContractLogicError("execution reverted: Not admin")) == "Not admin"

    def test_bare_revert(self):
        assert _revert_reason(ContractLogicError("execution reverted:")) == "execution reverted"


# =============================================================================
# WRITE PATH AND EVENT POLLING
# =============================================================================

class StubEth:
    """Just enough of `w3.eth` for sends, receipts and log polling."""

    def __init__(self, heads=(100,), nonce=7, receipt=None, receipt_error=None):
        self.heads = list(heads)
        self.head_reads = 0
        self.nonce = nonce
        self.nonce_reads = 0
        self.receipt = receipt
        self.receipt_error = receipt_error
        self.gates: dict[bytes, asyncio.Event] = {}
        self.send_errors: dict[bytes, Exception] = {}
        self.sent: list[bytes] = []

    @property
    def block_number(self):
        return self._head()

    async def _head(self):
        self.head_reads += 1
        if len(self.heads) > 1:
            return self.heads.pop(0)
        return self.heads[0]

    async def get_transaction_count(self, address, block_identifier):
        self.nonce_reads += 1
        return self.nonce

    async def send_raw_transaction(self, raw):
        if raw in self.gates:
            await self.gates[raw].wait()
        if raw in self.send_errors:
            raise self.send_errors[raw]
        self.sent.append(raw)
        return bytes([len(self.sent)]) * 32

    async def wait_for_transaction_receipt(self, tx_hash, timeout, poll_latency):
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipt


class StubAccount:
    def __init__(self):
        self.address = Account.from_key(PRIVATE_KEY).address
        self.signed_nonces: list[int] = []

    def sign_transaction(self, tx):
        self.signed_nonces.append(tx["nonce"])
        return SimpleNamespace(raw_transaction=f"raw-{tx['nonce']}".encode())


class StubTxFunction:
    def __init__(self, error=None):
        self.error = error

    async def build_transaction(self, params):
        if self.error is not None:
            raise self.error
        return {"to": "0x00000000000000000000000000000000000000Bb", "data": "0x", "gas": 60000, **params}


class StubEscrowFunctions:
    def __init__(self, build_errors):
        self._build_errors = build_errors

    def releasePayment(self, listing_id):
        return StubTxFunction(self._build_errors.get(listing_id))

    def refundPayment(self, listing_id):
        return StubTxFunction(self._build_errors.get(listing_id))


class StubEvent:
    """get_logs fails on the first call, then serves each range once."""

    def __init__(self, ids, failures=1):
        self.ids = list(ids)
        self.failures = failures
        self.ranges: list[tuple[int, int]] = []

    async def get_logs(self, from_block, to_block):
        self.ranges.append((from_block, to_block))
        if self.failures:
            self.failures -= 1
            raise ConnectionError("upstream timeout")
        ids, self.ids = self.ids, []
        return [{"args": {"id": listing_id}} for listing_id in ids]


class StubEscrow:
    def __init__(self, build_errors=None, event=None):
        self.functions = StubEscrowFunctions(build_errors or {})
        self.events = SimpleNamespace(BuyerConfirmed=event)


def _wire(client, eth, escrow=None):
    client._w3 = SimpleNamespace(eth=eth, provider=object())
    client._escrow = escrow or StubEscrow()
    client._account = StubAccount()
    client._chain_id = 1
    client.poll_interval = 0.001
    return client


def _handle(tx_ref="0x" + "ab" * 32):
    return TransactionHandle(tx_ref=tx_ref, listing_id=5, action=ReleaseAction.RELEASE)


def _receipt(status=1, block=10):
    return {"status": status, "blockNumber": block, "gasUsed": 21000, "effectiveGasPrice": 2}


class TestSubmit:
    def test_nonces_are_sequential_from_pending_count(self, client):
        eth = StubEth(nonce=7)
        _wire(client, eth)

        async def scenario():
            first = await client.submit_release(1)
            second = await client.submit_refund(2)
            return first, second

        first, second = asyncio.run(scenario())
        assert client._account.signed_nonces == [7, 8]
        assert eth.nonce_reads == 1
        assert first.tx_ref == "0x" + "01" * 32
        assert second.action == ReleaseAction.REFUND

    def test_revert_during_gas_estimation_takes_no_nonce(self, client):
        eth = StubEth(nonce=7)
        escrow = StubEscrow(build_errors={2: ContractLogicError("execution reverted: Already finalized")})
        _wire(client, eth, escrow)

        async def scenario():
            await client.submit_release(1)
            with pytest.raises(LedgerRevertError) as exc:
                await client.submit_release(2)
            await client.submit_release(3)
            return exc.value

        error = asyncio.run(scenario())
        assert error.reason == "Already finalized"
        assert client._account.signed_nonces == [7, 8]
        assert eth.nonce_reads == 1

    def test_revert_on_send_maps_to_revert(self, client):
        eth = StubEth(nonce=7)
        eth.send_errors[b"raw-7"] = ContractLogicError("execution reverted: Not admin")
        _wire(client, eth)

        with pytest.raises(LedgerRevertError) as exc:
            asyncio.run(client.submit_release(1))
        assert exc.value.reason == "Not admin"

    def test_failed_send_does_not_reuse_an_outstanding_nonce(self, client):
        eth = StubEth(nonce=7)
        eth.send_errors[b"raw-8"] = ConnectionError("node dropped tx")
        _wire(client, eth)

        async def scenario():
            eth.gates[b"raw-7"] = asyncio.Event()
            first = asyncio.create_task(client.submit_release(1))
            for _ in range(5):
                await asyncio.sleep(0)
            with pytest.raises(LedgerTransportError):
                await client.submit_release(2)
            counter_while_outstanding = client._next_nonce
            del eth.send_errors[b"raw-8"]
            eth.gates[b"raw-7"].set()
            await first
            eth.nonce = 8
            await client.submit_release(3)
            return counter_while_outstanding

        counter_while_outstanding = asyncio.run(scenario())
        assert counter_while_outstanding == 9
        assert client._account.signed_nonces == [7, 8, 8]
        assert eth.nonce_reads == 2
        assert eth.sent == [b"raw-7", b"raw-8"]


class TestAwaitConfirmation:
    def test_receipt_at_depth_reports_fee(self, client):
        eth = StubEth(heads=(10, 11, 12), receipt=_receipt(block=10))
        _wire(client, eth)

        receipt = asyncio.run(client.await_confirmation(_handle()))

        assert receipt.success
        assert receipt.block_number == 10
        assert receipt.fee_used == 42000
        assert eth.head_reads == 3

    def test_reverted_receipt(self, client):
        _wire(client, StubEth(receipt=_receipt(status=0)))

        with pytest.raises(LedgerRevertError):
            asyncio.run(client.await_confirmation(_handle()))

    def test_missing_receipt_times_out(self, client):
        _wire(client, StubEth(receipt_error=TimeExhausted("not mined")))

        with pytest.raises(LedgerTimeoutError):
            asyncio.run(client.await_confirmation(_handle()))

    def test_receipt_lookup_failure_is_transport_error(self, client):
        _wire(client, StubEth(receipt_error=ConnectionError("connection reset")))

        with pytest.raises(LedgerTransportError):
            asyncio.run(client.await_confirmation(_handle()))

    def test_depth_not_reached_before_deadline(self, client):
        _wire(client, StubEth(heads=(10,), receipt=_receipt(block=10)))
        client.tx_timeout = 0.05

        with pytest.raises(LedgerTimeoutError):
            asyncio.run(client.await_confirmation(_handle()))


class TestEventPolling:
    def test_delivers_ids_and_retries_failed_range(self, client):
        event = StubEvent(ids=[7, 9])
        eth = StubEth(heads=(100, 105))
        _wire(client, eth, StubEscrow(event=event))
        received = []

        async def on_confirmed(listing_id):
            received.append(listing_id)

        async def scenario():
            handle = await client.subscribe(BUYER_CONFIRMED_EVENT, on_confirmed)
            for _ in range(100):
                if received:
                    break
                await asyncio.sleep(0.005)
            await asyncio.sleep(0.02)
            await client.unsubscribe(handle)

        asyncio.run(scenario())
        assert received == [7, 9]
        assert event.ranges[0] == event.ranges[1] == (100, 105)
        assert len(event.ranges) == 2
        assert client._poll_tasks == {}
