"""
Voucher Escrow - Reconciliation Scanner Tests

Crash recovery: a fresh process with no in-memory state finds every
confirmed listing on the ledger.
"""

import asyncio

import pytest

from voucher_escrow.models.listing import ListingStatus
from voucher_escrow.services.executor import ReleaseExecutor
from voucher_escrow.services.scanner import ReconciliationScanner


def _seed(ledger, confirmed: int) -> list[int]:
    """Mix of lifecycle states with `confirmed` listings awaiting release."""
    ledger.add_listing(ListingStatus.LISTED)
    ledger.add_listing(ListingStatus.LOCKED)
    ids = []
    for n in range(confirmed):
        ids.append(ledger.add_listing(ListingStatus.BUYER_CONFIRMED, price=10 + n))
        ledger.add_listing(ListingStatus.RELEASED)
    ledger.add_listing(ListingStatus.BUYER_DISPUTED)
    ledger.add_listing(ListingStatus.CANCELLED)
    return ids


class TestCrashRecovery:
    """N confirmed listings, zero in-memory state."""

    @pytest.mark.parametrize("confirmed,batch_size", [(0, 20), (1, 1), (7, 3), (25, 20)])
    def test_scan_enqueues_exactly_n_and_all_release(self, ledger, confirmed, batch_size):
        ids = _seed(ledger, confirmed)

        async def scenario():
            executor = ReleaseExecutor(ledger)
            scanner = ReconciliationScanner(ledger, executor, batch_size=batch_size)
            result = await scanner.scan_pending()
            queued = executor.queued
            executor.start()
            await executor.drain()
            await executor.shutdown()
            return result, queued

        result, queued = asyncio.run(scenario())

        assert result.processed == confirmed
        assert queued == confirmed
        assert result.errors == 0
        assert result.scanned == result.next_id - 1
        assert result.finished_at is not None
        assert all(ledger.status_of(i) == ListingStatus.RELEASED for i in ids)
        assert len(ledger.submissions) == confirmed

    def test_scan_never_submits(self, ledger):
        _seed(ledger, 3)

        async def scenario():
            executor = ReleaseExecutor(ledger)
            return await ReconciliationScanner(ledger, executor).scan_pending()

        asyncio.run(scenario())
        assert ledger.submissions == []

    def test_empty_ledger(self, ledger):
        async def scenario():
            executor = ReleaseExecutor(ledger)
            return await ReconciliationScanner(ledger, executor).scan_pending()

        result = asyncio.run(scenario())
        assert result.processed == 0
        assert result.scanned == 0
        assert result.next_id == 1


class TestPartialFailure:
    """A bad read skips one id, never the scan."""

    def test_read_errors_are_counted_and_skipped(self, ledger):
        ids = _seed(ledger, 4)
        ledger.fail_reads.update({ids[1], 1})

        async def scenario():
            executor = ReleaseExecutor(ledger)
            return await ReconciliationScanner(ledger, executor, batch_size=5).scan_pending()

        result = asyncio.run(scenario())
        assert result.errors == 2
        assert result.processed == 3

    def test_unreachable_ledger_reports_error(self, ledger):
        _seed(ledger, 2)
        ledger.unreachable = True

        async def scenario():
            executor = ReleaseExecutor(ledger)
            return await ReconciliationScanner(ledger, executor).scan_pending()

        result = asyncio.run(scenario())
        assert result.errors == 1
        assert result.processed == 0
        assert result.next_id is None

    def test_rescan_after_failure_picks_up_skipped_id(self, ledger):
        ids = _seed(ledger, 2)
        ledger.fail_reads.add(ids[0])

        async def scenario():
            executor = ReleaseExecutor(ledger)
            scanner = ReconciliationScanner(ledger, executor)
            executor.start()
            first = await scanner.scan_pending()
            await executor.drain()
            ledger.fail_reads.clear()
            second = await scanner.scan_pending()
            await executor.drain()
            await executor.shutdown()
            return first, second

        first, second = asyncio.run(scenario())
        assert (first.processed, first.errors) == (1, 1)
        assert (second.processed, second.errors) == (1, 0)
        assert all(ledger.status_of(i) == ListingStatus.RELEASED for i in ids)


class TestStoppedIntake:
    def test_nothing_counted_once_intake_stopped(self, ledger):
        _seed(ledger, 2)

        async def scenario():
            executor = ReleaseExecutor(ledger)
            await executor.shutdown()
            return await ReconciliationScanner(ledger, executor).scan_pending()

        result = asyncio.run(scenario())
        assert result.processed == 0
