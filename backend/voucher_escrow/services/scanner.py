"""
Voucher Escrow - Reconciliation Scanner

Crash recovery: walks every assigned listing id and queues a release for
each one the buyer has confirmed. The scanner only enqueues; the executor
re-validates and submits.
"""

import asyncio
import logging
from datetime import datetime, timezone

from voucher_escrow.bridges.ledger import LedgerClient, LedgerError
from voucher_escrow.models.listing import ListingStatus
from voucher_escrow.models.release import EnqueueSource, ScanResult
from voucher_escrow.services.executor import ReleaseExecutor

logger = logging.getLogger(__name__)


class ReconciliationScanner:
    """Full-range scan in bounded batches of concurrent reads."""

    def __init__(
        self,
        ledger: LedgerClient,
        executor: ReleaseExecutor,
        batch_size: int = 20,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.batch_size = max(1, batch_size)
        self._lock = asyncio.Lock()

    async def scan_pending(self) -> ScanResult:
        """
        Queue a release for every listing in BUYER_CONFIRMED.

        Per-id read failures are logged and counted, never fatal. A scan
        already in progress is awaited rather than run twice.
        """
        async with self._lock:
            return await self._scan()

    async def _scan(self) -> ScanResult:
        result = ScanResult()
        try:
            next_id = await self.ledger.get_next_id()
        except LedgerError as e:
            logger.error(f"[SCAN] Cannot read listing count: {e}")
            result.errors += 1
            result.finished_at = datetime.now(timezone.utc)
            return result

        result.next_id = next_id
        logger.info(f"[SCAN] Scanning {max(0, next_id - 1)} listings for pending confirmations...")

        for start in range(1, next_id, self.batch_size):
            batch = range(start, min(start + self.batch_size, next_id))
            statuses = await asyncio.gather(
                *(self.ledger.get_listing(listing_id) for listing_id in batch),
                return_exceptions=True,
            )
            for listing_id, listing in zip(batch, statuses):
                result.scanned += 1
                if isinstance(listing, Exception):
                    result.errors += 1
                    logger.warning(f"[SCAN] Skipping listing #{listing_id}: {listing}")
                    continue
                if listing.status == ListingStatus.BUYER_CONFIRMED:
                    logger.info(f"[SCAN] Found confirmed listing #{listing_id}, queueing release")
                    if self.executor.enqueue(listing_id, source=EnqueueSource.SCAN):
                        result.processed += 1

        result.finished_at = datetime.now(timezone.utc)
        logger.info(f"[SCAN] Processed {result.processed} pending confirmations ({result.errors} errors)")
        return result
