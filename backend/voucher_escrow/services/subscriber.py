"""
Voucher Escrow - Event Subscriber

Low-latency path: every buyer confirmation on the ledger queues a release.
Delivery is at-least-once and unordered; the executor's claim and re-read
make duplicates harmless, so no status check happens here.
"""

import logging
from typing import Optional

from voucher_escrow.bridges.ledger import (
    BUYER_CONFIRMED_EVENT,
    LedgerClient,
    LedgerError,
    SubscriptionHandle,
)
from voucher_escrow.models.release import EnqueueSource, OperationResult
from voucher_escrow.services.executor import ReleaseExecutor

logger = logging.getLogger(__name__)


class EventSubscriber:
    """Owns the single subscription to the confirmation topic."""

    def __init__(
        self,
        ledger: LedgerClient,
        executor: ReleaseExecutor,
        event_name: str = BUYER_CONFIRMED_EVENT,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.event_name = event_name
        self._handle: Optional[SubscriptionHandle] = None
        self.events_received = 0

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    async def start(self) -> OperationResult:
        if self._handle is not None:
            return OperationResult(success=True, message="Event listener already running")

        try:
            self._handle = await self.ledger.subscribe(self.event_name, self._on_event)
        except LedgerError as e:
            logger.error(f"[SUBSCRIBER] Failed to subscribe to {self.event_name}: {e}")
            return OperationResult(success=False, message=f"Failed to start listener: {e}")

        logger.info(f"[SUBSCRIBER] Listening for {self.event_name} events")
        return OperationResult(success=True, message="Event listener started")

    async def stop(self) -> OperationResult:
        if self._handle is None:
            return OperationResult(success=True, message="Event listener not running")

        handle, self._handle = self._handle, None
        try:
            await self.ledger.unsubscribe(handle)
        except LedgerError as e:
            logger.error(f"[SUBSCRIBER] Unsubscribe from {self.event_name} failed: {e}")
            return OperationResult(success=False, message=f"Failed to stop listener: {e}")

        logger.info(f"[SUBSCRIBER] Stopped listening for {self.event_name}")
        return OperationResult(success=True, message="Event listener stopped")

    async def _on_event(self, listing_id: int) -> None:
        self.events_received += 1
        logger.info(f"[SUBSCRIBER] {self.event_name} received for listing #{listing_id}")
        self.executor.enqueue(listing_id, source=EnqueueSource.EVENT)
