"""
Voucher Escrow - Service Controller

Owns the reconciliation service lifecycle.

States:
    STOPPED → INITIALIZING → READY → SUBSCRIBED → RUNNING → STOPPING → STOPPED

    INITIALIZING  Connecting to the ledger, verifying the admin signer
    READY         Verified; manual actions available, nothing subscribed
    SUBSCRIBED    Confirmation events are flowing into the executor
    RUNNING       Subscribed and periodically re-scanning
    STOPPING      Intake closed, in-flight attempts finishing

Rules:
    - A signer that is not the ledger admin is fatal to start, never retried
    - Missing configuration disables the service, it does not crash the host
    - One listing's failure never blocks another's
"""

import asyncio
import logging
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from voucher_escrow.bridges.ledger import LedgerClient, LedgerError
from voucher_escrow.core.config import Settings
from voucher_escrow.core.types import same_identity
from voucher_escrow.models.release import (
    EnqueueSource,
    FailureKind,
    OperationResult,
    OutcomeKind,
    ReleaseAction,
    ReleaseOutcome,
    ScanResult,
    ServiceState,
    ServiceStatus,
)
from voucher_escrow.services.events.publisher import ReleaseEventPublisher
from voucher_escrow.services.executor import ReleaseExecutor
from voucher_escrow.services.scanner import ReconciliationScanner
from voucher_escrow.services.subscriber import EventSubscriber

logger = logging.getLogger(__name__)

SCAN_JOB_ID = "reconciliation_scan"

LedgerFactory = Callable[[Settings], LedgerClient]

READY_STATES = frozenset({ServiceState.READY, ServiceState.SUBSCRIBED, ServiceState.RUNNING})


def create_ledger_client(settings: Settings) -> LedgerClient:
    """Build the ledger client selected by LEDGER_BACKEND."""
    if settings.LEDGER_BACKEND == "mock":
        from voucher_escrow.services.mocks.ledger import LedgerMock

        return LedgerMock(admin_identity=settings.MOCK_ADMIN_IDENTITY)

    from voucher_escrow.bridges.evm_ledger import EvmLedgerClient

    return EvmLedgerClient.from_settings(settings)


class ServiceController:
    """Wires ledger, executor, scanner and subscriber together."""

    def __init__(
        self,
        settings: Settings,
        ledger_factory: LedgerFactory = create_ledger_client,
        publisher: Optional[ReleaseEventPublisher] = None,
    ) -> None:
        self.settings = settings
        self._ledger_factory = ledger_factory
        self.publisher = publisher or ReleaseEventPublisher(webhook_url=settings.RELEASE_WEBHOOK_URL)

        self._state = ServiceState.STOPPED
        self._lifecycle_lock = asyncio.Lock()
        self._admin_identity: Optional[str] = None
        self._last_error: Optional[str] = None
        self._last_scan: Optional[ScanResult] = None
        self._scheduler: Optional[AsyncIOScheduler] = None

        self.ledger: Optional[LedgerClient] = None
        self.executor: Optional[ReleaseExecutor] = None
        self.scanner: Optional[ReconciliationScanner] = None
        self.subscriber: Optional[EventSubscriber] = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state in (ServiceState.SUBSCRIBED, ServiceState.RUNNING)

    def _set_state(self, target: ServiceState) -> None:
        if target != self._state:
            logger.info(f"[SERVICE] {self._state.value} -> {target.value}")
            self._state = target

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def init(self) -> OperationResult:
        """Connect to the ledger and verify the admin signer."""
        async with self._lifecycle_lock:
            return await self._init()

    async def _init(self) -> OperationResult:
        if self._state in READY_STATES:
            return OperationResult(success=True, message=f"Service already initialized. Admin: {self._admin_identity}")

        missing = self.settings.missing_required()
        if missing:
            message = f"{', '.join(missing)} environment variable{'s' if len(missing) > 1 else ''} not set"
            return self._init_failed(message, FailureKind.STRUCTURAL)

        self._set_state(ServiceState.INITIALIZING)
        ledger: Optional[LedgerClient] = None
        try:
            ledger = self._ledger_factory(self.settings)
            await ledger.connect()
            recorded_admin = await ledger.get_admin_identity()
        except LedgerError as e:
            if ledger is not None:
                await ledger.close()
            return self._init_failed(f"Failed to initialize service: {e}", FailureKind.TRANSIENT)
        except ValueError as e:
            if ledger is not None:
                await ledger.close()
            return self._init_failed(f"Invalid ledger configuration: {e}", FailureKind.STRUCTURAL)

        signer = ledger.signer_identity
        if not same_identity(signer, recorded_admin):
            await ledger.close()
            return self._init_failed(
                f"Signer {signer} is not the ledger admin. Expected admin: {recorded_admin}, actual signer: {signer}",
                FailureKind.STRUCTURAL,
            )

        self.ledger = ledger
        self._admin_identity = signer
        self.executor = ReleaseExecutor(
            ledger,
            publisher=self.publisher,
            tx_timeout=self.settings.TX_TIMEOUT_SECONDS,
            max_concurrent=self.settings.MAX_CONCURRENT_RELEASES,
        )
        self.scanner = ReconciliationScanner(ledger, self.executor, batch_size=self.settings.SCAN_BATCH_SIZE)
        self.subscriber = EventSubscriber(ledger, self.executor)
        self._last_error = None
        self._set_state(ServiceState.READY)

        logger.info(f"[SERVICE] Initialized with admin {signer} on {ledger.endpoint}")
        return OperationResult(success=True, message=f"Service initialized. Admin: {signer}")

    def _init_failed(self, message: str, failure: FailureKind) -> OperationResult:
        logger.error(f"[SERVICE] {message}")
        self._last_error = message
        self._set_state(ServiceState.STOPPED)
        return OperationResult(success=False, message=message, failure=failure)

    async def start(self) -> OperationResult:
        """Catch-up scan, then subscribe, then schedule periodic rescans."""
        async with self._lifecycle_lock:
            if self.is_running:
                return OperationResult(success=True, message="Service already running")

            if self._state != ServiceState.READY:
                init_result = await self._init()
                if not init_result.success:
                    return init_result

            self.executor.start()
            scan = await self.scanner.scan_pending()
            self._last_scan = scan

            subscribed = await self.subscriber.start()
            if not subscribed.success:
                dropped = await self.executor.shutdown()
                self._last_error = f"{subscribed.message}; staying {self._state.value}, release workers stopped"
                logger.error(f"[SERVICE] {self._last_error} ({dropped} queued attempts dropped)")
                return OperationResult(
                    success=False,
                    message=subscribed.message,
                    failure=FailureKind.TRANSIENT,
                    data={"scan": scan.model_dump(mode="json"), "dropped_queued": dropped},
                )
            self._set_state(ServiceState.SUBSCRIBED)

            self._start_scheduler()
            self._set_state(ServiceState.RUNNING)
            return OperationResult(
                success=True,
                message=f"Service running. Catch-up scan queued {scan.processed} releases ({scan.errors} errors)",
                data={"scan": scan.model_dump(mode="json")},
            )

    async def stop(self) -> OperationResult:
        """Stop intake; in-flight release attempts are allowed to finish."""
        async with self._lifecycle_lock:
            if self._state == ServiceState.STOPPED:
                return OperationResult(success=True, message="Service not running")

            self._set_state(ServiceState.STOPPING)
            self._stop_scheduler()

            messages = []
            if self.subscriber is not None:
                stopped = await self.subscriber.stop()
                if not stopped.success:
                    messages.append(stopped.message)
            dropped = 0
            if self.executor is not None:
                dropped = await self.executor.shutdown()
            if self.ledger is not None:
                await self.ledger.close()

            self._set_state(ServiceState.STOPPED)
            if messages:
                self._last_error = "; ".join(messages)
                return OperationResult(success=False, message=self._last_error)
            return OperationResult(
                success=True,
                message="Service stopped",
                data={"dropped_queued": dropped},
            )

    async def _ensure_ready(self) -> OperationResult:
        if self._state in READY_STATES:
            return OperationResult(success=True, message="ready")
        return await self.init()

    # =========================================================================
    # PERIODIC RECONCILIATION
    # =========================================================================

    def _start_scheduler(self) -> None:
        minutes = self.settings.SCAN_INTERVAL_MINUTES
        if minutes <= 0:
            logger.info("[SERVICE] Periodic reconciliation disabled (SCAN_INTERVAL_MINUTES=0)")
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._scheduled_scan,
            trigger=IntervalTrigger(minutes=minutes),
            id=SCAN_JOB_ID,
            name="Periodic Reconciliation Scan",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"[SERVICE] Periodic reconciliation every {minutes} minutes")

    def _stop_scheduler(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("[SERVICE] Periodic reconciliation stopped")

    @property
    def scheduler(self) -> Optional[AsyncIOScheduler]:
        return self._scheduler

    async def _scheduled_scan(self) -> None:
        if self._state != ServiceState.RUNNING or self.scanner is None:
            return
        try:
            self._last_scan = await self.scanner.scan_pending()
        except Exception as e:
            logger.error(f"[SERVICE] Scheduled scan failed: {e}", exc_info=True)

    # =========================================================================
    # OPERATOR ACTIONS
    # =========================================================================

    async def scan_pending(self) -> OperationResult:
        """On-demand reconciliation pass; queued releases run immediately."""
        ready = await self._ensure_ready()
        if not ready.success:
            return ready
        self.executor.start()
        scan = await self.scanner.scan_pending()
        self._last_scan = scan
        return OperationResult(
            success=True,
            message=f"Queued {scan.processed} pending confirmations ({scan.errors} errors)",
            data=scan.model_dump(mode="json"),
        )

    async def manual_release(self, listing_id: int) -> ReleaseOutcome:
        return await self._manual(listing_id, ReleaseAction.RELEASE)

    async def manual_refund(self, listing_id: int) -> ReleaseOutcome:
        return await self._manual(listing_id, ReleaseAction.REFUND)

    async def _manual(self, listing_id: int, action: ReleaseAction) -> ReleaseOutcome:
        logger.info(f"[SERVICE] Manual {action.value} requested for listing #{listing_id}")
        ready = await self._ensure_ready()
        if not ready.success:
            return ReleaseOutcome(
                listing_id=listing_id,
                action=action,
                kind=OutcomeKind.FAILED,
                reason=ready.message,
                failure=FailureKind.STRUCTURAL,
            )
        return await self.executor.execute(listing_id, action, source=EnqueueSource.MANUAL)

    def status(self) -> ServiceStatus:
        return ServiceStatus(
            running=self.is_running,
            state=self._state,
            admin_identity=self._admin_identity,
            ledger_endpoint=self.ledger.endpoint if self.ledger else self.settings.LEDGER_RPC_URL,
            escrow_address=self.ledger.escrow_address if self.ledger else self.settings.ESCROW_ADDRESS,
            marketplace_address=self.ledger.marketplace_address if self.ledger else self.settings.MARKETPLACE_ADDRESS,
            subscribed=bool(self.subscriber and self.subscriber.is_running),
            last_error=self._last_error,
            last_scan=self._last_scan,
            active_attempts=self.executor.attempts() if self.executor else [],
        )
