"""
Voucher Escrow - Release Executor

Turns a listing id into at most one admin transaction.

Guarantees:
1. At most one attempt in flight per listing id (the claim)
2. Status is always re-read from the ledger before acting
3. Every attempt ends in an explicit outcome, never an exception
4. Re-running a finished listing is a no-op: skipped("already terminal")
"""

import asyncio
import logging
from collections import deque
from typing import Optional

from voucher_escrow.bridges.ledger import (
    LedgerClient,
    LedgerError,
    LedgerRevertError,
    ListingNotFound,
)
from voucher_escrow.models.listing import Listing
from voucher_escrow.models.release import (
    AttemptStatus,
    EnqueueSource,
    FailureKind,
    OutcomeKind,
    ReleaseAction,
    ReleaseAttempt,
    ReleaseOutcome,
)
from voucher_escrow.services.events.publisher import ReleaseEventPublisher
from voucher_escrow.services.validator import ALREADY_TERMINAL, check_action, is_terminal

logger = logging.getLogger(__name__)

ALREADY_IN_FLIGHT = "already in flight"

# Revert reasons meaning another path already finished the listing
BENIGN_REVERT_MARKERS = ("already", "terminal", "finalized", "finalised")


def is_benign_revert(reason: Optional[str]) -> bool:
    if not reason:
        return False
    lowered = reason.lower()
    return any(marker in lowered for marker in BENIGN_REVERT_MARKERS)


class ReleaseExecutor:
    """
    Work queue plus per-listing execution.

    Scanner and subscriber call `enqueue`; a fixed pool of workers drains the
    queue through `execute`. Operators call `execute` directly.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        publisher: Optional[ReleaseEventPublisher] = None,
        tx_timeout: float = 120.0,
        max_concurrent: int = 4,
        history_size: int = 1000,
    ) -> None:
        self.ledger = ledger
        self.publisher = publisher or ReleaseEventPublisher()
        self.tx_timeout = tx_timeout
        self.max_concurrent = max(1, max_concurrent)

        self._claims: set[int] = set()
        self._attempts: dict[int, ReleaseAttempt] = {}
        self._history: deque[ReleaseOutcome] = deque(maxlen=history_size)
        self._queue: asyncio.Queue[tuple[int, ReleaseAction]] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._accepting = True
        self._idle = asyncio.Event()
        self._idle.set()

    # =========================================================================
    # CLAIMS
    # =========================================================================

    def is_claimed(self, listing_id: int) -> bool:
        return listing_id in self._claims

    def _claim(self, listing_id: int) -> bool:
        if listing_id in self._claims:
            return False
        self._claims.add(listing_id)
        self._idle.clear()
        return True

    def _release_claim(self, listing_id: int) -> None:
        self._claims.discard(listing_id)
        if not self._claims:
            self._idle.set()

    @property
    def in_flight(self) -> int:
        return len(self._claims)

    async def wait_idle(self) -> None:
        """Wait until no execute() call holds a claim."""
        await self._idle.wait()

    # =========================================================================
    # QUEUE & WORKERS
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def enqueue(
        self,
        listing_id: int,
        source: EnqueueSource = EnqueueSource.SCAN,
        action: ReleaseAction = ReleaseAction.RELEASE,
    ) -> bool:
        """Queue a release attempt. Returns False once intake is stopped."""
        if not self._accepting:
            logger.warning(f"[RELEASE] Intake stopped; dropping listing #{listing_id} from {source.value}")
            return False
        if listing_id <= 0:
            logger.warning(f"[RELEASE] Ignoring invalid listing id {listing_id} from {source.value}")
            return False

        attempt = self._attempts.get(listing_id)
        if attempt is None:
            self._attempts[listing_id] = ReleaseAttempt(listing_id=listing_id, action=action, source=source)
        elif attempt.status == AttemptStatus.FAILED:
            attempt.source = source
            attempt.touch(AttemptStatus.PENDING)

        self._queue.put_nowait((listing_id, action))
        logger.debug(f"[RELEASE] Queued {action.value} for listing #{listing_id} ({source.value})")
        return True

    def start(self) -> None:
        """Accept work and spin up the worker pool."""
        self._accepting = True
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"release-worker-{n}")
            for n in range(self.max_concurrent)
        ]
        logger.info(f"[RELEASE] Started {self.max_concurrent} release workers")

    async def drain(self) -> None:
        """Wait until every queued attempt has been executed."""
        await self._queue.join()

    async def shutdown(self) -> int:
        """
        Stop intake and let in-flight attempts finish.

        In-flight covers both worker-driven attempts and direct `execute`
        calls from operators. Queued attempts that have not started are
        dropped; their listings are picked up again by the next reconciliation
        scan. Returns the number dropped.
        """
        self._accepting = False
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            dropped += 1

        await self._queue.join()
        if self._claims:
            logger.info(f"[RELEASE] Waiting for {len(self._claims)} in-flight attempts")
        await self.wait_idle()

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"[RELEASE] Workers stopped ({dropped} queued attempts dropped)")
        return dropped

    async def _worker(self, index: int) -> None:
        while True:
            listing_id, action = await self._queue.get()
            try:
                await self.execute(listing_id, action)
            except Exception:
                logger.exception(f"[RELEASE] Worker {index} failed on listing #{listing_id}")
            finally:
                self._queue.task_done()

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(
        self,
        listing_id: int,
        action: ReleaseAction = ReleaseAction.RELEASE,
        source: EnqueueSource = EnqueueSource.MANUAL,
    ) -> ReleaseOutcome:
        """Run one release/refund attempt for `listing_id`."""
        if listing_id <= 0:
            return ReleaseOutcome(
                listing_id=listing_id,
                action=action,
                kind=OutcomeKind.FAILED,
                reason="invalid listing id",
                failure=FailureKind.STRUCTURAL,
            )
        if not self._claim(listing_id):
            logger.info(f"[RELEASE] Listing #{listing_id} {ALREADY_IN_FLIGHT}; skipping")
            return ReleaseOutcome(
                listing_id=listing_id,
                action=action,
                kind=OutcomeKind.SKIPPED,
                reason=ALREADY_IN_FLIGHT,
            )

        attempt: Optional[ReleaseAttempt] = None
        try:
            attempt = self._attempts.get(listing_id)
            if attempt is None:
                attempt = ReleaseAttempt(listing_id=listing_id, action=action, source=source)
                self._attempts[listing_id] = attempt
            attempt.action = action
            attempt.attempt_count += 1
            attempt.touch(AttemptStatus.IN_FLIGHT)
            outcome = await self._run(attempt)
        except Exception as e:
            logger.exception(f"[RELEASE] Unexpected error for listing #{listing_id}")
            if attempt is None:
                outcome = ReleaseOutcome(
                    listing_id=listing_id,
                    action=action,
                    kind=OutcomeKind.FAILED,
                    reason=f"unexpected error: {e}",
                    failure=FailureKind.TRANSIENT,
                )
            else:
                outcome = await self._fail(attempt, f"unexpected error: {e}", FailureKind.TRANSIENT)
        finally:
            self._release_claim(listing_id)

        self._history.append(outcome)
        return outcome

    async def _run(self, attempt: ReleaseAttempt) -> ReleaseOutcome:
        listing_id = attempt.listing_id
        action = attempt.action

        try:
            listing = await asyncio.wait_for(self.ledger.get_listing(listing_id), self.tx_timeout)
        except ListingNotFound:
            return await self._fail(attempt, "listing not found", FailureKind.STRUCTURAL)
        except (LedgerError, asyncio.TimeoutError) as e:
            return await self._fail(attempt, f"status read failed: {str(e) or 'timeout'}", FailureKind.TRANSIENT)

        check = check_action(action, listing.status)
        if not check.allowed:
            self._compact(listing_id)
            logger.info(f"[RELEASE] Listing #{listing_id} skipped ({listing.status.name}): {check.reason}")
            return ReleaseOutcome(
                listing_id=listing_id,
                action=action,
                kind=OutcomeKind.SKIPPED,
                reason=check.reason,
            )

        try:
            handle = await asyncio.wait_for(self.ledger.submit(action, listing_id), self.tx_timeout)
            attempt.tx_ref = handle.tx_ref
            logger.info(f"[RELEASE] {action.value} transaction sent for listing #{listing_id}: {handle.tx_ref}")
            receipt = await asyncio.wait_for(self.ledger.await_confirmation(handle), self.tx_timeout)
        except LedgerRevertError as e:
            return await self._on_revert(attempt, e.reason)
        except asyncio.TimeoutError:
            return await self._fail(
                attempt,
                f"timed out after {self.tx_timeout}s waiting for the ledger",
                FailureKind.TRANSIENT,
            )
        except LedgerError as e:
            return await self._fail(attempt, str(e), FailureKind.TRANSIENT)

        return await self._succeed(attempt, listing, receipt.tx_ref, receipt.fee_used)

    async def _succeed(
        self,
        attempt: ReleaseAttempt,
        listing: Listing,
        tx_ref: str,
        fee_used: int,
    ) -> ReleaseOutcome:
        attempt.touch(AttemptStatus.SUCCEEDED)
        self._compact(listing.id)

        if attempt.action == ReleaseAction.RELEASE:
            kind, recipient = OutcomeKind.RELEASED, listing.seller
            await self._notify(self.publisher.payment_released(listing.id, listing.price, recipient, tx_ref))
        else:
            kind, recipient = OutcomeKind.REFUNDED, listing.buyer
            await self._notify(self.publisher.payment_refunded(listing.id, listing.price, recipient, tx_ref))

        logger.info(
            f"[RELEASE] Listing #{listing.id} {kind.value}: {listing.price} to {recipient} "
            f"(tx {tx_ref}, fee {fee_used})"
        )
        return ReleaseOutcome(
            listing_id=listing.id,
            action=attempt.action,
            kind=kind,
            tx_ref=tx_ref,
            amount=listing.price,
            recipient=recipient,
            fee_used=fee_used,
        )

    async def _on_revert(self, attempt: ReleaseAttempt, reason: str) -> ReleaseOutcome:
        listing_id = attempt.listing_id
        if is_benign_revert(reason) or await self._is_now_terminal(listing_id):
            logger.info(f"[RELEASE] Listing #{listing_id} already finished elsewhere (revert: {reason})")
            self._compact(listing_id)
            return ReleaseOutcome(
                listing_id=listing_id,
                action=attempt.action,
                kind=OutcomeKind.SKIPPED,
                reason=ALREADY_TERMINAL,
                tx_ref=attempt.tx_ref,
            )
        return await self._fail(attempt, reason, FailureKind.STRUCTURAL)

    async def _is_now_terminal(self, listing_id: int) -> bool:
        try:
            listing = await asyncio.wait_for(self.ledger.get_listing(listing_id), self.tx_timeout)
        except (LedgerError, asyncio.TimeoutError):
            return False
        return is_terminal(listing.status)

    async def _fail(self, attempt: ReleaseAttempt, reason: str, failure: FailureKind) -> ReleaseOutcome:
        attempt.last_error = reason
        attempt.failure = failure
        attempt.touch(AttemptStatus.FAILED)
        logger.error(
            f"[RELEASE] {attempt.action.value} failed for listing #{attempt.listing_id} "
            f"({failure.value}, attempt {attempt.attempt_count}): {reason}"
        )
        await self._notify(self.publisher.release_failed(attempt.listing_id, attempt.action.value, reason, failure.value))
        return ReleaseOutcome(
            listing_id=attempt.listing_id,
            action=attempt.action,
            kind=OutcomeKind.FAILED,
            reason=reason,
            failure=failure,
            tx_ref=attempt.tx_ref,
        )

    async def _notify(self, publishing) -> None:
        # The ledger outcome is already final; a publishing error only gets logged.
        try:
            await publishing
        except Exception:
            logger.exception("[RELEASE] Failed to publish release event")

    # =========================================================================
    # BOOKKEEPING
    # =========================================================================

    def _compact(self, listing_id: int) -> None:
        self._attempts.pop(listing_id, None)

    def get_attempt(self, listing_id: int) -> Optional[ReleaseAttempt]:
        return self._attempts.get(listing_id)

    def attempts(self) -> list[ReleaseAttempt]:
        """Active (pending, in-flight or failed) attempts."""
        return [self._attempts[k] for k in sorted(self._attempts)]

    def history(self) -> list[ReleaseOutcome]:
        return list(self._history)
