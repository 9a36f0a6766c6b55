"""
Voucher Escrow - Release Event Publisher

Observability events for admin escrow transactions.

Published:
    - escrow.payment.released   (amount, recipient = seller)
    - escrow.payment.refunded   (amount, recipient = buyer)
    - escrow.release.failed     (reason, failure kind)

Events are kept in a bounded in-memory log, handed to local subscribers and,
when RELEASE_WEBHOOK_URL is set, POSTed to the webhook.
"""

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SOURCE_APP = "voucher-escrow"

EventHandler = Callable[["EscrowEvent"], Awaitable[None]]


class EscrowEventType(str, Enum):
    """Escrow event types."""
    PAYMENT_RELEASED = "escrow.payment.released"
    PAYMENT_REFUNDED = "escrow.payment.refunded"
    RELEASE_FAILED = "escrow.release.failed"


class EscrowEvent(BaseModel):
    """Event envelope."""
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    listing_id: int
    payload: dict = Field(default_factory=dict)
    source_app: str = SOURCE_APP
    version: str = "1.0"


class ReleaseEventPublisher:
    """
    Central publisher for escrow outcomes.

    Webhook delivery is best-effort: a failed POST is logged and the event
    stays in the local log.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        max_events: int = 10000,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport
        self._event_log: deque[EscrowEvent] = deque(maxlen=max_events)
        self._subscribers: dict[str, list[EventHandler]] = {}

    async def publish(
        self,
        event_type: EscrowEventType,
        listing_id: int,
        payload: dict,
    ) -> EscrowEvent:
        event = EscrowEvent(
            event_type=event_type.value,
            listing_id=listing_id,
            payload=payload,
        )
        self._event_log.append(event)
        logger.info(f"[EVENTS] {event.event_type} listing #{listing_id} {payload}")

        await self._notify_subscribers(event)
        if self.webhook_url:
            await self._forward(event)
        return event

    async def _notify_subscribers(self, event: EscrowEvent) -> None:
        for handler in self._subscribers.get(event.event_type, []):
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"[EVENTS] Subscriber failed for {event.event_type}: {e}")

    async def _forward(self, event: EscrowEvent) -> bool:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self.webhook_url,
                    json=event.model_dump(mode="json"),
                    headers={"X-Source-App": SOURCE_APP},
                    timeout=self.timeout,
                )
            if response.status_code not in (200, 201, 202, 204):
                logger.warning(f"[EVENTS] Webhook rejected {event.event_type}: {response.status_code} {response.text}")
                return False
            return True
        except httpx.HTTPError as e:
            logger.error(f"[EVENTS] Webhook error for {event.event_type}: {e}")
            return False
        except Exception as e:
            logger.error(f"[EVENTS] Webhook delivery failed for {event.event_type}: {type(e).__name__}: {e}")
            return False

    def subscribe(self, event_type: EscrowEventType, handler: EventHandler) -> None:
        self._subscribers.setdefault(event_type.value, []).append(handler)

    def unsubscribe(self, event_type: EscrowEventType, handler: EventHandler) -> None:
        if event_type.value in self._subscribers:
            self._subscribers[event_type.value] = [
                h for h in self._subscribers[event_type.value] if h != handler
            ]

    # =========================================================================
    # CONVENIENCE METHODS
    # =========================================================================

    async def payment_released(self, listing_id: int, amount: int, recipient: str, tx_ref: str) -> EscrowEvent:
        return await self.publish(
            EscrowEventType.PAYMENT_RELEASED,
            listing_id,
            {"amount": amount, "recipient": recipient, "tx_ref": tx_ref},
        )

    async def payment_refunded(self, listing_id: int, amount: int, recipient: Optional[str], tx_ref: str) -> EscrowEvent:
        return await self.publish(
            EscrowEventType.PAYMENT_REFUNDED,
            listing_id,
            {"amount": amount, "recipient": recipient, "tx_ref": tx_ref},
        )

    async def release_failed(self, listing_id: int, action: str, reason: str, failure: str) -> EscrowEvent:
        return await self.publish(
            EscrowEventType.RELEASE_FAILED,
            listing_id,
            {"action": action, "reason": reason, "failure": failure},
        )

    def get_event_log(self, event_type: Optional[EscrowEventType] = None) -> list[EscrowEvent]:
        """Return published events, optionally filtered by type."""
        if event_type is None:
            return list(self._event_log)
        return [e for e in self._event_log if e.event_type == event_type.value]
