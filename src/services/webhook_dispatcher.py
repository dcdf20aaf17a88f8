"""EventDispatcher: fans domain events out to matching webhooks.

``process_event`` only enqueues: it writes one PENDING delivery per matching
webhook and returns. The delivery worker performs the HTTP calls later.

``test_webhook`` is deliberately a separate path: one synchronous attempt,
nothing written to the ledger, no retry scheduling.

Envelope sent to subscribers (camelCase on the wire):

    {
        "id": "evt_3f9a...",
        "event": "cycle:created",
        "timestamp": "2026-03-01T09:30:00.000Z",
        "organizationId": "7c1e...",
        "data": {...},
        "metadata": {"source": "event-system", "version": "1.0", "correlationId": "req_..."}
    }
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.core.events import DELIVERIES_ENQUEUED, DomainEventBus, get_event_bus
from src.core.input_validation import ValidationError
from src.models.webhook import PayloadMetadata, Webhook, WebhookDelivery, WebhookPayload
from src.services.webhook import WebhookService
from src.services.webhook_delivery import WebhookDeliveryError, WebhookSender
from src.services.webhook_ledger import DeliveryLedger

log = structlog.get_logger(__name__)

EVENT_SOURCE = "event-system"
TEST_SOURCE = "webhook-test"
PAYLOAD_VERSION = "1.0"

DEFAULT_TEST_DATA: dict[str, Any] = {
    "test": True,
    "message": "This is a test webhook delivery",
}


@dataclass
class TestDeliveryResult:
    """Outcome of a synchronous test delivery."""

    __test__ = False  # not a pytest test class

    success: bool
    status_code: int | None = None
    response: Any = None
    error: str | None = None


def current_correlation_id() -> str:
    """The request id bound in the logging context, or a fresh id outside requests."""
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    if request_id:
        return str(request_id)
    return f"corr_{uuid.uuid4().hex}"


def build_payload(
    event_type: str,
    data: dict[str, Any],
    organization_id: uuid.UUID,
    *,
    source: str,
    id_prefix: str,
    correlation_id: str,
) -> WebhookPayload:
    timestamp = datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return WebhookPayload(
        id=f"{id_prefix}_{uuid.uuid4().hex}",
        event=event_type,
        timestamp=timestamp,
        organization_id=str(organization_id),
        data=data,
        metadata=PayloadMetadata(
            source=source,
            version=PAYLOAD_VERSION,
            correlation_id=correlation_id,
        ),
    )


class EventDispatcher:
    """Event fan-out and test delivery, scoped to the current async DB session."""

    def __init__(
        self,
        db: AsyncSession,
        sender: WebhookSender | None = None,
        events: DomainEventBus | None = None,
    ) -> None:
        self._db = db
        self._sender = sender or WebhookSender.from_settings(get_settings())
        self._events = events or get_event_bus()

    async def find_matching_webhooks(
        self,
        event_type: str,
        data: dict[str, Any],
        organization_id: uuid.UUID,
    ) -> list[Webhook]:
        """Active webhooks of the organization that have ``event_type`` enabled and whose filters pass."""
        stmt = (
            select(Webhook)
            .where(
                Webhook.organization_id == organization_id,
                Webhook.is_active.is_(True),
            )
            .order_by(Webhook.created_at)
        )
        webhooks = (await self._db.execute(stmt)).scalars().all()
        return [webhook for webhook in webhooks if webhook.matches_event(event_type, data)]

    async def process_event(
        self,
        event_type: str,
        data: dict[str, Any],
        organization_id: uuid.UUID,
    ) -> list[WebhookDelivery]:
        """Enqueue one PENDING delivery per matching webhook.

        Returns:
            The created deliveries (empty when nothing matches).
        """
        matching = await self.find_matching_webhooks(event_type, data, organization_id)
        if not matching:
            log.debug(
                "webhook.dispatch.no_match",
                event_type=event_type,
                organization_id=str(organization_id),
            )
            return []

        correlation_id = current_correlation_id()
        ledger = DeliveryLedger(self._db)
        deliveries: list[WebhookDelivery] = []
        for webhook in matching:
            payload = build_payload(
                event_type,
                data,
                organization_id,
                source=EVENT_SOURCE,
                id_prefix="evt",
                correlation_id=correlation_id,
            )
            deliveries.append(await ledger.enqueue(webhook, payload))

        log.info(
            "webhook.dispatch.enqueued",
            event_type=event_type,
            organization_id=str(organization_id),
            correlation_id=correlation_id,
            deliveries=len(deliveries),
        )
        await self._events.publish(DELIVERIES_ENQUEUED, deliveries)
        return deliveries

    async def test_webhook(
        self,
        webhook_id: uuid.UUID,
        organization_id: uuid.UUID,
        event_type: str,
        data: dict[str, Any] | None = None,
    ) -> TestDeliveryResult:
        """Deliver a synthetic event once, right now, without touching the ledger.

        Raises:
            WebhookNotFoundError: unknown webhook.
            ValidationError: the webhook is inactive.
        """
        webhook = await WebhookService(self._db).get(webhook_id, organization_id)
        if not webhook.is_active:
            raise ValidationError("Webhook is not active")

        payload = build_payload(
            event_type,
            data if data is not None else dict(DEFAULT_TEST_DATA),
            organization_id,
            source=TEST_SOURCE,
            id_prefix="test",
            correlation_id=current_correlation_id(),
        )

        try:
            response = await self._sender.send(
                webhook.url,
                payload.to_wire(),
                secret=webhook.secret,
                headers=webhook.headers,
            )
        except WebhookDeliveryError as exc:
            log.info(
                "webhook.test.failed",
                webhook_id=str(webhook_id),
                status_code=exc.status_code,
                error=str(exc),
            )
            return TestDeliveryResult(success=False, status_code=exc.status_code, error=str(exc))

        log.info(
            "webhook.test.delivered",
            webhook_id=str(webhook_id),
            status_code=response.status_code,
        )
        return TestDeliveryResult(
            success=True,
            status_code=response.status_code,
            response=response.parsed_body(),
        )
