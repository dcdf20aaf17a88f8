"""WebhookService: the webhook registry.

Creates, reads, updates, deletes and (de)activates webhook subscriptions for
an organization, and reports delivery statistics. Delivery itself lives in
``webhook_dispatcher`` (enqueue, test delivery) and ``webhook_delivery``
(the worker).

Defaults applied at creation:
  - a 64-hex-character secret when none is supplied
  - retry policy: 3 attempts, 1 s initial delay, 30 s cap, x2 backoff,
    retry on 408, 429, 500, 502, 503, 504
  - no event subscriptions; each event must be enabled explicitly

Every mutation publishes ``webhook:created`` / ``webhook:updated`` /
``webhook:deleted`` on the domain event bus with the affected entity.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.events import (
    WEBHOOK_CREATED,
    WEBHOOK_DELETED,
    WEBHOOK_UPDATED,
    DomainEventBus,
    get_event_bus,
)
from src.core.input_validation import InputValidator, ValidationError
from src.core.pagination import Page, normalize_page, page_offset
from src.models.webhook import EventSubscription, RetryPolicy, Webhook
from src.services.webhook_ledger import DeliveryLedger
from src.services.webhook_signing import generate_secret

log = structlog.get_logger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {"name", "description", "url", "events", "is_active", "secret", "headers", "retry_policy"}
)


class WebhookNotFoundError(Exception):
    """Raised when a webhook does not exist or belongs to another organization."""

    def __init__(self, webhook_id: uuid.UUID) -> None:
        super().__init__(f"Webhook '{webhook_id}' not found")
        self.webhook_id = webhook_id


@dataclass
class WebhookStats:
    """Organization-wide webhook and delivery counters."""

    total_webhooks: int
    active_webhooks: int
    inactive_webhooks: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    pending_deliveries: int
    success_rate: float
    last_24_hours_deliveries: int
    average_delivery_time_ms: float | None


def normalize_events(
    events: Iterable[str | dict[str, Any] | EventSubscription],
) -> list[dict[str, Any]]:
    """Coerce event subscriptions to their stored JSON form.

    A bare string enables that event with no filters. A later entry for the
    same event replaces an earlier one.
    """
    normalized: dict[str, dict[str, Any]] = {}
    for entry in events:
        try:
            if isinstance(entry, str):
                subscription = EventSubscription(event=entry)
            elif isinstance(entry, EventSubscription):
                subscription = entry
            else:
                subscription = EventSubscription.model_validate(entry)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid event subscription: {exc.errors()[0]['msg']}") from exc
        normalized[subscription.event] = subscription.model_dump(mode="json")
    return list(normalized.values())


def merge_retry_policy(
    current: dict[str, Any] | None,
    overrides: dict[str, Any] | RetryPolicy | None,
) -> dict[str, Any]:
    """Overlay caller-supplied policy fields onto ``current`` (or the defaults)."""
    if isinstance(overrides, RetryPolicy):
        overrides = overrides.model_dump(exclude_unset=True)
    merged = {**RetryPolicy().model_dump(), **(current or {}), **(overrides or {})}
    try:
        return RetryPolicy.model_validate(merged).model_dump()
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid retry policy: {exc.errors()[0]['msg']}") from exc


def merge_headers(
    current: dict[str, str] | None,
    changes: dict[str, str | None],
) -> dict[str, str]:
    """Overlay header changes; a ``None`` value removes that header."""
    merged = dict(current or {})
    for name, value in changes.items():
        if value is None:
            merged.pop(name, None)
        else:
            merged[name] = value
    return InputValidator.validate_headers(merged)


class WebhookService:
    """Webhook registry operations scoped to the current async DB session."""

    def __init__(self, db: AsyncSession, events: DomainEventBus | None = None) -> None:
        self._db = db
        self._events = events or get_event_bus()

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    async def create(
        self,
        organization_id: uuid.UUID,
        *,
        name: str,
        url: str,
        description: str | None = None,
        events: Iterable[str | dict[str, Any] | EventSubscription] = (),
        secret: str | None = None,
        headers: dict[str, str] | None = None,
        retry_policy: dict[str, Any] | RetryPolicy | None = None,
        is_active: bool = True,
        created_by: str | None = None,
    ) -> Webhook:
        """Register a new webhook for an organization.

        Raises:
            ValidationError: bad URL scheme, empty name, bad headers or policy.
        """
        webhook = Webhook(
            organization_id=organization_id,
            name=InputValidator.validate_name(name),
            description=description,
            url=InputValidator.validate_webhook_url(url),
            events=normalize_events(events),
            is_active=is_active,
            secret=secret or generate_secret(),
            headers=InputValidator.validate_headers(headers or {}),
            retry_policy=merge_retry_policy(None, retry_policy),
            delivery_attempts=0,
            created_by=created_by,
        )
        self._db.add(webhook)
        await self._db.flush()

        log.info(
            "webhook.created",
            webhook_id=str(webhook.id),
            organization_id=str(organization_id),
            url=webhook.url,
            events=[e["event"] for e in webhook.events],
        )
        await self._events.publish(WEBHOOK_CREATED, webhook)
        return webhook

    # ------------------------------------------------------------------ #
    # Querying
    # ------------------------------------------------------------------ #

    async def get(self, webhook_id: uuid.UUID, organization_id: uuid.UUID) -> Webhook:
        """Fetch a single webhook, scoped to the organization.

        Raises:
            WebhookNotFoundError: if it does not exist for this organization.
        """
        stmt = select(Webhook).where(
            Webhook.id == webhook_id,
            Webhook.organization_id == organization_id,
        )
        webhook = (await self._db.execute(stmt)).scalar_one_or_none()
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        return webhook

    async def list_for_organization(
        self,
        organization_id: uuid.UUID,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> Page[Webhook]:
        """Webhooks of an organization, newest first."""
        page, limit = normalize_page(page, limit)

        total_stmt = select(func.count(Webhook.id)).where(
            Webhook.organization_id == organization_id
        )
        total = (await self._db.execute(total_stmt)).scalar() or 0

        stmt = (
            select(Webhook)
            .where(Webhook.organization_id == organization_id)
            .order_by(Webhook.created_at.desc(), Webhook.id)
            .offset(page_offset(page, limit))
            .limit(limit)
        )
        items = list((await self._db.execute(stmt)).scalars().all())
        return Page(items=items, total=total, page=page, limit=limit)

    # ------------------------------------------------------------------ #
    # Mutation
    # ------------------------------------------------------------------ #

    async def update(
        self,
        webhook_id: uuid.UUID,
        organization_id: uuid.UUID,
        changes: dict[str, Any],
    ) -> Webhook:
        """Apply a partial update.

        ``retry_policy`` and ``headers`` are merged into the stored values
        (a header set to None is removed); ``events`` replaces the whole
        subscription list; an empty ``secret`` removes signing.

        Raises:
            WebhookNotFoundError: unknown webhook.
            ValidationError: invalid field values or unknown fields.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {sorted(unknown)}")

        webhook = await self.get(webhook_id, organization_id)

        if "name" in changes:
            webhook.name = InputValidator.validate_name(changes["name"])
        if "description" in changes:
            webhook.description = changes["description"]
        if "url" in changes and changes["url"] != webhook.url:
            webhook.url = InputValidator.validate_webhook_url(changes["url"])
        if changes.get("events") is not None:
            webhook.events = normalize_events(changes["events"])
        if changes.get("is_active") is not None:
            webhook.is_active = bool(changes["is_active"])
        if "secret" in changes and changes["secret"] is not None:
            webhook.secret = changes["secret"] or None
        if changes.get("headers") is not None:
            webhook.headers = merge_headers(webhook.headers, changes["headers"])
        if changes.get("retry_policy") is not None:
            webhook.retry_policy = merge_retry_policy(webhook.retry_policy, changes["retry_policy"])

        webhook.updated_at = datetime.now(UTC)
        await self._db.flush()

        log.info(
            "webhook.updated",
            webhook_id=str(webhook_id),
            organization_id=str(organization_id),
            fields=sorted(changes),
        )
        await self._events.publish(WEBHOOK_UPDATED, webhook)
        return webhook

    async def set_active(
        self,
        webhook_id: uuid.UUID,
        organization_id: uuid.UUID,
        is_active: bool,
    ) -> Webhook:
        """Activate or deactivate a webhook."""
        webhook = await self.get(webhook_id, organization_id)
        webhook.is_active = is_active
        webhook.updated_at = datetime.now(UTC)
        await self._db.flush()

        log.info(
            "webhook.activated" if is_active else "webhook.deactivated",
            webhook_id=str(webhook_id),
            organization_id=str(organization_id),
        )
        await self._events.publish(WEBHOOK_UPDATED, webhook)
        return webhook

    async def activate(self, webhook_id: uuid.UUID, organization_id: uuid.UUID) -> Webhook:
        return await self.set_active(webhook_id, organization_id, True)

    async def deactivate(self, webhook_id: uuid.UUID, organization_id: uuid.UUID) -> Webhook:
        return await self.set_active(webhook_id, organization_id, False)

    async def delete(self, webhook_id: uuid.UUID, organization_id: uuid.UUID) -> Webhook:
        """Hard-delete a webhook. Its delivery history is kept.

        Raises:
            WebhookNotFoundError: unknown webhook.
        """
        webhook = await self.get(webhook_id, organization_id)
        await self._db.delete(webhook)
        await self._db.flush()

        log.info(
            "webhook.deleted",
            webhook_id=str(webhook_id),
            organization_id=str(organization_id),
        )
        await self._events.publish(WEBHOOK_DELETED, webhook)
        return webhook

    # ------------------------------------------------------------------ #
    # Statistics
    # ------------------------------------------------------------------ #

    async def get_stats(self, organization_id: uuid.UUID) -> WebhookStats:
        stmt = (
            select(Webhook.is_active, func.count(Webhook.id))
            .where(Webhook.organization_id == organization_id)
            .group_by(Webhook.is_active)
        )
        counts = {bool(row[0]): int(row[1]) for row in (await self._db.execute(stmt)).all()}
        active = counts.get(True, 0)
        inactive = counts.get(False, 0)

        deliveries = await DeliveryLedger(self._db).stats(organization_id)

        return WebhookStats(
            total_webhooks=active + inactive,
            active_webhooks=active,
            inactive_webhooks=inactive,
            total_deliveries=deliveries.total,
            successful_deliveries=deliveries.successful,
            failed_deliveries=deliveries.failed,
            pending_deliveries=deliveries.pending,
            success_rate=deliveries.success_rate,
            last_24_hours_deliveries=deliveries.last_24_hours,
            average_delivery_time_ms=deliveries.average_delivery_time_ms,
        )
