"""DeliveryLedger: persistence operations on webhook delivery rows.

The ledger is the only place that writes delivery status with SQL
statements rather than through ORM attribute changes. Those statements are
conditional updates, so a row only moves if it is still in the state the
caller expects. This is what makes concurrent workers safe: two workers
that select the same PENDING row race on the claim UPDATE, and exactly one
of them sees ``rowcount == 1``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.pagination import Page, normalize_page, page_offset
from src.models.webhook import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    DeliveryStatus,
    InvalidDeliveryTransitionError,
    Webhook,
    WebhookDelivery,
    WebhookPayload,
    can_transition,
)

log = structlog.get_logger(__name__)


class DeliveryNotFoundError(Exception):
    """Raised when a delivery does not exist or belongs to another organization."""

    def __init__(self, delivery_id: uuid.UUID) -> None:
        super().__init__(f"Delivery '{delivery_id}' not found")
        self.delivery_id = delivery_id


@dataclass
class DeliveryStats:
    """Delivery counters for an organization (optionally one webhook)."""

    by_status: dict[str, int] = field(default_factory=dict)
    last_24_hours: int = 0
    average_delivery_time_ms: float | None = None

    @property
    def total(self) -> int:
        return sum(self.by_status.values())

    @property
    def successful(self) -> int:
        return self.by_status.get(DeliveryStatus.DELIVERED, 0)

    @property
    def failed(self) -> int:
        return self.by_status.get(DeliveryStatus.FAILED, 0)

    @property
    def pending(self) -> int:
        return sum(
            self.by_status.get(status, 0)
            for status in (
                DeliveryStatus.PENDING,
                DeliveryStatus.DELIVERING,
                DeliveryStatus.RETRYING,
            )
        )

    @property
    def success_rate(self) -> float:
        """Percentage of finished deliveries (delivered + failed) that succeeded."""
        finished = self.successful + self.failed
        if finished == 0:
            return 0.0
        return round(self.successful / finished * 100, 2)


class DeliveryLedger:
    """Delivery row operations scoped to one async DB session."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # ------------------------------------------------------------------ #
    # Enqueue
    # ------------------------------------------------------------------ #

    async def enqueue(self, webhook: Webhook, payload: WebhookPayload) -> WebhookDelivery:
        """Create a PENDING delivery, freezing max_attempts from the current policy."""
        delivery = WebhookDelivery(
            webhook_id=webhook.id,
            organization_id=webhook.organization_id,
            event=payload.event,
            payload=payload.to_wire(),
            status=DeliveryStatus.PENDING,
            attempts=0,
            max_attempts=webhook.policy.max_attempts,
        )
        self._db.add(delivery)
        await self._db.flush()

        log.debug(
            "webhook.delivery.enqueued",
            delivery_id=str(delivery.id),
            webhook_id=str(webhook.id),
            event_type=payload.event,
            max_attempts=delivery.max_attempts,
        )
        return delivery

    # ------------------------------------------------------------------ #
    # Worker selection and claim
    # ------------------------------------------------------------------ #

    async def select_due(
        self,
        *,
        now: datetime,
        batch_size: int,
    ) -> list[tuple[uuid.UUID, DeliveryStatus]]:
        """Return ids of due deliveries with the status each was selected in.

        Up to ``batch_size`` never-attempted PENDING rows (oldest first) plus
        up to ``batch_size`` RETRYING rows whose retry time has passed.
        """
        pending_stmt = (
            select(WebhookDelivery.id)
            .where(WebhookDelivery.status == DeliveryStatus.PENDING)
            .order_by(WebhookDelivery.created_at)
            .limit(batch_size)
        )
        retry_stmt = (
            select(WebhookDelivery.id)
            .where(
                WebhookDelivery.status == DeliveryStatus.RETRYING,
                WebhookDelivery.next_retry_at <= now,
            )
            .order_by(WebhookDelivery.next_retry_at)
            .limit(batch_size)
        )

        pending = (await self._db.execute(pending_stmt)).scalars().all()
        retrying = (await self._db.execute(retry_stmt)).scalars().all()

        return [(delivery_id, DeliveryStatus.PENDING) for delivery_id in pending] + [
            (delivery_id, DeliveryStatus.RETRYING) for delivery_id in retrying
        ]

    async def claim(
        self,
        delivery_id: uuid.UUID,
        expected: DeliveryStatus,
        *,
        now: datetime,
    ) -> bool:
        """Atomically move a delivery from ``expected`` to DELIVERING.

        ``now`` decides whether a RETRYING row is due. The lease itself
        (``last_attempt_at``) is stamped with the wall clock at claim time,
        which is what stale recovery measures against.

        Returns False when another worker claimed it first, an operator
        cancelled it, or (for RETRYING rows) it is no longer due.
        """
        if not can_transition(expected, DeliveryStatus.DELIVERING):
            raise InvalidDeliveryTransitionError(expected, DeliveryStatus.DELIVERING)

        conditions = [
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.status == expected,
        ]
        if expected == DeliveryStatus.RETRYING:
            conditions.append(WebhookDelivery.next_retry_at <= now)

        stmt = (
            update(WebhookDelivery)
            .where(*conditions)
            .values(status=DeliveryStatus.DELIVERING, last_attempt_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def record_outcome(self, delivery: WebhookDelivery) -> bool:
        """Write the result of an attempt held in ``delivery`` (a detached copy).

        Only a row still in DELIVERING is written. Returns False when the row
        left DELIVERING while the request was in flight, e.g. stale recovery
        handed it to another worker; that worker's state is kept.
        """
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery.id,
                WebhookDelivery.status == DeliveryStatus.DELIVERING,
            )
            .values(
                status=delivery.status,
                attempts=delivery.attempts,
                next_retry_at=delivery.next_retry_at,
                last_attempt_at=delivery.last_attempt_at,
                last_attempt_status=delivery.last_attempt_status,
                last_attempt_response=delivery.last_attempt_response,
                completed_at=delivery.completed_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def fail_in_flight(self, delivery_id: uuid.UUID, reason: str, *, now: datetime) -> bool:
        """Move a DELIVERING row straight to FAILED. Returns False if it is no longer in flight."""
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status == DeliveryStatus.DELIVERING,
            )
            .values(
                status=DeliveryStatus.FAILED,
                last_attempt_response=reason,
                completed_at=now,
                next_retry_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def recover_stale(self, *, stale_before: datetime, now: datetime) -> int:
        """Hand DELIVERING rows abandoned by a crashed worker back to the retry queue."""
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.status == DeliveryStatus.DELIVERING,
                WebhookDelivery.last_attempt_at < stale_before,
            )
            .values(status=DeliveryStatus.RETRYING, next_retry_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        recovered = result.rowcount or 0
        if recovered:
            log.warning("webhook.delivery.stale_recovered", count=recovered)
        return recovered

    # ------------------------------------------------------------------ #
    # Operator reads and actions
    # ------------------------------------------------------------------ #

    async def get(self, delivery_id: uuid.UUID, organization_id: uuid.UUID) -> WebhookDelivery:
        """Fetch a delivery scoped to the organization.

        Raises:
            DeliveryNotFoundError: if it does not exist for this organization.
        """
        stmt = select(WebhookDelivery).where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.organization_id == organization_id,
        ).execution_options(populate_existing=True)
        delivery = (await self._db.execute(stmt)).scalar_one_or_none()
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def list_for_webhook(
        self,
        webhook_id: uuid.UUID,
        organization_id: uuid.UUID,
        *,
        page: int = 1,
        limit: int = 20,
        status: DeliveryStatus | None = None,
    ) -> Page[WebhookDelivery]:
        """Delivery history for a webhook, newest first."""
        page, limit = normalize_page(page, limit)

        conditions = [
            WebhookDelivery.webhook_id == webhook_id,
            WebhookDelivery.organization_id == organization_id,
        ]
        if status is not None:
            conditions.append(WebhookDelivery.status == status)

        total_stmt = select(func.count(WebhookDelivery.id)).where(*conditions)
        total = (await self._db.execute(total_stmt)).scalar() or 0

        items_stmt = (
            select(WebhookDelivery)
            .where(*conditions)
            .order_by(WebhookDelivery.created_at.desc())
            .offset(page_offset(page, limit))
            .limit(limit)
        )
        items = list((await self._db.execute(items_stmt)).scalars().all())
        return Page(items=items, total=total, page=page, limit=limit)

    async def cancel(
        self,
        delivery_id: uuid.UUID,
        organization_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> WebhookDelivery:
        """Withdraw a PENDING or RETRYING delivery.

        Raises:
            DeliveryNotFoundError: unknown delivery.
            InvalidDeliveryTransitionError: delivery is in flight or terminal.
        """
        now = now or datetime.now(UTC)
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.organization_id == organization_id,
                WebhookDelivery.status.in_(list(CANCELLABLE_STATUSES)),
            )
            .values(
                status=DeliveryStatus.CANCELLED,
                completed_at=now,
                next_retry_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)

        delivery = await self.get(delivery_id, organization_id)
        if result.rowcount != 1:
            raise InvalidDeliveryTransitionError(delivery.status, DeliveryStatus.CANCELLED)

        log.info(
            "webhook.delivery.cancelled",
            delivery_id=str(delivery_id),
            webhook_id=str(delivery.webhook_id),
        )
        return delivery

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete terminal deliveries completed before ``cutoff``."""
        stmt = (
            delete(WebhookDelivery)
            .where(
                WebhookDelivery.status.in_(list(TERMINAL_STATUSES)),
                WebhookDelivery.completed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        purged = result.rowcount or 0
        log.info("webhook.delivery.purged", count=purged, cutoff=cutoff.isoformat())
        return purged

    # ------------------------------------------------------------------ #
    # Statistics
    # ------------------------------------------------------------------ #

    async def stats(
        self,
        organization_id: uuid.UUID,
        *,
        webhook_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> DeliveryStats:
        """Counts by status, last-24h volume and average time-to-deliver."""
        now = now or datetime.now(UTC)
        since = now - timedelta(hours=24)

        conditions = [WebhookDelivery.organization_id == organization_id]
        if webhook_id is not None:
            conditions.append(WebhookDelivery.webhook_id == webhook_id)

        by_status_stmt = (
            select(WebhookDelivery.status, func.count(WebhookDelivery.id))
            .where(*conditions)
            .group_by(WebhookDelivery.status)
        )
        by_status = {
            str(row[0]): int(row[1])
            for row in (await self._db.execute(by_status_stmt)).all()
        }

        recent_stmt = select(func.count(WebhookDelivery.id)).where(
            *conditions,
            WebhookDelivery.created_at >= since,
        )
        last_24_hours = (await self._db.execute(recent_stmt)).scalar() or 0

        # Durations computed client-side: interval arithmetic differs per backend
        timing_stmt = select(WebhookDelivery.created_at, WebhookDelivery.completed_at).where(
            *conditions,
            WebhookDelivery.status == DeliveryStatus.DELIVERED,
            WebhookDelivery.completed_at >= since,
        )
        durations = [
            (completed - created).total_seconds() * 1000
            for created, completed in (await self._db.execute(timing_stmt)).all()
            if created is not None and completed is not None
        ]
        average = round(sum(durations) / len(durations), 2) if durations else None

        return DeliveryStats(
            by_status=by_status,
            last_24_hours=last_24_hours,
            average_delivery_time_ms=average,
        )
