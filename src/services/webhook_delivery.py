"""Delivery worker: attempts queued webhook deliveries and drives their state machine.

One pass (``process_pending_deliveries``):
  1. select up to ``batch_size`` PENDING and up to ``batch_size`` due RETRYING rows
  2. process each one independently, at most ``concurrency`` at a time
  3. a failure in one delivery never stops the others

One delivery:
  1. claim it (conditional UPDATE to DELIVERING, committed before any I/O)
  2. re-read the owning webhook so secret, headers and policy are current
  3. POST the stored envelope, signed over the exact body bytes, with no
     database transaction open
  4. 2xx            -> DELIVERED
     failure        -> attempts += 1, then
       retryable and attempts < max_attempts -> RETRYING (exponential backoff)
       otherwise                             -> FAILED
  5. write the outcome and the webhook health counters in one transaction;
     the outcome only lands if the row is still DELIVERING

A failure with no HTTP status (connection refused, DNS, timeout) is always
retryable. An HTTP failure is retryable only when its status is in the
webhook's ``retryable_status_codes``.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import Settings
from src.core.input_validation import RESERVED_HEADER_NAMES
from src.models.webhook import (
    DeliveryStatus,
    RetryPolicy,
    Webhook,
    WebhookDelivery,
)
from src.services.webhook_ledger import DeliveryLedger
from src.services.webhook_signing import SIGNATURE_HEADER, signature_header

log = structlog.get_logger(__name__)

# Recorded as last_attempt_status when no HTTP response was received
TRANSPORT_ERROR_STATUS = 0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _truncate(text: str | None, limit: int) -> str | None:
    if text is None or limit <= 0 or len(text) <= limit:
        return text
    return text[:limit]


# ------------------------------------------------------------------ #
# Outcome classification
# ------------------------------------------------------------------ #


class WebhookDeliveryError(Exception):
    """A delivery attempt that did not get a 2xx response.

    ``status_code`` is None for transport failures (no response at all).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None


def is_retryable_error(error: WebhookDeliveryError, policy: RetryPolicy) -> bool:
    """Transport failures always retry; HTTP failures only for configured codes."""
    if error.status_code is None:
        return True
    return policy.is_retryable_status(error.status_code)


# ------------------------------------------------------------------ #
# HTTP sender
# ------------------------------------------------------------------ #


@dataclass
class SendResult:
    """A successful (2xx) response from a subscriber."""

    status_code: int
    body: str

    def parsed_body(self) -> Any:
        """JSON-decoded body when possible, raw text otherwise."""
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError:
            return self.body


class WebhookSender:
    """Serializes, signs and POSTs webhook envelopes.

    Shared by the delivery worker and the synchronous test delivery so both
    produce byte-identical requests.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        user_agent: str = "FeedbackFlow-Webhook/1.0",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._user_agent = user_agent
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> WebhookSender:
        return cls(
            timeout_seconds=settings.webhook_request_timeout_seconds,
            user_agent=settings.webhook_user_agent,
            transport=transport,
        )

    @staticmethod
    def serialize(payload: dict[str, Any]) -> str:
        return json.dumps(payload, separators=(",", ":"), default=str)

    def build_headers(
        self,
        body: str,
        *,
        secret: str | None,
        custom_headers: dict[str, str] | None,
    ) -> dict[str, str]:
        # Engine headers go last and win over any same-named custom header
        headers = {
            name: value
            for name, value in (custom_headers or {}).items()
            if name.lower() not in RESERVED_HEADER_NAMES
        }
        headers["Content-Type"] = "application/json"
        headers["User-Agent"] = self._user_agent
        if secret:
            headers[SIGNATURE_HEADER] = signature_header(body, secret)
        return headers

    async def send(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        secret: str | None,
        headers: dict[str, str] | None = None,
    ) -> SendResult:
        """POST ``payload`` to ``url``.

        Raises:
            WebhookDeliveryError: on any transport failure or non-2xx response.
        """
        body = self.serialize(payload)
        request_headers = self.build_headers(body, secret=secret, custom_headers=headers)

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    url,
                    content=body.encode("utf-8"),
                    headers=request_headers,
                )
        except httpx.TimeoutException as exc:
            raise WebhookDeliveryError(
                f"Request timed out after {self._timeout:g}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise WebhookDeliveryError(
                f"Request failed: {str(exc) or exc.__class__.__name__}"
            ) from exc

        if not response.is_success:
            raise WebhookDeliveryError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
                response_body=response.text,
            )

        return SendResult(status_code=response.status_code, body=response.text)


# ------------------------------------------------------------------ #
# Worker
# ------------------------------------------------------------------ #


@dataclass
class DeliveryPassResult:
    """What one worker pass did."""

    selected: int = 0
    delivered: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    errored: int = 0


class DeliveryWorker:
    """Attempts due deliveries, one DB session per delivery."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sender: WebhookSender,
        *,
        batch_size: int = 100,
        concurrency: int = 4,
        response_body_limit: int = 1000,
    ) -> None:
        self._session_factory = session_factory
        self._sender = sender
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._response_body_limit = response_body_limit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> DeliveryWorker:
        return cls(
            session_factory,
            WebhookSender.from_settings(settings, transport=transport),
            batch_size=settings.webhook_batch_size,
            concurrency=settings.webhook_worker_concurrency,
            response_body_limit=settings.webhook_response_body_limit,
        )

    # ------------------------------------------------------------------ #
    # Pass
    # ------------------------------------------------------------------ #

    async def process_pending_deliveries(self, now: datetime | None = None) -> DeliveryPassResult:
        """Run one pass over due deliveries.

        Args:
            now: Point in time used to decide which retries are due.
        """
        now = now or _utcnow()

        async with self._session_factory() as session:
            due = await DeliveryLedger(session).select_due(now=now, batch_size=self._batch_size)

        result = DeliveryPassResult(selected=len(due))
        if not due:
            log.debug("webhook.worker.nothing_due")
            return result

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _guarded(delivery_id: uuid.UUID, expected: DeliveryStatus) -> DeliveryStatus | None:
            async with semaphore:
                return await self.process_delivery(delivery_id, expected, now=now)

        outcomes = await asyncio.gather(
            *(_guarded(delivery_id, expected) for delivery_id, expected in due),
            return_exceptions=True,
        )

        for (delivery_id, _), outcome in zip(due, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                result.errored += 1
                log.error(
                    "webhook.worker.delivery_error",
                    delivery_id=str(delivery_id),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            elif outcome is None:
                result.skipped += 1
            elif outcome == DeliveryStatus.DELIVERED:
                result.delivered += 1
            elif outcome == DeliveryStatus.RETRYING:
                result.retrying += 1
            else:
                result.failed += 1

        log.info("webhook.worker.pass_completed", **asdict(result))
        return result

    # ------------------------------------------------------------------ #
    # Single delivery
    # ------------------------------------------------------------------ #

    async def process_delivery(
        self,
        delivery_id: uuid.UUID,
        expected: DeliveryStatus,
        *,
        now: datetime | None = None,
    ) -> DeliveryStatus | None:
        """Claim and attempt one delivery.

        Returns the resulting status, or None if the claim was lost (another
        worker has it, it was cancelled, or it is not due) or stale recovery
        took the row back while the request was in flight.
        """
        now = now or _utcnow()

        async with self._session_factory() as session:
            claimed = await DeliveryLedger(session).claim(delivery_id, expected, now=now)
            if not claimed:
                await session.rollback()
                log.debug(
                    "webhook.delivery.claim_skipped",
                    delivery_id=str(delivery_id),
                    expected=str(expected),
                )
                return None

            delivery = await session.get(WebhookDelivery, delivery_id, populate_existing=True)
            if delivery is None:
                # Purged between claim and load
                await session.rollback()
                return None
            webhook = await session.get(Webhook, delivery.webhook_id)
            await session.commit()
            # Detached: the attempt runs with no open transaction and the
            # outcome is written with conditional statements only
            session.expunge_all()

            try:
                status = await self._attempt(session, delivery, webhook)
            except Exception as exc:
                await session.rollback()
                log.exception(
                    "webhook.delivery.unexpected_error",
                    delivery_id=str(delivery_id),
                    error=str(exc),
                )
                status = await self._fail_unexpected(session, delivery_id, exc)
            return status

    async def _attempt(
        self,
        session: AsyncSession,
        delivery: WebhookDelivery,
        webhook: Webhook | None,
    ) -> DeliveryStatus | None:
        attempt_at = _utcnow()
        delivery.last_attempt_at = attempt_at

        if webhook is None:
            delivery.last_attempt_response = "Webhook not found"
            delivery.transition_to(DeliveryStatus.FAILED, at=attempt_at)
            log.error(
                "webhook.delivery.webhook_missing",
                delivery_id=str(delivery.id),
                webhook_id=str(delivery.webhook_id),
            )
            return await self._write_outcome(session, delivery, None, {})

        try:
            response = await self._sender.send(
                webhook.url,
                delivery.payload,
                secret=webhook.secret,
                headers=webhook.headers,
            )
        except WebhookDeliveryError as error:
            webhook_changes = self._record_failure(delivery, webhook, error, attempt_at)
            return await self._write_outcome(session, delivery, webhook, webhook_changes)

        delivery.last_attempt_status = response.status_code
        delivery.last_attempt_response = _truncate(response.body, self._response_body_limit)
        delivery.transition_to(DeliveryStatus.DELIVERED, at=attempt_at)

        status = await self._write_outcome(
            session, delivery, webhook, {"last_successful_delivery": attempt_at}
        )
        if status is not None:
            log.info(
                "webhook.delivery.delivered",
                delivery_id=str(delivery.id),
                webhook_id=str(webhook.id),
                event_type=delivery.event,
                status_code=response.status_code,
                attempts=delivery.attempts,
            )
        return status

    async def _write_outcome(
        self,
        session: AsyncSession,
        delivery: WebhookDelivery,
        webhook: Webhook | None,
        webhook_changes: dict[str, Any],
    ) -> DeliveryStatus | None:
        """Persist one attempt: delivery row and webhook health in a single short transaction.

        Returns None when the delivery left DELIVERING during the request;
        its row is left as is but the attempt still counts toward webhook health.
        """
        written = await DeliveryLedger(session).record_outcome(delivery)
        if webhook is not None:
            # Atomic increment: concurrent attempts for the same webhook must not lose counts
            await session.execute(
                update(Webhook)
                .where(Webhook.id == webhook.id)
                .values(
                    delivery_attempts=Webhook.delivery_attempts + 1,
                    last_delivery_attempt=delivery.last_attempt_at,
                    **webhook_changes,
                )
                .execution_options(synchronize_session=False)
            )
        await session.commit()

        if not written:
            log.warning(
                "webhook.delivery.outcome_discarded",
                delivery_id=str(delivery.id),
                outcome=str(delivery.status),
            )
            return None
        return DeliveryStatus(delivery.status)

    def _record_failure(
        self,
        delivery: WebhookDelivery,
        webhook: Webhook,
        error: WebhookDeliveryError,
        attempt_at: datetime,
    ) -> dict[str, Any]:
        """Apply a failed attempt to ``delivery``; returns the webhook columns to update."""
        policy = webhook.policy
        delivery.attempts += 1
        delivery.last_attempt_status = (
            error.status_code if error.status_code is not None else TRANSPORT_ERROR_STATUS
        )
        detail = f"{error}: {error.response_body}" if error.response_body else str(error)
        delivery.last_attempt_response = _truncate(detail, self._response_body_limit)

        retryable = is_retryable_error(error, policy)
        if retryable and delivery.attempts < delivery.max_attempts:
            delay_ms = policy.backoff_delay_ms(delivery.attempts)
            delivery.transition_to(DeliveryStatus.RETRYING)
            delivery.next_retry_at = attempt_at + timedelta(milliseconds=delay_ms)
            log.warning(
                "webhook.delivery.retry_scheduled",
                delivery_id=str(delivery.id),
                webhook_id=str(webhook.id),
                attempts=delivery.attempts,
                max_attempts=delivery.max_attempts,
                status_code=error.status_code,
                retry_in_ms=delay_ms,
                error=str(error),
            )
            return {}

        if retryable:
            reason = f"{error} (gave up after {delivery.attempts} attempts)"
        else:
            reason = f"{error} (not retryable)"

        delivery.transition_to(DeliveryStatus.FAILED, at=attempt_at)
        log.error(
            "webhook.delivery.failed",
            delivery_id=str(delivery.id),
            webhook_id=str(webhook.id),
            attempts=delivery.attempts,
            status_code=error.status_code,
            reason=reason,
        )
        return {"last_failed_delivery": attempt_at, "failure_reason": reason}

    async def _fail_unexpected(
        self,
        session: AsyncSession,
        delivery_id: uuid.UUID,
        exc: Exception,
    ) -> DeliveryStatus | None:
        """Terminate a claimed delivery whose attempt crashed, so it never sits in DELIVERING."""
        reason = _truncate(f"Unexpected error: {exc}", self._response_body_limit)
        failed = await DeliveryLedger(session).fail_in_flight(delivery_id, reason, now=_utcnow())
        await session.commit()
        if failed:
            return DeliveryStatus.FAILED

        delivery = await session.get(WebhookDelivery, delivery_id, populate_existing=True)
        return DeliveryStatus(delivery.status) if delivery is not None else None

    # ------------------------------------------------------------------ #
    # Housekeeping
    # ------------------------------------------------------------------ #

    async def recover_stale_deliveries(
        self,
        stale_after: timedelta,
        *,
        now: datetime | None = None,
    ) -> int:
        """Requeue deliveries left in DELIVERING longer than ``stale_after``."""
        now = now or _utcnow()
        async with self._session_factory() as session:
            recovered = await DeliveryLedger(session).recover_stale(
                stale_before=now - stale_after,
                now=now,
            )
            await session.commit()
        return recovered

    async def purge_old_deliveries(
        self,
        older_than: timedelta,
        *,
        now: datetime | None = None,
    ) -> int:
        """Delete terminal deliveries that completed more than ``older_than`` ago."""
        now = now or _utcnow()
        async with self._session_factory() as session:
            purged = await DeliveryLedger(session).purge_older_than(now - older_than)
            await session.commit()
        return purged
