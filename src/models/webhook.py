"""Webhook SQLAlchemy models and the value types stored inside them.

Two tables:
- Webhook: a tenant's endpoint subscription with retry policy and health fields
- WebhookDelivery: one event-to-webhook delivery lineage with retry state

JSON value types (pydantic):
- RetryPolicy: per-webhook bounds on attempts and backoff
- EventSubscription / EventFilter: per-event opt-in with optional data filters
- WebhookPayload: the envelope POSTed to subscribers (camelCase on the wire)

Delivery lifecycle:

    PENDING ──► DELIVERING ──► DELIVERED
       │            │
       │            ├──► RETRYING ──► DELIVERING ...
       │            │        │
       │            └──► FAILED
       │                     │
       └──► CANCELLED ◄──────┘ (from RETRYING)

DELIVERED, FAILED and CANCELLED are terminal: a row in one of them is never
mutated again.
"""

from __future__ import annotations

import operator
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base, PortableJSON, UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ------------------------------------------------------------------ #
# Enumerations
# ------------------------------------------------------------------ #


class DeliveryStatus(StrEnum):
    """Lifecycle states of a webhook delivery."""

    PENDING = "pending"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[DeliveryStatus] = frozenset(
    {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.DELIVERING, DeliveryStatus.CANCELLED}),
    DeliveryStatus.DELIVERING: frozenset(
        {DeliveryStatus.DELIVERED, DeliveryStatus.RETRYING, DeliveryStatus.FAILED}
    ),
    DeliveryStatus.RETRYING: frozenset({DeliveryStatus.DELIVERING, DeliveryStatus.CANCELLED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
}

# Only these states may be withdrawn by an operator
CANCELLABLE_STATUSES: frozenset[DeliveryStatus] = frozenset(
    status
    for status, targets in ALLOWED_TRANSITIONS.items()
    if DeliveryStatus.CANCELLED in targets
)


def can_transition(current: str, target: str) -> bool:
    """Return True if the state machine allows current -> target."""
    return DeliveryStatus(target) in ALLOWED_TRANSITIONS[DeliveryStatus(current)]


class InvalidDeliveryTransitionError(ValueError):
    """Raised when a delivery is moved along an edge the state machine forbids."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition delivery from '{current}' to '{target}'")
        self.current = current
        self.target = target


class WebhookEventType(StrEnum):
    """Domain events raised by the platform.

    Any non-empty event string can be subscribed to; these are the ones the
    platform emits today.
    """

    CYCLE_CREATED = "cycle:created"
    CYCLE_ACTIVATED = "cycle:activated"
    CYCLE_UPDATED = "cycle:updated"
    CYCLE_CLOSED = "cycle:closed"
    FEEDBACK_CREATED = "feedback:created"
    FEEDBACK_SUBMITTED = "feedback:submitted"
    FEEDBACK_ACKNOWLEDGED = "feedback:acknowledged"
    NOTIFICATION_SENT = "notification:sent"
    USER_CREATED = "user:created"
    USER_UPDATED = "user:updated"


class FilterOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"


def _starts_with(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, str) or not isinstance(expected, str):
        raise TypeError("starts_with requires strings")
    return actual.startswith(expected)


def _ends_with(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, str) or not isinstance(expected, str):
        raise TypeError("ends_with requires strings")
    return actual.endswith(expected)


_OPERATORS: dict[FilterOperator, Callable[[Any, Any], bool]] = {
    FilterOperator.EQUALS: operator.eq,
    FilterOperator.NOT_EQUALS: operator.ne,
    FilterOperator.CONTAINS: lambda actual, expected: expected in actual,
    FilterOperator.NOT_CONTAINS: lambda actual, expected: expected not in actual,
    FilterOperator.STARTS_WITH: _starts_with,
    FilterOperator.ENDS_WITH: _ends_with,
    FilterOperator.GREATER_THAN: operator.gt,
    FilterOperator.LESS_THAN: operator.lt,
    FilterOperator.IN: lambda actual, expected: actual in expected,
    FilterOperator.NOT_IN: lambda actual, expected: actual not in expected,
}

_NEGATED_OPERATORS = frozenset(
    {FilterOperator.NOT_EQUALS, FilterOperator.NOT_CONTAINS, FilterOperator.NOT_IN}
)

_MISSING = object()


def _lookup(data: Any, path: str) -> Any:
    """Resolve a dotted path ("cycle.status") inside nested dicts."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


# ------------------------------------------------------------------ #
# JSON value types
# ------------------------------------------------------------------ #


DEFAULT_RETRYABLE_STATUS_CODES: tuple[int, ...] = (408, 429, 500, 502, 503, 504)

# Keeps initial_delay * multiplier**exponent finite for every allowed max_attempts
MAX_RETRY_DELAY_MS = 24 * 60 * 60 * 1000
MAX_BACKOFF_MULTIPLIER = 10


class RetryPolicy(BaseModel):
    """Bounds on how many attempts are made and how the delay between them grows.

    Delays are in milliseconds.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=25)
    initial_delay: int = Field(
        default=1000, ge=0, le=MAX_RETRY_DELAY_MS, description="Delay before the first retry (ms)"
    )
    max_delay: int = Field(
        default=30000, ge=0, le=MAX_RETRY_DELAY_MS, description="Upper bound for any retry delay (ms)"
    )
    backoff_multiplier: float = Field(default=2, ge=1, le=MAX_BACKOFF_MULTIPLIER)
    retryable_status_codes: list[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_STATUS_CODES)
    )

    @model_validator(mode="after")
    def _check_delays(self) -> RetryPolicy:
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be greater than or equal to initial_delay")
        return self

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before the retry that follows failed attempt number ``attempt`` (1-based)."""
        exponent = max(attempt, 1) - 1
        delay = self.initial_delay * (self.backoff_multiplier**exponent)
        return int(min(delay, self.max_delay))

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retryable_status_codes


class EventFilter(BaseModel):
    """A single condition on the event data, e.g. ``cycle.type equals "annual"``."""

    field: str = Field(..., min_length=1, description="Dotted path into the event data")
    operator: FilterOperator
    value: Any = None

    def matches(self, data: dict[str, Any]) -> bool:
        actual = _lookup(data, self.field)
        if actual is _MISSING:
            return self.operator in _NEGATED_OPERATORS
        try:
            return bool(_OPERATORS[self.operator](actual, self.value))
        except TypeError:
            return False


class EventSubscription(BaseModel):
    """Opt-in for one event type on one webhook."""

    event: str = Field(..., min_length=1)
    enabled: bool = True
    filters: list[EventFilter] = Field(default_factory=list)

    def matches(self, data: dict[str, Any]) -> bool:
        return self.enabled and all(f.matches(data) for f in self.filters)


class PayloadMetadata(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source: str
    version: str = "1.0"
    correlation_id: str


class WebhookPayload(BaseModel):
    """The envelope POSTed to a subscriber. Serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    event: str
    timestamp: str
    organization_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: PayloadMetadata

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ------------------------------------------------------------------ #
# ORM models
# ------------------------------------------------------------------ #


class Webhook(Base):
    """A tenant-scoped webhook endpoint subscription.

    The secret is kept in the clear because every delivery must re-derive
    the HMAC from it; it is never returned by the API after creation.
    """

    __tablename__ = "webhooks"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    organization_id: Mapped[uuid.UUID] = mapped_column(
        nullable=False,
        index=True,
        comment="Owning organization (tenant)",
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="http(s) endpoint that receives event payloads",
    )

    events: Mapped[list[dict[str, Any]]] = mapped_column(
        PortableJSON,
        nullable=False,
        default=list,
        comment="Event subscriptions: [{event, enabled, filters}]",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Inactive webhooks are skipped by event matching and test delivery",
    )

    secret: Mapped[str | None] = mapped_column(
        String(256),
        nullable=True,
        comment="HMAC-SHA256 key; no signature header is sent when empty",
    )

    headers: Mapped[dict[str, str]] = mapped_column(
        PortableJSON,
        nullable=False,
        default=dict,
        comment="Static headers added to every delivery",
    )

    retry_policy: Mapped[dict[str, Any]] = mapped_column(
        PortableJSON,
        nullable=False,
        default=lambda: RetryPolicy().model_dump(),
    )

    # Rolling delivery health
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_delivery_attempt: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_successful_delivery: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_failed_delivery: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=_utcnow,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        Index("ix_webhook_org_active", "organization_id", "is_active"),
    )

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy.model_validate(self.retry_policy or {})

    @property
    def subscriptions(self) -> list[EventSubscription]:
        return [EventSubscription.model_validate(e) for e in self.events or []]

    @property
    def has_secret(self) -> bool:
        return bool(self.secret)

    def subscription_for(self, event_type: str) -> EventSubscription | None:
        for subscription in self.subscriptions:
            if subscription.event == event_type:
                return subscription
        return None

    def matches_event(self, event_type: str, data: dict[str, Any]) -> bool:
        """Active, subscribed to ``event_type`` with it enabled, and all filters pass."""
        if not self.is_active:
            return False
        subscription = self.subscription_for(event_type)
        return subscription is not None and subscription.matches(data)

    def __repr__(self) -> str:
        return (
            f"<Webhook id={self.id} org={self.organization_id} "
            f"url={self.url!r} active={self.is_active}>"
        )


class WebhookDelivery(Base):
    """One event delivered to one webhook, tracked through retries until terminal.

    ``max_attempts`` is copied from the webhook's policy at enqueue time so
    later policy edits never change work that is already queued.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    # No FK: deleting a webhook keeps its delivery history
    webhook_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)

    organization_id: Mapped[uuid.UUID] = mapped_column(
        nullable=False,
        comment="Copied from the webhook at enqueue time",
    )

    event: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Event type that triggered this delivery",
    )

    payload: Mapped[dict[str, Any]] = mapped_column(
        PortableJSON,
        nullable=False,
        comment="Full envelope delivered to the endpoint (immutable)",
    )

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=DeliveryStatus.PENDING,
    )

    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Failed attempts so far",
    )

    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    next_retry_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="When a RETRYING delivery becomes due",
    )

    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    last_attempt_status: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="HTTP status of the last attempt; 0 for transport failures",
    )

    last_attempt_response: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Truncated response body or error text",
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=_utcnow,
    )

    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="Set exactly when the delivery reaches a terminal state",
    )

    __table_args__ = (
        Index("ix_delivery_status_retry", "status", "next_retry_at"),
        Index("ix_delivery_webhook_created", "webhook_id", "created_at"),
        Index("ix_delivery_org_created", "organization_id", "created_at"),
        Index("ix_delivery_status_completed", "status", "completed_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return DeliveryStatus(self.status) in TERMINAL_STATUSES

    def transition_to(self, target: DeliveryStatus, *, at: datetime | None = None) -> None:
        """Move to ``target`` if the state machine allows it.

        Raises:
            InvalidDeliveryTransitionError: for a forbidden edge.
        """
        if not can_transition(self.status, target):
            raise InvalidDeliveryTransitionError(self.status, target)
        self.status = target
        if target in TERMINAL_STATUSES:
            self.completed_at = at or _utcnow()
            self.next_retry_at = None

    def __repr__(self) -> str:
        return (
            f"<WebhookDelivery id={self.id} webhook={self.webhook_id} "
            f"event={self.event!r} status={self.status} "
            f"attempts={self.attempts}/{self.max_attempts}>"
        )
