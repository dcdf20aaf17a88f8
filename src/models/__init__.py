"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate.
"""

from src.models.webhook import (
    DeliveryStatus,
    EventFilter,
    EventSubscription,
    FilterOperator,
    RetryPolicy,
    Webhook,
    WebhookDelivery,
    WebhookEventType,
    WebhookPayload,
)

__all__ = [
    "DeliveryStatus",
    "EventFilter",
    "EventSubscription",
    "FilterOperator",
    "RetryPolicy",
    "Webhook",
    "WebhookDelivery",
    "WebhookEventType",
    "WebhookPayload",
]
