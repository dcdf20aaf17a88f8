"""Webhook management API endpoints.

Routes (all under /api/v1/integrations/webhooks, scoped to the caller's organization):
  POST   ""                                  - Register a new webhook (secret returned once)
  GET    ""                                  - List webhooks
  GET    /stats                              - Webhook and delivery statistics
  GET    /{webhook_id}                       - Read a webhook
  PUT    /{webhook_id}                       - Partially update a webhook
  DELETE /{webhook_id}                       - Remove a webhook (delivery history kept)
  POST   /{webhook_id}/activate              - Enable delivery
  POST   /{webhook_id}/deactivate            - Disable delivery
  POST   /{webhook_id}/test                  - Send a test event synchronously
  GET    /{webhook_id}/deliveries            - Delivery history
  POST   /deliveries/{delivery_id}/cancel    - Cancel a queued delivery
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.dependencies import AuthenticatedUser, get_current_user
from src.config import Settings, get_settings
from src.core.input_validation import ValidationError
from src.core.pagination import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from src.database import get_db_session
from src.models.webhook import (
    MAX_BACKOFF_MULTIPLIER,
    MAX_RETRY_DELAY_MS,
    DeliveryStatus,
    EventSubscription,
    InvalidDeliveryTransitionError,
    RetryPolicy,
)
from src.services.webhook import WebhookNotFoundError, WebhookService
from src.services.webhook_delivery import WebhookSender
from src.services.webhook_dispatcher import EventDispatcher
from src.services.webhook_ledger import DeliveryLedger, DeliveryNotFoundError

log = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/integrations/webhooks",
    tags=["webhooks"],
)


def get_webhook_sender(settings: Settings = Depends(get_settings)) -> WebhookSender:
    """HTTP sender used for synchronous test deliveries."""
    return WebhookSender.from_settings(settings)


# ------------------------------------------------------------------ #
# Pydantic schemas
# ------------------------------------------------------------------ #


class RetryPolicyOverrides(BaseModel):
    """Partial retry policy; omitted fields keep their current value."""

    max_attempts: int | None = Field(None, ge=1, le=25, description="Total attempts per delivery.")
    initial_delay: int | None = Field(
        None, ge=0, le=MAX_RETRY_DELAY_MS, description="Delay before the first retry (ms)."
    )
    max_delay: int | None = Field(
        None, ge=0, le=MAX_RETRY_DELAY_MS, description="Upper bound on any retry delay (ms)."
    )
    backoff_multiplier: float | None = Field(
        None, ge=1, le=MAX_BACKOFF_MULTIPLIER, description="Growth factor per attempt."
    )
    retryable_status_codes: list[int] | None = Field(
        None, description="HTTP status codes that schedule a retry."
    )


class WebhookCreateRequest(BaseModel):
    """Request body for registering a new webhook endpoint."""

    name: str = Field(..., description="Human-readable label.", examples=["HRIS sync"])
    url: str = Field(
        ...,
        description="http(s) endpoint that will receive event POST requests.",
        examples=["https://hris.example.com/hooks/feedback"],
    )
    description: str | None = Field(None, description="Optional free-text description.")
    events: list[str | EventSubscription] = Field(
        default_factory=list,
        description="Event subscriptions. A bare string enables that event without filters.",
        examples=[["cycle:created", {"event": "feedback:submitted", "enabled": True, "filters": []}]],
    )
    secret: str | None = Field(
        None,
        description="HMAC signing secret. Generated when omitted.",
    )
    headers: dict[str, str] = Field(
        default_factory=dict, description="Static headers added to every delivery."
    )
    retry_policy: RetryPolicyOverrides | None = Field(
        None, description="Overrides merged onto the default retry policy."
    )
    is_active: bool = Field(True, description="Whether delivery starts enabled.")


class WebhookUpdateRequest(BaseModel):
    """Partial update. Only fields present in the body are changed."""

    name: str | None = None
    url: str | None = None
    description: str | None = None
    events: list[str | EventSubscription] | None = Field(
        None, description="Replaces the whole subscription list."
    )
    secret: str | None = Field(None, description="New secret; an empty string disables signing.")
    headers: dict[str, str | None] | None = Field(
        None, description="Merged into the current headers; null removes a header."
    )
    retry_policy: RetryPolicyOverrides | None = Field(
        None, description="Merged into the current retry policy."
    )
    is_active: bool | None = None


class WebhookResponse(BaseModel):
    """Registered webhook details. The secret itself is never echoed."""

    id: uuid.UUID = Field(..., description="Webhook unique identifier.")
    organization_id: uuid.UUID = Field(..., description="Owning organization.")
    name: str
    description: str | None = None
    url: str = Field(..., description="Target endpoint URL.")
    events: list[EventSubscription] = Field(..., description="Event subscriptions.")
    is_active: bool = Field(..., description="Whether delivery is enabled.")
    has_secret: bool = Field(..., description="Whether deliveries are signed.")
    headers: dict[str, str]
    retry_policy: RetryPolicy
    delivery_attempts: int = Field(..., description="Total delivery attempts made.")
    last_delivery_attempt: datetime | None = None
    last_successful_delivery: datetime | None = None
    last_failed_delivery: datetime | None = None
    failure_reason: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class WebhookCreatedResponse(WebhookResponse):
    """Returned once at creation; the only response that carries the secret."""

    secret: str | None = Field(None, description="Signing secret. Store it now.")


class WebhookListResponse(BaseModel):
    """Paginated list of webhooks for the organization."""

    items: list[WebhookResponse]
    total: int
    page: int
    limit: int
    has_next: bool
    has_prev: bool


class DeliveryResponse(BaseModel):
    """A delivery ledger entry."""

    id: uuid.UUID = Field(..., description="Delivery unique identifier.")
    webhook_id: uuid.UUID = Field(..., description="Target webhook.")
    event: str = Field(..., description="Event type that triggered the delivery.")
    payload: dict[str, Any] = Field(..., description="Envelope sent to the endpoint.")
    status: DeliveryStatus
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    last_attempt_status: int | None = Field(
        None, description="HTTP status of the last attempt; 0 for transport failures."
    )
    last_attempt_response: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class DeliveryListResponse(BaseModel):
    """Paginated delivery history for a webhook."""

    items: list[DeliveryResponse]
    total: int
    page: int
    limit: int
    has_next: bool
    has_prev: bool


class WebhookTestRequest(BaseModel):
    """Body for a manual test delivery."""

    event: str = Field(..., min_length=1, examples=["cycle:created"])
    payload: dict[str, Any] | None = Field(
        None, description="Event data to send. A generic test message when omitted."
    )


class WebhookTestResponse(BaseModel):
    success: bool
    status_code: int | None = None
    response: Any = None
    error: str | None = None


class WebhookStatsResponse(BaseModel):
    total_webhooks: int
    active_webhooks: int
    inactive_webhooks: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    pending_deliveries: int
    success_rate: float = Field(..., description="Percent of finished deliveries that succeeded.")
    last_24_hours_deliveries: int
    average_delivery_time_ms: float | None = None


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _not_found(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


# ------------------------------------------------------------------ #
# Endpoints
# ------------------------------------------------------------------ #


@router.post(
    "",
    response_model=WebhookCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook endpoint",
    responses={
        201: {"description": "Webhook registered; the response carries the signing secret."},
        400: {"description": "Invalid URL, name, headers or retry policy."},
    },
)
async def create_webhook(
    body: WebhookCreateRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> WebhookCreatedResponse:
    """Register a new webhook for the caller's organization."""
    svc = WebhookService(db)
    try:
        webhook = await svc.create(
            current_user.organization_id,
            name=body.name,
            url=body.url,
            description=body.description,
            events=body.events,
            secret=body.secret,
            headers=body.headers,
            retry_policy=(
                body.retry_policy.model_dump(exclude_none=True) if body.retry_policy else None
            ),
            is_active=body.is_active,
            created_by=current_user.id,
        )
    except ValidationError as exc:
        raise _bad_request(exc) from exc

    response = WebhookCreatedResponse.model_validate(webhook)
    response.secret = webhook.secret
    return response


@router.get(
    "",
    response_model=WebhookListResponse,
    summary="List registered webhooks",
)
async def list_webhooks(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> WebhookListResponse:
    """Webhooks of the caller's organization, newest first."""
    result = await WebhookService(db).list_for_organization(
        current_user.organization_id, page=page, limit=limit
    )
    return WebhookListResponse(
        items=[WebhookResponse.model_validate(wh) for wh in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        has_next=result.has_next,
        has_prev=result.has_prev,
    )


@router.get(
    "/stats",
    response_model=WebhookStatsResponse,
    summary="Webhook statistics",
)
async def get_webhook_stats(
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> WebhookStatsResponse:
    stats = await WebhookService(db).get_stats(current_user.organization_id)
    return WebhookStatsResponse.model_validate(stats, from_attributes=True)


@router.get(
    "/{webhook_id}",
    response_model=WebhookResponse,
    summary="Get a webhook",
    responses={404: {"description": "Webhook not found for this organization."}},
)
async def get_webhook(
    webhook_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> WebhookResponse:
    try:
        webhook = await WebhookService(db).get(webhook_id, current_user.organization_id)
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    return WebhookResponse.model_validate(webhook)


@router.put(
    "/{webhook_id}",
    response_model=WebhookResponse,
    summary="Update a webhook",
    responses={
        400: {"description": "Invalid field values."},
        404: {"description": "Webhook not found for this organization."},
    },
)
async def update_webhook(
    webhook_id: uuid.UUID,
    body: WebhookUpdateRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> WebhookResponse:
    """Apply the fields present in the body; headers and retry policy are merged."""
    changes = body.model_dump(exclude_unset=True)
    if body.events is not None:
        changes["events"] = body.events
    if body.retry_policy is not None:
        changes["retry_policy"] = body.retry_policy.model_dump(exclude_none=True)

    try:
        webhook = await WebhookService(db).update(
            webhook_id, current_user.organization_id, changes
        )
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    return WebhookResponse.model_validate(webhook)


@router.delete(
    "/{webhook_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a webhook",
    description="Remove a webhook. Its delivery history is kept.",
    responses={404: {"description": "Webhook not found for this organization."}},
)
async def delete_webhook(
    webhook_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> None:
    try:
        await WebhookService(db).delete(webhook_id, current_user.organization_id)
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post(
    "/{webhook_id}/activate",
    response_model=WebhookResponse,
    summary="Activate a webhook",
)
async def activate_webhook(
    webhook_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> WebhookResponse:
    try:
        webhook = await WebhookService(db).activate(webhook_id, current_user.organization_id)
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    return WebhookResponse.model_validate(webhook)


@router.post(
    "/{webhook_id}/deactivate",
    response_model=WebhookResponse,
    summary="Deactivate a webhook",
)
async def deactivate_webhook(
    webhook_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> WebhookResponse:
    try:
        webhook = await WebhookService(db).deactivate(webhook_id, current_user.organization_id)
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    return WebhookResponse.model_validate(webhook)


@router.post(
    "/{webhook_id}/test",
    response_model=WebhookTestResponse,
    summary="Send a test event to a webhook",
    description=(
        "Deliver a synthetic event to the endpoint once, right now. Nothing is written "
        "to the delivery history and failures are not retried."
    ),
    responses={
        200: {"description": "Attempt made; check `success` for the outcome."},
        400: {"description": "Webhook is inactive."},
        404: {"description": "Webhook not found for this organization."},
    },
)
async def test_webhook(
    webhook_id: uuid.UUID,
    body: WebhookTestRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    sender: WebhookSender = Depends(get_webhook_sender),
) -> WebhookTestResponse:
    dispatcher = EventDispatcher(db, sender=sender)
    try:
        result = await dispatcher.test_webhook(
            webhook_id,
            current_user.organization_id,
            body.event,
            body.payload,
        )
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc
    except ValidationError as exc:
        raise _bad_request(exc) from exc

    return WebhookTestResponse(
        success=result.success,
        status_code=result.status_code,
        response=result.response,
        error=result.error,
    )


@router.get(
    "/{webhook_id}/deliveries",
    response_model=DeliveryListResponse,
    summary="Get delivery history for a webhook",
    responses={404: {"description": "Webhook not found for this organization."}},
)
async def list_webhook_deliveries(
    webhook_id: uuid.UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    delivery_status: DeliveryStatus | None = Query(None, alias="status"),
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> DeliveryListResponse:
    """Deliveries of a webhook, newest first."""
    try:
        await WebhookService(db).get(webhook_id, current_user.organization_id)
    except WebhookNotFoundError as exc:
        raise _not_found(exc) from exc

    result = await DeliveryLedger(db).list_for_webhook(
        webhook_id,
        current_user.organization_id,
        page=page,
        limit=limit,
        status=delivery_status,
    )
    return DeliveryListResponse(
        items=[DeliveryResponse.model_validate(d) for d in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        has_next=result.has_next,
        has_prev=result.has_prev,
    )


@router.post(
    "/deliveries/{delivery_id}/cancel",
    response_model=DeliveryResponse,
    summary="Cancel a queued delivery",
    responses={
        404: {"description": "Delivery not found for this organization."},
        409: {"description": "Delivery is in flight or already finished."},
    },
)
async def cancel_delivery(
    delivery_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> DeliveryResponse:
    try:
        delivery = await DeliveryLedger(db).cancel(delivery_id, current_user.organization_id)
    except DeliveryNotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidDeliveryTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    log.info("webhook.delivery.cancel_requested", delivery_id=str(delivery_id), user_id=current_user.id)
    return DeliveryResponse.model_validate(delivery)
