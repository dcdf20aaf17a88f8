"""Tests for webhook value types and the delivery state machine.

Coverage:
  - RetryPolicy backoff table and validation
  - Retryability of delivery errors
  - Allowed / forbidden delivery transitions
  - Event subscriptions and data filters
  - Payload wire format (camelCase)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from src.models.webhook import (
    ALLOWED_TRANSITIONS,
    CANCELLABLE_STATUSES,
    MAX_BACKOFF_MULTIPLIER,
    MAX_RETRY_DELAY_MS,
    TERMINAL_STATUSES,
    DeliveryStatus,
    EventFilter,
    EventSubscription,
    FilterOperator,
    InvalidDeliveryTransitionError,
    PayloadMetadata,
    RetryPolicy,
    Webhook,
    WebhookDelivery,
    WebhookPayload,
    can_transition,
)
from src.services.webhook_delivery import WebhookDeliveryError, is_retryable_error


# ------------------------------------------------------------------ #
# Retry policy
# ------------------------------------------------------------------ #


class TestRetryPolicy:
    """Tests for RetryPolicy defaults and backoff."""

    def test_defaults(self) -> None:
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.initial_delay == 1000
        assert policy.max_delay == 30000
        assert policy.backoff_multiplier == 2
        assert policy.retryable_status_codes == [408, 429, 500, 502, 503, 504]

    def test_backoff_table(self) -> None:
        """Delays double from 1 s and are capped at 30 s."""
        policy = RetryPolicy(max_attempts=10)
        delays = [policy.backoff_delay_ms(n) for n in range(1, 7)]
        assert delays == [1000, 2000, 4000, 8000, 16000, 30000]

    def test_backoff_is_monotonic_and_capped(self) -> None:
        policy = RetryPolicy(initial_delay=500, max_delay=7000, backoff_multiplier=3)
        delays = [policy.backoff_delay_ms(n) for n in range(1, 10)]
        assert delays == sorted(delays)
        assert max(delays) == 7000

    def test_multiplier_one_is_constant_delay(self) -> None:
        policy = RetryPolicy(initial_delay=250, backoff_multiplier=1)
        assert {policy.backoff_delay_ms(n) for n in range(1, 5)} == {250}

    def test_max_delay_below_initial_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            RetryPolicy(initial_delay=5000, max_delay=1000)

    def test_max_attempts_must_be_positive(self) -> None:
        with pytest.raises(PydanticValidationError):
            RetryPolicy(max_attempts=0)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"backoff_multiplier": 11},
            {"backoff_multiplier": 1e6},
            {"initial_delay": 10**400, "max_delay": 10**400},
        ],
    )
    def test_unbounded_growth_rejected(self, overrides) -> None:
        with pytest.raises(PydanticValidationError):
            RetryPolicy(**overrides)

    def test_steepest_policy_stays_finite(self) -> None:
        """Largest allowed values never overflow, even on the last attempt."""
        policy = RetryPolicy(
            max_attempts=25,
            initial_delay=MAX_RETRY_DELAY_MS,
            max_delay=MAX_RETRY_DELAY_MS,
            backoff_multiplier=MAX_BACKOFF_MULTIPLIER,
        )
        assert policy.backoff_delay_ms(25) == MAX_RETRY_DELAY_MS
        assert RetryPolicy(max_attempts=25, backoff_multiplier=10).backoff_delay_ms(24) == 30000


class TestRetryability:
    """Tests for is_retryable_error."""

    def test_transport_failure_is_retryable(self) -> None:
        error = WebhookDeliveryError("Request failed: connection refused")
        assert error.is_transport_error
        assert is_retryable_error(error, RetryPolicy())

    @pytest.mark.parametrize("status_code", [408, 429, 500, 502, 503, 504])
    def test_default_retryable_codes(self, status_code: int) -> None:
        error = WebhookDeliveryError("HTTP error", status_code=status_code)
        assert is_retryable_error(error, RetryPolicy())

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 410, 422, 501])
    def test_other_codes_are_not_retryable(self, status_code: int) -> None:
        error = WebhookDeliveryError("HTTP error", status_code=status_code)
        assert not is_retryable_error(error, RetryPolicy())

    def test_custom_codes_are_honoured(self) -> None:
        policy = RetryPolicy(retryable_status_codes=[404])
        assert is_retryable_error(WebhookDeliveryError("x", status_code=404), policy)
        assert not is_retryable_error(WebhookDeliveryError("x", status_code=503), policy)


# ------------------------------------------------------------------ #
# State machine
# ------------------------------------------------------------------ #


def _delivery(status: DeliveryStatus) -> WebhookDelivery:
    return WebhookDelivery(
        id=uuid.uuid4(),
        webhook_id=uuid.uuid4(),
        organization_id=uuid.uuid4(),
        event="cycle:created",
        payload={},
        status=status,
        attempts=0,
        max_attempts=3,
    )


class TestDeliveryTransitions:
    """Tests for the delivery state machine."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (DeliveryStatus.PENDING, DeliveryStatus.DELIVERING),
            (DeliveryStatus.PENDING, DeliveryStatus.CANCELLED),
            (DeliveryStatus.DELIVERING, DeliveryStatus.DELIVERED),
            (DeliveryStatus.DELIVERING, DeliveryStatus.RETRYING),
            (DeliveryStatus.DELIVERING, DeliveryStatus.FAILED),
            (DeliveryStatus.RETRYING, DeliveryStatus.DELIVERING),
            (DeliveryStatus.RETRYING, DeliveryStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current: DeliveryStatus, target: DeliveryStatus) -> None:
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (DeliveryStatus.PENDING, DeliveryStatus.DELIVERED),
            (DeliveryStatus.PENDING, DeliveryStatus.RETRYING),
            (DeliveryStatus.DELIVERING, DeliveryStatus.CANCELLED),
            (DeliveryStatus.RETRYING, DeliveryStatus.FAILED),
        ],
    )
    def test_forbidden(self, current: DeliveryStatus, target: DeliveryStatus) -> None:
        assert not can_transition(current, target)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES))
    def test_terminal_states_have_no_exits(self, terminal: DeliveryStatus) -> None:
        assert ALLOWED_TRANSITIONS[terminal] == frozenset()
        for target in DeliveryStatus:
            assert not can_transition(terminal, target)

    def test_cancellable_states(self) -> None:
        assert CANCELLABLE_STATUSES == {DeliveryStatus.PENDING, DeliveryStatus.RETRYING}

    def test_transition_to_terminal_sets_completed_at(self) -> None:
        delivery = _delivery(DeliveryStatus.DELIVERING)
        delivery.next_retry_at = datetime.now(UTC)
        at = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)

        delivery.transition_to(DeliveryStatus.DELIVERED, at=at)

        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.completed_at == at
        assert delivery.next_retry_at is None
        assert delivery.is_terminal

    def test_transition_to_non_terminal_leaves_completed_at(self) -> None:
        delivery = _delivery(DeliveryStatus.DELIVERING)
        delivery.transition_to(DeliveryStatus.RETRYING)
        assert delivery.completed_at is None
        assert not delivery.is_terminal

    def test_illegal_transition_raises(self) -> None:
        delivery = _delivery(DeliveryStatus.DELIVERED)
        with pytest.raises(InvalidDeliveryTransitionError) as exc_info:
            delivery.transition_to(DeliveryStatus.DELIVERING)
        assert exc_info.value.current == DeliveryStatus.DELIVERED
        assert "Cannot transition delivery from 'delivered' to 'delivering'" in str(exc_info.value)
        assert delivery.status == DeliveryStatus.DELIVERED


# ------------------------------------------------------------------ #
# Event matching
# ------------------------------------------------------------------ #


class TestEventFilter:
    """Tests for EventFilter.matches."""

    DATA = {
        "cycle": {"type": "annual", "name": "FY26 Review", "participants": 42},
        "tags": ["engineering", "remote"],
        "department": "eng",
    }

    @pytest.mark.parametrize(
        ("field", "op", "value", "expected"),
        [
            ("cycle.type", FilterOperator.EQUALS, "annual", True),
            ("cycle.type", FilterOperator.EQUALS, "quarterly", False),
            ("cycle.type", FilterOperator.NOT_EQUALS, "quarterly", True),
            ("cycle.name", FilterOperator.CONTAINS, "Review", True),
            ("tags", FilterOperator.CONTAINS, "remote", True),
            ("tags", FilterOperator.NOT_CONTAINS, "sales", True),
            ("cycle.name", FilterOperator.STARTS_WITH, "FY26", True),
            ("cycle.name", FilterOperator.ENDS_WITH, "2025", False),
            ("cycle.participants", FilterOperator.GREATER_THAN, 10, True),
            ("cycle.participants", FilterOperator.LESS_THAN, 10, False),
            ("department", FilterOperator.IN, ["eng", "ops"], True),
            ("department", FilterOperator.NOT_IN, ["eng", "ops"], False),
        ],
    )
    def test_operators(self, field: str, op: FilterOperator, value: object, expected: bool) -> None:
        assert EventFilter(field=field, operator=op, value=value).matches(self.DATA) is expected

    def test_missing_field_fails_positive_operators(self) -> None:
        f = EventFilter(field="cycle.owner", operator=FilterOperator.EQUALS, value="x")
        assert not f.matches(self.DATA)

    def test_missing_field_passes_negated_operators(self) -> None:
        f = EventFilter(field="cycle.owner", operator=FilterOperator.NOT_EQUALS, value="x")
        assert f.matches(self.DATA)

    def test_type_mismatch_does_not_raise(self) -> None:
        f = EventFilter(field="cycle.participants", operator=FilterOperator.GREATER_THAN, value="ten")
        assert f.matches(self.DATA) is False

    def test_starts_with_on_non_string_is_false(self) -> None:
        f = EventFilter(field="cycle.participants", operator=FilterOperator.STARTS_WITH, value="4")
        assert f.matches(self.DATA) is False


class TestWebhookMatching:
    """Tests for Webhook.matches_event."""

    def _webhook(self, events: list[dict], is_active: bool = True) -> Webhook:
        return Webhook(
            organization_id=uuid.uuid4(),
            name="HRIS",
            url="https://hris.example.com/hook",
            events=events,
            is_active=is_active,
            headers={},
            retry_policy=RetryPolicy().model_dump(),
        )

    def test_enabled_subscription_matches(self) -> None:
        webhook = self._webhook([{"event": "cycle:created", "enabled": True, "filters": []}])
        assert webhook.matches_event("cycle:created", {})

    def test_unsubscribed_event_does_not_match(self) -> None:
        webhook = self._webhook([{"event": "cycle:created", "enabled": True, "filters": []}])
        assert not webhook.matches_event("feedback:submitted", {})

    def test_disabled_subscription_does_not_match(self) -> None:
        webhook = self._webhook([{"event": "cycle:created", "enabled": False, "filters": []}])
        assert not webhook.matches_event("cycle:created", {})

    def test_inactive_webhook_does_not_match(self) -> None:
        webhook = self._webhook(
            [{"event": "cycle:created", "enabled": True, "filters": []}], is_active=False
        )
        assert not webhook.matches_event("cycle:created", {})

    def test_all_filters_must_pass(self) -> None:
        subscription = EventSubscription(
            event="cycle:created",
            filters=[
                EventFilter(field="type", operator=FilterOperator.EQUALS, value="annual"),
                EventFilter(field="size", operator=FilterOperator.GREATER_THAN, value=5),
            ],
        )
        webhook = self._webhook([subscription.model_dump(mode="json")])
        assert webhook.matches_event("cycle:created", {"type": "annual", "size": 10})
        assert not webhook.matches_event("cycle:created", {"type": "annual", "size": 1})

    def test_has_secret(self) -> None:
        webhook = self._webhook([])
        webhook.secret = None
        assert not webhook.has_secret
        webhook.secret = "abc"
        assert webhook.has_secret


class TestWebhookPayload:
    def test_wire_format_is_camel_case(self) -> None:
        payload = WebhookPayload(
            id="evt_1",
            event="cycle:created",
            timestamp="2026-03-01T09:30:00.000Z",
            organization_id="org-1",
            data={"cycle_id": "c1"},
            metadata=PayloadMetadata(source="event-system", correlation_id="req_1"),
        )
        wire = payload.to_wire()
        assert wire["organizationId"] == "org-1"
        assert wire["metadata"] == {
            "source": "event-system",
            "version": "1.0",
            "correlationId": "req_1",
        }
        # event data is passed through untouched
        assert wire["data"] == {"cycle_id": "c1"}
