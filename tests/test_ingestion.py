"""End-to-end tests for the ingestion gate and settlement engine."""
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from paysettle.models import (
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from paysettle.schemas.webhook import IngestionOutcome, NormalizedWebhookEvent
from paysettle.services import ingestion, subscription_lifecycle
from paysettle.utils.errors import (
    WebhookAuthenticationError,
    WebhookConfigurationError,
    WebhookProcessingError,
    WebhookValidationError,
)
from paysettle.utils.time import ensure_utc

from .conftest import NOW, make_payload, sign


def _add_subscription(store, user, status, *, start, end, **kwargs) -> Subscription:
    subscription = Subscription(
        user_id=user.id,
        status=status,
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=kwargs.pop("cancel_at_period_end", False),
        **kwargs,
    )
    store.add(subscription)
    return subscription


def _row_counts(store) -> tuple[int, int, int]:
    return store.count(WebhookEvent), store.count(Payment), store.count(Subscription)


def test_fresh_user_payment_creates_payment_and_active_subscription(ingest, make_user, store):
    user = make_user()

    result = ingest(make_payload())

    assert result.outcome == IngestionOutcome.PROCESSED
    payment = store.one(Payment)
    subscription = store.one(Subscription)
    event = store.one(WebhookEvent)

    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.amount == Decimal("9.99")
    assert payment.currency == "USD"
    assert payment.user_id == user.id
    assert payment.subscription_id == subscription.id
    assert payment.webhook_event_id == event.id
    assert ensure_utc(payment.paid_at) == NOW

    assert subscription.user_id == user.id
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert ensure_utc(subscription.current_period_start) == NOW
    assert ensure_utc(subscription.current_period_end) == NOW + timedelta(days=30)
    assert subscription.plan_code == "monthly"

    assert event.status == WebhookEventStatus.PROCESSED
    assert ensure_utc(event.processed_at) == NOW
    assert event.external_payment_id == "pay_1"
    assert event.attempts == 1


def test_redelivered_event_is_acknowledged_without_side_effects(ingest, make_user, store):
    make_user()
    ingest(make_payload())
    counts_after_first = _row_counts(store)
    period_end = store.one(Subscription).current_period_end

    result = ingest(make_payload())

    assert result.outcome == IngestionOutcome.DUPLICATE
    assert result.webhook_event_id is None
    assert _row_counts(store) == counts_after_first == (1, 1, 1)
    assert store.one(Subscription).current_period_end == period_end
    assert store.one(WebhookEvent).attempts == 1


def test_same_payment_reported_by_two_events_settles_once(ingest, make_user, store):
    make_user()
    ingest(make_payload(event_id="evt_1"))
    period_end = store.one(Subscription).current_period_end

    result = ingest(make_payload(event_id="evt_retry", event_type="invoice.paid"))

    assert result.outcome == IngestionOutcome.PAYMENT_ALREADY_SETTLED
    assert store.count(Payment) == 1
    assert store.one(Subscription).current_period_end == period_end
    statuses = [event.status for event in store.all(WebhookEvent)]
    assert statuses == [WebhookEventStatus.PROCESSED, WebhookEventStatus.PROCESSED]


def test_early_renewal_extends_active_subscription(ingest, make_user, store):
    user = make_user()
    start = NOW - timedelta(days=25)
    _add_subscription(
        store, user, SubscriptionStatus.ACTIVE, start=start, end=NOW + timedelta(days=5)
    )

    ingest(make_payload())

    subscription = store.one(Subscription)
    assert ensure_utc(subscription.current_period_end) == NOW + timedelta(days=35)
    assert ensure_utc(subscription.current_period_start) == start
    assert store.one(Payment).subscription_id == subscription.id


def test_canceled_subscription_is_reactivated(ingest, make_user, store):
    user = make_user()
    _add_subscription(
        store,
        user,
        SubscriptionStatus.CANCELED,
        start=NOW - timedelta(days=60),
        end=NOW - timedelta(days=30),
        cancel_at_period_end=True,
        canceled_at=NOW - timedelta(days=31),
    )

    ingest(make_payload())

    subscription = store.one(Subscription)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert ensure_utc(subscription.current_period_start) == NOW
    assert ensure_utc(subscription.current_period_end) == NOW + timedelta(days=30)
    assert subscription.cancel_at_period_end is False
    assert subscription.canceled_at is None


def test_unknown_user_fails_then_succeeds_on_redelivery(ingest, make_user, store):
    with pytest.raises(WebhookProcessingError):
        ingest(make_payload())

    event = store.one(WebhookEvent)
    assert event.status == WebhookEventStatus.FAILED
    assert event.error == "user not found"
    assert store.count(Payment) == 0
    assert store.count(Subscription) == 0

    make_user()
    result = ingest(make_payload())

    assert result.outcome == IngestionOutcome.PROCESSED
    event = store.one(WebhookEvent)
    assert event.status == WebhookEventStatus.PROCESSED
    assert event.error is None
    assert event.attempts == 2
    assert store.one(Payment).status == PaymentStatus.SUCCEEDED
    subscription = store.one(Subscription)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert ensure_utc(subscription.current_period_end) == NOW + timedelta(days=30)


def test_soft_deleted_user_does_not_resolve(ingest, make_user, store):
    make_user(deleted=True)

    with pytest.raises(WebhookProcessingError):
        ingest(make_payload())

    assert store.one(WebhookEvent).status == WebhookEventStatus.FAILED


def test_user_resolves_by_id_before_email(ingest, make_user, store):
    make_user("ada@example.com")
    other = make_user("grace@example.com")

    ingest(make_payload(user_id=other.id))

    assert store.one(Payment).user_id == other.id
    assert store.one(Subscription).user_id == other.id


def test_email_lookup_ignores_case(ingest, make_user, store):
    user = make_user("ada@example.com")

    ingest(make_payload(email="Ada@Example.COM"))

    assert store.one(Payment).user_id == user.id


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"amount": "5.00"}, "amount_mismatch"),
        ({"currency": "EUR"}, "currency_mismatch"),
        ({"plan": "lifetime"}, "unknown_plan"),
    ],
)
def test_price_mismatch_routes_payment_to_manual_review(ingest, make_user, store, overrides, reason):
    make_user()

    result = ingest(make_payload(**overrides))

    assert result.outcome == IngestionOutcome.MANUAL_REVIEW
    payment = store.one(Payment)
    assert payment.status == PaymentStatus.REQUIRES_REVIEW
    assert payment.subscription_id is None
    assert payment.metadata_json["review_reason"] == reason
    assert store.count(Subscription) == 0
    assert store.one(WebhookEvent).status == WebhookEventStatus.PROCESSED


@pytest.mark.parametrize("amount", ["9.994", "9.985", "9.9901"])
def test_sub_cent_difference_is_a_mismatch(ingest, make_user, store, amount):
    make_user()

    result = ingest(make_payload(amount=amount))

    assert result.outcome == IngestionOutcome.MANUAL_REVIEW
    payment = store.one(Payment)
    assert payment.status == PaymentStatus.REQUIRES_REVIEW
    assert payment.metadata_json["review_reason"] == "amount_mismatch"
    assert payment.metadata_json["reported_amount"] == amount
    assert store.count(Subscription) == 0


def test_trailing_zeros_still_match_the_plan_price(ingest, make_user, store):
    make_user()

    assert ingest(make_payload(amount="9.990")).outcome == IngestionOutcome.PROCESSED
    assert store.one(Payment).status == PaymentStatus.SUCCEEDED


def test_null_metadata_is_treated_as_empty(ingest, make_user, store):
    make_user()

    result = ingest(make_payload(metadata=None))

    assert result.outcome == IngestionOutcome.PROCESSED
    assert "provider_metadata" not in store.one(Payment).metadata_json


def test_event_row_constraint_failure_is_not_reported_as_duplicate(session_factory, store):
    incomplete = NormalizedWebhookEvent.model_construct(
        event_id="evt_1", event_type=None, external_payment_id=None
    )

    with pytest.raises(IntegrityError):
        ingestion._record_event(session_factory, "acme", incomplete, {"event_id": "evt_1"}, NOW, 3)

    assert store.count(WebhookEvent) == 0


def test_missing_amount_is_never_auto_activated(ingest, make_user, store):
    make_user()

    result = ingest(make_payload(drop=("amount",)))

    assert result.outcome == IngestionOutcome.MANUAL_REVIEW
    assert store.one(Payment).metadata_json["review_reason"] == "amount_or_currency_missing"


def test_mismatch_leaves_existing_subscription_untouched(ingest, make_user, store):
    user = make_user()
    end = NOW + timedelta(days=5)
    _add_subscription(store, user, SubscriptionStatus.PAST_DUE, start=NOW - timedelta(days=25), end=end)

    ingest(make_payload(amount="0.99"))

    subscription = store.one(Subscription)
    assert subscription.status == SubscriptionStatus.PAST_DUE
    assert ensure_utc(subscription.current_period_end) == end


def test_named_plan_grants_its_own_duration(ingest, make_user, store):
    make_user()

    ingest(make_payload(plan="annual", amount="99.00"))

    subscription = store.one(Subscription)
    assert ensure_utc(subscription.current_period_end) == NOW + timedelta(days=365)
    assert subscription.plan_code == "annual"


@pytest.mark.parametrize(
    "payload",
    [
        make_payload(event_type="customer.updated"),
        make_payload(drop=("payment_id",)),
    ],
)
def test_unactionable_events_are_ignored(ingest, make_user, store, payload):
    make_user()

    result = ingest(payload)

    assert result.outcome == IngestionOutcome.IGNORED
    assert store.one(WebhookEvent).status == WebhookEventStatus.IGNORED
    assert store.count(Payment) == 0

    assert ingest(payload).outcome == IngestionOutcome.DUPLICATE


@pytest.mark.parametrize(
    "body",
    [
        b"",
        b"   ",
        b"not json",
        b"[1, 2, 3]",
        json.dumps(make_payload(drop=("event_id",))).encode(),
        json.dumps(make_payload(drop=("event_type",))).encode(),
        json.dumps(make_payload(event_id="")).encode(),
        json.dumps(make_payload(provider="other")).encode(),
        json.dumps(make_payload(amount="-1.00")).encode(),
    ],
)
def test_malformed_delivery_is_rejected_without_side_effects(ingest, store, body):
    with pytest.raises(WebhookValidationError):
        ingest(body=body)

    assert store.count(WebhookEvent) == 0


def test_id_and_type_aliases_are_accepted(ingest, make_user, store):
    make_user()
    payload = make_payload(drop=("event_id", "event_type"), id="evt_alias", type="payment.succeeded")

    result = ingest(payload)

    assert result.event_id == "evt_alias"
    assert result.outcome == IngestionOutcome.PROCESSED


def test_bad_signature_does_not_consume_the_dedup_slot(ingest, make_user, store):
    make_user()

    with pytest.raises(WebhookAuthenticationError):
        ingest(make_payload(), signature="0" * 64)
    assert store.count(WebhookEvent) == 0

    assert ingest(make_payload()).outcome == IngestionOutcome.PROCESSED


def test_reencoded_body_fails_authentication(ingest, store):
    original = json.dumps(make_payload()).encode()
    reencoded = json.dumps(make_payload(), indent=2).encode()

    with pytest.raises(WebhookAuthenticationError):
        ingest(body=reencoded, signature=sign(original))
    assert store.count(WebhookEvent) == 0


def test_unknown_provider_is_rejected(ingest, store):
    with pytest.raises(WebhookAuthenticationError):
        ingest(make_payload(), provider="nobody")
    assert store.count(WebhookEvent) == 0


def test_provider_without_secret_is_rejected(ingest, store):
    with pytest.raises(WebhookConfigurationError):
        ingest(make_payload(), provider="unconfigured")
    assert store.count(WebhookEvent) == 0


def test_fault_between_payment_and_subscription_leaves_no_partial_state(
    ingest, make_user, store, monkeypatch
):
    make_user()

    def _boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(subscription_lifecycle, "apply_payment", _boom)
    with pytest.raises(WebhookProcessingError):
        ingest(make_payload())

    assert store.count(Payment) == 0
    assert store.count(Subscription) == 0
    event = store.one(WebhookEvent)
    assert event.status == WebhookEventStatus.FAILED
    assert event.error == "boom"

    monkeypatch.undo()
    assert ingest(make_payload()).outcome == IngestionOutcome.PROCESSED
    payment = store.one(Payment)
    assert payment.subscription_id == store.one(Subscription).id


def test_event_abandoned_mid_processing_is_reclaimed_once_stale(ingest, make_user, store):
    make_user()
    payload = make_payload()
    store.add(
        WebhookEvent(
            provider="acme",
            event_id=payload["event_id"],
            event_type=payload["event_type"],
            external_payment_id=payload["payment_id"],
            payload=payload,
            status=WebhookEventStatus.RECEIVED,
            attempts=1,
            received_at=NOW - timedelta(minutes=10),
            updated_at=NOW - timedelta(minutes=10),
        )
    )

    result = ingest(payload)

    assert result.outcome == IngestionOutcome.PROCESSED
    event = store.one(WebhookEvent)
    assert event.status == WebhookEventStatus.PROCESSED
    assert event.attempts == 2
    assert store.count(Payment) == 1


def test_event_in_flight_elsewhere_is_acknowledged_as_duplicate(ingest, make_user, store):
    make_user()
    payload = make_payload()
    store.add(
        WebhookEvent(
            provider="acme",
            event_id=payload["event_id"],
            event_type=payload["event_type"],
            external_payment_id=payload["payment_id"],
            payload=payload,
            status=WebhookEventStatus.RECEIVED,
            attempts=1,
            received_at=NOW - timedelta(seconds=5),
            updated_at=NOW - timedelta(seconds=5),
        )
    )

    result = ingest(payload)

    assert result.outcome == IngestionOutcome.DUPLICATE
    assert store.one(WebhookEvent).status == WebhookEventStatus.RECEIVED
    assert store.count(Payment) == 0


def test_failure_record_is_best_effort(ingest, store, monkeypatch, caplog):
    calls = {"count": 0}

    def _flaky_update(*args, **kwargs):
        calls["count"] += 1
        raise OperationalError("UPDATE webhook_events", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ingestion, "update", _flaky_update)
    with caplog.at_level(logging.ERROR, logger="paysettle.services.ingestion"):
        with pytest.raises(WebhookProcessingError):
            ingest(make_payload())

    assert calls["count"] == 1
    assert store.one(WebhookEvent).status == WebhookEventStatus.RECEIVED
    assert any("event left RECEIVED" in record.getMessage() for record in caplog.records)


def test_ingestion_emits_structured_summary(ingest, make_user, caplog):
    make_user()

    with caplog.at_level(logging.INFO, logger="paysettle.services.ingestion"):
        ingest(make_payload())

    summary = [r for r in caplog.records if r.getMessage() == "Webhook ingested"]
    assert len(summary) == 1
    assert summary[0].outcome == "processed"
    assert summary[0].event_id == "evt_1"
    assert summary[0].provider == "acme"
    assert summary[0].duration_ms >= 0


def test_failure_log_masks_payload(ingest, caplog):
    with caplog.at_level(logging.ERROR, logger="paysettle.services.ingestion"):
        with pytest.raises(WebhookProcessingError):
            ingest(make_payload())

    failure = [r for r in caplog.records if r.getMessage() == "Webhook settlement failed"]
    assert failure[0].error_code == "USER_NOT_FOUND"
    assert failure[0].payload["email"] == "***@example.com"


def test_concurrent_redelivery_of_one_event_processes_once(ingest, make_user, store):
    make_user()
    payload = make_payload()

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: ingest(payload), range(2)))

    outcomes = sorted(result.outcome.value for result in results)
    assert outcomes == ["duplicate", "processed"]
    assert _row_counts(store) == (1, 1, 1)


def test_concurrent_payments_for_one_user_both_extend(ingest, make_user, store):
    make_user()
    payloads = [
        make_payload(event_id="evt_a", payment_id="pay_a"),
        make_payload(event_id="evt_b", payment_id="pay_b"),
    ]

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(ingest, payloads))

    assert [result.outcome for result in results] == [IngestionOutcome.PROCESSED] * 2
    assert store.count(Payment) == 2
    subscription = store.one(Subscription)
    assert ensure_utc(subscription.current_period_end) == NOW + timedelta(days=60)
