import datetime
import logging

import pytest

from subscription_reconciler.errors import WebhookValidationError
from subscription_reconciler.events import EventKind, parse_webhook_payload
from subscription_reconciler.models.subscription import Subscription
from subscription_reconciler.timeutils import as_utc
from subscription_reconciler.transition_policy import evaluate_transition
from subscription_reconciler.webhook_ingest import IngestOutcome, ingest_event

NOW = datetime.datetime(2025, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)
FUTURE = NOW + datetime.timedelta(days=30)


def payload(event_type: str, user_id: str = "u1", expires="2025-03-31T12:00:00Z", purchased="2025-03-01T11:00:00Z", **extra):
    event = {"type": event_type, "app_user_id": user_id}
    if expires is not None or purchased is not None:
        event["entitlements"] = {
            "premium": {
                "product_identifier": "premium_monthly",
                "expires_date": expires,
                "purchase_date": purchased,
            }
        }
    event.update(extra)
    return {"event": event}


def snapshot(record: Subscription) -> dict:
    return {column.name: getattr(record, column.name) for column in Subscription.__table__.columns}


def ingest(store, body, now=NOW):
    return ingest_event(store, parse_webhook_payload(body), now=now)


def test_parse_known_event():
    event = parse_webhook_payload(payload("INITIAL_PURCHASE"))
    assert event.kind is EventKind.INITIAL_PURCHASE
    assert event.subject_user_id == "u1"
    assert event.entitlement.product_id == "premium_monthly"
    assert event.entitlement.expires_at == FUTURE


def test_parse_unknown_event_type():
    event = parse_webhook_payload({"event": {"type": "SOMETHING_NEW", "app_user_id": "u9"}})
    assert event.kind is EventKind.UNKNOWN
    assert event.raw_type == "SOMETHING_NEW"


def test_parse_flat_millisecond_fields():
    expires_ms = int(FUTURE.timestamp() * 1000)
    event = parse_webhook_payload({
        "event": {"type": "RENEWAL", "app_user_id": "u1", "product_id": "premium_yearly", "expiration_at_ms": expires_ms}
    })
    assert event.entitlement.product_id == "premium_yearly"
    assert event.entitlement.expires_at == FUTURE


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"event": None},
        {"event": {"type": "RENEWAL"}},
        {"event": {"type": "RENEWAL", "app_user_id": "   "}},
        ["not", "an", "object"],
    ],
)
def test_parse_rejects_missing_event_or_user(body):
    with pytest.raises(WebhookValidationError) as excinfo:
        parse_webhook_payload(body)
    assert excinfo.value.details


def test_parse_treats_bad_timestamp_as_absent(caplog):
    event = parse_webhook_payload(payload("RENEWAL", expires="not-a-date"))

    assert event.kind is EventKind.RENEWAL
    assert event.entitlement.expires_at is None
    assert event.entitlement.product_id == "premium_monthly"
    assert any("not-a-date" in record.getMessage() for record in caplog.records)


def test_parse_ignores_other_entitlements():
    body = payload("RENEWAL")
    body["event"]["entitlements"]["family_sharing"] = "enabled"
    body["event"]["entitlements"]["extras"] = {"expires_date": "garbage"}

    event = parse_webhook_payload(body)

    assert event.entitlement.product_id == "premium_monthly"
    assert event.entitlement.expires_at == FUTURE


def test_parse_malformed_premium_entitlement_is_absent():
    event = parse_webhook_payload({"event": {"type": "RENEWAL", "app_user_id": "u1", "entitlements": {"premium": "yes"}}})

    assert event.kind is EventKind.RENEWAL
    assert event.entitlement is None


def test_bad_expiry_keeps_prior_expiry(store):
    ingest(store, payload("INITIAL_PURCHASE"))
    ingest(store, payload("RENEWAL", expires="not-a-date"), now=NOW + datetime.timedelta(days=1))

    record = store.get("u1")
    assert record.last_event_kind == "RENEWAL"
    assert as_utc(record.expires_at) == FUTURE


def test_initial_purchase_is_idempotent(store):
    ingest(store, payload("INITIAL_PURCHASE"))
    first = snapshot(store.get("u1"))

    result = ingest(store, payload("INITIAL_PURCHASE"))
    assert result.outcome is IngestOutcome.APPLIED
    assert snapshot(store.get("u1")) == first


def test_unknown_kind_creates_no_row(store, db_session):
    result = ingest(store, {"event": {"type": "SOMETHING_NEW", "app_user_id": "u9"}})
    assert result.outcome is IngestOutcome.NOOP
    assert result.event_type == "SOMETHING_NEW"
    assert db_session.query(Subscription).count() == 0


def test_unknown_kind_leaves_existing_row_unchanged(store, caplog):
    caplog.set_level(logging.INFO)
    ingest(store, payload("INITIAL_PURCHASE", user_id="u9"))
    before = snapshot(store.get("u9"))

    ingest(store, {"event": {"type": "SOMETHING_NEW", "app_user_id": "u9"}}, now=NOW + datetime.timedelta(hours=1))

    assert snapshot(store.get("u9")) == before
    assert any(getattr(record, "outcome", None) == "noop" for record in caplog.records)


def test_alias_changes_only_subscriber_id(store):
    ingest(store, payload("INITIAL_PURCHASE"))
    before = snapshot(store.get("u1"))

    ingest(
        store,
        {"event": {"type": "SUBSCRIBER_ALIAS", "app_user_id": "u1", "original_app_user_id": "u1", "new_app_user_id": "rc_42"}},
        now=NOW + datetime.timedelta(minutes=1),
    )

    after = snapshot(store.get("u1"))
    assert after["provider_subscriber_id"] == "rc_42"
    for column in ("status", "is_active", "product_id", "expires_at", "trial_ends_at", "original_purchase_date"):
        assert after[column] == before[column]
    assert after["last_event_kind"] == "SUBSCRIBER_ALIAS"


def test_original_purchase_date_survives_later_events(store):
    ingest(store, payload("INITIAL_PURCHASE"))
    original = as_utc(store.get("u1").original_purchase_date)
    assert original is not None

    ingest(store, payload("RENEWAL", purchased=None), now=NOW + datetime.timedelta(days=30))
    ingest(store, payload("EXPIRATION", expires=None, purchased=None), now=NOW + datetime.timedelta(days=60))

    assert as_utc(store.get("u1").original_purchase_date) == original


def test_out_of_order_expiration_downgrades(store):
    # Events apply in arrival order; there is no sequencing guard.
    ingest(store, payload("RENEWAL"))
    ingest(store, payload("EXPIRATION"), now=NOW + datetime.timedelta(seconds=1))

    record = store.get("u1")
    assert record.status == "expired"
    assert record.is_active is False


def test_last_event_fields_follow_every_applied_event(store):
    ingest(store, payload("INITIAL_PURCHASE"))
    later = NOW + datetime.timedelta(days=2)
    ingest(store, payload("BILLING_ISSUE"), now=later)

    record = store.get("u1")
    assert record.last_event_kind == "BILLING_ISSUE"
    assert as_utc(record.last_processed_at) == later


def test_alias_committed_mid_event_is_not_undone(store):
    ingest(store, payload("INITIAL_PURCHASE"))

    renewal = parse_webhook_payload(payload("RENEWAL"))
    later = NOW + datetime.timedelta(days=1)
    prior = store.get("u1")
    values = evaluate_transition(renewal, prior, later)

    ingest(
        store,
        {"event": {"type": "SUBSCRIBER_ALIAS", "app_user_id": "u1", "new_app_user_id": "rc_42"}},
        now=later,
    )
    store.upsert(values)

    record = store.get("u1")
    assert record.provider_subscriber_id == "rc_42"
    assert record.last_event_kind == "RENEWAL"
