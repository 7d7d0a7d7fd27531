"""
Pure mapping from a RevenueCat lifecycle event and the prior subscription
record to the values the store should hold next.

Nothing in this module performs I/O; the webhook ingest reads the prior
record, calls evaluate_transition() and commits the result.
"""
import datetime
from typing import Any, Callable, Dict, Optional

from subscription_reconciler.events import EventKind, WebhookEvent
from subscription_reconciler.models.subscription import Subscription, SubscriptionStatus
from subscription_reconciler.timeutils import as_utc

Values = Dict[str, Any]


def _is_future(moment: Optional[datetime.datetime], now: datetime.datetime) -> bool:
    return moment is not None and as_utc(moment) > now


def _carried_fields(event: WebhookEvent, prior: Optional[Subscription]) -> Values:
    """Fields every applied event writes, entitlement values winning over prior ones."""
    entitlement = event.entitlement
    product_id = prior.product_id if prior else None
    expires_at = as_utc(prior.expires_at) if prior else None
    if entitlement is not None:
        if entitlement.product_id is not None:
            product_id = entitlement.product_id
        if entitlement.expires_at is not None:
            expires_at = entitlement.expires_at
    return {
        "product_id": product_id,
        "expires_at": expires_at,
        "trial_ends_at": as_utc(prior.trial_ends_at) if prior else None,
        "original_purchase_date": None,
    }


def _entitlement_expiry(event: WebhookEvent) -> Optional[datetime.datetime]:
    return event.entitlement.expires_at if event.entitlement else None


def _entitlement_purchase_date(event: WebhookEvent) -> Optional[datetime.datetime]:
    return event.entitlement.purchase_date if event.entitlement else None


def _activate(fields: Values, event: WebhookEvent, now: datetime.datetime) -> Values:
    fields.update(status=SubscriptionStatus.ACTIVE.value, is_active=True)
    return fields


def _first_purchase(fields: Values, event: WebhookEvent, now: datetime.datetime) -> Values:
    fields = _activate(fields, event, now)
    fields["original_purchase_date"] = _entitlement_purchase_date(event)
    return fields


def _trial_started(fields: Values, event: WebhookEvent, now: datetime.datetime) -> Values:
    fields.update(status=SubscriptionStatus.TRIAL.value, is_active=True)
    fields["trial_ends_at"] = _entitlement_expiry(event) or fields["trial_ends_at"]
    return fields


def _cancellation(fields: Values, event: WebhookEvent, now: datetime.datetime) -> Values:
    # Access survives until the already-paid period runs out.
    fields.update(
        status=SubscriptionStatus.CANCELLED.value,
        is_active=_is_future(fields["expires_at"], now),
    )
    return fields


def _trial_cancelled(fields: Values, event: WebhookEvent, now: datetime.datetime) -> Values:
    fields["trial_ends_at"] = _entitlement_expiry(event) or fields["trial_ends_at"]
    fields.update(
        status=SubscriptionStatus.TRIAL_CANCELLED.value,
        is_active=_is_future(fields["trial_ends_at"], now),
    )
    return fields


def _expiration(fields: Values, event: WebhookEvent, now: datetime.datetime) -> Values:
    fields.update(status=SubscriptionStatus.EXPIRED.value, is_active=False)
    return fields


def _billing_issue(fields: Values, event: WebhookEvent, now: datetime.datetime) -> Values:
    fields.update(status=SubscriptionStatus.BILLING_ISSUE.value, is_active=False)
    return fields


# SUBSCRIBER_ALIAS and UNKNOWN do not rewrite lifecycle fields and are
# handled in evaluate_transition() itself.
_TRANSITIONS: Dict[EventKind, Optional[Callable[[Values, WebhookEvent, datetime.datetime], Values]]] = {
    EventKind.INITIAL_PURCHASE: _first_purchase,
    EventKind.RENEWAL: _activate,
    EventKind.PRODUCT_CHANGE: _activate,
    EventKind.TRIAL_STARTED: _trial_started,
    EventKind.TRIAL_CONVERTED: _first_purchase,
    EventKind.CANCELLATION: _cancellation,
    EventKind.TRIAL_CANCELLED: _trial_cancelled,
    EventKind.EXPIRATION: _expiration,
    EventKind.BILLING_ISSUE: _billing_issue,
    EventKind.SUBSCRIBER_ALIAS: None,
    EventKind.UNKNOWN: None,
}

_unmapped = set(EventKind) - set(_TRANSITIONS)
if _unmapped:
    raise RuntimeError(f"No transition defined for event kinds: {sorted(k.value for k in _unmapped)}")


def evaluate_transition(
    event: WebhookEvent,
    prior: Optional[Subscription],
    now: datetime.datetime,
) -> Optional[Values]:
    """
    Compute the next subscription values for an event.

    :param event: The parsed webhook event.
    :param prior: The stored record for event.subject_user_id, or None.
    :param now: Reference time for grace-period checks (aware UTC).
    :return: Column values for the store, or None when the event is a no-op.
        For SUBSCRIBER_ALIAS only the subscriber id and audit fields are
        returned; every other column keeps its stored value.
    """
    now = as_utc(now)
    audit = {
        "user_id": event.subject_user_id,
        "last_event_kind": event.kind.value,
        "last_processed_at": now,
    }
    if event.kind is EventKind.UNKNOWN:
        return None
    if event.kind is EventKind.SUBSCRIBER_ALIAS:
        audit["provider_subscriber_id"] = event.new_provider_subscriber_id
        return audit

    transition = _TRANSITIONS[event.kind]
    values = transition(_carried_fields(event, prior), event, now)
    # Proposed for new rows only; the store keeps an existing subscriber id.
    values["provider_subscriber_id"] = event.subject_user_id
    values.update(audit)
    return values
