import datetime
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from subscription_reconciler.events import EventKind, WebhookEvent
from subscription_reconciler.store import SubscriptionStore
from subscription_reconciler.timeutils import as_utc, utc_now
from subscription_reconciler.transition_policy import evaluate_transition


class IngestOutcome(str, enum.Enum):
    APPLIED = "applied"
    NOOP = "noop"


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    event_type: str
    user_id: str


def ingest_event(
    store: SubscriptionStore,
    event: WebhookEvent,
    now: Optional[datetime.datetime] = None,
) -> IngestResult:
    """
    Fold one webhook event into the subscriber's record.

    Unrecognized event kinds are acknowledged without touching the store so
    the provider does not keep redelivering them.

    :param store: Store bound to the current request's session.
    :param event: Parsed event from parse_webhook_payload().
    :param now: Processing time; defaults to the current UTC time.
    :return: IngestResult describing whether the event was applied.
    :raises PersistenceError: if the store read or write fails.
    """
    now = as_utc(now) if now is not None else utc_now()
    event_type = event.raw_type or event.kind.value
    log_extra = {"event_type": event_type, "user_id": event.subject_user_id, "event_id": event.event_id}

    if event.kind is EventKind.UNKNOWN:
        logging.info(
            f"Unhandled event type: {event_type} for user {event.subject_user_id}. No action taken.",
            extra={**log_extra, "outcome": IngestOutcome.NOOP.value},
        )
        return IngestResult(IngestOutcome.NOOP, event_type, event.subject_user_id)

    if event.kind is EventKind.SUBSCRIBER_ALIAS:
        values = evaluate_transition(event, None, now)
        store.reassign_subscriber(
            values["user_id"],
            values["provider_subscriber_id"],
            values["last_event_kind"],
            values["last_processed_at"],
        )
    else:
        prior = store.get(event.subject_user_id)
        values = evaluate_transition(event, prior, now)
        store.upsert(values)

    logging.info(
        f"Event {event.event_id or 'N/A'}: {event_type} applied for user {event.subject_user_id}.",
        extra={**log_extra, "outcome": IngestOutcome.APPLIED.value},
    )
    return IngestResult(IngestOutcome.APPLIED, event_type, event.subject_user_id)
