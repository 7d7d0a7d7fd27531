import datetime
from typing import Optional

from pydantic import BaseModel

from subscription_reconciler.models.subscription import SubscriptionStatus
from subscription_reconciler.store import SubscriptionStore
from subscription_reconciler.timeutils import as_utc, utc_now


class SubscriptionStatusView(BaseModel):
    user_id: str
    status: str
    is_active: bool
    is_new_user: bool = False
    provider_subscriber_id: Optional[str] = None
    product_id: Optional[str] = None
    expires_at: Optional[datetime.datetime] = None
    trial_ends_at: Optional[datetime.datetime] = None
    original_purchase_date: Optional[datetime.datetime] = None
    last_event_kind: Optional[str] = None
    last_processed_at: Optional[datetime.datetime] = None


def get_status(
    store: SubscriptionStore,
    user_id: str,
    now: Optional[datetime.datetime] = None,
) -> SubscriptionStatusView:
    """
    Read a user's subscription with its active flag re-derived against now.

    The correction only ever revokes: a stored active flag is reported as
    inactive once expires_at has passed. Nothing is written back.

    :raises PersistenceError: if the store read fails.
    """
    now = as_utc(now) if now is not None else utc_now()
    record = store.get(user_id)
    if record is None:
        return SubscriptionStatusView(
            user_id=user_id,
            status=SubscriptionStatus.FREE.value,
            is_active=False,
            is_new_user=True,
        )

    expires_at = as_utc(record.expires_at)
    effective_is_active = bool(record.is_active) and (expires_at is None or expires_at > now)
    return SubscriptionStatusView(
        user_id=record.user_id,
        status=record.status,
        is_active=effective_is_active,
        provider_subscriber_id=record.provider_subscriber_id,
        product_id=record.product_id,
        expires_at=expires_at,
        trial_ends_at=as_utc(record.trial_ends_at),
        original_purchase_date=as_utc(record.original_purchase_date),
        last_event_kind=record.last_event_kind,
        last_processed_at=as_utc(record.last_processed_at),
    )
