import datetime
import logging
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subscription_reconciler.errors import PersistenceError
from subscription_reconciler.models.subscription import Subscription, SubscriptionStatus

# Columns an applied event always overwrites on conflict.
OVERWRITTEN_COLUMNS = (
    "status",
    "is_active",
    "product_id",
    "expires_at",
    "trial_ends_at",
    "last_event_kind",
    "last_processed_at",
)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SubscriptionStore:
    """
    Access to the subscriptions table, keyed by user id.

    Rows are written only through single-statement INSERT ... ON CONFLICT
    upserts; the unique user_id is the sole concurrency guard.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _INSERTS[dialect](Subscription)
        except KeyError:
            raise PersistenceError(f"Upsert is not supported on the '{dialect}' dialect")

    def _execute(self, stmt, user_id: str) -> None:
        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logging.error(f"Subscription write failed for user {user_id}: {e}", exc_info=True)
            raise PersistenceError(str(e)) from e

    def get(self, user_id: str) -> Optional[Subscription]:
        try:
            return (
                self.db.query(Subscription)
                .populate_existing()
                .filter(Subscription.user_id == user_id)
                .first()
            )
        except SQLAlchemyError as e:
            logging.error(f"Subscription read failed for user {user_id}: {e}", exc_info=True)
            raise PersistenceError(str(e)) from e

    def upsert(self, values: Dict[str, Any]) -> None:
        """
        Insert or overwrite the record for values['user_id'].

        :param values: Full column values as produced by the transition policy.
        :raises PersistenceError: if the statement or commit fails.
        """
        table = Subscription.__table__
        stmt = self._insert().values(**values)
        set_ = {column: stmt.excluded[column] for column in OVERWRITTEN_COLUMNS}
        # The first known purchase date sticks; a later null never clears it.
        set_["original_purchase_date"] = func.coalesce(
            table.c.original_purchase_date, stmt.excluded.original_purchase_date
        )
        # Only SUBSCRIBER_ALIAS replaces a stored subscriber id; ordinary
        # events fill it when empty, so they cannot undo a concurrent alias.
        set_["provider_subscriber_id"] = func.coalesce(
            table.c.provider_subscriber_id, stmt.excluded.provider_subscriber_id
        )
        stmt = stmt.on_conflict_do_update(index_elements=[table.c.user_id], set_=set_)
        self._execute(stmt, values["user_id"])
        logging.info(
            f"Subscription for user {values['user_id']} upserted: "
            f"status={values.get('status')} is_active={values.get('is_active')} event={values.get('last_event_kind')}"
        )

    def reassign_subscriber(
        self,
        user_id: str,
        provider_subscriber_id: Optional[str],
        event_kind: str,
        processed_at: datetime.datetime,
    ) -> None:
        """
        Replace the provider subscriber id without touching lifecycle fields.

        Runs as one statement so a concurrent event for the same user cannot
        be lost between a read and a write. A user without a row gets a free
        record carrying the new id.

        :raises PersistenceError: if the statement or commit fails.
        """
        table = Subscription.__table__
        stmt = self._insert().values(
            user_id=user_id,
            provider_subscriber_id=provider_subscriber_id,
            status=SubscriptionStatus.FREE.value,
            is_active=False,
            last_event_kind=event_kind,
            last_processed_at=processed_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id],
            set_={
                "provider_subscriber_id": stmt.excluded.provider_subscriber_id,
                "last_event_kind": stmt.excluded.last_event_kind,
                "last_processed_at": stmt.excluded.last_processed_at,
            },
        )
        self._execute(stmt, user_id)
        logging.info(f"Subscriber id for user {user_id} reassigned to {provider_subscriber_id}")
