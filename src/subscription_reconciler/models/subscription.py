import enum

from sqlalchemy import Boolean, Column, DateTime, String

from subscription_reconciler.models.base import Base


class SubscriptionStatus(str, enum.Enum):
    FREE = "free"
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    TRIAL_CANCELLED = "trial_cancelled"
    EXPIRED = "expired"
    BILLING_ISSUE = "billing_issue"


class Subscription(Base):
    """
    Canonical per-user subscription record, folded from RevenueCat events.

    Rows are only ever written through SubscriptionStore upserts.
    """
    __tablename__ = 'subscriptions'

    user_id = Column(String, primary_key=True, unique=True, nullable=False)
    provider_subscriber_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=SubscriptionStatus.FREE.value)
    is_active = Column(Boolean, nullable=False, default=False)
    product_id = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    original_purchase_date = Column(DateTime(timezone=True), nullable=True)
    last_event_kind = Column(String, nullable=True)
    last_processed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Subscription(user_id={self.user_id}, status={self.status}, is_active={self.is_active})>"
