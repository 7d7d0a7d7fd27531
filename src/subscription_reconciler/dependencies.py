from fastapi import Depends, Request
from sqlalchemy.orm import Session

from subscription_reconciler.config import Settings
from subscription_reconciler.entitlement_client import LiveEntitlementClient
from subscription_reconciler.models.base import get_db
from subscription_reconciler.store import SubscriptionStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(db: Session = Depends(get_db)) -> SubscriptionStore:
    return SubscriptionStore(db)


def get_entitlement_client(request: Request) -> LiveEntitlementClient:
    return request.app.state.entitlement_client
