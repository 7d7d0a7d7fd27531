import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from subscription_reconciler.dependencies import get_entitlement_client
from subscription_reconciler.entitlement_client import EntitlementStatus, LiveEntitlementClient


def grants_premium(entitlement: EntitlementStatus) -> bool:
    return entitlement.is_premium and entitlement.is_active


async def has_premium_access(client: LiveEntitlementClient, user_id: Optional[str]) -> bool:
    return grants_premium(await client.check(user_id))


async def require_premium(
    x_user_id: Optional[str] = Header(default=None),
    client: LiveEntitlementClient = Depends(get_entitlement_client),
) -> EntitlementStatus:
    """
    FastAPI dependency for premium-only routes.

    Consults RevenueCat directly rather than the local subscriptions table,
    so a lookup failure denies access.
    """
    entitlement = await client.check(x_user_id)
    if not grants_premium(entitlement):
        logging.info(f"Premium access denied for user {x_user_id}: error={entitlement.error}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Premium subscription required")
    return entitlement
