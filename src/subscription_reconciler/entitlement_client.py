import datetime
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from subscription_reconciler.timeutils import as_utc, parse_timestamp, utc_now

INVALID_USER_IDS = {"", "undefined", "[Not provided]"}


class EntitlementStatus(BaseModel):
    user_id: Optional[str] = None
    is_premium: bool = False
    is_active: bool = False
    is_subscribed: bool = False
    expiration_date: Optional[datetime.datetime] = None
    product_id: Optional[str] = None
    original_purchase_date: Optional[datetime.datetime] = None
    is_new_user: bool = False
    is_mock_data: bool = False
    error: Optional[str] = None


class EntitlementLookupError(Exception):
    """Raised internally when the provider response cannot be trusted."""


class LiveEntitlementClient:
    """
    Queries RevenueCat's subscriber endpoint for a user's premium entitlement.

    This is the authority premium-gated features consult at request time; it
    never reads the local subscriptions table. Every failure resolves to a
    non-premium result with the error attached, never an exception.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 5.0,
        entitlement_id: str = "premium",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.entitlement_id = entitlement_id
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Platform": "web",
        }

    async def _fetch_subscriber(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the raw subscriber object.

        :param user_id: The app user id known to RevenueCat.
        :return: The subscriber dictionary, or None when RevenueCat answers 404.
        :raises EntitlementLookupError: on any non-200 status or unparseable body.
        :raises httpx.HTTPError: on network failures and timeouts.
        """
        url = f"{self.base_url}/subscribers/{quote(user_id, safe='')}"
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            response = await client.get(url, headers=self._headers())

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise EntitlementLookupError(f"RevenueCat API returned status {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise EntitlementLookupError(f"Failed to parse response: {e}")
        if not isinstance(data, dict):
            raise EntitlementLookupError("Failed to parse response: expected a JSON object")
        subscriber = data.get("subscriber") or {}
        if not isinstance(subscriber, dict):
            raise EntitlementLookupError("Failed to parse response: subscriber is not an object")
        return subscriber

    def _status_from_subscriber(
        self,
        user_id: str,
        subscriber: Dict[str, Any],
        now: datetime.datetime,
    ) -> EntitlementStatus:
        status = EntitlementStatus(user_id=user_id)
        status.original_purchase_date = parse_timestamp(subscriber.get("original_purchase_date"))

        entitlements = subscriber.get("entitlements") or {}
        entitlement = entitlements.get(self.entitlement_id) if isinstance(entitlements, dict) else None
        if not entitlement:
            logging.info(f"User {user_id} found but has no {self.entitlement_id} entitlement")
            return status
        if not isinstance(entitlement, dict):
            raise EntitlementLookupError("Failed to parse response: entitlement is not an object")

        expires_at = parse_timestamp(entitlement.get("expires_date"))
        status.is_premium = True
        status.is_subscribed = True
        status.product_id = entitlement.get("product_identifier")
        status.expiration_date = expires_at
        # No expiry means a lifetime grant.
        status.is_active = expires_at is None or expires_at > now
        logging.info(
            f"Premium entitlement found for user {user_id}: is_active={status.is_active} "
            f"expires_at={expires_at} product_id={status.product_id}"
        )
        return status

    async def check(self, user_id: Optional[str], now: Optional[datetime.datetime] = None) -> EntitlementStatus:
        """
        Resolve a user's live premium entitlement.

        :param user_id: The user to look up.
        :param now: Reference time for expiry checks; defaults to the current UTC time.
        :return: EntitlementStatus; failures yield is_premium=False, is_active=False and error set.
        """
        now = as_utc(now) if now is not None else utc_now()
        if user_id is None or user_id.strip() in INVALID_USER_IDS:
            logging.info("No valid user ID provided, treating as free user")
            return EntitlementStatus(user_id=user_id, error="No valid user ID provided")

        if not self.api_key:
            logging.warning("RevenueCat API key not configured, returning mock data")
            return EntitlementStatus(user_id=user_id, is_mock_data=True)

        try:
            subscriber = await self._fetch_subscriber(user_id)
            if subscriber is None:
                logging.info(f"User {user_id} not found in RevenueCat, treating as free user")
                return EntitlementStatus(user_id=user_id, is_new_user=True)
            return self._status_from_subscriber(user_id, subscriber, now)
        except httpx.TimeoutException as e:
            logging.error(f"RevenueCat API timeout for user {user_id}: {e}", exc_info=True)
            return EntitlementStatus(user_id=user_id, error=f"Request timed out after {self.timeout}s")
        except Exception as e:
            # Entitlement ambiguity must never grant access.
            logging.error(f"RevenueCat subscription check failed for user {user_id}: {e}", exc_info=True)
            return EntitlementStatus(user_id=user_id, error=str(e) or e.__class__.__name__)
