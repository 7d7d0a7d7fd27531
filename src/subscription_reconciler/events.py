import datetime
import enum
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from subscription_reconciler.errors import WebhookValidationError
from subscription_reconciler.timeutils import parse_timestamp


class EventKind(str, enum.Enum):
    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    TRIAL_STARTED = "TRIAL_STARTED"
    TRIAL_CONVERTED = "TRIAL_CONVERTED"
    CANCELLATION = "CANCELLATION"
    TRIAL_CANCELLED = "TRIAL_CANCELLED"
    EXPIRATION = "EXPIRATION"
    BILLING_ISSUE = "BILLING_ISSUE"
    SUBSCRIBER_ALIAS = "SUBSCRIBER_ALIAS"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_type(cls, raw_type: Optional[str]) -> "EventKind":
        if not raw_type:
            return cls.UNKNOWN
        try:
            kind = cls(raw_type.strip().upper())
        except ValueError:
            return cls.UNKNOWN
        return kind


@dataclass(frozen=True)
class Entitlement:
    product_id: Optional[str] = None
    expires_at: Optional[datetime.datetime] = None
    purchase_date: Optional[datetime.datetime] = None


@dataclass(frozen=True)
class WebhookEvent:
    """A parsed RevenueCat lifecycle event. Never persisted as-is."""
    kind: EventKind
    raw_type: str
    subject_user_id: str
    entitlement: Optional[Entitlement] = None
    prior_provider_subscriber_id: Optional[str] = None
    new_provider_subscriber_id: Optional[str] = None
    event_id: Optional[str] = None


def _lenient_timestamp(value: Any, field: str) -> Optional[datetime.datetime]:
    """Parse a provider timestamp, treating an unparseable value as absent."""
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        logging.warning(f"Ignoring unparseable {field} {value!r}: {e}")
        return None


def _lenient_string(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


class _RawEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Any = None
    type: Any = None
    app_user_id: str
    original_app_user_id: Any = None
    new_app_user_id: Any = None
    # Only the configured entitlement is read; the rest of the map and the
    # flat RevenueCat fields are taken as-is and never fail validation.
    entitlements: Any = None
    product_id: Any = None
    expiration_at_ms: Any = None
    purchased_at_ms: Any = None

    @field_validator("app_user_id")
    @classmethod
    def _require_user_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("app_user_id cannot be empty")
        return value


class _RawPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: _RawEvent


def _describe_errors(exc: ValidationError) -> List[str]:
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        details.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return details


def _extract_entitlement(raw: _RawEvent, entitlement_id: str) -> Optional[Entitlement]:
    nested = raw.entitlements.get(entitlement_id) if isinstance(raw.entitlements, dict) else None
    if isinstance(nested, dict):
        return Entitlement(
            product_id=_lenient_string(nested.get("product_identifier")),
            expires_at=_lenient_timestamp(nested.get("expires_date"), "expires_date"),
            purchase_date=_lenient_timestamp(nested.get("purchase_date"), "purchase_date"),
        )
    if nested is not None:
        logging.warning(f"Ignoring malformed '{entitlement_id}' entitlement: {nested!r}")

    product_id = _lenient_string(raw.product_id)
    expires_at = _lenient_timestamp(raw.expiration_at_ms, "expiration_at_ms")
    purchase_date = _lenient_timestamp(raw.purchased_at_ms, "purchased_at_ms")
    if product_id or expires_at or purchase_date:
        return Entitlement(product_id=product_id, expires_at=expires_at, purchase_date=purchase_date)
    return None


def parse_webhook_payload(payload: Any, entitlement_id: str = "premium") -> WebhookEvent:
    """
    Validate a decoded webhook body and classify its event kind.

    :param payload: The JSON-decoded request body.
    :param entitlement_id: Name of the entitlement that carries premium access.
    :return: The parsed WebhookEvent; unrecognized types map to EventKind.UNKNOWN.
    :raises WebhookValidationError: if the event object or its app_user_id is missing.
    """
    if not isinstance(payload, dict):
        raise WebhookValidationError("Validation failed", ["Request body must be a JSON object"])
    try:
        raw = _RawPayload.model_validate(payload).event
    except ValidationError as e:
        raise WebhookValidationError("Validation failed", _describe_errors(e))

    raw_type = _lenient_string(raw.type) or ""
    kind = EventKind.from_type(raw_type)
    new_subscriber_id = None
    if kind is EventKind.SUBSCRIBER_ALIAS:
        new_subscriber_id = (_lenient_string(raw.new_app_user_id) or "").strip() or raw.app_user_id

    return WebhookEvent(
        kind=kind,
        raw_type=raw_type,
        subject_user_id=raw.app_user_id,
        entitlement=_extract_entitlement(raw, entitlement_id),
        prior_provider_subscriber_id=_lenient_string(raw.original_app_user_id),
        new_provider_subscriber_id=new_subscriber_id,
        event_id=_lenient_string(raw.id),
    )
