import json
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from subscription_reconciler.config import Settings
from subscription_reconciler.dependencies import get_settings, get_store
from subscription_reconciler.errors import PersistenceError, WebhookValidationError
from subscription_reconciler.events import parse_webhook_payload
from subscription_reconciler.store import SubscriptionStore
from subscription_reconciler.webhook_ingest import ingest_event

router = APIRouter()


def _error_response(status_code: int, **body) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, **body})


@router.post("/webhook", status_code=200)
async def process_webhook(
    request: Request,
    store: SubscriptionStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    # TODO: verify the Authorization header against a configured webhook secret
    # once one is provisioned in the RevenueCat dashboard.
    payload_bytes = await request.body()
    try:
        payload = json.loads(payload_bytes.decode('utf-8'))
    except ValueError as e:
        logging.error(f"Webhook body is not valid JSON: {e}")
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            error="Invalid JSON in request body",
            details=["Request body must be valid JSON"],
        )

    try:
        event = parse_webhook_payload(payload, settings.revenuecat_entitlement_id)
    except WebhookValidationError as e:
        logging.error(f"Webhook validation failed: {e.details}")
        return _error_response(status.HTTP_400_BAD_REQUEST, error=e.message, details=e.details)

    try:
        result = await run_in_threadpool(ingest_event, store, event)
    except PersistenceError as e:
        logging.error(e, exc_info=True)
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="Failed to persist subscription",
            message=str(e),
        )
    except Exception as e:
        logging.error(e, exc_info=True)
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="Internal server error",
            message=str(e),
        )

    return {"success": True, "event_type": result.event_type, "user_id": result.user_id}
