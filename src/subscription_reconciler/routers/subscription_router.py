import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, ValidationError

from subscription_reconciler.dependencies import get_entitlement_client, get_store
from subscription_reconciler.entitlement_client import LiveEntitlementClient
from subscription_reconciler.errors import PersistenceError
from subscription_reconciler.status_service import get_status
from subscription_reconciler.store import SubscriptionStore
from subscription_reconciler.timeutils import utc_now

router = APIRouter()


class CheckSubscriptionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None


def _bad_request(error: str, details) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": error, "details": details},
    )


@router.get("/{user_id}/status", status_code=200)
def read_subscription_status(user_id: str, store: SubscriptionStore = Depends(get_store)):
    try:
        view = get_status(store, user_id)
    except PersistenceError as e:
        logging.error(e, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Failed to read subscription", "message": str(e)},
        )
    return {"success": True, "data": view.model_dump(mode="json")}


@router.post("/check", status_code=200)
async def check_subscription(
    request: Request,
    x_user_id: Optional[str] = Header(default=None),
    client: LiveEntitlementClient = Depends(get_entitlement_client),
):
    """Live entitlement lookup against RevenueCat, bypassing the local store."""
    payload_bytes = await request.body()
    try:
        body = CheckSubscriptionRequest.model_validate_json(payload_bytes or b"{}")
    except ValidationError as e:
        errors = e.errors()
        if any(error["type"] == "json_invalid" for error in errors):
            return _bad_request("Invalid JSON in request body", ["Request body must be valid JSON"])
        details = [f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}" for error in errors]
        return _bad_request("Validation failed", details)

    user_id = body.user_id if body.user_id is not None else x_user_id
    if user_id is None or not user_id.strip():
        return _bad_request("Validation failed", ["User ID is required and must be a non-empty string"])

    entitlement = await client.check(user_id.strip())
    logging.info(
        f"Subscription check for user {entitlement.user_id}: is_premium={entitlement.is_premium} "
        f"is_active={entitlement.is_active} has_error={entitlement.error is not None}"
    )
    return {
        "success": True,
        "data": {**entitlement.model_dump(mode="json"), "timestamp": utc_now().isoformat()},
        "message": "Subscription status retrieved successfully",
    }
