import json
import logging
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.database import get_db
from billsync.services.event_dispatcher import handle_verified_event
from billsync.services.stripe_service import stripe_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status_code: int, message: str, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": message, "request_id": request_id},
        headers={"X-Request-ID": request_id},
    )


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Handle Stripe webhook events.

    Every event id is processed at most once; redeliveries of a known id
    are acknowledged without side effects.
    """
    request_id = getattr(request.state, "request_id", "")
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        logger.warning(f"⚠️ Webhook without signature ({request_id})")
        return _error(status.HTTP_400_BAD_REQUEST, "Missing Stripe signature", request_id)
    if not stripe_service.verify_webhook_signature(payload, signature):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid Stripe signature", request_id)

    try:
        event = json.loads(payload)
    except ValueError:
        return _error(status.HTTP_400_BAD_REQUEST, "Malformed event payload", request_id)

    try:
        result = await handle_verified_event(db, event)
    except Exception as e:
        logger.exception(f"❌ Webhook {event.get('id')} ({event.get('type')}) failed ({request_id}): {str(e)}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook processing failed", request_id)

    return JSONResponse(content=result)
