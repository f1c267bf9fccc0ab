"""
Routes verified processor events to their handlers.

``handle_verified_event`` is the full intake path: ledger check, dispatch,
then mark the ledger row processed or failed.
"""

import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Dict
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.models.reconciliation import ReconciliationType
from billsync.schemas.events import PaymentIntentEvent, parse_event
from billsync.services.checkout_service import checkout_service
from billsync.services.reconciliation_service import reconciliation_service
from billsync.services.subscription_sync import subscription_sync
from billsync.services.webhook_ledger import webhook_ledger

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, Any], Awaitable[None]]


def best_effort(func: Handler) -> Handler:
    """Sync handlers never fail the delivery; errors go to the reconciliation queue"""
    @wraps(func)
    async def wrapper(db: AsyncSession, event):
        try:
            return await func(db, event)
        except Exception as e:
            await db.rollback()
            logger.error(f"❌ {event.type} handler failed for event {event.id}: {str(e)}")
            await reconciliation_service.escalate(
                db,
                type=ReconciliationType.SYNC_FAILED,
                reference_id=event.data.object.id,
                error=str(e),
                details={"event_id": event.id, "event_type": event.type},
            )
    return wrapper


async def _complete_checkout(db: AsyncSession, event: PaymentIntentEvent) -> None:
    await checkout_service.complete_paid_checkout(db, event.data.object)


HANDLERS: Dict[str, Handler] = {
    "customer.subscription.created": best_effort(subscription_sync.handle_subscription_created),
    "customer.subscription.updated": best_effort(subscription_sync.handle_subscription_updated),
    "customer.subscription.deleted": best_effort(subscription_sync.handle_subscription_deleted),
    "invoice.payment_succeeded": best_effort(subscription_sync.handle_invoice_paid),
    "invoice.payment_failed": best_effort(subscription_sync.handle_invoice_failed),
    "entitlements.active_entitlement.created": best_effort(subscription_sync.handle_entitlement_upserted),
    "entitlements.active_entitlement.updated": best_effort(subscription_sync.handle_entitlement_upserted),
    "entitlements.active_entitlement.deleted": best_effort(subscription_sync.handle_entitlement_deleted),
    "customer.updated": best_effort(subscription_sync.handle_customer_updated),
    "customer.deleted": best_effort(subscription_sync.handle_customer_deleted),
    "account.updated": best_effort(subscription_sync.handle_account_updated),
    "account.application.deauthorized": best_effort(subscription_sync.handle_account_deauthorized),
    # Provisioning after a captured payment must surface failures so the delivery is retried
    "payment_intent.succeeded": _complete_checkout,
    "payment_intent.payment_failed": best_effort(subscription_sync.handle_payment_failed),
}

# Failures of these fail the delivery, everything else is best effort
STRICT_EVENT_TYPES = {"payment_intent.succeeded"}


async def dispatch(db: AsyncSession, event: Dict[str, Any]) -> bool:
    """Run the handler for ``event``; False when its type is not handled or its payload is unusable"""
    try:
        typed = parse_event(event)
    except ValidationError as e:
        if event.get("type") in STRICT_EVENT_TYPES:
            raise
        logger.error(f"❌ Malformed {event.get('type')} event {event.get('id')}: {str(e)}")
        obj = (event.get("data") or {}).get("object") or {}
        await reconciliation_service.escalate(
            db,
            type=ReconciliationType.SYNC_FAILED,
            reference_id=obj.get("id") or event.get("id"),
            error=str(e),
            details={"event_id": event.get("id"), "event_type": event.get("type")},
        )
        return False
    if typed is None:
        logger.info(f"ℹ️ Ignoring unhandled event type {event.get('type')} ({event.get('id')})")
        return False
    await HANDLERS[typed.type](db, typed)
    return True


async def handle_verified_event(db: AsyncSession, event: Dict[str, Any]) -> Dict[str, Any]:
    event_id = event.get("id")
    ledger = await webhook_ledger.record_and_check(db, event)
    if not ledger.is_new:
        return {"received": True, "duplicate": True}

    try:
        handled = await dispatch(db, event)
    except Exception as e:
        await db.rollback()
        await webhook_ledger.mark_failed(db, event_id, str(e))
        await reconciliation_service.escalate(
            db,
            type=ReconciliationType.WEBHOOK_PROCESSING_FAILED,
            reference_id=event_id,
            error=str(e),
            details={"event_type": event.get("type")},
            priority=2,
        )
        raise

    await webhook_ledger.mark_processed(db, event_id)
    return {"received": True, "handled": handled}
