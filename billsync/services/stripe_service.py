import logging
import stripe
from fastapi.concurrency import run_in_threadpool
from typing import Optional, Dict, Any, Callable

from billsync.core.config import settings
from billsync.core.exceptions import ProcessorError

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Any:
    if obj is None or isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else obj


def unwrap(result: Dict[str, Any], key: str) -> Any:
    """Return ``result[key]`` or raise ProcessorError for a failed call"""
    if not result.get("success"):
        raise ProcessorError(
            detail=result.get("error") or "Payment processor request failed",
            code=result.get("error_code"),
        )
    return result.get(key)


class StripeService:
    """
    Thin wrapper over the Stripe SDK.

    Every call is scoped to a connected account when ``account_ref`` is
    given and returns ``{"success": bool, ...}`` instead of raising.
    """

    def __init__(self):
        if settings.stripe_secret:
            stripe.api_key = settings.stripe_secret
            self.webhook_secret = settings.stripe_webhook_secret
        else:
            # Don't raise exception during initialization, handle it in methods
            self.webhook_secret = None

    async def _call(self, key: str, fn: Callable, *args, account_ref: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        if not settings.stripe_secret:
            return {"success": False, "error": "Stripe not configured"}
        if account_ref:
            kwargs["stripe_account"] = account_ref
        try:
            obj = await run_in_threadpool(fn, *args, **kwargs)
            return {"success": True, key: _as_dict(obj)}
        except Exception as e:
            logger.error(f"❌ Stripe {getattr(fn, '__qualname__', fn)} failed: {str(e)}")
            return {
                "success": False,
                "error": getattr(e, "user_message", None) or str(e),
                "error_code": getattr(e, "code", None),
            }

    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        account_ref: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a new Stripe customer"""
        return await self._call(
            "customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata or {},
            account_ref=account_ref,
        )

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_ref: str,
        metadata: Dict[str, str],
        account_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a PaymentIntent for the first period of a paid checkout"""
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "customer": customer_ref,
            "metadata": metadata,
            "setup_future_usage": "off_session",
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        return await self._call("payment_intent", stripe.PaymentIntent.create, account_ref=account_ref, **params)

    async def create_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        metadata: Dict[str, str],
        account_ref: Optional[str] = None,
        default_payment_method: Optional[str] = None,
        billing_cycle_anchor: Optional[int] = None,
        trial_period_days: Optional[int] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a subscription to a single price"""
        params: Dict[str, Any] = {
            "customer": customer_ref,
            "items": [{"price": price_ref}],
            "metadata": metadata,
            "payment_behavior": "allow_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
        }
        if default_payment_method:
            params["default_payment_method"] = default_payment_method
        if billing_cycle_anchor:
            # First period was already collected through the PaymentIntent
            params["billing_cycle_anchor"] = billing_cycle_anchor
            params["proration_behavior"] = "none"
        if trial_period_days:
            params["trial_period_days"] = trial_period_days
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        return await self._call("subscription", stripe.Subscription.create, account_ref=account_ref, **params)

    async def retrieve_subscription(self, subscription_ref: str, account_ref: Optional[str] = None) -> Dict[str, Any]:
        return await self._call("subscription", stripe.Subscription.retrieve, subscription_ref, account_ref=account_ref)

    async def update_subscription_price(
        self,
        subscription_ref: str,
        price_ref: str,
        account_ref: Optional[str] = None,
        proration_behavior: str = "create_prorations"
    ) -> Dict[str, Any]:
        """Swap the price of a subscription's single item"""
        current = await self.retrieve_subscription(subscription_ref, account_ref=account_ref)
        if not current["success"]:
            return current
        items = (current["subscription"].get("items") or {}).get("data") or []
        if not items:
            return {"success": False, "error": f"Subscription {subscription_ref} has no items"}
        return await self._call(
            "subscription",
            stripe.Subscription.modify,
            subscription_ref,
            items=[{"id": items[0]["id"], "price": price_ref}],
            proration_behavior=proration_behavior,
            account_ref=account_ref,
        )

    async def cancel_subscription(self, subscription_ref: str, account_ref: Optional[str] = None) -> Dict[str, Any]:
        """Cancel a subscription immediately"""
        return await self._call("subscription", stripe.Subscription.cancel, subscription_ref, account_ref=account_ref)

    async def preview_invoice(
        self,
        customer_ref: str,
        subscription_ref: str,
        new_price_ref: str,
        proration_date: int,
        account_ref: Optional[str] = None
    ) -> Dict[str, Any]:
        """Preview the invoice a price swap would produce right now"""
        current = await self.retrieve_subscription(subscription_ref, account_ref=account_ref)
        if not current["success"]:
            return current
        items = (current["subscription"].get("items") or {}).get("data") or []
        if not items:
            return {"success": False, "error": f"Subscription {subscription_ref} has no items"}
        return await self._call(
            "invoice",
            stripe.Invoice.create_preview,
            customer=customer_ref,
            subscription=subscription_ref,
            subscription_details={
                "items": [{"id": items[0]["id"], "price": new_price_ref}],
                "proration_behavior": "create_prorations",
                "proration_date": proration_date,
            },
            account_ref=account_ref,
        )

    async def create_refund(
        self,
        payment_ref: str,
        reason: str,
        amount: Optional[int] = None,
        account_ref: Optional[str] = None
    ) -> Dict[str, Any]:
        """Refund a PaymentIntent, fully unless ``amount`` is given"""
        params: Dict[str, Any] = {
            "payment_intent": payment_ref,
            "reason": "requested_by_customer",
            "metadata": {"reason": reason[:500]},
        }
        if amount is not None:
            params["amount"] = amount
        return await self._call("refund", stripe.Refund.create, account_ref=account_ref, **params)

    async def retrieve_refund(self, refund_ref: str, account_ref: Optional[str] = None) -> Dict[str, Any]:
        return await self._call("refund", stripe.Refund.retrieve, refund_ref, account_ref=account_ref)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify Stripe webhook signature"""
        try:
            stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret
            )
            return True
        except Exception as e:
            logger.warning(f"⚠️ Stripe webhook signature rejected: {type(e).__name__}")
            return False


# Create a singleton instance
stripe_service = StripeService()
