"""
Typed views of the Stripe webhook events the service acts on.

Events are parsed once at the dispatch boundary into one of the models
below; the verbatim JSON is kept only in the webhook ledger for audit.
"""

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing import Annotated, Any, Dict, List, Literal, Optional, Union


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _ref(value: Any) -> Optional[str]:
    """Expandable Stripe field: either an id string or an object with an id"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


# Subscription

class PriceRef(StripeObject):
    id: str


class SubscriptionItem(StripeObject):
    id: Optional[str] = None
    price: PriceRef
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItemList(StripeObject):
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(StripeObject):
    id: str
    customer: Any
    status: str
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    ended_at: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def customer_ref(self) -> Optional[str]:
        return _ref(self.customer)

    @property
    def period_start(self) -> Optional[int]:
        # Newer API versions only report billing periods on the items
        if self.current_period_start is not None:
            return self.current_period_start
        return self.items.data[0].current_period_start if self.items.data else None

    @property
    def period_end(self) -> Optional[int]:
        if self.current_period_end is not None:
            return self.current_period_end
        return self.items.data[0].current_period_end if self.items.data else None

    @property
    def price_ref(self) -> Optional[str]:
        return self.items.data[0].price.id if self.items.data else None


# Invoice

class InvoiceObject(StripeObject):
    id: str
    customer: Any = None
    subscription: Any = None
    parent: Optional[Dict[str, Any]] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    billing_reason: Optional[str] = None

    @property
    def subscription_ref(self) -> Optional[str]:
        ref = _ref(self.subscription)
        if ref:
            return ref
        details = (self.parent or {}).get("subscription_details") or {}
        return _ref(details.get("subscription"))


# Entitlements

class ActiveEntitlementObject(StripeObject):
    id: str
    customer: Any
    feature: Any
    lookup_key: Optional[str] = None
    livemode: bool = False

    @property
    def customer_ref(self) -> Optional[str]:
        return _ref(self.customer)

    @property
    def feature_ref(self) -> Optional[str]:
        return _ref(self.feature)


# Customer / account

class CustomerObject(StripeObject):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    deleted: bool = False


class AccountObject(StripeObject):
    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


class ApplicationObject(StripeObject):
    id: Optional[str] = None


# Payment intent

class PaymentIntentObject(StripeObject):
    id: str
    amount: int = 0
    amount_received: int = 0
    currency: str = "usd"
    customer: Any = None
    payment_method: Any = None
    status: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    last_payment_error: Optional[Dict[str, Any]] = None

    @property
    def customer_ref(self) -> Optional[str]:
        return _ref(self.customer)

    @property
    def payment_method_ref(self) -> Optional[str]:
        return _ref(self.payment_method)

    @property
    def checkout_metadata_id(self) -> Optional[str]:
        return self.metadata.get("checkout_metadata_id")


# Envelopes

class EventEnvelope(StripeObject):
    """Fields common to every event, used by the ledger"""
    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    account: Optional[str] = None
    api_version: Optional[str] = None


class SubscriptionEventData(StripeObject):
    object: SubscriptionObject
    previous_attributes: Optional[Dict[str, Any]] = None


class SubscriptionEvent(EventEnvelope):
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ]
    data: SubscriptionEventData


class InvoiceEventData(StripeObject):
    object: InvoiceObject


class InvoiceEvent(EventEnvelope):
    type: Literal["invoice.payment_succeeded", "invoice.payment_failed"]
    data: InvoiceEventData


class EntitlementEventData(StripeObject):
    object: ActiveEntitlementObject


class EntitlementEvent(EventEnvelope):
    type: Literal[
        "entitlements.active_entitlement.created",
        "entitlements.active_entitlement.updated",
        "entitlements.active_entitlement.deleted",
    ]
    data: EntitlementEventData


class CustomerEventData(StripeObject):
    object: CustomerObject


class CustomerEvent(EventEnvelope):
    type: Literal["customer.updated", "customer.deleted"]
    data: CustomerEventData


class AccountEventData(StripeObject):
    object: AccountObject


class AccountEvent(EventEnvelope):
    type: Literal["account.updated"]
    data: AccountEventData


class ApplicationEventData(StripeObject):
    object: ApplicationObject


class AccountDeauthorizedEvent(EventEnvelope):
    type: Literal["account.application.deauthorized"]
    data: ApplicationEventData


class PaymentIntentEventData(StripeObject):
    object: PaymentIntentObject


class PaymentIntentEvent(EventEnvelope):
    type: Literal["payment_intent.succeeded", "payment_intent.payment_failed"]
    data: PaymentIntentEventData


ProcessorEvent = Annotated[
    Union[
        SubscriptionEvent,
        InvoiceEvent,
        EntitlementEvent,
        CustomerEvent,
        AccountEvent,
        AccountDeauthorizedEvent,
        PaymentIntentEvent,
    ],
    Field(discriminator="type"),
]

processor_event_adapter = TypeAdapter(ProcessorEvent)

HANDLED_EVENT_TYPES = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "entitlements.active_entitlement.created",
    "entitlements.active_entitlement.updated",
    "entitlements.active_entitlement.deleted",
    "customer.updated",
    "customer.deleted",
    "account.updated",
    "account.application.deauthorized",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
})


def parse_event(raw: Dict[str, Any]) -> Optional[ProcessorEvent]:
    """Typed event for a handled type, None for anything else"""
    if raw.get("type") not in HANDLED_EVENT_TYPES:
        return None
    return processor_event_adapter.validate_python(raw)
