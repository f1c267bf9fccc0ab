from pydantic import BaseModel, Field, EmailStr
from typing import Optional, Dict, Any
from datetime import datetime
from uuid import UUID
from enum import Enum


class CheckoutStatusEnum(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


class CreateCheckoutRequest(BaseModel):
    price_id: UUID = Field(..., description="Price the customer is subscribing to")
    customer_email: EmailStr
    customer_name: Optional[str] = None
    external_id: Optional[str] = Field(None, description="Caller's own id for this customer")
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CreateCheckoutResponse(BaseModel):
    checkout_id: UUID
    expires_at: datetime
    requires_payment: bool
    amount: int
    currency: str
    client_secret: Optional[str] = None
    payment_intent_ref: Optional[str] = None


class CheckoutMetadataResponse(BaseModel):
    id: UUID
    organization_id: UUID
    customer_id: Optional[UUID] = None
    product_id: UUID
    price_id: UUID
    customer_email: str
    customer_name: Optional[str] = None
    product_name: str
    price_amount: int
    currency: str
    billing_interval: str
    billing_interval_count: int
    trial_period_days: Optional[int] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    status: CheckoutStatusEnum
    expires_at: datetime
    subscription_id: Optional[UUID] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ConfirmCheckoutResponse(BaseModel):
    checkout_id: UUID
    subscription_id: UUID
    status: CheckoutStatusEnum
