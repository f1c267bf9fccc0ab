from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from .base import Base, TimestampMixin


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum"""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    CANCELED = "canceled"  # canceled through the processor
    CANCELLED = "cancelled"  # superseded locally by another subscription
    ENDED = "ended"


LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
TERMINAL_STATUSES = (SubscriptionStatus.CANCELED, SubscriptionStatus.CANCELLED, SubscriptionStatus.ENDED)


class Subscription(Base, TimestampMixin):
    """Local subscription; no processor ref means free tier. Never physically deleted."""
    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False)
    price_id = Column(UUID(as_uuid=True), ForeignKey("product_prices.id"), nullable=False)
    status = Column(SQLEnum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE, nullable=False, index=True)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)

    # Stripe-related fields
    processor_subscription_ref = Column(String(255), nullable=True, unique=True, index=True)  # sub_...
    meta_data = Column("metadata", JSON, nullable=False, default=dict)

    @property
    def is_free_tier(self) -> bool:
        return not self.processor_subscription_ref
