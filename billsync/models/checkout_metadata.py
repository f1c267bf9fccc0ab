from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, Text, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from .base import Base, TimestampMixin


class CheckoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


class CheckoutMetadata(Base, TimestampMixin):
    """Server-side checkout parameters; the processor only ever sees this row's id"""
    __tablename__ = "checkout_metadata"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False)
    price_id = Column(UUID(as_uuid=True), ForeignKey("product_prices.id"), nullable=False)

    customer_email = Column(String(320), nullable=False)
    customer_name = Column(String(255), nullable=True)
    customer_external_id = Column(String(255), nullable=True)
    product_name = Column(String(255), nullable=False)
    price_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    billing_interval = Column(String(20), nullable=False)
    billing_interval_count = Column(Integer, default=1, nullable=False)
    trial_period_days = Column(Integer, nullable=True)
    success_url = Column(Text, nullable=True)
    cancel_url = Column(Text, nullable=True)
    meta_data = Column("metadata", JSON, nullable=False, default=dict)

    status = Column(SQLEnum(CheckoutStatus), default=CheckoutStatus.PENDING, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    checkout_session_ref = Column(String(255), nullable=True, index=True)  # pi_...
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True)
    completed_at = Column(DateTime, nullable=True)
