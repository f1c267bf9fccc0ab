from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from .base import Base, TimestampMixin


class ChangeType(str, enum.Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


class ChangeStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionChange(Base, TimestampMixin):
    """Plan change history; scheduled rows are the sweeper's work queue"""
    __tablename__ = "subscription_changes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    change_type = Column(SQLEnum(ChangeType), nullable=False)
    from_price_id = Column(UUID(as_uuid=True), ForeignKey("product_prices.id"), nullable=False)
    to_price_id = Column(UUID(as_uuid=True), ForeignKey("product_prices.id"), nullable=False)
    from_amount = Column(Integer, nullable=False)
    to_amount = Column(Integer, nullable=False)
    proration_credit = Column(Integer, default=0, nullable=False)
    proration_charge = Column(Integer, default=0, nullable=False)
    net_amount = Column(Integer, default=0, nullable=False)
    status = Column(SQLEnum(ChangeStatus), nullable=False, index=True)
    scheduled_for = Column(DateTime, nullable=True, index=True)
    completed_at = Column(DateTime, nullable=True)
    failed_reason = Column(Text, nullable=True)
    processor_invoice_ref = Column(String(255), nullable=True)
