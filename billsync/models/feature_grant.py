from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from .base import Base, TimestampMixin, utcnow


class GrantSyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class FeatureGrant(Base, TimestampMixin):
    """Entitlement of a customer to a feature. Revoked, never deleted."""
    __tablename__ = "feature_grants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True)
    feature_id = Column(UUID(as_uuid=True), ForeignKey("features.id"), nullable=False, index=True)
    granted_at = Column(DateTime, default=utcnow, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    properties = Column(JSON, nullable=False, default=dict)
    processor_entitlement_ref = Column(String(255), nullable=True, index=True)
    sync_status = Column(SQLEnum(GrantSyncStatus), default=GrantSyncStatus.PENDING, nullable=False)
    synced_at = Column(DateTime, nullable=True)


class UsageRecord(Base, TimestampMixin):
    """Per-period usage counter; renewal appends a new row"""
    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("subscription_id", "feature_id", "period_start", name="uq_usage_records_period"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    feature_id = Column(UUID(as_uuid=True), ForeignKey("features.id"), nullable=False)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    consumed_units = Column(Integer, default=0, nullable=False)
    limit_units = Column(Integer, default=0, nullable=False)
