from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, Text, Enum as SQLEnum, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from .base import Base, TimestampMixin


class ReconciliationStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    PENDING_MANUAL_REVIEW = "pending_manual_review"
    MANUAL_REVIEW = "manual_review"
    RESOLVED = "resolved"


class ReconciliationType(str, enum.Enum):
    AUTOMATIC_REFUND = "automatic_refund"
    REFUND_FAILED = "refund_failed"
    SYNC_FAILED = "sync_failed"
    WEBHOOK_PROCESSING_FAILED = "webhook_processing_failed"
    SCHEDULED_CHANGE_FAILED = "scheduled_change_failed"
    COMPENSATION_FAILED = "compensation_failed"


OPEN_STATUSES = (
    ReconciliationStatus.PENDING,
    ReconciliationStatus.PENDING_MANUAL_REVIEW,
    ReconciliationStatus.MANUAL_REVIEW,
)


class ReconciliationQueueItem(Base, TimestampMixin):
    """Escalation sink for anything that needs a human or a later fix-up"""
    __tablename__ = "reconciliation_queue"
    __table_args__ = (CheckConstraint("priority >= 1 AND priority <= 10", name="ck_reconciliation_queue_priority"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    type = Column(SQLEnum(ReconciliationType), nullable=False, index=True)
    reference_id = Column(String(255), nullable=False, index=True)
    status = Column(SQLEnum(ReconciliationStatus), default=ReconciliationStatus.PENDING, nullable=False, index=True)
    priority = Column(Integer, default=5, nullable=False)  # 1 highest .. 10 lowest
    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(String(255), nullable=True)
    processed_at = Column(DateTime, nullable=True)


class RefundInitiator(str, enum.Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class Refund(Base, TimestampMixin):
    """Audit log of refunds issued through the processor"""
    __tablename__ = "refunds"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    payment_ref = Column(String(255), nullable=False, index=True)  # pi_...
    processor_refund_ref = Column(String(255), nullable=True, unique=True)  # re_...
    processor_account_ref = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)
    reason = Column(Text, nullable=False)
    status = Column(String(50), nullable=False)  # processor refund status, or "failed"
    initiated_by = Column(SQLEnum(RefundInitiator), default=RefundInitiator.AUTOMATIC, nullable=False)
    meta_data = Column("metadata", JSON, nullable=False, default=dict)


class SyncOperation(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncEvent(Base, TimestampMixin):
    """Side audit of entitlement synchronisation"""
    __tablename__ = "sync_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID(as_uuid=True), nullable=True)
    processor_object_ref = Column(String(255), nullable=False)
    operation = Column(SQLEnum(SyncOperation), nullable=False)
    status = Column(String(20), nullable=False)  # success | failed
    error_message = Column(Text, nullable=True)
    triggered_by = Column(String(50), nullable=False, default="webhook")
