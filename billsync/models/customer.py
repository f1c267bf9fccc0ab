from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Index, text
from sqlalchemy.dialects.postgresql import UUID
import uuid
from .base import Base, TimestampMixin


class Customer(Base, TimestampMixin):
    """Billable end customer of a tenant"""
    __tablename__ = "customers"
    __table_args__ = (
        Index(
            "uq_customers_org_external_id",
            "organization_id", "external_id",
            unique=True,
            postgresql_where=text("external_id IS NOT NULL AND is_deleted = false"),
            sqlite_where=text("external_id IS NOT NULL AND is_deleted = 0"),
        ),
        Index(
            "uq_customers_org_email",
            "organization_id", "email",
            unique=True,
            postgresql_where=text("is_deleted = false"),
            sqlite_where=text("is_deleted = 0"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    external_id = Column(String(255), nullable=True)  # caller's own user id, immutable once set
    email = Column(String(320), nullable=False)  # stored lower-cased
    name = Column(String(255), nullable=True)
    billing_address = Column(JSON, nullable=True)
    processor_customer_ref = Column(String(255), nullable=True, index=True)  # cus_...
    meta_data = Column("metadata", JSON, nullable=False, default=dict)
    deleted_at = Column(DateTime, nullable=True)
