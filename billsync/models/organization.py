from sqlalchemy import Column, String, Boolean, DateTime, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from .base import Base, TimestampMixin


class OrganizationStatus(str, enum.Enum):
    """Connected account onboarding status"""
    PENDING = "pending"
    ONBOARDING_STARTED = "onboarding_started"
    ACTIVE = "active"
    BLOCKED = "blocked"


class Organization(Base, TimestampMixin):
    """Tenant; every processor call for it is scoped to its connected account"""
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    name = Column(String(255), nullable=False)
    processor_account_ref = Column(String(255), nullable=True, unique=True, index=True)  # acct_...
    status = Column(SQLEnum(OrganizationStatus), default=OrganizationStatus.PENDING, nullable=False)
    charges_enabled = Column(Boolean, default=False, nullable=False)
    payouts_enabled = Column(Boolean, default=False, nullable=False)
    details_submitted = Column(Boolean, default=False, nullable=False)
    onboarded_at = Column(DateTime, nullable=True)
