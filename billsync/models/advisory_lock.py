from sqlalchemy import Column, String, DateTime
from .base import Base, utcnow


class AdvisoryLock(Base):
    """Row-backed cross-process lock; a row existing means the key is held"""
    __tablename__ = "advisory_locks"

    key = Column(String(255), primary_key=True)
    owner = Column(String(64), nullable=False)
    acquired_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
