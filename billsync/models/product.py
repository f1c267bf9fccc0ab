from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, JSON, Text, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
import uuid
import enum
from .base import Base, TimestampMixin


class BillingInterval(str, enum.Enum):
    MONTH = "month"
    YEAR = "year"


class FeatureType(str, enum.Enum):
    BOOLEAN_FLAG = "boolean_flag"
    USAGE_QUOTA = "usage_quota"
    NUMERIC_LIMIT = "numeric_limit"


class Product(Base, TimestampMixin):
    """Sellable plan of a tenant"""
    __tablename__ = "products"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    recurring_interval = Column(SQLEnum(BillingInterval), default=BillingInterval.MONTH, nullable=False)
    recurring_interval_count = Column(Integer, default=1, nullable=False)
    trial_days = Column(Integer, default=0, nullable=False)
    processor_product_ref = Column(String(255), nullable=True)  # prod_...
    is_archived = Column(Boolean, default=False, nullable=False)


class ProductPrice(Base, TimestampMixin):
    """Price point of a product; amount == 0 or no processor ref means free tier"""
    __tablename__ = "product_prices"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False, default=0)  # minor units
    currency = Column(String(3), nullable=False, default="usd")
    processor_price_ref = Column(String(255), nullable=True, index=True)  # price_...
    is_archived = Column(Boolean, default=False, nullable=False)

    @property
    def is_free(self) -> bool:
        return self.amount == 0 or not self.processor_price_ref


class Feature(Base, TimestampMixin):
    __tablename__ = "features"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    key = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    feature_type = Column(SQLEnum(FeatureType), default=FeatureType.BOOLEAN_FLAG, nullable=False)
    properties = Column(JSON, nullable=False, default=dict)  # may hold "limit"
    processor_feature_ref = Column(String(255), nullable=True, index=True)  # feat_...


class ProductFeature(Base, TimestampMixin):
    """Feature attached to a product, with per-product config"""
    __tablename__ = "product_features"
    __table_args__ = (UniqueConstraint("product_id", "feature_id", name="uq_product_features_product_feature"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    feature_id = Column(UUID(as_uuid=True), ForeignKey("features.id"), nullable=False, index=True)
    config = Column(JSON, nullable=False, default=dict)  # may hold "limit"
