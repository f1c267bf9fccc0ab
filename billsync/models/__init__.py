# Database models package

from .base import Base
from .organization import Organization, OrganizationStatus
from .customer import Customer
from .product import Product, ProductPrice, Feature, ProductFeature, BillingInterval, FeatureType
from .subscription import Subscription, SubscriptionStatus
from .feature_grant import FeatureGrant, UsageRecord, GrantSyncStatus
from .subscription_change import SubscriptionChange, ChangeType, ChangeStatus
from .checkout_metadata import CheckoutMetadata, CheckoutStatus
from .webhook_event import WebhookEvent, WebhookEventStatus
from .reconciliation import (
    ReconciliationQueueItem,
    ReconciliationStatus,
    ReconciliationType,
    Refund,
    RefundInitiator,
    SyncEvent,
    SyncOperation,
)
from .advisory_lock import AdvisoryLock

__all__ = [
    'Base',
    'Organization',
    'OrganizationStatus',
    'Customer',
    'Product',
    'ProductPrice',
    'Feature',
    'ProductFeature',
    'BillingInterval',
    'FeatureType',
    'Subscription',
    'SubscriptionStatus',
    'FeatureGrant',
    'UsageRecord',
    'GrantSyncStatus',
    'SubscriptionChange',
    'ChangeType',
    'ChangeStatus',
    'CheckoutMetadata',
    'CheckoutStatus',
    'WebhookEvent',
    'WebhookEventStatus',
    'ReconciliationQueueItem',
    'ReconciliationStatus',
    'ReconciliationType',
    'Refund',
    'RefundInitiator',
    'SyncEvent',
    'SyncOperation',
    'AdvisoryLock',
]
