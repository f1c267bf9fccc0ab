# CRUD operations package

from .organization import organization_crud
from .customer import customer_crud
from .product import product_crud, product_price_crud, feature_crud, product_feature_crud
from .subscription import subscription_crud
from .feature_grant import feature_grant_crud, usage_record_crud
from .subscription_change import subscription_change_crud
from .checkout_metadata import checkout_metadata_crud
from .webhook_event import webhook_event_crud
from .reconciliation import reconciliation_crud, refund_crud, sync_event_crud

__all__ = [
    'organization_crud',
    'customer_crud',
    'product_crud',
    'product_price_crud',
    'feature_crud',
    'product_feature_crud',
    'subscription_crud',
    'feature_grant_crud',
    'usage_record_crud',
    'subscription_change_crud',
    'checkout_metadata_crud',
    'webhook_event_crud',
    'reconciliation_crud',
    'refund_crud',
    'sync_event_crud',
]
