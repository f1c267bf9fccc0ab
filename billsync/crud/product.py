from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from typing import Optional, List, Tuple
from uuid import UUID
from pydantic import BaseModel

from billsync.crud.base import CRUDBase
from billsync.models.product import Product, ProductPrice, Feature, ProductFeature


class CRUDProduct(CRUDBase[Product, BaseModel, BaseModel]):
    async def list_with_prices(
        self,
        db: AsyncSession,
        organization_id: UUID,
        *,
        recurring_interval,
        recurring_interval_count: int,
        currency: str
    ) -> List[Tuple[Product, ProductPrice]]:
        """Active products of a tenant with their prices for one billing interval and currency"""
        result = await db.execute(
            select(Product, ProductPrice)
            .join(ProductPrice, ProductPrice.product_id == Product.id)
            .where(
                and_(
                    Product.organization_id == organization_id,
                    Product.recurring_interval == recurring_interval,
                    Product.recurring_interval_count == recurring_interval_count,
                    Product.is_archived == False,
                    Product.is_deleted == False,
                    ProductPrice.currency == currency,
                    ProductPrice.is_archived == False,
                    ProductPrice.is_deleted == False
                )
            )
            .order_by(ProductPrice.amount.asc())
        )
        return [(product, price) for product, price in result.all()]


class CRUDProductPrice(CRUDBase[ProductPrice, BaseModel, BaseModel]):
    async def get_with_product(self, db: AsyncSession, price_id: UUID) -> Optional[Tuple[ProductPrice, Product]]:
        """Get a price together with the product it belongs to"""
        result = await db.execute(
            select(ProductPrice, Product)
            .join(Product, Product.id == ProductPrice.product_id)
            .where(and_(ProductPrice.id == price_id, ProductPrice.is_deleted == False))
        )
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def get_by_processor_ref(self, db: AsyncSession, processor_price_ref: str) -> Optional[ProductPrice]:
        result = await db.execute(
            select(self.model).where(
                and_(self.model.processor_price_ref == processor_price_ref, self.model.is_deleted == False)
            ).limit(1)
        )
        return result.scalar_one_or_none()


class CRUDFeature(CRUDBase[Feature, BaseModel, BaseModel]):
    async def get_by_processor_ref(self, db: AsyncSession, processor_feature_ref: str) -> Optional[Feature]:
        """Get feature by Stripe entitlements feature id"""
        result = await db.execute(
            select(self.model).where(
                and_(self.model.processor_feature_ref == processor_feature_ref, self.model.is_deleted == False)
            ).limit(1)
        )
        return result.scalar_one_or_none()


class CRUDProductFeature(CRUDBase[ProductFeature, BaseModel, BaseModel]):
    async def list_for_product(self, db: AsyncSession, product_id: UUID) -> List[Tuple[ProductFeature, Feature]]:
        """Features attached to a product, with their definitions"""
        result = await db.execute(
            select(ProductFeature, Feature)
            .join(Feature, Feature.id == ProductFeature.feature_id)
            .where(
                and_(
                    ProductFeature.product_id == product_id,
                    ProductFeature.is_deleted == False,
                    Feature.is_deleted == False
                )
            )
        )
        return [(link, feature) for link, feature in result.all()]


product_crud = CRUDProduct(Product)
product_price_crud = CRUDProductPrice(ProductPrice)
feature_crud = CRUDFeature(Feature)
product_feature_crud = CRUDProductFeature(ProductFeature)
