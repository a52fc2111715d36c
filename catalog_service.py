"""
catalog_service.py
==================
Product administration and public price reads.

Prices are read through the two-tier cache under the `pricing:` namespace.
Any product edit, like any deal edit, clears that namespace before returning.
A cached price also expires at the next scheduled deal change for the
products it covers, so a deal that ends or starts is seen on time.
"""

import logging
from typing import List

from sqlalchemy.orm import Session

import models
import schemas
from cache import TwoTierCache
from cart_service import deal_info
from deal_service import PRICING_NAMESPACE
from deals import seconds_until_next_transition
from errors import InvalidState, NotFound, Unavailable
from pricing import PricedProduct, PriceResolver, to_money
from repositories import ProductRepository

logger = logging.getLogger(__name__)


def price_response(priced: PricedProduct) -> schemas.PriceResponse:
    return schemas.PriceResponse(
        product_id=priced.product_id,
        price=to_money(priced.list_price),
        base_price=to_money(priced.base_price),
        final_price=to_money(priced.final_price),
        active_deal=deal_info(priced),
    )


class CatalogService:
    def __init__(self, db: Session, cache: TwoTierCache, resolver: PriceResolver):
        self.db = db
        self.cache = cache
        self.resolver = resolver
        self.products = ProductRepository(db)

    # ─────────────── Prices ───────────────

    def get_product_price(self, product_id: int) -> dict:
        def load() -> dict:
            product = self.products.get(product_id)
            if product is None:
                raise NotFound("Product not found", "PRODUCT_NOT_FOUND")
            if not product.is_purchasable:
                raise Unavailable("Product is not available for purchase")
            priced = self.resolver.resolve([product])[0]
            return price_response(priced).model_dump(mode="json")

        return self.cache.get_or_compute(
            f"{PRICING_NAMESPACE}product:{product_id}",
            load,
            expires_in=lambda _: seconds_until_next_transition(self.db, product_ids=[product_id]),
        )

    def get_product_prices(self, product_ids: List[int]) -> List[dict]:
        """Prices for the purchasable products among `product_ids`; unknown ids are skipped."""
        ids = sorted(set(product_ids))
        if not ids:
            return []

        def load() -> List[dict]:
            found = [p for p in self.products.find_by_ids(ids) if p.is_purchasable]
            found.sort(key=lambda p: p.id)
            return [price_response(p).model_dump(mode="json") for p in self.resolver.resolve(found)]

        key = f"{PRICING_NAMESPACE}batch:{','.join(str(i) for i in ids)}"
        return self.cache.get_or_compute(
            key, load, expires_in=lambda _: seconds_until_next_transition(self.db, product_ids=ids)
        )

    # ─────────────── Products ───────────────

    def _commit(self, product: models.Product) -> schemas.ProductResponse:
        self.db.commit()
        self.cache.invalidate(PRICING_NAMESPACE)
        self.db.refresh(product)
        return schemas.ProductResponse.model_validate(product)

    def create_product(self, payload: schemas.ProductCreate) -> schemas.ProductResponse:
        product = models.Product(
            name=payload.name,
            vendor_id=payload.vendor_id,
            price=payload.price,
            discount=payload.discount,
            discount_type=payload.discount_type.value,
            is_active=payload.is_active,
            status=payload.status.value,
            stock=payload.stock,
            variations=[v.model_dump() for v in payload.variations],
        )
        self.db.add(product)
        result = self._commit(product)
        logger.info(f"Product {product.id} created")
        return result

    def update_product(self, product_id: int, payload: schemas.ProductUpdate) -> schemas.ProductResponse:
        product = self.products.get(product_id)
        if product is None:
            raise NotFound("Product not found", "PRODUCT_NOT_FOUND")

        changes = {
            name: value
            for name, value in payload.model_dump(exclude_unset=True, mode="json").items()
            if value is not None
        }
        for name, value in changes.items():
            setattr(product, name, value)
        if product.discount_type == "percent" and product.discount > 100:
            self.db.rollback()
            raise InvalidState("Percentage discount cannot exceed 100", "INVALID_DISCOUNT")

        result = self._commit(product)
        logger.info(f"Product {product_id} updated: {', '.join(sorted(changes))}")
        return result
