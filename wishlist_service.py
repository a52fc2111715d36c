"""
wishlist_service.py
===================
Customer wishlists. Only approved, active products are shown; they are
priced in one batch exactly like cart lines.
"""

import logging

from sqlalchemy.orm import Session

import schemas
from cart_service import deal_info
from errors import Conflict, NotFound, Unavailable
from pricing import PriceResolver, to_money
from repositories import ProductRepository, WishlistRepository

logger = logging.getLogger(__name__)


class WishlistService:
    def __init__(self, db: Session, resolver: PriceResolver):
        self.db = db
        self.resolver = resolver
        self.wishlist = WishlistRepository(db)
        self.products = ProductRepository(db)

    def get_wishlist(self, customer_id: int) -> schemas.WishlistResponse:
        items = [
            item for item in self.wishlist.items(customer_id)
            if item.product is not None and item.product.is_purchasable
        ]
        if not items:
            return schemas.WishlistResponse(message="Wishlist is empty")

        priced = self.resolver.resolve([item.product for item in items])
        lines = [
            schemas.WishlistLine(
                product_id=item.product_id,
                name=item.product.name,
                price=to_money(p.list_price),
                base_price=to_money(p.base_price),
                final_price=to_money(p.final_price),
                active_deal=deal_info(p),
                added_at=item.added_at,
            )
            for item, p in zip(items, priced)
        ]
        return schemas.WishlistResponse(items=lines, total_items=len(lines))

    def is_in_wishlist(self, customer_id: int, product_id: int) -> bool:
        return self.wishlist.contains(customer_id, product_id)

    def add_to_wishlist(self, customer_id: int, product_id: int) -> schemas.WishlistResponse:
        product = self.products.get(product_id)
        if product is None:
            raise NotFound("Product not found", "PRODUCT_NOT_FOUND")
        if not product.is_purchasable:
            raise Unavailable("Product is not available")
        if not self.wishlist.add(customer_id, product_id):
            raise Conflict("Product is already in your wishlist", "ALREADY_IN_WISHLIST")

        logger.info(f"Product added to wishlist: customer={customer_id} product={product_id}")
        return self.get_wishlist(customer_id)

    def remove_from_wishlist(self, customer_id: int, product_id: int) -> schemas.WishlistResponse:
        self.wishlist.remove(customer_id, product_id)
        logger.info(f"Product removed from wishlist: customer={customer_id} product={product_id}")
        return self.get_wishlist(customer_id)

    def clear_wishlist(self, customer_id: int) -> schemas.WishlistResponse:
        self.wishlist.clear(customer_id)
        logger.info(f"Wishlist cleared: customer={customer_id}")
        return schemas.WishlistResponse(message="Wishlist cleared successfully")
