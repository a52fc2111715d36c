"""
repositories.py
===============
Store access for carts, wishlists, products and coupons.

Services talk to these instead of building queries themselves. Cart line
increments are a single UPDATE ... SET quantity = quantity + n, falling back
to an INSERT guarded by the (cart, product, variation) unique constraint, so
two concurrent adds of the same line never produce a duplicate or lose an
increment.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

import models
from auth import Identity
from models import utcnow

logger = logging.getLogger(__name__)


class ProductRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, product_id: int) -> Optional[models.Product]:
        return self.db.get(models.Product, product_id)

    def find_by_ids(self, product_ids: Iterable[int]) -> List[models.Product]:
        ids = list(set(product_ids))
        if not ids:
            return []
        return self.db.query(models.Product).filter(models.Product.id.in_(ids)).all()


class CouponRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, coupon_id: int) -> Optional[models.Coupon]:
        return self.db.get(models.Coupon, coupon_id)

    def find_by_code(self, code: str) -> Optional[models.Coupon]:
        return self.db.query(models.Coupon).filter(models.Coupon.code == code.strip().upper()).first()

    def code_exists(self, code: str, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(models.Coupon.id).filter(models.Coupon.code == code.strip().upper())
        if exclude_id is not None:
            query = query.filter(models.Coupon.id != exclude_id)
        return query.first() is not None


class CartRepository:
    def __init__(self, db: Session, guest_cart_days: int = 7):
        self.db = db
        self.guest_cart_days = guest_cart_days

    def _owner_filter(self, identity: Identity):
        if identity.is_guest:
            return models.Cart.guest_id == identity.guest_id
        return models.Cart.customer_id == identity.customer_id

    def _guest_expiry(self, now: datetime) -> datetime:
        return now + timedelta(days=self.guest_cart_days)

    def find(self, identity: Identity, now: Optional[datetime] = None) -> Optional[models.Cart]:
        cart = self.db.query(models.Cart).filter(self._owner_filter(identity)).first()
        if cart is None:
            return None
        if self._purge_if_expired(cart, now):
            return None
        return cart

    def _purge_if_expired(self, cart: models.Cart, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if cart.expires_at is None or cart.expires_at > now:
            return False
        logger.info(f"Purging expired guest cart {cart.id}")
        self.db.delete(cart)
        self.db.commit()
        return True

    def get_or_create(self, identity: Identity) -> models.Cart:
        cart = self.find(identity)
        if cart is not None:
            return cart
        cart = models.Cart(
            customer_id=identity.customer_id,
            guest_id=identity.guest_id,
            expires_at=self._guest_expiry(utcnow()) if identity.is_guest else None,
        )
        self.db.add(cart)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request created it first.
            self.db.rollback()
            cart = self.db.query(models.Cart).filter(self._owner_filter(identity)).one()
        return cart

    def touch(self, cart: models.Cart) -> None:
        if cart.guest_id is not None:
            cart.expires_at = self._guest_expiry(utcnow())

    def lines(self, cart: models.Cart) -> List[models.CartItem]:
        return (
            self.db.query(models.CartItem)
            .options(joinedload(models.CartItem.product))
            .filter(models.CartItem.cart_id == cart.id)
            .order_by(models.CartItem.id)
            .all()
        )

    def find_line(self, cart: models.Cart, item_id: int) -> Optional[models.CartItem]:
        return (
            self.db.query(models.CartItem)
            .filter(models.CartItem.cart_id == cart.id, models.CartItem.id == item_id)
            .first()
        )

    def find_line_by_key(self, cart: models.Cart, product_id: int, sku: str) -> Optional[models.CartItem]:
        return (
            self.db.query(models.CartItem)
            .filter(
                models.CartItem.cart_id == cart.id,
                models.CartItem.product_id == product_id,
                models.CartItem.variation_sku == sku,
            )
            .first()
        )

    def add_or_increment(self, cart: models.Cart, product_id: int, sku: str, quantity: int) -> None:
        increment = (
            update(models.CartItem)
            .where(
                models.CartItem.cart_id == cart.id,
                models.CartItem.product_id == product_id,
                models.CartItem.variation_sku == sku,
            )
            .values(quantity=models.CartItem.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        self.touch(cart)
        if self.db.execute(increment).rowcount:
            self.db.commit()
            return

        self.db.add(models.CartItem(
            cart_id=cart.id,
            product_id=product_id,
            variation_sku=sku,
            quantity=quantity,
            added_at=utcnow(),
        ))
        try:
            self.db.commit()
        except IntegrityError:
            # Lost the race to a concurrent insert of the same line.
            self.db.rollback()
            self.db.execute(increment)
            self.db.commit()

    def set_quantity(self, cart: models.Cart, item: models.CartItem, quantity: int) -> None:
        item.quantity = quantity
        self.touch(cart)
        self.db.commit()

    def remove_line(self, cart: models.Cart, item: models.CartItem) -> None:
        self.db.delete(item)
        self.touch(cart)
        self.db.commit()

    def clear(self, cart: models.Cart) -> None:
        self.db.query(models.CartItem).filter(models.CartItem.cart_id == cart.id).delete(
            synchronize_session=False
        )
        cart.applied_coupon = None
        self.db.commit()

    def set_coupon(self, cart: models.Cart, snapshot: Optional[dict]) -> None:
        cart.applied_coupon = snapshot
        self.db.commit()

    def merge_guest_into_customer(
        self, guest_id: str, customer_id: int, line_cap: int
    ) -> Optional[models.Cart]:
        """
        Fold a guest cart into the customer's cart in one transaction.

        Re-running after the guest cart is gone finds nothing and returns None.
        An expired guest cart is purged instead of merged.
        """
        guest_cart = self.db.query(models.Cart).filter(models.Cart.guest_id == guest_id).first()
        if guest_cart is None:
            logger.info(f"No guest cart to merge for guest {guest_id}")
            return None
        if self._purge_if_expired(guest_cart):
            return None

        customer_cart = (
            self.db.query(models.Cart).filter(models.Cart.customer_id == customer_id).first()
        )
        if customer_cart is None:
            guest_cart.customer_id = customer_id
            guest_cart.guest_id = None
            guest_cart.expires_at = None
            self.db.commit()
            logger.info(f"Guest cart {guest_cart.id} re-owned by customer {customer_id}")
            return guest_cart

        existing = {(i.product_id, i.variation_sku): i for i in customer_cart.items}
        for guest_item in guest_cart.items:
            match = existing.get((guest_item.product_id, guest_item.variation_sku))
            if match is not None:
                match.quantity = min(match.quantity + guest_item.quantity, line_cap)
            else:
                customer_cart.items.append(models.CartItem(
                    product_id=guest_item.product_id,
                    variation_sku=guest_item.variation_sku,
                    quantity=min(guest_item.quantity, line_cap),
                    added_at=guest_item.added_at,
                ))
        if customer_cart.applied_coupon is None and guest_cart.applied_coupon is not None:
            customer_cart.applied_coupon = guest_cart.applied_coupon

        merged = len(guest_cart.items)
        self.db.delete(guest_cart)
        self.db.commit()
        logger.info(f"Merged {merged} guest lines into cart {customer_cart.id} and deleted guest cart")
        return customer_cart


class WishlistRepository:
    def __init__(self, db: Session):
        self.db = db

    def items(self, customer_id: int) -> List[models.WishlistItem]:
        return (
            self.db.query(models.WishlistItem)
            .options(joinedload(models.WishlistItem.product))
            .filter(models.WishlistItem.customer_id == customer_id)
            .order_by(models.WishlistItem.id)
            .all()
        )

    def contains(self, customer_id: int, product_id: int) -> bool:
        return (
            self.db.query(models.WishlistItem.id)
            .filter(
                models.WishlistItem.customer_id == customer_id,
                models.WishlistItem.product_id == product_id,
            )
            .first()
            is not None
        )

    def add(self, customer_id: int, product_id: int) -> bool:
        """False when the product was already there (possibly added concurrently)."""
        self.db.add(models.WishlistItem(customer_id=customer_id, product_id=product_id, added_at=utcnow()))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def remove(self, customer_id: int, product_id: int) -> int:
        removed = (
            self.db.query(models.WishlistItem)
            .filter(
                models.WishlistItem.customer_id == customer_id,
                models.WishlistItem.product_id == product_id,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return removed

    def clear(self, customer_id: int) -> int:
        removed = (
            self.db.query(models.WishlistItem)
            .filter(models.WishlistItem.customer_id == customer_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return removed
