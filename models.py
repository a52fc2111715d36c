from datetime import datetime, time, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Time,
    UniqueConstraint,
    and_,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String, unique=True, nullable=False)
    token_version = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class Product(Base):
    """
    Catalog product.

    vendor_id: owning vendor, NULL for in-house products.
    discount_type: 'percent' | 'flat', applied to `price` to get the base price.
    status: 'pending' | 'approved' | 'rejected' | 'suspended'
    variations: [{"sku": <str>, "price": <number|null>, "stock": <int>}, ...]
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    vendor_id = Column(Integer, nullable=True, index=True)
    price = Column(Numeric(12, 2), nullable=False)
    discount = Column(Numeric(12, 2), default=0, nullable=False)
    discount_type = Column(String, default="percent", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    status = Column(String, default="pending", nullable=False)
    stock = Column(Integer, default=0, nullable=False)
    variations = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_purchasable(self) -> bool:
        return self.status == "approved" and bool(self.is_active)

    def find_variation(self, sku: str) -> Optional[dict]:
        return next((v for v in self.variations or [] if v.get("sku") == sku), None)


# ─────────────── Promotional deals ───────────────

class Deal(Base):
    """
    One table for the four deal types, told apart by `kind`.

    Each subclass defines when a deal counts as live: `live_clause()` is the
    SQL part of the predicate, `applies_to()` the part that depends on the
    product or the time of day and is checked on the rows already loaded.
    """
    __tablename__ = "deals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    kind = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    vendor_id = Column(Integer, nullable=True, index=True)
    is_published = Column(Boolean, default=False, nullable=False, index=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    daily_start = Column(Time, nullable=True)
    daily_end = Column(Time, nullable=True)
    image = Column(JSON, nullable=True)  # {"url": ..., "public_id": ...}
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    entries = relationship(
        "DealEntry",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by="DealEntry.id",
    )

    __mapper_args__ = {"polymorphic_on": kind, "polymorphic_identity": "deal"}

    @classmethod
    def live_clause(cls, now: datetime):
        return cls.is_published.is_(True)

    def applies_to(self, product, now: datetime) -> bool:
        return True


class _WindowedDeal:
    """Live only while published and inside [start_date, end_date)."""

    @classmethod
    def live_clause(cls, now: datetime):
        return and_(
            cls.is_published.is_(True),
            cls.start_date <= now,
            cls.end_date > now,
        )


class DealOfTheDay(Deal):
    __mapper_args__ = {"polymorphic_identity": "deal_of_the_day"}


class FeaturedDeal(_WindowedDeal, Deal):
    __mapper_args__ = {"polymorphic_identity": "featured"}


class FlashDeal(_WindowedDeal, Deal):
    __mapper_args__ = {"polymorphic_identity": "flash"}


class ClearanceSale(_WindowedDeal, Deal):
    """
    Vendor-scoped sale, optionally restricted to daily hours.

    A sale without a vendor is the in-house sale and covers in-house products
    (vendor_id NULL) only.
    """

    __mapper_args__ = {"polymorphic_identity": "clearance"}

    def applies_to(self, product, now: datetime) -> bool:
        if self.vendor_id != product.vendor_id:
            return False
        return within_daily_hours(self.daily_start, self.daily_end, now.time())


def within_daily_hours(start: Optional[time], end: Optional[time], moment: time) -> bool:
    if start is None or end is None:
        return True
    if start <= end:
        return start <= moment < end
    # Window wraps past midnight, e.g. 22:00-02:00.
    return moment >= start or moment < end


class DealEntry(Base):
    __tablename__ = "deal_entries"
    __table_args__ = (UniqueConstraint("deal_id", "product_id", name="uq_deal_product"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    deal_id = Column(Integer, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    discount = Column(Numeric(12, 2), default=0, nullable=False)
    discount_type = Column(String, default="percent", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    deal = relationship("Deal", back_populates="entries")


# ─────────────── Cart ───────────────

class Cart(Base):
    """
    Owned by exactly one of customer_id / guest_id.

    applied_coupon: snapshot of the coupon taken when it was applied,
    re-evaluated against the current lines on every read.
    """
    __tablename__ = "carts"
    __table_args__ = (
        CheckConstraint(
            "(customer_id IS NULL) <> (guest_id IS NULL)",
            name="ck_cart_single_owner",
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), unique=True, nullable=True)
    guest_id = Column(String, unique=True, nullable=True)
    applied_coupon = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )


class CartItem(Base):
    """One line per (product, variation); variation_sku is '' for the base product."""

    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", "variation_sku", name="uq_cart_line"),
        CheckConstraint("quantity >= 1", name="ck_cart_line_quantity"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    variation_sku = Column(String, default="", nullable=False)
    quantity = Column(Integer, nullable=False)
    added_at = Column(DateTime, default=utcnow)

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")


# ─────────────── Coupon ───────────────

class Coupon(Base):
    """
    vendor_id: NULL for an admin-wide coupon, otherwise the coupon only
    discounts lines whose product belongs to that vendor.
    discount_type: 'percent' | 'flat'
    """
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    title = Column(String, nullable=False)
    code = Column(String, unique=True, nullable=False, index=True)
    vendor_id = Column(Integer, nullable=True, index=True)
    discount_type = Column(String, default="percent", nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    min_purchase = Column(Numeric(12, 2), default=0, nullable=False)
    start_date = Column(DateTime, nullable=False)
    expire_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ─────────────── Wishlist ───────────────

class WishlistItem(Base):
    __tablename__ = "wishlist_items"
    __table_args__ = (UniqueConstraint("customer_id", "product_id", name="uq_wishlist_product"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    added_at = Column(DateTime, default=utcnow)

    product = relationship("Product")
