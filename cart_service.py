"""
cart_service.py
===============
Cart retrieval, mutation and totals.

Every read prices the visible lines in one batch through the PriceResolver;
carts are per-identity and are never cached. Lines whose product is no
longer approved and active are hidden from the view but kept in storage.

Totals:
  subtotal        = sum(final_price * quantity) over visible lines
  total_items     = sum(quantity) over visible lines
  coupon_discount = applied coupon re-evaluated against the visible lines,
                    zero once the coupon is inactive, expired or deleted
  total           = subtotal - coupon_discount
Rounding to 2 places happens only when the response is built.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

import coupon_engine
import models
import schemas
from auth import Identity
from errors import AppError, InsufficientStock, InvalidState, NotFound, QuantityLimitExceeded, Unavailable
from pricing import ZERO, PriceInput, PricedProduct, PriceResolver, to_money
from repositories import CartRepository, CouponRepository, ProductRepository

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 100


@dataclass
class PricedLine:
    item: models.CartItem
    product: models.Product
    priced: PricedProduct

    @property
    def vendor_id(self) -> Optional[int]:
        return self.product.vendor_id

    @property
    def subtotal(self) -> Decimal:
        return self.priced.final_price * self.item.quantity


def deal_info(priced: PricedProduct) -> Optional[schemas.DealInfo]:
    if priced.deal is None:
        return None
    deal = priced.deal
    return schemas.DealInfo(
        type=deal.deal_type,
        deal_id=deal.deal_id,
        title=deal.title,
        discount=to_money(deal.discount),
        discount_type=deal.discount_type,
        end_date=deal.end_date,
    )


def list_price_for(product: models.Product, sku: str):
    if sku:
        variation = product.find_variation(sku)
        if variation is not None and variation.get("price") is not None:
            return variation["price"]
    return product.price


class CartService:
    def __init__(self, db: Session, resolver: PriceResolver, guest_cart_days: int = 7):
        self.db = db
        self.resolver = resolver
        self.carts = CartRepository(db, guest_cart_days)
        self.products = ProductRepository(db)
        self.coupons = CouponRepository(db)

    # ─────────────── Reads ───────────────

    def _priced_lines(self, cart: models.Cart) -> List[PricedLine]:
        visible = [
            item for item in self.carts.lines(cart)
            if item.product is not None and item.product.is_purchasable
        ]
        if not visible:
            return []
        inputs = [
            PriceInput.from_product(item.product, list_price_for(item.product, item.variation_sku))
            for item in visible
        ]
        priced = self.resolver.resolve(inputs)
        return [PricedLine(item, item.product, p) for item, p in zip(visible, priced)]

    def _build(self, cart: Optional[models.Cart], lines: List[PricedLine]) -> schemas.CartResponse:
        if cart is None or not lines:
            return schemas.CartResponse(message="Cart is empty")

        subtotal = sum((line.subtotal for line in lines), ZERO)
        coupon = None
        coupon_discount = ZERO
        if cart.applied_coupon:
            coupon_id = cart.applied_coupon.get("coupon_id")
            current = self.coupons.get(coupon_id) if coupon_id is not None else None
            result = coupon_engine.reevaluate(cart.applied_coupon, current, lines)
            coupon_discount = result.discount
            coupon = schemas.AppliedCoupon(
                code=result.code,
                vendor_id=result.vendor_id,
                eligible_subtotal=to_money(result.eligible_subtotal),
                discount=to_money(result.discount),
                is_applicable=result.is_applicable,
            )

        items = [
            schemas.CartLine(
                id=line.item.id,
                product_id=line.product.id,
                name=line.product.name,
                vendor_id=line.product.vendor_id,
                variation=line.item.variation_sku or None,
                quantity=line.item.quantity,
                price=to_money(line.priced.list_price),
                base_price=to_money(line.priced.base_price),
                final_price=to_money(line.priced.final_price),
                active_deal=deal_info(line.priced),
                subtotal=to_money(line.subtotal),
                added_at=line.item.added_at,
            )
            for line in lines
        ]
        return schemas.CartResponse(
            items=items,
            total_items=sum(line.item.quantity for line in lines),
            subtotal=to_money(subtotal),
            coupon=coupon,
            coupon_discount=to_money(coupon_discount),
            total=to_money(subtotal - coupon_discount),
        )

    def get_cart(self, identity: Identity) -> schemas.CartResponse:
        cart = self.carts.find(identity)
        if cart is None:
            return schemas.CartResponse(message="Cart is empty")
        return self._build(cart, self._priced_lines(cart))

    def get_cart_summary(self, identity: Identity) -> schemas.CartSummary:
        cart = self.get_cart(identity)
        return schemas.CartSummary(
            total_items=cart.total_items,
            subtotal=cart.subtotal,
            coupon_discount=cart.coupon_discount,
            total=cart.total,
        )

    # ─────────────── Validation ───────────────

    def _purchasable_product(self, product_id: int) -> models.Product:
        product = self.products.get(product_id)
        if product is None:
            raise NotFound("Product not found", "PRODUCT_NOT_FOUND")
        if not product.is_purchasable:
            raise Unavailable("Product is not available for purchase")
        return product

    def _check_quantity(self, product: models.Product, sku: str, quantity: int) -> None:
        if sku:
            variation = product.find_variation(sku)
            if variation is None:
                raise NotFound("Variation not found", "VARIATION_NOT_FOUND")
            if int(variation.get("stock", 0)) < quantity:
                raise InsufficientStock("Insufficient stock for selected variation")
        elif product.stock < quantity:
            raise InsufficientStock("Insufficient stock")

        if quantity > MAX_LINE_QUANTITY:
            raise QuantityLimitExceeded(f"Maximum quantity per item is {MAX_LINE_QUANTITY}")

    # ─────────────── Mutations ───────────────

    def add_to_cart(
        self, identity: Identity, product_id: int, quantity: int = 1, variation: Optional[str] = None
    ) -> schemas.CartResponse:
        if quantity < 1:
            raise AppError("Quantity must be at least 1", "INVALID_QUANTITY")
        sku = variation or ""
        product = self._purchasable_product(product_id)

        cart = self.carts.find(identity)
        existing = self.carts.find_line_by_key(cart, product_id, sku) if cart is not None else None
        self._check_quantity(product, sku, quantity + (existing.quantity if existing else 0))

        cart = cart or self.carts.get_or_create(identity)
        self.carts.add_or_increment(cart, product_id, sku, quantity)
        logger.info(f"Item added to cart: {identity.key} product={product_id} sku={sku!r} qty={quantity}")
        return self.get_cart(identity)

    def _require_cart(self, identity: Identity) -> models.Cart:
        cart = self.carts.find(identity)
        if cart is None:
            raise NotFound("Cart not found", "CART_NOT_FOUND")
        return cart

    def _require_line(self, cart: models.Cart, item_id: int) -> models.CartItem:
        item = self.carts.find_line(cart, item_id)
        if item is None:
            raise NotFound("Item not found in cart", "CART_ITEM_NOT_FOUND")
        return item

    def update_item_quantity(self, identity: Identity, item_id: int, quantity: int) -> schemas.CartResponse:
        if quantity < 1:
            raise AppError("Quantity must be at least 1", "INVALID_QUANTITY")
        cart = self._require_cart(identity)
        item = self._require_line(cart, item_id)
        product = self._purchasable_product(item.product_id)
        self._check_quantity(product, item.variation_sku, quantity)

        self.carts.set_quantity(cart, item, quantity)
        logger.info(f"Cart item quantity updated: {identity.key} item={item_id} qty={quantity}")
        return self.get_cart(identity)

    def remove_item(self, identity: Identity, item_id: int) -> schemas.CartResponse:
        cart = self._require_cart(identity)
        item = self._require_line(cart, item_id)
        self.carts.remove_line(cart, item)
        logger.info(f"Item removed from cart: {identity.key} item={item_id}")
        return self.get_cart(identity)

    def clear_cart(self, identity: Identity) -> schemas.CartResponse:
        cart = self.carts.find(identity)
        if cart is not None:
            self.carts.clear(cart)
            logger.info(f"Cart cleared: {identity.key}")
        return schemas.CartResponse(message="Cart cleared successfully")

    def merge_guest_cart(self, guest_id: Optional[str], customer_id: int) -> schemas.CartResponse:
        customer = Identity.customer(customer_id)
        if guest_id:
            self.carts.merge_guest_into_customer(guest_id, customer_id, MAX_LINE_QUANTITY)
        return self.get_cart(customer)

    # ─────────────── Coupons ───────────────

    def apply_coupon(self, identity: Identity, code: str) -> schemas.CartResponse:
        coupon = self.coupons.find_by_code(code)
        if coupon is None:
            raise NotFound("Coupon not found", "COUPON_NOT_FOUND")
        coupon_engine.check_coupon_usable(coupon)

        cart = self.carts.find(identity)
        lines = self._priced_lines(cart) if cart is not None else []
        if not lines:
            raise InvalidState("Cart is empty", "CART_EMPTY")

        snapshot = coupon_engine.snapshot(coupon)
        result = coupon_engine.evaluate(snapshot, lines, strict=True)
        self.carts.set_coupon(cart, snapshot)
        logger.info(f"Coupon {coupon.code} applied: {identity.key} discount={result.discount}")
        return self._build(cart, lines)

    def remove_coupon(self, identity: Identity) -> schemas.CartResponse:
        cart = self._require_cart(identity)
        self.carts.set_coupon(cart, None)
        logger.info(f"Coupon removed: {identity.key}")
        return self.get_cart(identity)
