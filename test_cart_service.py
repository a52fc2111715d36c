"""
test_cart_service.py
====================
Cart aggregation, mutation, merge and coupons at the service level.
"""

import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

import models
from auth import Identity
from cart_service import MAX_LINE_QUANTITY, CartService
from deals import DealType
from errors import (
    Expired,
    InsufficientStock,
    InvalidState,
    MinPurchaseNotMet,
    NotFound,
    QuantityLimitExceeded,
    Unavailable,
)
from models import utcnow


@pytest.fixture
def service(db, resolver):
    return CartService(db, resolver)


@pytest.fixture
def customer(make_customer):
    return Identity.customer(make_customer().id)


@pytest.fixture
def guest():
    return Identity.guest(str(uuid.uuid4()))


def quantities(cart):
    return {line.product_id: line.quantity for line in cart.items}


# ══════════════════════════════════════════════
#  Reads
# ══════════════════════════════════════════════

class TestGetCart:

    def test_absent_cart_reads_as_empty(self, service, guest):
        cart = service.get_cart(guest)
        assert cart.items == []
        assert cart.total == 0
        assert cart.message == "Cart is empty"

    def test_totals(self, service, customer, make_product):
        a = make_product(price=Decimal("19.99"))
        b = make_product(price=Decimal("5.00"), discount=Decimal("1"), discount_type="flat")
        service.add_to_cart(customer, a.id, 3)
        cart = service.add_to_cart(customer, b.id, 2)

        assert cart.total_items == 5
        assert cart.subtotal == 67.97
        assert cart.total == 67.97
        line_b = next(line for line in cart.items if line.product_id == b.id)
        assert line_b.price == 5.0
        assert line_b.base_price == 4.0
        assert line_b.subtotal == 8.0

    def test_lines_carry_the_winning_deal(self, service, customer, make_product, make_deal):
        product = make_product(price=Decimal("200"))
        deal = make_deal(DealType.flash, [(product, 25, "percent")])
        cart = service.add_to_cart(customer, product.id, 2)

        [line] = cart.items
        assert line.final_price == 150.0
        assert line.active_deal.type == DealType.flash
        assert line.active_deal.deal_id == deal.id
        assert cart.subtotal == 300.0

    def test_repeated_reads_are_identical(self, service, customer, make_product, make_deal):
        product = make_product(price=Decimal("33.33"))
        make_deal(DealType.featured, [(product, 15, "percent")])
        service.add_to_cart(customer, product.id, 3)

        first = service.get_cart(customer)
        second = service.get_cart(customer)
        assert first.model_dump() == second.model_dump()

    def test_unpurchasable_lines_are_hidden(self, db, service, customer, make_product):
        kept = make_product(price=Decimal("10"))
        hidden = make_product(price=Decimal("50"))
        service.add_to_cart(customer, kept.id, 1)
        service.add_to_cart(customer, hidden.id, 1)

        hidden.status = "suspended"
        db.commit()

        cart = service.get_cart(customer)
        assert [line.product_id for line in cart.items] == [kept.id]
        assert cart.subtotal == 10.0
        assert db.query(models.CartItem).count() == 2

    def test_summary(self, service, customer, make_product):
        product = make_product(price=Decimal("12.50"))
        service.add_to_cart(customer, product.id, 2)
        summary = service.get_cart_summary(customer)
        assert summary.total_items == 2
        assert summary.subtotal == 25.0
        assert summary.total == 25.0

    def test_expired_guest_cart_reads_as_absent(self, db, service, guest, make_product):
        product = make_product()
        service.add_to_cart(guest, product.id, 1)

        cart = db.query(models.Cart).filter(models.Cart.guest_id == guest.guest_id).one()
        cart.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        assert service.get_cart(guest).items == []
        assert db.query(models.Cart).count() == 0


# ══════════════════════════════════════════════
#  Add / update / remove
# ══════════════════════════════════════════════

class TestAddToCart:

    def test_adding_same_product_increments(self, db, service, customer, make_product):
        product = make_product()
        service.add_to_cart(customer, product.id, 2)
        cart = service.add_to_cart(customer, product.id, 3)
        assert quantities(cart) == {product.id: 5}
        assert db.query(models.CartItem).count() == 1

    def test_exactly_remaining_stock_succeeds(self, service, customer, make_product):
        product = make_product(stock=5)
        cart = service.add_to_cart(customer, product.id, 5)
        assert quantities(cart) == {product.id: 5}

    def test_one_more_than_stock_fails(self, service, customer, make_product):
        product = make_product(stock=5)
        with pytest.raises(InsufficientStock) as exc:
            service.add_to_cart(customer, product.id, 6)
        assert exc.value.code == "INSUFFICIENT_STOCK"

    def test_stock_counts_what_is_already_in_the_cart(self, service, customer, make_product):
        product = make_product(stock=5)
        service.add_to_cart(customer, product.id, 3)
        with pytest.raises(InsufficientStock):
            service.add_to_cart(customer, product.id, 3)
        assert quantities(service.get_cart(customer)) == {product.id: 3}

    def test_per_line_limit(self, service, customer, make_product):
        product = make_product(stock=1000)
        service.add_to_cart(customer, product.id, MAX_LINE_QUANTITY)
        with pytest.raises(QuantityLimitExceeded):
            service.add_to_cart(customer, product.id, 1)

    def test_per_line_limit_in_one_add(self, service, customer, make_product):
        product = make_product(stock=1000)
        with pytest.raises(QuantityLimitExceeded):
            service.add_to_cart(customer, product.id, MAX_LINE_QUANTITY + 1)

    def test_unknown_product(self, service, customer):
        with pytest.raises(NotFound) as exc:
            service.add_to_cart(customer, 9999, 1)
        assert exc.value.code == "PRODUCT_NOT_FOUND"

    @pytest.mark.parametrize("fields", [{"status": "pending"}, {"is_active": False}])
    def test_unpurchasable_product(self, service, customer, make_product, fields):
        product = make_product(**fields)
        with pytest.raises(Unavailable):
            service.add_to_cart(customer, product.id, 1)

    def test_variation_uses_its_own_price_and_stock(self, service, customer, make_product):
        product = make_product(price=Decimal("100"), variations=[{"sku": "RED-L", "price": 120, "stock": 2}])
        cart = service.add_to_cart(customer, product.id, 2, variation="RED-L")

        [line] = cart.items
        assert line.variation == "RED-L"
        assert line.price == 120.0
        with pytest.raises(InsufficientStock):
            service.add_to_cart(customer, product.id, 1, variation="RED-L")

    def test_variation_and_base_product_are_separate_lines(self, service, customer, make_product):
        product = make_product(variations=[{"sku": "RED-L", "price": None, "stock": 5}])
        service.add_to_cart(customer, product.id, 1)
        cart = service.add_to_cart(customer, product.id, 1, variation="RED-L")
        assert len(cart.items) == 2

    def test_unknown_variation(self, service, customer, make_product):
        product = make_product(variations=[{"sku": "RED-L", "price": 120, "stock": 2}])
        with pytest.raises(NotFound) as exc:
            service.add_to_cart(customer, product.id, 1, variation="BLUE-S")
        assert exc.value.code == "VARIATION_NOT_FOUND"

    def test_guest_cart_gets_an_expiry(self, db, service, guest, make_product):
        product = make_product()
        service.add_to_cart(guest, product.id, 1)
        cart = db.query(models.Cart).filter(models.Cart.guest_id == guest.guest_id).one()
        assert cart.expires_at > utcnow() + timedelta(days=6)

    def test_concurrent_adds_do_not_lose_increments(self, session_factory, resolver, customer, make_product):
        product = make_product(stock=100)
        product_id = product.id

        def add(_):
            db = session_factory()
            try:
                CartService(db, resolver).add_to_cart(customer, product_id, 1)
            finally:
                db.close()

        add(0)
        with ThreadPoolExecutor(max_workers=5) as pool:
            list(pool.map(add, range(5)))

        db = session_factory()
        try:
            lines = db.query(models.CartItem).all()
            assert [line.quantity for line in lines] == [6]
        finally:
            db.close()


class TestUpdateAndRemove:

    def test_update_quantity(self, service, customer, make_product):
        product = make_product(stock=10)
        item_id = service.add_to_cart(customer, product.id, 1).items[0].id
        cart = service.update_item_quantity(customer, item_id, 7)
        assert quantities(cart) == {product.id: 7}

    def test_update_beyond_stock(self, service, customer, make_product):
        product = make_product(stock=3)
        item_id = service.add_to_cart(customer, product.id, 1).items[0].id
        with pytest.raises(InsufficientStock):
            service.update_item_quantity(customer, item_id, 4)

    def test_update_without_cart(self, service, guest):
        with pytest.raises(NotFound) as exc:
            service.update_item_quantity(guest, 1, 2)
        assert exc.value.code == "CART_NOT_FOUND"

    def test_update_unknown_line(self, service, customer, make_product):
        service.add_to_cart(customer, make_product().id, 1)
        with pytest.raises(NotFound) as exc:
            service.update_item_quantity(customer, 9999, 2)
        assert exc.value.code == "CART_ITEM_NOT_FOUND"

    def test_remove_item(self, service, customer, make_product):
        a, b = make_product(), make_product()
        service.add_to_cart(customer, a.id, 1)
        cart = service.add_to_cart(customer, b.id, 1)
        line_a = next(line for line in cart.items if line.product_id == a.id)

        cart = service.remove_item(customer, line_a.id)
        assert quantities(cart) == {b.id: 1}

    def test_lines_of_another_cart_are_not_reachable(self, service, customer, guest, make_product):
        product = make_product()
        item_id = service.add_to_cart(guest, product.id, 1).items[0].id
        service.add_to_cart(customer, product.id, 1)
        with pytest.raises(NotFound):
            service.remove_item(customer, item_id)

    def test_clear_cart_drops_lines_and_coupon(self, service, customer, make_product, make_coupon):
        service.add_to_cart(customer, make_product().id, 1)
        make_coupon(code="SAVE10")
        service.apply_coupon(customer, "SAVE10")

        service.clear_cart(customer)
        cart = service.get_cart(customer)
        assert cart.items == []
        assert cart.coupon is None


# ══════════════════════════════════════════════
#  Merge
# ══════════════════════════════════════════════

class TestMerge:

    def test_guest_lines_fold_into_customer_cart(self, db, service, customer, guest, make_product):
        a, b = make_product(name="A"), make_product(name="B")
        service.add_to_cart(guest, a.id, 2)
        service.add_to_cart(customer, a.id, 1)
        service.add_to_cart(customer, b.id, 3)

        cart = service.merge_guest_cart(guest.guest_id, customer.customer_id)
        assert quantities(cart) == {a.id: 3, b.id: 3}
        assert db.query(models.Cart).filter(models.Cart.guest_id == guest.guest_id).count() == 0

    def test_merging_twice_changes_nothing(self, service, customer, guest, make_product):
        a, b = make_product(name="A"), make_product(name="B")
        service.add_to_cart(guest, a.id, 2)
        service.add_to_cart(customer, a.id, 1)
        service.add_to_cart(customer, b.id, 3)

        first = service.merge_guest_cart(guest.guest_id, customer.customer_id)
        second = service.merge_guest_cart(guest.guest_id, customer.customer_id)
        assert quantities(first) == quantities(second) == {a.id: 3, b.id: 3}

    def test_guest_cart_is_taken_over_when_customer_has_none(self, db, service, customer, guest, make_product):
        product = make_product()
        service.add_to_cart(guest, product.id, 2)

        cart = service.merge_guest_cart(guest.guest_id, customer.customer_id)
        assert quantities(cart) == {product.id: 2}
        stored = db.query(models.Cart).one()
        assert stored.customer_id == customer.customer_id
        assert stored.guest_id is None
        assert stored.expires_at is None

    def test_merged_lines_are_capped(self, service, customer, guest, make_product):
        product = make_product(stock=1000)
        service.add_to_cart(guest, product.id, 80)
        service.add_to_cart(customer, product.id, 80)

        cart = service.merge_guest_cart(guest.guest_id, customer.customer_id)
        assert quantities(cart) == {product.id: MAX_LINE_QUANTITY}

    def test_guest_coupon_moves_when_customer_has_none(self, service, customer, guest, make_product, make_coupon):
        product = make_product()
        make_coupon(code="WELCOME")
        service.add_to_cart(guest, product.id, 1)
        service.apply_coupon(guest, "WELCOME")
        service.add_to_cart(customer, product.id, 1)

        cart = service.merge_guest_cart(guest.guest_id, customer.customer_id)
        assert cart.coupon.code == "WELCOME"

    def test_expired_guest_cart_is_not_merged(self, db, service, customer, guest, make_product):
        a, b = make_product(name="A"), make_product(name="B")
        service.add_to_cart(guest, a.id, 2)
        service.add_to_cart(customer, b.id, 1)
        guest_cart = db.query(models.Cart).filter(models.Cart.guest_id == guest.guest_id).one()
        guest_cart.expires_at = utcnow() - timedelta(days=1)
        db.commit()

        cart = service.merge_guest_cart(guest.guest_id, customer.customer_id)
        assert quantities(cart) == {b.id: 1}
        assert db.query(models.Cart).filter(models.Cart.guest_id == guest.guest_id).count() == 0

    def test_expired_guest_cart_is_not_taken_over(self, db, service, customer, guest, make_product):
        service.add_to_cart(guest, make_product().id, 2)
        guest_cart = db.query(models.Cart).filter(models.Cart.guest_id == guest.guest_id).one()
        guest_cart.expires_at = utcnow() - timedelta(days=1)
        db.commit()

        cart = service.merge_guest_cart(guest.guest_id, customer.customer_id)
        assert cart.message == "Cart is empty"
        assert db.query(models.Cart).count() == 0

    def test_without_guest_id_returns_customer_cart(self, service, customer, make_product):
        product = make_product()
        service.add_to_cart(customer, product.id, 1)
        assert quantities(service.merge_guest_cart(None, customer.customer_id)) == {product.id: 1}


# ══════════════════════════════════════════════
#  Coupons
# ══════════════════════════════════════════════

class TestCartCoupons:

    def test_vendor_coupon_only_discounts_vendor_lines(self, service, customer, make_product, make_coupon):
        a = make_product(vendor_id=1, price=Decimal("100"))
        b = make_product(vendor_id=2, price=Decimal("200"))
        make_coupon(code="VENDORA", vendor_id=1, discount_amount=Decimal("10"))
        service.add_to_cart(customer, a.id, 1)
        service.add_to_cart(customer, b.id, 1)

        cart = service.apply_coupon(customer, "vendora")
        assert cart.coupon_discount == 10.0
        assert cart.total == 290.0
        assert cart.coupon.eligible_subtotal == 100.0

    def test_coupon_uses_deal_prices(self, service, customer, make_product, make_deal, make_coupon):
        product = make_product(price=Decimal("100"))
        make_deal(DealType.deal_of_the_day, [(product, 50, "percent")])
        make_coupon(code="SAVE10")
        service.add_to_cart(customer, product.id, 1)

        cart = service.apply_coupon(customer, "SAVE10")
        assert cart.subtotal == 50.0
        assert cart.coupon_discount == 5.0

    def test_coupon_is_reevaluated_on_read(self, service, customer, make_product, make_coupon):
        a = make_product(vendor_id=1, price=Decimal("100"))
        b = make_product(vendor_id=2, price=Decimal("200"))
        make_coupon(code="VENDORA", vendor_id=1)
        service.add_to_cart(customer, a.id, 1)
        cart = service.add_to_cart(customer, b.id, 1)
        service.apply_coupon(customer, "VENDORA")

        line_a = next(line for line in cart.items if line.product_id == a.id)
        cart = service.remove_item(customer, line_a.id)
        assert cart.coupon.is_applicable is False
        assert cart.coupon_discount == 0.0
        assert cart.total == 200.0

    @pytest.mark.parametrize("withdraw", [
        lambda db, coupon: setattr(coupon, "is_active", False),
        lambda db, coupon: setattr(coupon, "expire_date", utcnow() - timedelta(minutes=1)),
        lambda db, coupon: db.delete(coupon),
    ], ids=["deactivated", "expired", "deleted"])
    def test_withdrawn_coupon_stops_discounting(self, db, service, customer, make_product, make_coupon, withdraw):
        coupon = make_coupon(code="SAVE10")
        service.add_to_cart(customer, make_product(price=Decimal("100")).id, 1)
        assert service.apply_coupon(customer, "SAVE10").coupon_discount == 10.0

        withdraw(db, coupon)
        db.commit()

        cart = service.get_cart(customer)
        assert cart.coupon.code == "SAVE10"
        assert cart.coupon.is_applicable is False
        assert cart.coupon_discount == 0.0
        assert cart.total == 100.0

    def test_edited_coupon_keeps_applied_terms(self, db, service, customer, make_product, make_coupon):
        coupon = make_coupon(code="SAVE10")
        service.add_to_cart(customer, make_product(price=Decimal("100")).id, 1)
        service.apply_coupon(customer, "SAVE10")

        coupon.discount_amount = Decimal("50")
        db.commit()

        assert service.get_cart(customer).coupon_discount == 10.0

    def test_min_purchase(self, service, customer, make_product, make_coupon):
        make_coupon(code="BIG", min_purchase=Decimal("500"))
        service.add_to_cart(customer, make_product().id, 1)
        with pytest.raises(MinPurchaseNotMet):
            service.apply_coupon(customer, "BIG")

    def test_empty_cart(self, service, customer, make_coupon):
        make_coupon(code="SAVE10")
        with pytest.raises(InvalidState) as exc:
            service.apply_coupon(customer, "SAVE10")
        assert exc.value.code == "CART_EMPTY"

    def test_unknown_code(self, service, customer, make_product):
        service.add_to_cart(customer, make_product().id, 1)
        with pytest.raises(NotFound) as exc:
            service.apply_coupon(customer, "NOPE")
        assert exc.value.code == "COUPON_NOT_FOUND"

    def test_expired_code(self, service, customer, make_product, make_coupon):
        make_coupon(code="OLD", start_date=utcnow() - timedelta(days=10), expire_date=utcnow() - timedelta(days=1))
        service.add_to_cart(customer, make_product().id, 1)
        with pytest.raises(Expired):
            service.apply_coupon(customer, "OLD")

    def test_remove_coupon(self, service, customer, make_product, make_coupon):
        make_coupon(code="SAVE10")
        service.add_to_cart(customer, make_product().id, 1)
        service.apply_coupon(customer, "SAVE10")
        cart = service.remove_coupon(customer)
        assert cart.coupon is None
        assert cart.coupon_discount == 0.0
