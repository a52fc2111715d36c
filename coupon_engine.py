"""
coupon_engine.py
================
Coupon eligibility and discount computation.

Scoping:
--------
- Vendor coupon (vendor_id set): only cart lines whose product belongs to
  that vendor count towards the eligible subtotal and receive the discount.
  Lines from other vendors are left out entirely.
- Admin-wide coupon (vendor_id is None): every line is eligible.

Discount types:
---------------
- percent: eligible_subtotal * amount / 100
- flat:    amount, never more than the eligible subtotal

Checks, in order:
-----------------
1. active flag                       -> Inactive
2. validity window [start, expire)   -> InvalidState / Expired
3. at least one eligible line        -> InvalidState (COUPON_NOT_APPLICABLE)
4. eligible subtotal >= min_purchase -> MinPurchaseNotMet

A coupon applied to a cart is kept as a snapshot (see `snapshot`) and
re-evaluated on every cart read, without raising (see `reevaluate`): against
the current lines, and against the coupon's current active flag and window.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from errors import Expired, Inactive, InvalidState, MinPurchaseNotMet
from models import utcnow
from pricing import ZERO, to_decimal, to_money


@dataclass(frozen=True)
class CouponResult:
    code: str
    vendor_id: Optional[int]
    eligible_subtotal: Decimal
    discount: Decimal
    is_applicable: bool


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo else value


# ─────────────────────────── Validity ───────────────────────────

def is_coupon_expired(expire_date, now: Optional[datetime] = None) -> bool:
    if expire_date is None:
        return False
    now = now or utcnow()
    return _naive(expire_date) <= now


def check_coupon_usable(coupon, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    if not coupon.is_active:
        raise Inactive("Coupon is not active")
    if coupon.start_date is not None and _naive(coupon.start_date) > now:
        raise InvalidState("Coupon is not valid yet", "COUPON_NOT_STARTED")
    if is_coupon_expired(coupon.expire_date, now):
        raise Expired("Coupon has expired")


# ─────────────────────────── Snapshot ───────────────────────────

def snapshot(coupon) -> dict:
    """JSON-safe copy of the fields needed to re-evaluate the coupon later."""
    return {
        "coupon_id": coupon.id,
        "code": coupon.code,
        "vendor_id": coupon.vendor_id,
        "discount_type": coupon.discount_type,
        "discount_amount": str(coupon.discount_amount),
        "min_purchase": str(coupon.min_purchase or 0),
    }


# ─────────────────────────── Discount ───────────────────────────

def eligible_subtotal(lines: Iterable, vendor_id: Optional[int]) -> Decimal:
    """Sum of line subtotals the coupon may touch. Lines need `.vendor_id` and `.subtotal`."""
    return sum(
        (line.subtotal for line in lines if vendor_id is None or line.vendor_id == vendor_id),
        ZERO,
    )


def compute_discount(discount_type: str, amount, eligible: Decimal) -> Decimal:
    amount = to_decimal(amount)
    if eligible <= 0 or amount <= 0:
        return ZERO
    if discount_type == "flat":
        return min(amount, eligible)
    return min(eligible * amount / 100, eligible)


def evaluate(coupon: dict, lines, strict: bool = True) -> CouponResult:
    """
    Evaluate a coupon snapshot against priced cart lines.

    strict=True raises when the coupon cannot be applied (used by apply);
    strict=False reports is_applicable=False with a zero discount instead
    (used when re-reading a cart that already carries the coupon).
    """
    lines = list(lines)
    vendor_id = coupon.get("vendor_id")
    has_eligible_line = any(vendor_id is None or line.vendor_id == vendor_id for line in lines)
    eligible = eligible_subtotal(lines, vendor_id)
    min_purchase = to_decimal(coupon.get("min_purchase"))

    failure = None
    if not has_eligible_line:
        failure = InvalidState("Coupon does not apply to any item in the cart", "COUPON_NOT_APPLICABLE")
    elif eligible < min_purchase:
        failure = MinPurchaseNotMet(
            f"Minimum purchase of {to_money(min_purchase):.2f} not met "
            f"(eligible subtotal {to_money(eligible):.2f})"
        )

    if failure is not None:
        if strict:
            raise failure
        return CouponResult(coupon["code"], vendor_id, eligible, ZERO, False)

    discount = compute_discount(coupon["discount_type"], coupon["discount_amount"], eligible)
    return CouponResult(coupon["code"], vendor_id, eligible, discount, True)


def reevaluate(coupon: dict, current, lines, now: Optional[datetime] = None) -> CouponResult:
    """
    Re-read a coupon already applied to a cart.

    `coupon` is the stored snapshot and `current` the coupon row as it is now
    (None once deleted). The snapshot's terms still apply, but only while the
    coupon itself is still active and inside its validity window; otherwise
    the cart reports it as not applicable with a zero discount.
    """
    lines = list(lines)
    usable = current is not None
    if usable:
        try:
            check_coupon_usable(current, now)
        except InvalidState:
            usable = False
    if not usable:
        vendor_id = coupon.get("vendor_id")
        return CouponResult(coupon["code"], vendor_id, eligible_subtotal(lines, vendor_id), ZERO, False)
    return evaluate(coupon, lines, strict=False)
