"""
pricing.py
==========
Price resolution for a batch of products.

  base price  = list price minus the product's own discount, floored at 0
  final price = price of the highest-precedence live deal, else base price

The four deal registries are independent reads, so they run concurrently,
each on its own session; results are combined only once all four are back.
All arithmetic is Decimal at full precision. Rounding to 2 places happens in
`to_money`, which only the response layer calls.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from deals import DEAL_PRECEDENCE, REGISTRIES, DealDecoration, DealType
from models import utcnow

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_money(value: Decimal) -> float:
    return float(to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def apply_discount(price: Any, discount: Any, discount_type: str) -> Decimal:
    price = to_decimal(price)
    discount = to_decimal(discount)
    if discount <= 0:
        return price
    if discount_type == "flat":
        reduced = price - discount
    else:
        reduced = price - price * discount / 100
    return max(reduced, ZERO)


@dataclass(frozen=True)
class PriceInput:
    """What the resolver needs to know about one product (or one variation of it)."""

    id: int
    price: Decimal
    discount: Decimal = ZERO
    discount_type: str = "percent"
    vendor_id: Optional[int] = None

    @classmethod
    def from_product(cls, product, list_price: Any = None) -> "PriceInput":
        return cls(
            id=product.id,
            price=to_decimal(product.price if list_price is None else list_price),
            discount=to_decimal(product.discount),
            discount_type=product.discount_type or "percent",
            vendor_id=product.vendor_id,
        )


@dataclass(frozen=True)
class PricedProduct:
    product_id: int
    list_price: Decimal
    base_price: Decimal
    final_price: Decimal
    deal: Optional[DealDecoration] = None
    # Every decoration found, including the ones that lost on precedence.
    candidates: Dict[DealType, DealDecoration] = field(default_factory=dict, compare=False)

    @property
    def winning_deal_type(self) -> Optional[DealType]:
        return self.deal.deal_type if self.deal else None


class PriceResolver:
    def __init__(self, session_factory: sessionmaker, registries=None, max_workers: int = 4):
        self.session_factory = session_factory
        self.registries = registries or REGISTRIES
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="deal-enrich")

    def _enrich(self, deal_type: DealType, products: Sequence, now: datetime) -> Dict[int, DealDecoration]:
        with self.session_factory() as db:
            return self.registries[deal_type].enrich_batch(db, products, now)

    def decorations(self, products: Sequence, now: Optional[datetime] = None) -> Dict[DealType, Dict[int, DealDecoration]]:
        now = now or utcnow()
        futures = {
            deal_type: self._executor.submit(self._enrich, deal_type, products, now)
            for deal_type in DEAL_PRECEDENCE
        }
        # Fan-in: wait for every registry before combining anything.
        return {deal_type: future.result() for deal_type, future in futures.items()}

    def resolve(self, products: Sequence, now: Optional[datetime] = None) -> List[PricedProduct]:
        if not products:
            return []
        inputs = [p if isinstance(p, PriceInput) else PriceInput.from_product(p) for p in products]
        found = self.decorations(inputs, now)

        priced = []
        for item in inputs:
            base = apply_discount(item.price, item.discount, item.discount_type)
            candidates = {
                deal_type: found[deal_type][item.id]
                for deal_type in DEAL_PRECEDENCE
                if item.id in found[deal_type]
            }
            winner = next((candidates[t] for t in DEAL_PRECEDENCE if t in candidates), None)
            final = base
            if winner is not None:
                final = apply_discount(item.price, winner.discount, winner.discount_type)
            priced.append(PricedProduct(
                product_id=item.id,
                list_price=item.price,
                base_price=base,
                final_price=final,
                deal=winner,
                candidates=candidates,
            ))
        return priced

    def close(self) -> None:
        self._executor.shutdown(wait=False)
