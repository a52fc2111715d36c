"""
deals.py
========
Deal registry: batch enrichment of products with their live promotional deal.

Deal types, highest precedence first:
  1. deal_of_the_day
  2. featured
  3. flash
  4. clearance

Each registry answers one question for a batch of products: "which live deal
of my type covers this product?" in exactly one store query, whatever the
batch size. An entry is live when its deal passes the type's live predicate
(see models.Deal subclasses) and the entry itself is active.

Tie-break: when several deals of the same type are live for one product, the
most recently created deal wins (created_at DESC, then id DESC).

Liveness depends on the clock as well as on stored data, so anything cached
from it must expire by `next_transition()`: the next moment a published
deal opens, closes or crosses its daily hours.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Optional, Type

from sqlalchemy import select
from sqlalchemy.orm import Session

import models
from models import utcnow


class DealType(str, Enum):
    deal_of_the_day = "deal_of_the_day"
    featured = "featured"
    flash = "flash"
    clearance = "clearance"


DEAL_PRECEDENCE = (
    DealType.deal_of_the_day,
    DealType.featured,
    DealType.flash,
    DealType.clearance,
)

DEAL_MODELS: Dict[DealType, Type[models.Deal]] = {
    DealType.deal_of_the_day: models.DealOfTheDay,
    DealType.featured: models.FeaturedDeal,
    DealType.flash: models.FlashDeal,
    DealType.clearance: models.ClearanceSale,
}


@dataclass(frozen=True)
class DealDecoration:
    deal_type: DealType
    deal_id: int
    title: str
    discount: Decimal
    discount_type: str
    end_date: Optional[datetime] = None


class DealRegistry:
    def __init__(self, deal_type: DealType):
        self.deal_type = deal_type
        self.model = DEAL_MODELS[deal_type]

    def enrich_batch(
        self, db: Session, products: Iterable, now: Optional[datetime] = None
    ) -> Dict[int, DealDecoration]:
        """
        Map product id -> decoration for every product with a live entry.

        Products without a live entry are simply absent from the result; the
        products themselves are never modified.
        """
        by_id = {}
        for product in products:
            by_id.setdefault(product.id, product)
        if not by_id:
            return {}
        now = now or utcnow()

        model = self.model
        rows = (
            db.query(models.DealEntry, model)
            .join(model, models.DealEntry.deal_id == model.id)
            .filter(
                model.kind == self.deal_type.value,
                models.DealEntry.product_id.in_(list(by_id)),
                models.DealEntry.is_active.is_(True),
                model.live_clause(now),
            )
            .order_by(model.created_at.desc(), model.id.desc())
            .all()
        )

        decorations: Dict[int, DealDecoration] = {}
        for entry, deal in rows:
            if entry.product_id in decorations:
                continue
            if not deal.applies_to(by_id[entry.product_id], now):
                continue
            decorations[entry.product_id] = DealDecoration(
                deal_type=self.deal_type,
                deal_id=deal.id,
                title=deal.title,
                discount=Decimal(str(entry.discount)),
                discount_type=entry.discount_type,
                end_date=deal.end_date,
            )
        return decorations


REGISTRIES: Dict[DealType, DealRegistry] = {t: DealRegistry(t) for t in DEAL_PRECEDENCE}


def cache_namespace(deal_type: DealType) -> str:
    return f"deals:{deal_type.value}:"


def _next_daily(moment: time, now: datetime) -> datetime:
    candidate = datetime.combine(now.date(), moment)
    return candidate if candidate > now else candidate + timedelta(days=1)


def next_transition(
    db: Session,
    product_ids: Optional[Iterable[int]] = None,
    deal_type: Optional[DealType] = None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Earliest moment after `now` at which a published deal may start or stop
    applying, restricted to deals covering `product_ids` and/or of
    `deal_type`. None when no scheduled change is ahead.
    """
    now = now or utcnow()
    query = db.query(models.Deal).filter(models.Deal.is_published.is_(True))
    if deal_type is not None:
        query = query.filter(models.Deal.kind == deal_type.value)
    if product_ids is not None:
        covering = select(models.DealEntry.deal_id).where(
            models.DealEntry.product_id.in_(list(product_ids))
        )
        query = query.filter(models.Deal.id.in_(covering))

    moments = []
    for deal in query.all():
        if deal.end_date is not None and deal.end_date <= now:
            continue
        moments.extend(m for m in (deal.start_date, deal.end_date) if m is not None and m > now)
        if deal.daily_start is not None and deal.daily_end is not None:
            moments.append(_next_daily(deal.daily_start, now))
            moments.append(_next_daily(deal.daily_end, now))
    return min(moments, default=None)


def seconds_until_next_transition(db: Session, **scope) -> Optional[float]:
    now = utcnow()
    moment = next_transition(db, now=now, **scope)
    return None if moment is None else (moment - now).total_seconds()
