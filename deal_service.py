"""
deal_service.py
===============
Staff-side management of promotional deals, one service per deal type.

Every mutation commits first and then clears the deal type's cache namespace
and every cached price before returning, so the next read sees the change.
Public listings of live deals are served through the two-tier cache and
expire no later than the next time a deal of the type opens or closes.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session, selectinload

import models
import schemas
from cache import TwoTierCache
from deals import DEAL_MODELS, DealType, cache_namespace, seconds_until_next_transition
from errors import InvalidState, NotFound
from models import utcnow
from repositories import ProductRepository

logger = logging.getLogger(__name__)

PRICING_NAMESPACE = "pricing:"


def serialize_deal(deal: models.Deal) -> dict:
    return schemas.DealResponse(
        id=deal.id,
        type=DealType(deal.kind),
        title=deal.title,
        vendor_id=deal.vendor_id,
        is_published=deal.is_published,
        start_date=deal.start_date,
        end_date=deal.end_date,
        daily_start=deal.daily_start,
        daily_end=deal.daily_end,
        image=deal.image,
        products=[schemas.DealEntryOut.model_validate(e) for e in deal.entries],
        created_at=deal.created_at,
    ).model_dump(mode="json")


class DealService:
    def __init__(self, db: Session, cache: TwoTierCache, deal_type: DealType):
        self.db = db
        self.cache = cache
        self.deal_type = deal_type
        self.model = DEAL_MODELS[deal_type]

    def invalidate_cache(self) -> bool:
        deals_ok = self.cache.invalidate(cache_namespace(self.deal_type))
        prices_ok = self.cache.invalidate(PRICING_NAMESPACE)
        return deals_ok and prices_ok

    def _commit(self, deal: Optional[models.Deal] = None) -> Optional[dict]:
        self.db.commit()
        self.invalidate_cache()
        if deal is None:
            return None
        self.db.refresh(deal)
        return serialize_deal(deal)

    def _get(self, deal_id: int) -> models.Deal:
        deal = self.db.query(self.model).filter(self.model.id == deal_id).first()
        if deal is None:
            raise NotFound("Deal not found", "DEAL_NOT_FOUND")
        return deal

    def _get_entry(self, deal: models.Deal, product_id: int) -> models.DealEntry:
        entry = next((e for e in deal.entries if e.product_id == product_id), None)
        if entry is None:
            raise NotFound("Product is not part of this deal", "DEAL_PRODUCT_NOT_FOUND")
        return entry

    def _check_window(self, deal: models.Deal) -> None:
        if self.deal_type == DealType.deal_of_the_day:
            return
        if deal.start_date is None or deal.end_date is None:
            raise InvalidState("start_date and end_date are required for this deal type", "DEAL_WINDOW_REQUIRED")
        if deal.end_date <= deal.start_date:
            raise InvalidState("end_date must be after start_date", "INVALID_DATE_RANGE")

    def _check_products_exist(self, product_ids: List[int]) -> None:
        found = {p.id for p in ProductRepository(self.db).find_by_ids(product_ids)}
        if found != set(product_ids):
            raise NotFound("One or more products not found", "PRODUCTS_NOT_FOUND")

    # ─────────────── Reads ───────────────

    def get_deal(self, deal_id: int) -> dict:
        return serialize_deal(self._get(deal_id))

    def get_live_deal(self, deal_id: int) -> dict:
        """Public view of one deal; only live deals and their active entries are shown."""
        deal = self._get(deal_id)
        if not deal.is_published:
            raise NotFound("Deal not found", "DEAL_NOT_FOUND")
        now = utcnow()
        live = self.db.query(self.model.id).filter(self.model.id == deal_id, self.model.live_clause(now)).first()
        if live is None:
            raise InvalidState("Deal is not currently active", "DEAL_NOT_ACTIVE")
        data = serialize_deal(deal)
        data["products"] = [p for p in data["products"] if p["is_active"]]
        return data

    def list_active_deals(self) -> List[dict]:
        def load() -> List[dict]:
            now = utcnow()
            deals = (
                self.db.query(self.model)
                .options(selectinload(self.model.entries))
                .filter(self.model.live_clause(now))
                .order_by(self.model.created_at.desc(), self.model.id.desc())
                .all()
            )
            listing = []
            for deal in deals:
                data = serialize_deal(deal)
                data["products"] = [p for p in data["products"] if p["is_active"]]
                listing.append(data)
            return listing

        return self.cache.get_or_compute(
            f"{cache_namespace(self.deal_type)}active",
            load,
            expires_in=lambda _: seconds_until_next_transition(self.db, deal_type=self.deal_type),
        )

    # ─────────────── Mutations ───────────────

    def create_deal(self, payload: schemas.DealCreate) -> dict:
        entries = payload.products
        if entries:
            self._check_products_exist([e.product_id for e in entries])
        deal = self.model(
            title=payload.title,
            vendor_id=payload.vendor_id,
            is_published=payload.is_published,
            start_date=payload.start_date,
            end_date=payload.end_date,
            daily_start=payload.daily_start,
            daily_end=payload.daily_end,
            image=payload.image.model_dump() if payload.image else None,
            created_at=utcnow(),
        )
        self._check_window(deal)
        for e in entries:
            deal.entries.append(models.DealEntry(
                product_id=e.product_id,
                discount=e.discount,
                discount_type=e.discount_type.value,
                is_active=e.is_active,
            ))
        self.db.add(deal)
        result = self._commit(deal)
        logger.info(f"{self.deal_type.value} deal {deal.id} created")
        return result

    def update_deal(self, deal_id: int, payload: schemas.DealUpdate) -> dict:
        deal = self._get(deal_id)
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("title") is None:
            changes.pop("title", None)
        if "image" in changes:
            changes["image"] = payload.image.model_dump() if payload.image else None
        for name, value in changes.items():
            setattr(deal, name, value)
        try:
            self._check_window(deal)
        except InvalidState:
            self.db.rollback()
            raise
        return self._commit(deal)

    def delete_deal(self, deal_id: int) -> None:
        deal = self._get(deal_id)
        self.db.delete(deal)
        self._commit()
        logger.info(f"{self.deal_type.value} deal {deal_id} deleted")

    def add_products(self, deal_id: int, entries: List[schemas.DealEntryIn]) -> dict:
        deal = self._get(deal_id)
        self._check_products_exist([e.product_id for e in entries])
        current = {e.product_id: e for e in deal.entries}
        for e in entries:
            entry = current.get(e.product_id)
            if entry is None:
                entry = models.DealEntry(product_id=e.product_id)
                deal.entries.append(entry)
                current[e.product_id] = entry
            entry.discount = e.discount
            entry.discount_type = e.discount_type.value
            entry.is_active = e.is_active
        return self._commit(deal)

    def remove_product(self, deal_id: int, product_id: int) -> dict:
        deal = self._get(deal_id)
        deal.entries.remove(self._get_entry(deal, product_id))
        return self._commit(deal)

    def toggle_publish(self, deal_id: int, is_published: bool) -> dict:
        deal = self._get(deal_id)
        deal.is_published = is_published
        result = self._commit(deal)
        logger.info(f"{self.deal_type.value} deal {deal_id} published={is_published}")
        return result

    def toggle_product_status(self, deal_id: int, product_id: int, is_active: bool) -> dict:
        deal = self._get(deal_id)
        self._get_entry(deal, product_id).is_active = is_active
        return self._commit(deal)
