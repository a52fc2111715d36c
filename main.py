"""
main.py
=======
FastAPI application entry point.

Endpoints:
  GET    /                                         - Health check

  GET    /cart                                     - Priced cart with totals
  GET    /cart/summary                             - Totals only
  POST   /cart/items                               - Add a product (or variation)
  PATCH  /cart/items/{item_id}                     - Set a line's quantity
  DELETE /cart/items/{item_id}                     - Remove a line
  DELETE /cart                                     - Empty the cart
  POST   /cart/coupon                              - Apply a coupon code
  DELETE /cart/coupon                              - Remove the applied coupon
  POST   /cart/merge                               - Fold the guest cart into the customer's

  GET    /wishlist                                 - Priced wishlist
  GET    /wishlist/{product_id}                    - Is the product wishlisted?
  POST   /wishlist/{product_id}                    - Add to wishlist
  DELETE /wishlist/{product_id}                    - Remove from wishlist
  DELETE /wishlist                                 - Clear wishlist

  GET    /products/{id}/price                      - Resolved price of one product
  GET    /prices?ids=..                            - Resolved prices of several products
  POST   /admin/products                           - Create a product
  PATCH  /admin/products/{id}                      - Edit a product

  GET    /deals/{deal_type}                        - Live deals of one type
  GET    /deals/{deal_type}/{id}                   - One live deal
  POST   /admin/deals/{deal_type}                  - Create a deal
  GET    /admin/deals/{deal_type}/{id}             - Get a deal
  PATCH  /admin/deals/{deal_type}/{id}             - Edit a deal
  DELETE /admin/deals/{deal_type}/{id}             - Delete a deal
  POST   /admin/deals/{deal_type}/{id}/products    - Add or update deal products
  DELETE /admin/deals/{deal_type}/{id}/products/{product_id}
  PATCH  /admin/deals/{deal_type}/{id}/publish
  PATCH  /admin/deals/{deal_type}/{id}/products/{product_id}/status

  POST   /coupons                                  - Create a coupon
  GET    /coupons                                  - List all coupons
  GET    /coupons/{id}                             - Get coupon by ID
  PUT    /coupons/{id}                             - Update coupon
  DELETE /coupons/{id}                             - Delete coupon

Mutating cart and wishlist routes claim the idempotency lock first thing in the
route body, once the request has been validated.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import redis
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

import models
import schemas
from auth import Identity, get_customer_identity, get_identity, parse_guest_id, require_staff
from cache import LocalCache, RedisCache, TwoTierCache
from cart_service import CartService
from catalog_service import CatalogService
from config import Settings, configure_logging, get_settings
from database import Base, get_db, make_engine, make_session_factory
from deal_service import DealService
from deals import DealType
from errors import AppError, Conflict, InvalidState, NotFound
from idempotency import IdempotencyLock, LockClaim, lock_request
from pricing import PriceResolver
from repositories import CouponRepository
from wishlist_service import WishlistService

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    code: {"model": schemas.ErrorResponse} for code in (400, 401, 403, 404, 409, 429, 503)
}


# ═══════════════════════════════════════════════════
#  SERVICE DEPENDENCIES
# ═══════════════════════════════════════════════════

def cart_service(request: Request, db: Session = Depends(get_db)) -> CartService:
    state = request.app.state
    return CartService(db, state.resolver, state.settings.guest_cart_days)


def wishlist_service(request: Request, db: Session = Depends(get_db)) -> WishlistService:
    return WishlistService(db, request.app.state.resolver)


def catalog_service(request: Request, db: Session = Depends(get_db)) -> CatalogService:
    return CatalogService(db, request.app.state.cache, request.app.state.resolver)


def deal_service(deal_type: DealType, request: Request, db: Session = Depends(get_db)) -> DealService:
    return DealService(db, request.app.state.cache, deal_type)


# ═══════════════════════════════════════════════════
#  CART
# ═══════════════════════════════════════════════════

cart_router = APIRouter(prefix="/cart", tags=["Cart"])


@cart_router.get("", response_model=schemas.CartResponse, summary="Get the priced cart")
def get_cart(identity: Identity = Depends(get_identity), service: CartService = Depends(cart_service)):
    return service.get_cart(identity)


@cart_router.get("/summary", response_model=schemas.CartSummary, summary="Get cart totals")
def get_cart_summary(identity: Identity = Depends(get_identity), service: CartService = Depends(cart_service)):
    return service.get_cart_summary(identity)


@cart_router.post(
    "/items",
    response_model=schemas.CartResponse,
    summary="Add a product to the cart",
)
def add_to_cart(
    payload: schemas.AddToCartRequest,
    identity: Identity = Depends(get_identity),
    claim: LockClaim = Depends(lock_request("add_to_cart")),
    service: CartService = Depends(cart_service),
):
    """
    Adds `quantity` of a product, or of one of its variations, to the cart.
    Adding a line that already exists increases its quantity; the resulting
    quantity must fit the stock and the per-line limit.
    """
    claim()
    return service.add_to_cart(identity, payload.product_id, payload.quantity, payload.variation)


@cart_router.patch(
    "/items/{item_id}",
    response_model=schemas.CartResponse,
    summary="Set the quantity of a cart line",
)
def update_cart_item(
    item_id: int,
    payload: schemas.UpdateQuantityRequest,
    identity: Identity = Depends(get_identity),
    claim: LockClaim = Depends(lock_request("update_cart_item")),
    service: CartService = Depends(cart_service),
):
    claim()
    return service.update_item_quantity(identity, item_id, payload.quantity)


@cart_router.delete(
    "/items/{item_id}",
    response_model=schemas.CartResponse,
    summary="Remove a cart line",
)
def remove_cart_item(
    item_id: int,
    identity: Identity = Depends(get_identity),
    claim: LockClaim = Depends(lock_request("remove_cart_item")),
    service: CartService = Depends(cart_service),
):
    claim()
    return service.remove_item(identity, item_id)


@cart_router.delete(
    "",
    response_model=schemas.CartResponse,
    summary="Empty the cart",
)
def clear_cart(
    identity: Identity = Depends(get_identity),
    claim: LockClaim = Depends(lock_request("clear_cart")),
    service: CartService = Depends(cart_service),
):
    claim()
    return service.clear_cart(identity)


@cart_router.post(
    "/coupon",
    response_model=schemas.CartResponse,
    summary="Apply a coupon code to the cart",
)
def apply_coupon(
    payload: schemas.ApplyCouponRequest,
    identity: Identity = Depends(get_identity),
    claim: LockClaim = Depends(lock_request("apply_coupon")),
    service: CartService = Depends(cart_service),
):
    """
    A vendor coupon only discounts that vendor's lines; an admin-wide coupon
    discounts the whole cart. Minimum purchase is checked against the
    eligible lines only.
    """
    claim()
    return service.apply_coupon(identity, payload.code)


@cart_router.delete(
    "/coupon",
    response_model=schemas.CartResponse,
    summary="Remove the applied coupon",
)
def remove_coupon(
    identity: Identity = Depends(get_identity),
    claim: LockClaim = Depends(lock_request("remove_coupon")),
    service: CartService = Depends(cart_service),
):
    claim()
    return service.remove_coupon(identity)


@cart_router.post(
    "/merge",
    response_model=schemas.CartResponse,
    summary="Merge the guest cart into the customer's cart",
)
def merge_cart(
    identity: Identity = Depends(get_customer_identity),
    x_guest_id: Optional[str] = Header(None),
    claim: LockClaim = Depends(lock_request("merge_cart")),
    service: CartService = Depends(cart_service),
):
    claim()
    guest_id = parse_guest_id(x_guest_id) if x_guest_id else None
    return service.merge_guest_cart(guest_id, identity.customer_id)


# ═══════════════════════════════════════════════════
#  WISHLIST
# ═══════════════════════════════════════════════════

wishlist_router = APIRouter(prefix="/wishlist", tags=["Wishlist"])


@wishlist_router.get("", response_model=schemas.WishlistResponse, summary="Get the priced wishlist")
def get_wishlist(
    identity: Identity = Depends(get_customer_identity), service: WishlistService = Depends(wishlist_service)
):
    return service.get_wishlist(identity.customer_id)


@wishlist_router.get("/{product_id}", summary="Check whether a product is wishlisted")
def check_wishlist(
    product_id: int,
    identity: Identity = Depends(get_customer_identity),
    service: WishlistService = Depends(wishlist_service),
):
    return {"is_in_wishlist": service.is_in_wishlist(identity.customer_id, product_id)}


@wishlist_router.post(
    "/{product_id}",
    response_model=schemas.WishlistResponse,
    summary="Add a product to the wishlist",
)
def add_to_wishlist(
    product_id: int,
    identity: Identity = Depends(get_customer_identity),
    claim: LockClaim = Depends(lock_request("add_to_wishlist")),
    service: WishlistService = Depends(wishlist_service),
):
    claim()
    return service.add_to_wishlist(identity.customer_id, product_id)


@wishlist_router.delete(
    "/{product_id}",
    response_model=schemas.WishlistResponse,
    summary="Remove a product from the wishlist",
)
def remove_from_wishlist(
    product_id: int,
    identity: Identity = Depends(get_customer_identity),
    claim: LockClaim = Depends(lock_request("remove_from_wishlist")),
    service: WishlistService = Depends(wishlist_service),
):
    claim()
    return service.remove_from_wishlist(identity.customer_id, product_id)


@wishlist_router.delete(
    "",
    response_model=schemas.WishlistResponse,
    summary="Clear the wishlist",
)
def clear_wishlist(
    identity: Identity = Depends(get_customer_identity),
    claim: LockClaim = Depends(lock_request("clear_wishlist")),
    service: WishlistService = Depends(wishlist_service),
):
    claim()
    return service.clear_wishlist(identity.customer_id)


# ═══════════════════════════════════════════════════
#  PRODUCTS & PRICES
# ═══════════════════════════════════════════════════

catalog_router = APIRouter(tags=["Prices"])


@catalog_router.get(
    "/products/{product_id}/price", response_model=schemas.PriceResponse, summary="Resolved price of a product"
)
def get_product_price(product_id: int, service: CatalogService = Depends(catalog_service)):
    return service.get_product_price(product_id)


@catalog_router.get("/prices", response_model=List[schemas.PriceResponse], summary="Resolved prices of products")
def get_product_prices(ids: List[int] = Query(...), service: CatalogService = Depends(catalog_service)):
    return service.get_product_prices(ids)


@catalog_router.post(
    "/admin/products",
    response_model=schemas.ProductResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_staff)],
    tags=["Admin"],
    summary="Create a product",
)
def create_product(payload: schemas.ProductCreate, service: CatalogService = Depends(catalog_service)):
    return service.create_product(payload)


@catalog_router.patch(
    "/admin/products/{product_id}",
    response_model=schemas.ProductResponse,
    dependencies=[Depends(require_staff)],
    tags=["Admin"],
    summary="Edit a product",
)
def update_product(
    product_id: int, payload: schemas.ProductUpdate, service: CatalogService = Depends(catalog_service)
):
    return service.update_product(product_id, payload)


# ═══════════════════════════════════════════════════
#  DEALS
# ═══════════════════════════════════════════════════

deals_router = APIRouter(tags=["Deals"])
admin_deals_router = APIRouter(
    prefix="/admin/deals/{deal_type}", tags=["Admin"], dependencies=[Depends(require_staff)]
)


@deals_router.get("/deals/{deal_type}", response_model=List[schemas.DealResponse], summary="Live deals")
def list_active_deals(service: DealService = Depends(deal_service)):
    return service.list_active_deals()


@deals_router.get("/deals/{deal_type}/{deal_id}", response_model=schemas.DealResponse, summary="One live deal")
def get_live_deal(deal_id: int, service: DealService = Depends(deal_service)):
    return service.get_live_deal(deal_id)


@admin_deals_router.post(
    "", response_model=schemas.DealResponse, status_code=status.HTTP_201_CREATED, summary="Create a deal"
)
def create_deal(payload: schemas.DealCreate, service: DealService = Depends(deal_service)):
    return service.create_deal(payload)


@admin_deals_router.get("/{deal_id}", response_model=schemas.DealResponse, summary="Get a deal")
def get_deal(deal_id: int, service: DealService = Depends(deal_service)):
    return service.get_deal(deal_id)


@admin_deals_router.patch("/{deal_id}", response_model=schemas.DealResponse, summary="Edit a deal")
def update_deal(deal_id: int, payload: schemas.DealUpdate, service: DealService = Depends(deal_service)):
    return service.update_deal(deal_id, payload)


@admin_deals_router.delete("/{deal_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a deal")
def delete_deal(deal_id: int, service: DealService = Depends(deal_service)):
    service.delete_deal(deal_id)
    return None


@admin_deals_router.post(
    "/{deal_id}/products", response_model=schemas.DealResponse, summary="Add or update products in a deal"
)
def add_deal_products(
    deal_id: int, payload: schemas.DealProductsAdd, service: DealService = Depends(deal_service)
):
    return service.add_products(deal_id, payload.products)


@admin_deals_router.delete(
    "/{deal_id}/products/{product_id}", response_model=schemas.DealResponse, summary="Remove a product from a deal"
)
def remove_deal_product(deal_id: int, product_id: int, service: DealService = Depends(deal_service)):
    return service.remove_product(deal_id, product_id)


@admin_deals_router.patch("/{deal_id}/publish", response_model=schemas.DealResponse, summary="Publish or unpublish")
def toggle_publish(deal_id: int, payload: schemas.PublishToggle, service: DealService = Depends(deal_service)):
    return service.toggle_publish(deal_id, payload.is_published)


@admin_deals_router.patch(
    "/{deal_id}/products/{product_id}/status",
    response_model=schemas.DealResponse,
    summary="Enable or disable one product in a deal",
)
def toggle_deal_product_status(
    deal_id: int, product_id: int, payload: schemas.StatusToggle, service: DealService = Depends(deal_service)
):
    return service.toggle_product_status(deal_id, product_id, payload.is_active)


# ═══════════════════════════════════════════════════
#  COUPON CRUD
# ═══════════════════════════════════════════════════

coupons_router = APIRouter(prefix="/coupons", tags=["Coupons"], dependencies=[Depends(require_staff)])


def _get_coupon_or_404(db: Session, coupon_id: int) -> models.Coupon:
    coupon = CouponRepository(db).get(coupon_id)
    if not coupon:
        raise NotFound(f"Coupon with id={coupon_id} not found", "COUPON_NOT_FOUND")
    return coupon


@coupons_router.post(
    "",
    response_model=schemas.CouponResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new coupon",
)
def create_coupon(coupon: schemas.CouponCreate, db: Session = Depends(get_db)):
    """
    Create a coupon. Leave `vendor_id` empty for an admin-wide coupon;
    set it to restrict the discount to that vendor's products.
    """
    if CouponRepository(db).code_exists(coupon.code):
        raise Conflict(f"Coupon code {coupon.code} already exists", "DUPLICATE_CODE")
    db_coupon = models.Coupon(
        title=coupon.title,
        code=coupon.code,
        vendor_id=coupon.vendor_id,
        discount_type=coupon.discount_type.value,
        discount_amount=coupon.discount_amount,
        min_purchase=coupon.min_purchase,
        start_date=coupon.start_date,
        expire_date=coupon.expire_date,
        is_active=coupon.is_active,
    )
    db.add(db_coupon)
    db.commit()
    db.refresh(db_coupon)
    logger.info(f"Coupon {db_coupon.code} created")
    return db_coupon


@coupons_router.get("", response_model=List[schemas.CouponResponse], summary="Get all coupons")
def get_all_coupons(vendor_id: Optional[int] = None, db: Session = Depends(get_db)):
    """Retrieve all coupons (both active and inactive), optionally for one vendor."""
    query = db.query(models.Coupon)
    if vendor_id is not None:
        query = query.filter(models.Coupon.vendor_id == vendor_id)
    return query.order_by(models.Coupon.id).all()


@coupons_router.get("/{coupon_id}", response_model=schemas.CouponResponse, summary="Get a coupon by ID")
def get_coupon(coupon_id: int, db: Session = Depends(get_db)):
    return _get_coupon_or_404(db, coupon_id)


@coupons_router.put("/{coupon_id}", response_model=schemas.CouponResponse, summary="Update a coupon")
def update_coupon(coupon_id: int, update_data: schemas.CouponUpdate, db: Session = Depends(get_db)):
    """
    Update a specific coupon. All fields are optional; only provided fields are updated.
    Carts that already carry the coupon keep the terms they were applied with,
    and stop receiving a discount once the coupon is deactivated or expires.
    """
    coupon = _get_coupon_or_404(db, coupon_id)

    if update_data.code is not None:
        code = update_data.code.strip().upper()
        if CouponRepository(db).code_exists(code, exclude_id=coupon_id):
            raise Conflict(f"Coupon code {code} already exists", "DUPLICATE_CODE")
        coupon.code = code
    if update_data.title is not None:
        coupon.title = update_data.title
    if update_data.discount_type is not None:
        coupon.discount_type = update_data.discount_type.value
    if update_data.discount_amount is not None:
        coupon.discount_amount = update_data.discount_amount
    if update_data.min_purchase is not None:
        coupon.min_purchase = update_data.min_purchase
    if update_data.start_date is not None:
        coupon.start_date = update_data.start_date
    if update_data.expire_date is not None:
        coupon.expire_date = update_data.expire_date
    if update_data.is_active is not None:
        coupon.is_active = update_data.is_active

    if coupon.expire_date <= coupon.start_date:
        db.rollback()
        raise InvalidState("Expire date must be after start date", "INVALID_DATE_RANGE")
    if coupon.discount_type == "percent" and coupon.discount_amount > 100:
        db.rollback()
        raise InvalidState("Discount percentage cannot exceed 100", "INVALID_DISCOUNT")

    db.commit()
    db.refresh(coupon)
    return coupon


@coupons_router.delete("/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a coupon")
def delete_coupon(coupon_id: int, db: Session = Depends(get_db)):
    coupon = _get_coupon_or_404(db, coupon_id)
    db.delete(coupon)
    db.commit()
    logger.info(f"Coupon {coupon_id} deleted")
    return None


# ═══════════════════════════════════════════════════
#  APP FACTORY
# ═══════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        app.state.cache.start_listener()
    except RedisError as exc:
        logger.error(f"Cache invalidation listener not started: {exc}")
    yield
    app.state.cache.stop_listener()
    app.state.resolver.close()


def create_app(
    engine: Optional[Engine] = None,
    redis_client=None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    if engine is None:
        engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    session_factory = make_session_factory(engine)
    if redis_client is None:
        redis_client = redis.Redis.from_url(settings.redis_url)
    l2 = RedisCache(redis_client)

    app = FastAPI(
        title="Marketplace Pricing API",
        description="Deal-aware price resolution, carts, vendor-scoped coupons and wishlists for a multi-vendor marketplace.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.cache = TwoTierCache(LocalCache(), l2, settings.cache_l1_ttl, settings.cache_l2_ttl)
    app.state.resolver = PriceResolver(session_factory)
    app.state.lock = IdempotencyLock(l2, settings.idempotency_ttl)

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": jsonable_encoder(exc.errors()), "code": "VALIDATION_FAILED"},
        )

    @app.get("/", tags=["Health"], summary="Health check")
    def root():
        return {
            "status": "ok",
            "message": "Marketplace Pricing API is running",
            "l1_cache": app.state.cache.l1.stats(),
        }

    for router in (cart_router, wishlist_router, catalog_router, deals_router, admin_deals_router, coupons_router):
        app.include_router(router, responses=ERROR_RESPONSES)
    return app


app = create_app()
