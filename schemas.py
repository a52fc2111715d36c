from datetime import datetime, time, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from deals import DealType


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ─────────────── Enums ───────────────

class DiscountType(str, Enum):
    percent = "percent"
    flat = "flat"


class ProductStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    suspended = "suspended"


class ErrorResponse(BaseModel):
    detail: str
    code: str


# ─────────────── Products ───────────────

class Variation(BaseModel):
    sku: str = Field(..., min_length=1)
    price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    vendor_id: Optional[int] = None
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    discount_type: DiscountType = DiscountType.percent
    is_active: bool = True
    status: ProductStatus = ProductStatus.pending
    stock: int = Field(0, ge=0)
    variations: List[Variation] = []

    @model_validator(mode="after")
    def percent_at_most_100(self) -> "ProductCreate":
        if self.discount_type == DiscountType.percent and self.discount > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        return self


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0)
    discount_type: Optional[DiscountType] = None
    is_active: Optional[bool] = None
    status: Optional[ProductStatus] = None
    stock: Optional[int] = Field(None, ge=0)
    variations: Optional[List[Variation]] = None


class ProductResponse(BaseModel):
    id: int
    name: str
    vendor_id: Optional[int] = None
    price: float
    discount: float
    discount_type: DiscountType
    is_active: bool
    status: ProductStatus
    stock: int
    variations: List[Variation] = []

    model_config = {"from_attributes": True}


# ─────────────── Prices ───────────────

class DealInfo(BaseModel):
    type: DealType
    deal_id: int
    title: str
    discount: float
    discount_type: DiscountType
    end_date: Optional[datetime] = None


class PriceResponse(BaseModel):
    product_id: int
    price: float
    base_price: float
    final_price: float
    active_deal: Optional[DealInfo] = None


# ─────────────── Deals ───────────────

class Image(BaseModel):
    url: str
    public_id: str


class DealEntryIn(BaseModel):
    product_id: int
    discount: float = Field(0, ge=0)
    discount_type: DiscountType = DiscountType.percent
    is_active: bool = True

    @model_validator(mode="after")
    def percent_at_most_100(self) -> "DealEntryIn":
        if self.discount_type == DiscountType.percent and self.discount > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        return self


class DealCreate(BaseModel):
    title: str = Field(..., min_length=1)
    vendor_id: Optional[int] = None
    is_published: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    daily_start: Optional[time] = None
    daily_end: Optional[time] = None
    image: Optional[Image] = None
    products: List[DealEntryIn] = []

    @field_validator("start_date", "end_date")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(v)

    @model_validator(mode="after")
    def window_is_ordered(self) -> "DealCreate":
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if (self.daily_start is None) != (self.daily_end is None):
            raise ValueError("daily_start and daily_end must be given together")
        return self


class DealUpdate(BaseModel):
    title: Optional[str] = None
    vendor_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    daily_start: Optional[time] = None
    daily_end: Optional[time] = None
    image: Optional[Image] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(v)


class DealEntryOut(BaseModel):
    product_id: int
    discount: float
    discount_type: DiscountType
    is_active: bool

    model_config = {"from_attributes": True}


class DealResponse(BaseModel):
    id: int
    type: DealType
    title: str
    vendor_id: Optional[int] = None
    is_published: bool
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    daily_start: Optional[time] = None
    daily_end: Optional[time] = None
    image: Optional[Image] = None
    products: List[DealEntryOut] = []
    created_at: Optional[datetime] = None


class PublishToggle(BaseModel):
    is_published: bool


class StatusToggle(BaseModel):
    is_active: bool


class DealProductsAdd(BaseModel):
    products: List[DealEntryIn]

    @field_validator("products")
    @classmethod
    def not_empty(cls, v: list) -> list:
        if not v:
            raise ValueError("Product list cannot be empty")
        return v


# ─────────────── Coupons ───────────────

class CouponCreate(BaseModel):
    title: str = Field(..., min_length=1)
    code: str = Field(..., min_length=3)
    vendor_id: Optional[int] = None  # None => admin-wide
    discount_type: DiscountType = DiscountType.percent
    discount_amount: float = Field(..., gt=0)
    min_purchase: float = Field(0, ge=0)
    start_date: datetime
    expire_date: datetime
    is_active: bool = True

    @field_validator("start_date", "expire_date")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(v)

    @field_validator("code")
    @classmethod
    def normalise_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def validate_amount_and_window(self) -> "CouponCreate":
        if self.discount_type == DiscountType.percent and self.discount_amount > 100:
            raise ValueError("Discount percentage cannot exceed 100")
        if self.expire_date <= self.start_date:
            raise ValueError("Expire date must be after start date")
        return self


class CouponUpdate(BaseModel):
    title: Optional[str] = None
    code: Optional[str] = Field(None, min_length=3)
    discount_type: Optional[DiscountType] = None
    discount_amount: Optional[float] = Field(None, gt=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    expire_date: Optional[datetime] = None
    is_active: Optional[bool] = None

    @field_validator("start_date", "expire_date")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(v)


class CouponResponse(BaseModel):
    id: int
    title: str
    code: str
    vendor_id: Optional[int] = None
    discount_type: DiscountType
    discount_amount: float
    min_purchase: float
    start_date: datetime
    expire_date: datetime
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ─────────────── Cart schemas ───────────────

class AddToCartRequest(BaseModel):
    product_id: int
    quantity: int = Field(1, ge=1)
    variation: Optional[str] = None


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class ApplyCouponRequest(BaseModel):
    code: str = Field(..., min_length=1)


class CartLine(BaseModel):
    id: int
    product_id: int
    name: str
    vendor_id: Optional[int] = None
    variation: Optional[str] = None
    quantity: int
    price: float
    base_price: float
    final_price: float
    active_deal: Optional[DealInfo] = None
    subtotal: float
    added_at: Optional[datetime] = None


class AppliedCoupon(BaseModel):
    code: str
    vendor_id: Optional[int] = None
    eligible_subtotal: float
    discount: float
    is_applicable: bool


class CartSummary(BaseModel):
    total_items: int = 0
    subtotal: float = 0.0
    coupon_discount: float = 0.0
    total: float = 0.0


class CartResponse(CartSummary):
    items: List[CartLine] = []
    coupon: Optional[AppliedCoupon] = None
    message: Optional[str] = None


# ─────────────── Wishlist ───────────────

class WishlistLine(BaseModel):
    product_id: int
    name: str
    price: float
    base_price: float
    final_price: float
    active_deal: Optional[DealInfo] = None
    added_at: Optional[datetime] = None


class WishlistResponse(BaseModel):
    items: List[WishlistLine] = []
    total_items: int = 0
    message: Optional[str] = None
