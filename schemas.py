"""
Database Schemas for the storefront

Each Pydantic model mirrors a MongoDB collection document (Product -> "product",
Order -> "order", Coupon -> "coupon", Offer -> "offer"). Documents are stored
with snake_case keys; over HTTP the same models read and write camelCase
(productId, colorName, stockAllocated, ...) and accept snake_case too.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShopModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------
# Catalog
# -----------------
class Size(ShopModel):
    label: str = Field(..., description="Size label, e.g. 'S', 'M', '1-2Y'")
    stock: int = Field(0, ge=0, description="Units in stock for this size")
    max: Optional[int] = Field(None, ge=1, description="Per-order cap for this size")


class Color(ShopModel):
    name: str = Field(..., description="Color name, matched case-insensitively")
    hex: str = Field("#ffffff", description="Swatch color")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    sizes: List[Size] = Field(default_factory=list)

    @field_validator("images", mode="before")
    @classmethod
    def split_images(cls, v):
        # admin forms send a comma/newline separated string
        if isinstance(v, str):
            return [u.strip() for u in v.replace("\n", ",").split(",") if u.strip()]
        return v


class Product(ShopModel):
    """Product with optional color -> size stock variants"""
    id: Optional[str] = None
    name: str = Field(..., description="Product name")
    description: Optional[str] = None
    category: Optional[str] = Field(None, description="Category id or slug")
    price: float = Field(..., ge=0, description="Base price in INR")
    our_price: Optional[float] = Field(None, ge=0, description="Selling price shown to customers")
    discount: float = Field(0, ge=0, lt=100, description="Displayed discount percent")
    mrp: Optional[float] = Field(None, ge=0, description="Strike-through price")
    stock: int = Field(0, ge=0, description="Units in stock (sum of sizes when variants exist)")
    colors: List[Color] = Field(default_factory=list)
    max_order: int = Field(10, ge=1, description="Max units of this product per order")
    sold: int = Field(0, ge=0, description="Units sold to date")
    allow_cod: bool = True
    allow_return: bool = True
    allow_exchange: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def unit_price(self) -> float:
        return self.our_price if self.our_price is not None else self.price

    @property
    def has_variants(self) -> bool:
        return any(c.sizes for c in self.colors)


class StockChange(ShopModel):
    product_id: str
    color_name: Optional[str] = None
    size_label: Optional[str] = None
    added_stock: int = Field(..., description="Units to add (negative to correct a count down)")


class StockUpdateRequest(ShopModel):
    changes: List[StockChange]


# -----------------
# Cart / checkout
# -----------------
class CartLine(ShopModel):
    product_id: str = Field(..., description="Product id as string")
    color_name: Optional[str] = None
    size_label: Optional[str] = None
    quantity: int = 1


class Address(ShopModel):
    label: str = "Home"
    address: Optional[str] = None
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    mobile: Optional[str] = Field(None, pattern=r"^\d{10}$")
    city: Optional[str] = None
    state: Optional[str] = None


class PaymentProof(ShopModel):
    provider_order_id: str
    payment_id: str
    signature: str


class CheckoutRequest(ShopModel):
    payment: PaymentProof
    cart: List[CartLine]
    address: Address
    customer_name: Optional[str] = None
    user_email: Optional[EmailStr] = None
    contact: Optional[str] = None
    coupon_code: Optional[str] = None
    apply_best_offer: bool = False


class Principal(ShopModel):
    id: str
    email: Optional[str] = None
    role: str = "user"


# -----------------
# Orders
# -----------------
class OrderStatus(str, Enum):
    PAID = "paid"
    CONFIRMED = "confirmed"
    PACKED = "packed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class OrderItem(ShopModel):
    product_id: str = Field(..., description="Mongo ObjectId of product as string")
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    color_name: Optional[str] = None
    size_label: Optional[str] = None


class CouponSnapshot(ShopModel):
    coupon_id: str
    code: str
    type: str
    value: float
    discount_amount: float


class OfferSnapshot(ShopModel):
    offer_id: str
    name: str
    discount_amount: float


class Order(ShopModel):
    id: Optional[str] = None
    items: List[OrderItem]
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    customer_name: Optional[str] = None
    contact: Optional[str] = None
    address: Optional[Address] = None
    payment_id: Optional[str] = None
    amount: float = Field(0, ge=0, description="Subtotal before discount")
    coupon: Optional[CouponSnapshot] = None
    offer: Optional[OfferSnapshot] = None
    discount_amount: float = Field(0, ge=0)
    total_after_discount: float = Field(0, ge=0)
    status: OrderStatus = OrderStatus.PAID
    stock_allocated: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StatusUpdate(ShopModel):
    status: str


# -----------------
# Promotions
# -----------------
Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
Segment = Literal["new_users", "returning_users", "premium_users", "first_order", "all"]


class TimeSlot(ShopModel):
    start: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="HH:MM, store local time")
    end: str = Field(..., pattern=r"^\d{2}:\d{2}$")


class ScheduleSettings(ShopModel):
    days_of_week: List[Weekday] = Field(default_factory=list)
    time_slots: List[TimeSlot] = Field(default_factory=list)


class UsageRecord(ShopModel):
    user_id: Optional[str] = None
    order_id: str
    used_at: datetime = Field(default_factory=utcnow)
    order_value: float = 0
    discount_applied: float = 0


class Coupon(ShopModel):
    """
    Coupons collection schema
    Collection name: "coupon"
    """
    id: Optional[str] = None
    code: str = Field(..., description="Unique coupon code, stored upper-case")
    name: str = ""
    details: str = ""
    type: Literal["flat", "percent", "upto"]
    discount_amount: Optional[float] = Field(None, ge=0, description="Flat amount off")
    discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    min_cart_value: float = Field(0, ge=0)
    expiry_date: datetime
    is_active: bool = True
    usage_limit: int = Field(0, ge=0, description="0 = unlimited")
    usage_count: int = Field(0, ge=0)
    used_by: List[UsageRecord] = Field(default_factory=list)
    single_use_per_user: bool = True
    is_user_specific: bool = False
    target_user_id: Optional[str] = None
    target_user_segments: List[Segment] = Field(default_factory=list)
    is_scheduled: bool = False
    schedule_settings: ScheduleSettings = Field(default_factory=ScheduleSettings)
    applicable_categories: List[str] = Field(default_factory=list)
    applicable_products: List[str] = Field(default_factory=list)
    excluded_categories: List[str] = Field(default_factory=list)
    excluded_products: List[str] = Field(default_factory=list)
    priority: int = Field(1, ge=1, le=10)
    total_savings: float = 0
    created_at: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_discount_shape(self):
        if self.type == "flat" and not self.discount_amount:
            raise ValueError("Discount amount is required for flat coupons")
        if self.type in ("percent", "upto") and not self.discount_percentage:
            raise ValueError("Discount percentage is required for percent/upto coupons")
        if self.type == "upto" and not self.max_discount_amount:
            raise ValueError("Max discount amount is required for upto coupons")
        if self.is_user_specific and not self.target_user_id:
            raise ValueError("User-specific coupons need a target user")
        return self


class Offer(ShopModel):
    """
    Offers collection schema
    Collection name: "offer"
    """
    id: Optional[str] = None
    name: str
    details: str = ""
    category_ids: List[str] = Field(..., min_length=1)
    discount_percentage: float = Field(..., gt=0, le=100)
    max_discount_amount: float = Field(..., ge=0)
    min_cart_value: float = Field(0, ge=0)
    start_date: datetime = Field(default_factory=utcnow)
    end_date: datetime
    is_active: bool = True
    priority: int = Field(1, ge=1, le=10)
    target_user_segments: List[Segment] = Field(default_factory=list)
    is_scheduled: bool = False
    schedule_settings: ScheduleSettings = Field(default_factory=ScheduleSettings)
    applied_count: int = 0
    total_savings: float = 0
    applied_orders: List[str] = Field(default_factory=list)


class Evaluation(ShopModel):
    eligible: bool
    discount_amount: float = 0
    reason: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None
    offer_id: Optional[str] = None
    name: Optional[str] = None
    priority: int = 0


class OfferRanking(ShopModel):
    best: Optional[Evaluation] = None
    offers: List[Evaluation] = Field(default_factory=list)


class CouponValidateRequest(ShopModel):
    code: str
    cart: List[CartLine]


class ApplicableOffersRequest(ShopModel):
    cart: List[CartLine]
