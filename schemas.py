"""
Database Schemas for Horizon Stores

Each Pydantic model maps to a logical record type. The document store keeps
them in collections named after the lowercase of the class name
(e.g., Product -> "product") with cart items and order items embedded in
their parent; the relational store uses one table per record type.

Snapshot models are frozen copies embedded by value: a Cart or Order never
follows later edits to the live Product or User.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, computed_field

CENT = Decimal("0.01")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current UTC time truncated to milliseconds (what BSON can hold)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def money(value) -> Decimal:
    """Round a monetary amount to cents, half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    mobile: str = Field("", description="Mobile number")
    address: str = Field("", description="Postal address")
    password: str = Field(..., min_length=1, description="Opaque credential, stored as given")


class User(UserCreate):
    id: str
    is_admin: bool = False
    created_at: datetime

    def snapshot(self) -> "UserSnapshot":
        return UserSnapshot.model_validate(self.model_dump(exclude={"password"}))


class UserSnapshot(BaseModel):
    """User as copied into an order; the credential is never copied."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    mobile: str = ""
    address: str = ""
    is_admin: bool = False
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    image_url: str = Field("", description="Image URL")
    mrp: float = Field(..., ge=0, description="List price, shown struck through")
    sale_price: float = Field(..., ge=0, description="Price actually charged")
    details: str = Field("", description="Free-text details")
    category: Optional[str] = Field("", description="Category, may be blank")
    in_stock: bool = Field(True, description="In stock")

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must not be blank")
        return v

    @computed_field
    @property
    def discount_percent(self) -> int:
        if not self.mrp or self.sale_price >= self.mrp:
            return 0
        return int(round((self.mrp - self.sale_price) / self.mrp * 100))


class Product(ProductCreate):
    id: str
    created_at: datetime

    def snapshot(self) -> "ProductSnapshot":
        return ProductSnapshot.model_validate(
            self.model_dump(exclude={"created_at", "discount_percent"})
        )


class ProductSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    image_url: str = ""
    mrp: float = 0.0
    sale_price: float
    details: str = ""
    category: Optional[str] = ""
    in_stock: bool = True


# ---------------------------------------------------------------------------
# Carts
# ---------------------------------------------------------------------------

class CartItem(BaseModel):
    id: str
    product_id: str
    quantity: int = Field(1, ge=1)
    product: ProductSnapshot


class Cart(BaseModel):
    id: str
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    created_at: datetime

    @computed_field
    @property
    def subtotal(self) -> float:
        total = sum((Decimal(str(i.product.sale_price)) * i.quantity for i in self.items), Decimal("0"))
        return float(money(total))


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class OrderStatus(str, Enum):
    pending = "pending"
    completed = "completed"


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., description="Unit price frozen at order time")
    product: ProductSnapshot


class Order(BaseModel):
    id: str
    user_id: str
    user: UserSnapshot
    items: List[OrderItem]
    total: float
    status: OrderStatus = OrderStatus.pending
    payment_received: bool = False
    created_at: datetime
    idempotency_key: Optional[str] = None


class ReportSummary(BaseModel):
    start: datetime
    end: datetime
    total_orders: int
    total_revenue: float
    orders: List[Order]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class Session(BaseModel):
    """Who is calling; handed explicitly to every cart/order handler."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    is_admin: bool = False
