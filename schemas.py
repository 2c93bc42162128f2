"""
Database Schemas for the storefront

Each Pydantic model represents a MongoDB collection or a request body.
Collection name is the lowercase of the stored model name
(Product -> "product", Category -> "category", Order -> "order", ...).

Documents are stored with camelCase keys; models expose snake_case
attributes with camelCase aliases.
"""
from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["credit_card", "upi", "cod"]
Role = Literal["user", "admin"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Catalog ----------

class ProductImage(CamelModel):
    url: str = ""
    alt_text: str = ""
    public_id: Optional[str] = None
    is_primary: bool = False


class Dimensions(CamelModel):
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None


def _coerce_images(value):
    # legacy documents stored bare URL strings
    if value is None:
        return value
    return [{"url": v} if isinstance(v, str) else v for v in value]


class ProductCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    short_description: Optional[str] = None
    price: float = Field(..., ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    barcode: Optional[str] = None
    stock: int = Field(0, ge=0)
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    category_id: Optional[str] = None
    tags: List[str] = []
    is_active: bool = True
    is_featured: bool = False
    is_best_seller: bool = False
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    images: List[ProductImage] = []

    @field_validator("images", mode="before")
    @classmethod
    def coerce_images(cls, v):
        return _coerce_images(v)


class ProductUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    short_description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    barcode: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    category_id: Optional[str] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_best_seller: Optional[bool] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    images: Optional[List[ProductImage]] = None

    @field_validator("images", mode="before")
    @classmethod
    def coerce_images(cls, v):
        return _coerce_images(v)


class CategoryImage(CamelModel):
    url: str
    public_id: Optional[str] = None
    alt_text: str = ""


class CategoryCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    parent_id: Optional[str] = None
    is_active: bool = True
    image: Optional[Union[CategoryImage, str]] = None


class CategoryUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    # "" clears the parent
    parent_id: Optional[str] = None
    is_active: Optional[bool] = None
    image: Optional[Union[CategoryImage, str]] = None


class SlideCreate(CamelModel):
    title: str
    subtitle: str = ""
    image: str
    link: Optional[str] = None
    button_text: Optional[str] = None
    order: int = 0
    is_active: bool = True


class SlideUpdate(CamelModel):
    title: Optional[str] = None
    subtitle: Optional[str] = None
    image: Optional[str] = None
    link: Optional[str] = None
    button_text: Optional[str] = None
    order: Optional[int] = None
    is_active: Optional[bool] = None


# ---------- Users ----------

class UserCreate(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    address: Optional[str] = None


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class ProfileUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)


class UserPublic(CamelModel):
    id: str
    name: str
    email: EmailStr
    role: Role = "user"
    phone: Optional[str] = None
    address: Optional[str] = None


# ---------- Cart ----------

class CartItem(CamelModel):
    product_id: str
    name: str
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class CartUpdate(CamelModel):
    items: List[CartItem]


# ---------- Orders ----------

class ShippingAddress(CamelModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone: str
    address: str
    apartment: Optional[str] = None
    city: str
    state: str
    zip_code: str
    country: str = "India"


class OrderLine(CamelModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderCreate(CamelModel):
    items: List[OrderLine] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "cod"
    order_notes: Optional[str] = None


class OrderItem(CamelModel):
    product_id: str
    product_name: str
    quantity: int
    price: float
    image: Optional[str] = None


class StatusChange(CamelModel):
    status: OrderStatus
    at: datetime
    note: Optional[str] = None
    by: Optional[str] = None


class Order(CamelModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "pending"
    subtotal: float
    shipping_fee: float
    tax: float
    total: float
    order_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    shipping_provider: Optional[str] = None
    cancel_reason: Optional[str] = None
    status_history: List[StatusChange] = []
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class CancelRequest(CamelModel):
    reason: Optional[str] = None


class StatusUpdate(CamelModel):
    status: OrderStatus
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    shipping_provider: Optional[str] = None
    # admin override of the transition table
    force: bool = False


class PaymentUpdate(CamelModel):
    payment_status: PaymentStatus


class BulkStatusUpdate(CamelModel):
    order_ids: List[str] = Field(..., min_length=1)
    status: OrderStatus
    force: bool = False
