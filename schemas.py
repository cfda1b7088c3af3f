"""
Database Schemas for Gebeya (E-commerce)

Each Pydantic model below the request/response section represents a MongoDB collection.
The collection name is the lowercase of the class name.

Examples:
- Product -> "product"
- Order -> "order"
- Cart -> "cart"
"""
from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

CASH_ON_DELIVERY = "Cash On Delivery"
DEFAULT_AVATAR = "/uploads/default-avatar.png"


class ImageRef(BaseModel):
    url: str = Field(..., description="Public image URL")
    storage_key: str = Field(..., description="Object storage key, used to release the image")


PaymentProof = Union[ImageRef, Literal["Cash On Delivery"]]


# ---------- Product ----------

class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Product name")
    price: float = Field(..., ge=0, description="Unit price")
    short_description: str = Field("", description="One-line summary")
    full_description: str = Field("", description="Detailed description")
    stock_quantity: int = Field(0, ge=0, description="Units available")
    sold: int = Field(0, ge=0, description="Units sold, never decreases")
    category: Optional[str] = Field(None, description="Category reference")
    discount: float = Field(0, ge=0, le=100, description="Percent off, only when has_discount")
    has_discount: bool = Field(False)
    images: List[ImageRef] = Field(default_factory=list, description="Product images")
    video_link: Optional[str] = None
    rating: Optional[float] = Field(None, ge=0, le=5, description="Average rating 0-5")


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    short_description: Optional[str] = None
    full_description: Optional[str] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    expected_stock_quantity: Optional[int] = Field(
        None, ge=0, description="Stock level the editor last saw; the edit is refused if it changed"
    )
    sold: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    discount: Optional[float] = Field(None, ge=0, le=100)
    has_discount: Optional[bool] = None
    video_link: Optional[str] = None
    rating: Optional[float] = Field(None, ge=0, le=5)


class ProductOut(Product):
    id: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class RankedProduct(BaseModel):
    rank: int
    id: str
    name: str
    short_description: str = ""
    category: Optional[str] = None
    price: float
    sold: int
    stock_quantity: int
    image: Optional[str] = None


class DiscountedProduct(BaseModel):
    id: str
    name: str
    short_description: str = ""
    category: Optional[str] = None
    price: float
    discount: float
    calculated_price: float
    image: Optional[str] = None


# ---------- Order ----------

class OrderStatus(str, Enum):
    pending = "Pending"
    unpaid = "Un-paid"
    paid = "Paid"
    processing = "Processing"
    approved = "Approved"
    delivered = "Delivered"
    cancelled = "Cancelled"


class OrderItem(BaseModel):
    product_id: str = Field(..., description="Referenced product _id as string")
    name: str = Field(..., description="Snapshot of product name at purchase time")
    quantity: int = Field(..., ge=1, description="Units purchased")
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    image: Optional[str] = Field(None, description="Primary image URL")


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: Optional[float] = Field(None, ge=0)
    name: Optional[str] = None
    image: Optional[str] = None


class OrderCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    phone_number: Optional[str] = None
    delivery_address: Optional[str] = None
    avatar: Optional[str] = None
    payment_image: Optional[ImageRef] = Field(
        None, description="Already uploaded payment proof; omitted means cash on delivery"
    )
    items: List[OrderItemIn] = Field(..., min_length=1)


class OrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    name: Optional[str] = Field(None, min_length=1)
    amount: Optional[float] = Field(None, ge=0)
    phone_number: Optional[str] = None
    delivery_address: Optional[str] = None
    avatar: Optional[str] = None


class ItemOutcome(str, Enum):
    applied = "applied"
    missing = "missing"
    failed = "failed"
    pending = "pending"


class ReconciliationState(str, Enum):
    in_progress = "in_progress"
    retrying = "retrying"
    complete = "complete"
    partial = "partial"


class ReconciliationItem(BaseModel):
    index: int
    product_id: str
    quantity: int
    outcome: ItemOutcome
    detail: Optional[str] = None


class ReconciliationReport(BaseModel):
    state: ReconciliationState
    items: List[ReconciliationItem] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class Order(BaseModel):
    id: int = Field(..., ge=1, description="Sequential, human-facing order number")
    user_id: str
    name: str
    avatar: str = DEFAULT_AVATAR
    amount: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.pending
    phone_number: Optional[str] = None
    delivery_address: Optional[str] = None
    payment_proof: PaymentProof = CASH_ON_DELIVERY
    items: List[OrderItem]
    stock_reconciled: bool = False
    reconciliation: Optional[ReconciliationReport] = None


class OrderOut(Order):
    internal_id: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ---------- Cart ----------

class CartItem(BaseModel):
    product_id: str
    name: str
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    name: Optional[str] = None
    image: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)


class CartQuantity(BaseModel):
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
