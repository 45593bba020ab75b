from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class OrderStatus(str, Enum):
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    SHIPPED = "shipped"
    COMPLETE = "complete"
    PAYMENT_NOT_CONFIRMED = "payment_not_confirmed"
    CANCELED = "canceled"


# -----------------------------
# Products
# -----------------------------

class ProductBase(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    stock: int = Field(..., ge=0)


class ProductCreate(ProductBase):
    pass


class ProductOut(ProductBase):
    model_config = {"from_attributes": True}


# -----------------------------
# Reservations
# -----------------------------

class ReserveRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    quantity: int = Field(1, gt=0)


class ReleaseItem(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(..., gt=0)


class BatchReleaseRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    items: List[ReleaseItem] = Field(..., min_length=1)


class ClearReservationRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128, description='A session id, or "all"')


class DecrementStockRequest(BaseModel):
    quantity: int = Field(1, gt=0)


class StockOverrideRequest(BaseModel):
    stock: int = Field(..., ge=0)


class TriggerStockUpdateRequest(BaseModel):
    action: str = "refresh"


class StockChangeOut(BaseModel):
    success: bool
    product_id: str
    previous_stock: int
    new_stock: int


# -----------------------------
# Orders
# -----------------------------

class CustomerInfo(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = None


class OrderItemCreate(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(..., gt=0)
    price: Decimal = Field(..., ge=0)
    size: Optional[str] = Field(None, max_length=10)


class OrderCreate(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    customer_info: CustomerInfo
    items: List[OrderItemCreate] = Field(..., min_length=1)
    payment_receipt: Optional[str] = Field(None, max_length=500, description="URL of the uploaded payment receipt")
    message: Optional[str] = None


class OrderItemOut(BaseModel):
    product_id: str
    title: str
    quantity: int
    price: Decimal
    size: Optional[str] = None

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: str
    session_id: Optional[str] = None
    status: OrderStatus
    total: Decimal
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    payment_receipt: Optional[str] = None
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class OrderListResponse(BaseModel):
    orders: List[OrderOut]
    total: int
    skip: int
    limit: int


class OrderStatusUpdate(BaseModel):
    # plain str so unknown values reach the promoter and are refused there
    status: str


class Token(BaseModel):
    access_token: str
    token_type: str
