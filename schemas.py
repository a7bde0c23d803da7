"""
Request and response schemas for the Shop API.

Money leaves the API as plain numbers (INR, two decimals).
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    price: float
    stock: int


class CartAdd(BaseModel):
    product_id: int
    quantity: int = Field(1, ge=1, description="Units to add")


class CartRemove(BaseModel):
    product_id: int


class CartQuantity(BaseModel):
    quantity: int = Field(..., description="New quantity; zero or less removes the line")


class CartLine(BaseModel):
    id: int
    product_id: int
    name: str
    price: float
    image_url: Optional[str] = None
    quantity: int


class CartOut(BaseModel):
    cart: List[CartLine]


class ShippingAddress(BaseModel):
    shipping_name: Optional[str] = Field(None, max_length=120)
    shipping_mobile: Optional[str] = Field(None, max_length=20)
    shipping_line1: Optional[str] = Field(None, max_length=255)
    shipping_line2: Optional[str] = Field(None, max_length=255)
    shipping_city: Optional[str] = Field(None, max_length=100)
    shipping_state: Optional[str] = Field(None, max_length=100)
    shipping_postal_code: Optional[str] = Field(None, max_length=20)
    shipping_country: Optional[str] = Field(None, max_length=100)


class PlaceOrder(BaseModel):
    payment_method: Literal["cod", "upi"] = Field("cod", description="cod | upi")


class OrderSummaryOut(BaseModel):
    id: int
    subtotal: float
    shipping: float
    total: float
    status: str
    payment_method: str


class OrderItemOut(BaseModel):
    product_id: int
    name: Optional[str] = None
    image_url: Optional[str] = None
    quantity: int
    price: float


class OrderOut(BaseModel):
    id: int
    user_id: int
    subtotal: float
    shipping: float
    total: float
    status: str
    payment_method: str
    cancelled_by: Optional[str] = None
    gateway_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    shipping_address: ShippingAddress
    items: List[OrderItemOut] = []


class InitiatePayment(BaseModel):
    order_id: int
    amount: Optional[Decimal] = Field(None, ge=0, description="Expected order total, checked if given")


class PaymentRedirect(BaseModel):
    order_id: int
    provider: str
    redirect_url: str
    gateway_order_id: str
    amount: int = Field(..., description="Amount in paise")


class StatusUpdate(BaseModel):
    status: Literal["shipped", "delivered", "cancelled"]


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000, description="User message")


class ChatResponse(BaseModel):
    reply: str
    used_model: str
    queries_today: int
    daily_limit: int
