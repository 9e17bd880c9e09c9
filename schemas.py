"""
Database Schemas for the Storefront API

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
Embedded records (line items, shipping address, payment details) live inside
their parent document.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "admin"]
PaymentMethod = Literal["UPI", "COD"]
PaymentStatus = Literal["Pending", "Success", "Failed"]
OrderStatus = Literal["Processing", "Confirmed", "Shipped", "Delivered", "Cancelled"]


class User(BaseModel):
    username: str = Field(..., min_length=1)
    name: str = Field(..., description="Display name")
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password")
    role: Role = "user"
    phone: str = ""
    address: str = ""


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., gt=0)
    category: str
    image: str = ""
    stock: int = Field(0, ge=0)
    created_by: Optional[str] = None


class OrderItem(BaseModel):
    """Point-in-time copy of a product as it was ordered."""
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    image: str = ""
    quantity: int = Field(..., ge=1)


class ShippingAddress(BaseModel):
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = "India"


class PaymentDetails(BaseModel):
    upi_id: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_status: PaymentStatus = "Pending"
    paid_at: Optional[datetime] = None


class Order(BaseModel):
    user_id: str
    order_items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "UPI"
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    items_price: float = Field(0.0, ge=0)
    tax_price: float = Field(0.0, ge=0)
    shipping_price: float = Field(0.0, ge=0)
    total_price: float = Field(0.0, ge=0)
    order_status: OrderStatus = "Processing"
    delivered_at: Optional[datetime] = None
