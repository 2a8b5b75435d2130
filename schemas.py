"""
Storefront Schemas

Pydantic models for the MongoDB collections and the request bodies of the
REST API. Field aliases carry the camelCase names used on the wire.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class OrderState(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class Product(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1, description="Product title")
    description: str = Field(..., min_length=1, description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    image: str = Field(..., description="Image URL on the asset host")
    public_id: Optional[str] = Field(None, description="Asset host id, used for deletion")
    sold_out: bool = Field(False, alias="soldOut")


class ProductUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    sold_out: Optional[bool] = Field(None, alias="soldOut")


class ProductDelete(BaseModel):
    public_id: Optional[str] = None


class OrderItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(None, alias="id")
    title: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)


class Order(BaseModel):
    products: List[OrderItem] = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    state: OrderState = OrderState.PENDING


class OrderCreate(BaseModel):
    products: List[OrderItem] = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)


class OrderStateUpdate(BaseModel):
    state: OrderState


class Contact(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)


class User(BaseModel):
    username: str
    password_hash: str


class Credentials(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1)


class AuthResponse(BaseModel):
    token: str
    username: str


class SecurityLogRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
