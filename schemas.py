"""
Database Schemas for the Storefront API

Each record model maps to a MongoDB collection:
- User -> "users"
- Category -> "categories"
- Product -> "products"
- Order -> "orders"

The *Request models validate incoming JSON bodies. Product create/update take
multipart form data and are validated in the routes instead.
"""

from typing import Any, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

OrderStatus = Literal["Not Processed", "Processing", "Shipped", "Delivered", "Cancelled"]
ORDER_STATUSES = ("Not Processed", "Processing", "Shipped", "Delivered", "Cancelled")

ROLE_USER = 0
ROLE_ADMIN = 1


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    password: str = Field(..., description="BCrypt password hash")
    phone: str
    address: Any = Field(..., description="Free-form shipping address")
    answer: str = Field(..., description="Security answer used for password reset")
    role: int = Field(ROLE_USER, ge=ROLE_USER, le=ROLE_ADMIN, description="0 = regular, 1 = admin")


class Category(BaseModel):
    name: str
    slug: str = Field(..., description="Lowercase slug of the name, unique")


class Photo(BaseModel):
    data: bytes
    contentType: str


class Product(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    slug: str
    description: str
    price: float = Field(..., ge=0)
    category: ObjectId
    quantity: int = Field(..., ge=0)
    shipping: bool
    photo: Optional[Photo] = None


class Order(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    products: List[ObjectId] = Field(..., min_length=1)
    payment: dict = Field(default_factory=dict, description="Summary of the gateway transaction")
    buyer: ObjectId
    status: OrderStatus = "Not Processed"
    idempotency_key: Optional[str] = None


# Lightweight request models
class RegisterRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone: Optional[str] = None
    address: Any = None
    answer: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = None
    answer: Optional[str] = None
    newPassword: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone: Optional[str] = None
    address: Any = None


class CategoryRequest(BaseModel):
    name: Optional[str] = None


class ProductFilterRequest(BaseModel):
    checked: List[str] = Field(default_factory=list, description="Selected category ids")
    radio: List[float] = Field(default_factory=list, description="[] | [min] | [min, max]")


class OrderStatusRequest(BaseModel):
    # Plain str so an unknown value reaches the route and gets the "Invalid status" answer.
    status: Optional[str] = None


class CartItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="_id")
    price: float = Field(..., ge=0)


class PaymentRequest(BaseModel):
    nonce: str
    cart: List[CartItem] = Field(..., min_length=1)
