"""
Database Schemas for the RBAC Store

Each collection model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name:
- User -> "user"
- Product -> "product"
- Order -> "order"

Request bodies accepted by the API live at the bottom of the module.
"""
from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, field_validator


class Role(str, Enum):
    ADMIN = "admin"
    SELLER = "seller"
    CUSTOMER = "customer"
    DELIVERY = "delivery"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


Category = Literal["books", "foods", "clothing_men", "clothing_women"]
PaymentMethod = Literal["credit_card", "debit_card", "paypal", "stripe", "cash_on_delivery"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
DeliveryMethod = Literal["standard", "express", "overnight"]

PHONE_PATTERN = r"^\+?[1-9]\d{0,15}$"


class _Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True, validate_default=True)


# ----------------------- Users -----------------------
class UserAddress(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class User(_Document):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="bcrypt hash")
    role: Role = Role.CUSTOMER
    phone: Optional[str] = None
    address: Optional[UserAddress] = None
    is_active: bool = True
    last_login: Optional[datetime] = None


# ----------------------- Products -----------------------
class Rating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Product(_Document):
    name: str = Field(..., min_length=2, max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    category: Category
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    images: List[str] = Field(..., min_length=1)
    seller: ObjectId
    sku: Optional[str] = None
    brand: Optional[str] = Field(None, max_length=50)
    tags: List[str] = Field(default_factory=list)
    rating: Rating = Field(default_factory=Rating)
    sales: int = Field(0, ge=0)
    views: int = Field(0, ge=0)
    is_active: bool = True
    is_featured: bool = False


# ----------------------- Orders -----------------------
class Address(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = "USA"


class OrderItem(_Document):
    product: ObjectId
    name: str
    seller: ObjectId
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    total: float = Field(..., ge=0)


class Payment(BaseModel):
    method: PaymentMethod
    status: PaymentStatus = "pending"


class Delivery(_Document):
    method: DeliveryMethod = "standard"
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    delivery_agent: Optional[ObjectId] = None


class OrderNotes(BaseModel):
    customer: Optional[str] = None
    internal: Optional[str] = None
    delivery: Optional[str] = None


class Order(_Document):
    order_number: Optional[str] = None
    customer: ObjectId
    items: List[OrderItem] = Field(..., min_length=1)
    sellers: List[ObjectId] = Field(default_factory=list)
    status: OrderStatus = OrderStatus.PENDING
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    shipping_address: Address
    billing_address: Address
    payment: Payment
    delivery: Delivery = Field(default_factory=Delivery)
    notes: OrderNotes = Field(default_factory=OrderNotes)
    history: List[dict] = Field(default_factory=list, description="Status changes: {status, at, by}")
    is_active: bool = True


# ----------------------- Request bodies -----------------------
class RegisterBody(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["customer", "seller", "delivery"] = "customer"
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[UserAddress] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[UserAddress] = None


class AdminUserUpdateBody(ProfileUpdateBody):
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class ProductCreateBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=2, max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    category: Category
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(..., ge=0)
    images: List[HttpUrl] = Field(..., min_length=1)
    sku: Optional[str] = None
    brand: Optional[str] = Field(None, max_length=50)
    tags: List[str] = Field(default_factory=list)
    is_active: bool = True
    is_featured: bool = False


class ProductUpdateBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, min_length=10, max_length=1000)
    category: Optional[Category] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[HttpUrl]] = Field(None, min_length=1)
    brand: Optional[str] = Field(None, max_length=50)
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class RatingBody(BaseModel):
    rating: float = Field(..., ge=1, le=5)


class OrderItemBody(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)

    @field_validator("product")
    @classmethod
    def check_product_id(cls, v: str) -> str:
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid product ID")
        return v


class PaymentBody(BaseModel):
    method: PaymentMethod


class OrderCreateBody(BaseModel):
    items: List[OrderItemBody] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment: PaymentBody
    delivery_method: DeliveryMethod = "standard"
    notes: Optional[str] = None


class OrderUpdateBody(BaseModel):
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_status: Optional[PaymentStatus] = None
    delivery_method: Optional[DeliveryMethod] = None
    estimated_delivery: Optional[datetime] = None
    internal_note: Optional[str] = None


class StatusUpdateBody(BaseModel):
    status: OrderStatus
    estimated_delivery: Optional[datetime] = None
    notes: Optional[str] = None


class TrackingBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    tracking_number: str = Field(..., min_length=1)
    notes: Optional[str] = None


class AssignAgentBody(BaseModel):
    delivery_agent: str

    @field_validator("delivery_agent")
    @classmethod
    def check_agent_id(cls, v: str) -> str:
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid user ID")
        return v


class CompleteDeliveryBody(BaseModel):
    notes: Optional[str] = None
