"""
Database Schemas for the marketplace

Each Pydantic model here represents a MongoDB collection or a snapshot that is
embedded in one. Collection names are the lowercase plural of the entity:
customers, sellers, products, carts, wishlists, orders, reviews.
References between documents are stored as ObjectId hex strings.
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, EmailStr, Field


def _check_object_id(value: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValueError("Valid id is required")
    return value


ObjectIdStr = Annotated[str, AfterValidator(_check_object_id)]

ProductStatus = Literal["active", "inactive", "draft", "out_of_stock"]
PaymentMethod = Literal["cod", "card", "upi", "netbanking", "wallet"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]


class Address(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1, max_length=500)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., pattern=r"^[0-9]{6}$")
    phone: str = Field(..., pattern=r"^[0-9]{10,15}$")


class SavedAddress(Address):
    """An entry in a customer's address book."""
    id: str = Field(default_factory=lambda: str(ObjectId()))
    type: Literal["home", "work", "other"] = "home"
    is_default: bool = False

    def to_address(self) -> Address:
        return Address(**self.model_dump(include=set(Address.model_fields)))


class StockChange(BaseModel):
    date: datetime
    previous_stock: int
    new_stock: int
    reason: str
    updated_by: str


# Customers collection
class Customer(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=r"^[0-9]{10,15}$")
    password_hash: str = Field(..., min_length=10)
    role: Literal["customer", "admin"] = "customer"
    is_active: bool = True
    addresses: List[SavedAddress] = Field(default_factory=list)
    total_orders: int = 0
    total_spent: float = 0.0


# Sellers collection
class Seller(BaseModel):
    store_name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    contact_number: Optional[str] = Field(None, pattern=r"^[0-9]{10,15}$")
    password_hash: str = Field(..., min_length=10)
    is_verified: bool = True
    total_orders: int = 0
    total_revenue: float = 0.0


# Products collection
class Product(BaseModel):
    name: str = Field(..., max_length=200)
    description: str = Field(..., max_length=2000)
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    sku: str
    category: str
    image: str = "/placeholder.svg"
    stock: int = Field(0, ge=0)
    low_stock_threshold: int = Field(5, ge=0)
    in_stock: bool = True
    colors: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    materials: List[str] = Field(default_factory=list)
    delivery_days: int = Field(7, ge=1)
    seller_id: str
    rating: float = Field(0.0, ge=0, le=5)
    review_count: int = Field(0, ge=0)
    status: ProductStatus = "active"
    stock_history: List[StockChange] = Field(default_factory=list)


class SelectedVariant(BaseModel):
    """Variant attributes chosen for a cart line. Two variants are the same
    line when every attribute matches; an absent attribute equals None."""
    color: Optional[str] = None
    size: Optional[str] = None
    material: Optional[str] = None


class Customization(BaseModel):
    text: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None
    image: Optional[str] = None
    additional_cost: float = 0.0


class ProductSnapshot(BaseModel):
    """Product details frozen at order time."""
    name: str
    price: float
    image: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
