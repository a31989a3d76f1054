"""
Database Schemas

MongoDB collection schemas for MedEasy, defined as Pydantic models.
These schemas are used for data validation in the application.

Collection names follow the storefront client:
- User -> "users"
- Medicine -> "medicines"
- CartItem -> "carts"
- CheckoutRecord -> "checkout"
- Category -> "categories"
- Payment -> "payments"
"""

from pydantic import BaseModel, ConfigDict, Field, EmailStr
from typing import Any, Dict, List, Literal, Optional

Role = Literal["buyer", "seller", "admin"]
PaymentStatus = Literal["pending", "paid", "cancelled", "refunded"]


class Identity(BaseModel):
    """Authenticated principal taken from a verified token. Not persisted."""
    email: EmailStr


class User(BaseModel):
    """
    Users collection schema
    Collection name: "users"
    """
    name: Optional[str] = Field(None, description="Display name")
    email: EmailStr = Field(..., description="Email address, unique")
    role: Role = Field("buyer", description="buyer, seller or admin")


class Medicine(BaseModel):
    """
    Medicines collection schema
    Collection name: "medicines"
    """
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., description="Medicine name")
    generic_name: Optional[str] = Field(None, description="Generic name")
    description: Optional[str] = Field(None, description="Short description")
    image: Optional[str] = Field(None, description="Image URL")
    category: str = Field(..., description="Category name")
    company: Optional[str] = Field(None, description="Manufacturer")
    unit: Optional[str] = Field(None, description="Mass unit, e.g. mg or ml")
    price: float = Field(..., ge=0, description="Unit price")
    discount: float = Field(0, ge=0, le=100, description="Discount percentage")
    seller: EmailStr = Field(..., description="Seller email")
    requested: bool = Field(False, description="Seller asked for an advertisement slot")
    advertised: bool = Field(False, description="Admin approved the advertisement")


class CartItem(BaseModel):
    """
    Cart items collection schema
    Collection name: "carts"
    One document per (medicineId, userEmail).
    """
    model_config = ConfigDict(extra="allow")

    medicineId: str = Field(..., description="Medicine ID")
    userEmail: EmailStr = Field(..., description="Owner of the cart")
    quantity: int = Field(0, ge=0)
    subtotal: float = Field(0, ge=0)


class CheckoutRecord(BaseModel):
    """
    Checkout staging collection schema
    Collection name: "checkout"
    """
    userEmail: EmailStr
    items: List[Dict[str, Any]] = Field(default_factory=list)
    grandTotal: float = Field(0, ge=0)


class Category(BaseModel):
    """
    Categories collection schema
    Collection name: "categories"
    """
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., description="Category name")
    image: Optional[str] = Field(None, description="Image URL")


class PaymentItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    medicineId: Optional[str] = None
    name: Optional[str] = None
    seller: EmailStr = Field(..., description="Seller that gets paid for this line")
    quantity: int = Field(1, ge=0)
    subtotal: float = Field(0, ge=0)


class Payment(BaseModel):
    """
    Payments collection schema
    Collection name: "payments"
    """
    userEmail: EmailStr
    items: List[PaymentItem]
    amount: float = Field(..., ge=0)
    status: PaymentStatus = Field("pending")
    transactionId: Optional[str] = Field(None, description="Payment provider intent id")
