"""
Database Schemas for the Meat & Grocery Admin Dashboard

Each Pydantic model below describes the documents this backend writes to one
MongoDB collection. Orders and users are written by the customer app and are
read as plain documents.
"""
from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

Unit = Literal["KG", "PC", "liter", "dozen"]
PriceDirection = Literal["up", "down", "same"]


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "products"
    """
    id: Optional[str] = Field(None, alias="_id")
    name: str
    category: str = "Uncategorized"
    current_price: float = Field(0, ge=0)
    previous_price: float = 0
    price_direction: PriceDirection = "same"
    price_change_percentage: float = 0
    availability: bool = True
    unit: Unit = "KG"
    cutting_types: List[str] = Field(default_factory=list)
    available_days: List[int] = Field(default_factory=list, description="0=Sunday .. 6=Saturday, empty = every day")
    display_order: int = 0


class ProductInput(BaseModel):
    name: str
    category: str = "Uncategorized"
    price: float = Field(..., ge=0)
    availability: bool = True
    unit: Unit = "KG"
    cutting_types: List[str] = Field(default_factory=list)
    available_days: List[int] = Field(default_factory=list)
    display_order: int = 0

    @field_validator("available_days")
    @classmethod
    def check_weekdays(cls, days: List[int]) -> List[int]:
        if any(d < 0 or d > 6 for d in days):
            raise ValueError("available_days must be between 0 (Sunday) and 6 (Saturday)")
        return days


class WalletLog(BaseModel):
    """
    Wallet point movements
    Collection name: "wallet_logs"
    """
    user_id: str
    action: Literal["credit", "debit"]
    points: int = Field(..., ge=0)
    balance: int = Field(..., ge=0)
    reason: str = ""
    admin: str = "System"


class Coupon(BaseModel):
    """
    Discount coupons
    Collection name: "coupons"
    """
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(None, alias="_id")
    code: str
    discount: int = Field(..., ge=1, le=100, description="Percent off")
    expiry_date: date
    usage_limit: int = Field(100, ge=1)
    used_count: int = Field(0, ge=0)
    is_active: bool = True


class Account(BaseModel):
    """
    Sign-in identities
    Collection name: "accounts"
    """
    email: EmailStr
    password_hash: str


class Admin(BaseModel):
    """
    Authorization records, keyed by account _id
    Collection name: "admins"
    """
    email: EmailStr
    role: str = "admin"
