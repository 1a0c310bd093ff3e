import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import Role, TransactionType


# Largest id accepted from clients (32-bit INTEGER columns).
MAX_ID = 2**31 - 1


class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(..., min_length=6, max_length=72)
    role: Optional[Role] = None

    @field_validator("name", "email")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("password")
    @classmethod
    def _bcrypt_limit(cls, value: str) -> str:
        if len(value.encode("utf-8")) > 72:
            raise ValueError("Password must be at most 72 bytes")
        return value


class LoginIn(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=200)


class TransactionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    type: TransactionType
    category_id: Optional[int] = Field(default=None, alias="categoryId", ge=1, le=MAX_ID)
    description: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=2000)
    date: Optional[dt.date] = None


class TransactionUpdateIn(BaseModel):
    """Partial update; only fields present in the payload are applied."""

    model_config = ConfigDict(populate_by_name=True)

    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    type: Optional[TransactionType] = None
    category_id: Optional[int] = Field(default=None, alias="categoryId", ge=1, le=MAX_ID)
    description: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=2000)
    date: Optional[dt.date] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("name")
    @classmethod
    def _strip(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("Category name is required.")
        return clean


class RoleUpdateIn(BaseModel):
    role: Role
