from __future__ import annotations

import re
import unicodedata
import datetime as dt
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from storefront.storage.models import Category, Product, Role, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_expired",
    "invalid_token",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class Envelope(BaseModel):
    """Response wrapper shared by every route, including errors."""

    success: bool
    message: str = ""
    result: Optional[Any] = None
    code: Optional[str] = None
    details: Optional[Any] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


def ok(result: Any = None, message: str = "") -> Envelope:
    return Envelope(success=True, message=message, result=result)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping invisible format characters (zero-width, bidi)."""
    visible = "".join(ch for ch in value if unicodedata.category(ch) != "Cf")
    return unicodedata.normalize("NFKC", visible)


_EMAIL = re.compile(
    r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}"
    r"@(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$"
)
# Taiwan mobile: 09xxxxxxxx, optionally written with the +886 country code
_TW_MOBILE = re.compile(r"^(?:\+?886-?|0)9\d{8}$")


def _validate_email(value: str) -> str:
    account = _normalize_unicode(value.strip().lower())
    if len(account) > 254 or not _EMAIL.match(account):
        raise ValueError("account must be a valid email address")
    return account


def _validate_password(value: str) -> str:
    if len(value) < 4:
        raise ValueError("password must be at least 4 characters")
    if len(value) > 20:
        raise ValueError("password must be at most 20 characters")
    return value


def _validate_phone(value: str) -> str:
    cleaned = value.strip().replace(" ", "")
    if not _TW_MOBILE.match(cleaned):
        raise ValueError("phone must be a Taiwan mobile number")
    return cleaned


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("name is required")
    return cleaned


class SignupRequest(BaseModel):
    account: str
    password: str
    name: str = Field(..., max_length=64)
    phone: str

    @field_validator("account")
    @classmethod
    def _validate_signup_account(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_signup_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("name")
    @classmethod
    def _validate_signup_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_signup_phone(cls, value: str) -> str:
        return _validate_phone(value)


class LoginRequest(BaseModel):
    # Optional so a missing field reaches the service and yields "missing credentials"
    account: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("account")
    @classmethod
    def _normalize_login_account(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value.strip().lower())


class SelfUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=64)
    phone: Optional[str] = None
    password: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _validate_self_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_self_phone(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_phone(value)

    @field_validator("password")
    @classmethod
    def _validate_self_password(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_password(value)


class AdminUserUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=64)
    phone: Optional[str] = None
    role: Optional[Role] = None
    blacklist: Optional[bool] = None
    blacklist_reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _validate_admin_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_admin_phone(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_phone(value)


class CartEditRequest(BaseModel):
    product: str = Field(..., max_length=64)
    quantity: int = Field(..., ge=-10_000, le=10_000)


class OrderCreateRequest(BaseModel):
    # a field named ``date`` would shadow the type, hence ``dt.date``
    date: dt.date
    time: str = Field(..., min_length=1, max_length=32)
    name: str = Field(..., max_length=64)
    phone: str

    @field_validator("name")
    @classmethod
    def _validate_order_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_order_phone(cls, value: str) -> str:
        return _validate_phone(value)


class UserProfile(BaseModel):
    id: str
    account: str
    role: Role
    name: str
    phone: str
    avatar: Optional[str] = None
    cart_quantity: int = 0
    blacklist: bool = False
    blacklist_reason: str = ""

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            account=user.account,
            role=Role(user.role),
            name=user.name,
            phone=user.phone,
            avatar=user.avatar,
            cart_quantity=user.cart_quantity,
            blacklist=user.blacklist,
            blacklist_reason=user.blacklist_reason,
        )


class AdminUserView(UserProfile):
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "AdminUserView":
        base = UserProfile.from_user(user).model_dump()
        return cls(**base, created_at=user.created_at, updated_at=user.updated_at)


class LoginResponse(UserProfile):
    token: str


class TokenResponse(BaseModel):
    token: str


class ProductOut(BaseModel):
    id: str
    name: str
    price: float
    images: List[str]
    description: str
    category: Category
    sell: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_product(cls, product: Product) -> "ProductOut":
        return cls(
            id=product.id,
            name=product.name,
            price=product.price,
            images=list(product.images),
            description=product.description,
            category=Category(product.category),
            sell=product.sell,
            created_at=product.created_at,
            updated_at=product.updated_at,
        )


class CartLineOut(BaseModel):
    product_id: str
    quantity: int
    product: Optional[ProductOut] = None


class CartQuantityResponse(BaseModel):
    cart_quantity: int


class OrderOwner(BaseModel):
    id: str
    account: str
    name: str


class OrderOut(BaseModel):
    id: str
    user_id: str
    cart: List[CartLineOut]
    date: dt.date
    time: str
    name: str
    phone: str
    created_at: datetime
    user: Optional[OrderOwner] = None


class PageOut(BaseModel):
    data: List[Any]
    total: int
