from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Category(str, Enum):
    POPULAR = "popular"
    LIMITED_EDITION = "limited_edition"
    CLASSIC = "classic"
    NEW_ARRIVAL = "new_arrival"


@dataclass
class CartItem:
    product_id: str
    quantity: int

    def to_dict(self) -> Dict[str, Any]:
        return {"product_id": self.product_id, "quantity": self.quantity}


@dataclass
class User:
    id: str
    account: str
    password_hash: str
    name: str
    phone: str
    role: str = Role.USER.value
    avatar: Optional[str] = None
    blacklist: bool = False
    blacklist_reason: str = ""
    cart: List[CartItem] = field(default_factory=list)
    tokens: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def cart_quantity(self) -> int:
        return sum(item.quantity for item in self.cart)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


@dataclass
class Product:
    id: str
    name: str
    price: float
    images: List[str]
    description: str
    category: str
    sell: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Order:
    id: str
    user_id: str
    cart: List[CartItem]
    date: date
    time: str
    name: str
    phone: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Page:
    """One page of a listing plus the total the caller should paginate against."""

    items: List[Any]
    total: int
