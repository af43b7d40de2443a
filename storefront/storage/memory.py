from __future__ import annotations

import copy
import json
import os
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from storefront.logging import get_logger
from storefront.storage.common import ListQuery, matches_search, new_id, paginate
from storefront.storage.errors import ConstraintViolation, StoreUnavailable
from storefront.storage.models import CartItem, Order, Page, Product, User, utcnow

_USER_FIELDS = frozenset(
    {"name", "phone", "password_hash", "role", "avatar", "blacklist", "blacklist_reason"}
)
_PRODUCT_FIELDS = frozenset({"name", "price", "images", "description", "category", "sell"})

SNAPSHOT_VERSION = 1


class MemoryStore:
    """In-process store used by tests and local development.

    Mirrors ``MongoStore`` semantics: callers always receive copies, so
    mutating a returned object never changes stored state. When ``fs_root``
    is given, every write is snapshotted to ``<fs_root>/snapshot.json``
    and reloaded on startup.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.products: Dict[str, Product] = {}
        self.orders: Dict[str, Order] = {}
        # RLock so helpers can re-enter from inside a locked operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- health -----------------------------------------------------------

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- users ------------------------------------------------------------

    def create_user(
        self,
        account: str,
        password_hash: str,
        name: str,
        phone: str,
        *,
        role: str = "user",
    ) -> User:
        with self._data_lock:
            if any(existing.account == account for existing in self.users.values()):
                raise ConstraintViolation("account already registered", {"field": "account"})
            user = User(
                id=new_id(),
                account=account,
                password_hash=password_hash,
                name=name,
                phone=phone,
                role=role,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return copy.deepcopy(self.users.get(user_id))

    def get_user_by_account(self, account: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.account == account), None)
            return copy.deepcopy(user)

    def get_user_by_token(self, user_id: str, token: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or token not in user.tokens:
                return None
            return copy.deepcopy(user)

    def list_users(self, query: ListQuery) -> Page:
        pattern = query.search_regex()
        with self._data_lock:
            rows = [
                u
                for u in self.users.values()
                if matches_search(pattern, (u.account, u.name))
            ]
            return Page(
                items=copy.deepcopy(paginate(rows, query)), total=len(self.users)
            )

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self._persist_state()
            return True

    def push_token(self, user_id: str, token: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return False
            user.tokens.append(token)
            self._persist_state()
            return True

    def replace_token(self, user_id: str, old_token: str, new_token: str) -> bool:
        """Swap ``old_token`` for ``new_token`` at the same list position."""
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or old_token not in user.tokens:
                return False
            user.tokens[user.tokens.index(old_token)] = new_token
            self._persist_state()
            return True

    def pull_token(self, user_id: str, token: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or token not in user.tokens:
                return False
            user.tokens = [t for t in user.tokens if t != token]
            self._persist_state()
            return True

    def set_cart(self, user_id: str, cart: Iterable[CartItem]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.cart = [CartItem(item.product_id, item.quantity) for item in cart]
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    # -- products ---------------------------------------------------------

    def create_product(
        self,
        name: str,
        price: float,
        images: List[str],
        description: str,
        category: str,
        *,
        sell: bool = True,
    ) -> Product:
        with self._data_lock:
            product = Product(
                id=new_id(),
                name=name,
                price=price,
                images=list(images),
                description=description,
                category=category,
                sell=sell,
            )
            self.products[product.id] = product
            self._persist_state()
            return copy.deepcopy(product)

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._data_lock:
            return copy.deepcopy(self.products.get(product_id))

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        with self._data_lock:
            return {
                pid: copy.deepcopy(self.products[pid])
                for pid in set(product_ids)
                if pid in self.products
            }

    def list_products(self, query: ListQuery, *, sell_only: bool = False) -> Page:
        pattern = query.search_regex()
        with self._data_lock:
            scope = [p for p in self.products.values() if p.sell or not sell_only]
            rows = [p for p in scope if matches_search(pattern, (p.name, p.description))]
            return Page(items=copy.deepcopy(paginate(rows, query)), total=len(scope))

    def update_product(self, product_id: str, **fields: Any) -> Optional[Product]:
        unknown = set(fields) - _PRODUCT_FIELDS
        if unknown:
            raise ValueError(f"unsupported product fields: {sorted(unknown)}")
        with self._data_lock:
            product = self.products.get(product_id)
            if product is None:
                return None
            for key, value in fields.items():
                setattr(product, key, list(value) if key == "images" else value)
            product.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(product)

    def delete_product(self, product_id: str) -> bool:
        with self._data_lock:
            if self.products.pop(product_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- orders -----------------------------------------------------------

    def create_order(
        self,
        user_id: str,
        cart: Iterable[CartItem],
        *,
        date: date,
        time: str,
        name: str,
        phone: str,
    ) -> Order:
        with self._data_lock:
            order = Order(
                id=new_id(),
                user_id=user_id,
                cart=[CartItem(item.product_id, item.quantity) for item in cart],
                date=date,
                time=time,
                name=name,
                phone=phone,
            )
            self.orders[order.id] = order
            self._persist_state()
            return copy.deepcopy(order)

    def list_orders(self, query: ListQuery, *, user_id: Optional[str] = None) -> Page:
        with self._data_lock:
            rows = [o for o in self.orders.values() if user_id is None or o.user_id == user_id]
            return Page(items=copy.deepcopy(paginate(rows, query)), total=len(rows))

    # -- persistence ------------------------------------------------------

    @property
    def snapshot_path(self) -> Optional[Path]:
        return self.fs_root / "snapshot.json" if self.fs_root is not None else None

    def _persist_state(self) -> None:
        target = self.snapshot_path
        if target is None:
            return
        snapshot = {
            "version": SNAPSHOT_VERSION,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "products": [self._serialize_product(p) for p in self.products.values()],
            "orders": [self._serialize_order(o) for o in self.orders.values()],
        }
        scratch = target.with_suffix(".tmp")
        try:
            scratch.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
            os.replace(scratch, target)
        except OSError as exc:
            raise StoreUnavailable(f"could not write snapshot {target}: {exc}") from exc

    def _load_state(self) -> None:
        source = self.snapshot_path
        if source is None or not source.exists():
            return
        raw = json.loads(source.read_text(encoding="utf-8"))
        self.users = {}
        for row in raw.get("users", []):
            user = self._deserialize_user(row)
            self.users[user.id] = user
        self.products = {}
        for row in raw.get("products", []):
            product = self._deserialize_product(row)
            self.products[product.id] = product
        self.orders = {}
        for row in raw.get("orders", []):
            order = self._deserialize_order(row)
            self.orders[order.id] = order
        self.logger.info(
            "memory_snapshot_restored",
            path=str(source),
            users=len(self.users),
            products=len(self.products),
            orders=len(self.orders),
        )

    @staticmethod
    def _serialize_cart(cart: Iterable[CartItem]) -> list:
        return [item.to_dict() for item in cart]

    @staticmethod
    def _deserialize_cart(raw: Iterable[dict]) -> List[CartItem]:
        return [CartItem(str(item["product_id"]), int(item["quantity"])) for item in raw]

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "account": user.account,
            "password_hash": user.password_hash,
            "name": user.name,
            "phone": user.phone,
            "role": user.role,
            "avatar": user.avatar,
            "blacklist": user.blacklist,
            "blacklist_reason": user.blacklist_reason,
            "cart": self._serialize_cart(user.cart),
            "tokens": list(user.tokens),
            "created_at": user.created_at.isoformat(),
            "updated_at": user.updated_at.isoformat(),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            account=data["account"],
            password_hash=data["password_hash"],
            name=data.get("name", ""),
            phone=data.get("phone", ""),
            role=data.get("role", "user"),
            avatar=data.get("avatar"),
            blacklist=data.get("blacklist", False),
            blacklist_reason=data.get("blacklist_reason", ""),
            cart=self._deserialize_cart(data.get("cart", [])),
            tokens=list(data.get("tokens", [])),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at", data["created_at"])),
        )

    def _serialize_product(self, product: Product) -> dict:
        return {
            "id": product.id,
            "name": product.name,
            "price": product.price,
            "images": list(product.images),
            "description": product.description,
            "category": product.category,
            "sell": product.sell,
            "created_at": product.created_at.isoformat(),
            "updated_at": product.updated_at.isoformat(),
        }

    def _deserialize_product(self, data: dict) -> Product:
        return Product(
            id=str(data["id"]),
            name=data["name"],
            price=data["price"],
            images=list(data.get("images", [])),
            description=data.get("description", ""),
            category=data["category"],
            sell=data.get("sell", True),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at", data["created_at"])),
        )

    def _serialize_order(self, order: Order) -> dict:
        return {
            "id": order.id,
            "user_id": order.user_id,
            "cart": self._serialize_cart(order.cart),
            "date": order.date.isoformat(),
            "time": order.time,
            "name": order.name,
            "phone": order.phone,
            "created_at": order.created_at.isoformat(),
            "updated_at": order.updated_at.isoformat(),
        }

    def _deserialize_order(self, data: dict) -> Order:
        return Order(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            cart=self._deserialize_cart(data.get("cart", [])),
            date=date.fromisoformat(data["date"]),
            time=data["time"],
            name=data["name"],
            phone=data["phone"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at", data["created_at"])),
        )
