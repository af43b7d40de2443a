from __future__ import annotations

import re
from datetime import date, datetime, time as clock, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from storefront.logging import get_logger
from storefront.storage.common import ListQuery, is_valid_id
from storefront.storage.errors import ConstraintViolation, StoreUnavailable
from storefront.storage.models import CartItem, Order, Page, Product, User, utcnow

_USER_FIELDS = frozenset(
    {"name", "phone", "password_hash", "role", "avatar", "blacklist", "blacklist_reason"}
)
_PRODUCT_FIELDS = frozenset({"name", "price", "images", "description", "category", "sell"})


def _oid(value: str) -> Optional[ObjectId]:
    return ObjectId(value) if is_valid_id(value) else None


def _pickup_to_doc(value: date) -> datetime:
    # BSON has no date-only type; pickup days are stored as UTC midnight
    return datetime.combine(value, clock.min, tzinfo=timezone.utc)


def _pickup_from_doc(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    return date.fromisoformat(str(value))


def _search_filter(query: ListQuery, fields: Iterable[str]) -> Dict[str, Any]:
    if not query.search:
        return {}
    pattern = re.escape(query.search)
    return {"$or": [{name: {"$regex": pattern, "$options": "i"}} for name in fields]}


class MongoStore:
    """Document store over pymongo with ``users``, ``products`` and ``orders``."""

    def __init__(
        self,
        url: str,
        database: str,
        *,
        server_selection_timeout_ms: int = 5000,
        client: Optional[MongoClient] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.client = client or MongoClient(
            url, serverSelectionTimeoutMS=server_selection_timeout_ms, tz_aware=True
        )
        self.db = self.client[database]
        self.users = self.db["users"]
        self.products = self.db["products"]
        self.orders = self.db["orders"]
        self._ensure_indexes()

    def _ensure_indexes(self) -> None:
        self.users.create_index("account", unique=True)
        self.products.create_index([("sell", ASCENDING), ("created_at", DESCENDING)])
        self.orders.create_index([("user", ASCENDING), ("created_at", DESCENDING)])

    def verify_connection(self) -> None:
        try:
            self.client.admin.command("ping")
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.client.close()

    # -- document mapping -------------------------------------------------

    @staticmethod
    def _cart_to_doc(cart: Iterable[CartItem]) -> List[Dict[str, Any]]:
        return [{"product": ObjectId(i.product_id), "quantity": i.quantity} for i in cart]

    @staticmethod
    def _cart_from_doc(raw: Iterable[Dict[str, Any]]) -> List[CartItem]:
        return [CartItem(str(i["product"]), int(i["quantity"])) for i in raw or []]

    def _user_from_doc(self, doc: Optional[Dict[str, Any]]) -> Optional[User]:
        if doc is None:
            return None
        return User(
            id=str(doc["_id"]),
            account=doc["account"],
            password_hash=doc["password_hash"],
            name=doc.get("name", ""),
            phone=doc.get("phone", ""),
            role=doc.get("role", "user"),
            avatar=doc.get("avatar"),
            blacklist=doc.get("blacklist", False),
            blacklist_reason=doc.get("blacklist_reason", ""),
            cart=self._cart_from_doc(doc.get("cart", [])),
            tokens=list(doc.get("tokens", [])),
            created_at=doc.get("created_at") or utcnow(),
            updated_at=doc.get("updated_at") or doc.get("created_at") or utcnow(),
        )

    @staticmethod
    def _product_from_doc(doc: Optional[Dict[str, Any]]) -> Optional[Product]:
        if doc is None:
            return None
        return Product(
            id=str(doc["_id"]),
            name=doc["name"],
            price=doc["price"],
            images=list(doc.get("images", [])),
            description=doc.get("description", ""),
            category=doc["category"],
            sell=doc.get("sell", True),
            created_at=doc.get("created_at") or utcnow(),
            updated_at=doc.get("updated_at") or doc.get("created_at") or utcnow(),
        )

    def _order_from_doc(self, doc: Dict[str, Any]) -> Order:
        return Order(
            id=str(doc["_id"]),
            user_id=str(doc["user"]),
            cart=self._cart_from_doc(doc.get("cart", [])),
            date=_pickup_from_doc(doc["date"]),
            time=doc["time"],
            name=doc["name"],
            phone=doc["phone"],
            created_at=doc.get("created_at") or utcnow(),
            updated_at=doc.get("updated_at") or doc.get("created_at") or utcnow(),
        )

    @staticmethod
    def _find_page(collection, filt: Dict[str, Any], query: ListQuery):
        cursor = collection.find(filt).sort(
            query.sort_by, ASCENDING if query.sort_order > 0 else DESCENDING
        )
        if query.skip:
            cursor = cursor.skip(query.skip)
        if query.limit is not None:
            cursor = cursor.limit(query.limit)
        return cursor

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
        now = utcnow()
        doc = {
            "account": account,
            "password_hash": password_hash,
            "name": name,
            "phone": phone,
            "role": role,
            "avatar": None,
            "blacklist": False,
            "blacklist_reason": "",
            "cart": [],
            "tokens": [],
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = self.users.insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConstraintViolation(
                "account already registered", {"field": "account"}
            ) from exc
        doc["_id"] = result.inserted_id
        return self._user_from_doc(doc)

    def get_user(self, user_id: str) -> Optional[User]:
        oid = _oid(user_id)
        if oid is None:
            return None
        return self._user_from_doc(self.users.find_one({"_id": oid}))

    def get_user_by_account(self, account: str) -> Optional[User]:
        return self._user_from_doc(self.users.find_one({"account": account}))

    def get_user_by_token(self, user_id: str, token: str) -> Optional[User]:
        oid = _oid(user_id)
        if oid is None:
            return None
        return self._user_from_doc(self.users.find_one({"_id": oid, "tokens": token}))

    def list_users(self, query: ListQuery) -> Page:
        cursor = self._find_page(self.users, _search_filter(query, ("account", "name")), query)
        items = [self._user_from_doc(doc) for doc in cursor]
        return Page(items=items, total=self.users.estimated_document_count())

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        oid = _oid(user_id)
        if oid is None:
            return None
        doc = self.users.find_one_and_update(
            {"_id": oid},
            {"$set": {**fields, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._user_from_doc(doc)

    def delete_user(self, user_id: str) -> bool:
        oid = _oid(user_id)
        if oid is None:
            return False
        return self.users.delete_one({"_id": oid}).deleted_count == 1

    def push_token(self, user_id: str, token: str) -> bool:
        oid = _oid(user_id)
        if oid is None:
            return False
        result = self.users.update_one({"_id": oid}, {"$push": {"tokens": token}})
        return result.matched_count == 1

    def replace_token(self, user_id: str, old_token: str, new_token: str) -> bool:
        """Swap ``old_token`` for ``new_token`` at the same list position."""
        oid = _oid(user_id)
        if oid is None:
            return False
        result = self.users.update_one(
            {"_id": oid, "tokens": old_token}, {"$set": {"tokens.$": new_token}}
        )
        return result.matched_count == 1

    def pull_token(self, user_id: str, token: str) -> bool:
        oid = _oid(user_id)
        if oid is None:
            return False
        result = self.users.update_one(
            {"_id": oid, "tokens": token}, {"$pull": {"tokens": token}}
        )
        return result.matched_count == 1

    def set_cart(self, user_id: str, cart: Iterable[CartItem]) -> Optional[User]:
        oid = _oid(user_id)
        if oid is None:
            return None
        doc = self.users.find_one_and_update(
            {"_id": oid},
            {"$set": {"cart": self._cart_to_doc(cart), "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._user_from_doc(doc)

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
        now = utcnow()
        doc = {
            "name": name,
            "price": price,
            "images": list(images),
            "description": description,
            "category": category,
            "sell": sell,
            "created_at": now,
            "updated_at": now,
        }
        result = self.products.insert_one(doc)
        doc["_id"] = result.inserted_id
        return self._product_from_doc(doc)

    def get_product(self, product_id: str) -> Optional[Product]:
        oid = _oid(product_id)
        if oid is None:
            return None
        return self._product_from_doc(self.products.find_one({"_id": oid}))

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        oids = [oid for oid in {_oid(pid) for pid in product_ids} if oid is not None]
        if not oids:
            return {}
        docs = self.products.find({"_id": {"$in": oids}})
        return {str(doc["_id"]): self._product_from_doc(doc) for doc in docs}

    def list_products(self, query: ListQuery, *, sell_only: bool = False) -> Page:
        scope: Dict[str, Any] = {"sell": True} if sell_only else {}
        filt = {**scope, **_search_filter(query, ("name", "description"))}
        items = [self._product_from_doc(doc) for doc in self._find_page(self.products, filt, query)]
        if sell_only:
            total = self.products.count_documents(scope)
        else:
            total = self.products.estimated_document_count()
        return Page(items=items, total=total)

    def update_product(self, product_id: str, **fields: Any) -> Optional[Product]:
        unknown = set(fields) - _PRODUCT_FIELDS
        if unknown:
            raise ValueError(f"unsupported product fields: {sorted(unknown)}")
        oid = _oid(product_id)
        if oid is None:
            return None
        doc = self.products.find_one_and_update(
            {"_id": oid},
            {"$set": {**fields, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._product_from_doc(doc)

    def delete_product(self, product_id: str) -> bool:
        oid = _oid(product_id)
        if oid is None:
            return False
        return self.products.delete_one({"_id": oid}).deleted_count == 1

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
        now = utcnow()
        doc = {
            "user": ObjectId(user_id),
            "cart": self._cart_to_doc(cart),
            "date": _pickup_to_doc(date),
            "time": time,
            "name": name,
            "phone": phone,
            "created_at": now,
            "updated_at": now,
        }
        result = self.orders.insert_one(doc)
        doc["_id"] = result.inserted_id
        return self._order_from_doc(doc)

    def list_orders(self, query: ListQuery, *, user_id: Optional[str] = None) -> Page:
        filt: Dict[str, Any] = {}
        if user_id is not None:
            oid = _oid(user_id)
            if oid is None:
                return Page(items=[], total=0)
            filt["user"] = oid
        items = [self._order_from_doc(doc) for doc in self._find_page(self.orders, filt, query)]
        return Page(items=items, total=self.orders.count_documents(filt))
