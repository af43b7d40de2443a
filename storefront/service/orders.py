from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

from storefront.logging import get_logger
from storefront.service.cart import CartLine, CartService
from storefront.service.errors import NotFoundError, ValidationError
from storefront.storage.common import ListQuery
from storefront.storage.models import Order, Page, User

logger = get_logger(__name__)


@dataclass
class OrderView:
    order: Order
    lines: List[CartLine]
    user: Optional[User] = None


class OrderService:
    """Checkout from the cart and order history."""

    def __init__(self, store, cart: CartService) -> None:
        self.store = store
        self.cart = cart

    def place_order(
        self, user_id: str, *, date: date, time: str, name: str, phone: str
    ) -> OrderView:
        # cart edits for this user wait until the order is stored and the cart cleared
        with self.cart.user_lock(user_id):
            user = self.store.get_user(user_id)
            if user is None:
                raise NotFoundError("user not found", detail={"id": user_id})
            if not user.cart:
                raise ValidationError("cart cannot be empty")
            products = self.store.get_products(item.product_id for item in user.cart)
            unavailable = [
                item.product_id
                for item in user.cart
                if item.product_id not in products or not products[item.product_id].sell
            ]
            if unavailable:
                raise ValidationError(
                    "cart contains unavailable products", detail={"products": unavailable}
                )
            order = self.store.create_order(
                user_id, user.cart, date=date, time=time, name=name, phone=phone
            )
            self.store.set_cart(user_id, [])
        logger.info(
            "order_placed", order_id=order.id, user_id=user_id, lines=len(order.cart)
        )
        return self._populate([order])[0]

    def list_for_user(self, user_id: str, query: ListQuery) -> Page:
        page = self.store.list_orders(query, user_id=user_id)
        return Page(items=self._populate(page.items), total=page.total)

    def list_all(self, query: ListQuery) -> Page:
        page = self.store.list_orders(query)
        views = self._populate(page.items)
        owners: Dict[str, Optional[User]] = {}
        for view in views:
            if view.order.user_id not in owners:
                owners[view.order.user_id] = self.store.get_user(view.order.user_id)
            view.user = owners[view.order.user_id]
        return Page(items=views, total=page.total)

    def _populate(self, orders: List[Order]) -> List[OrderView]:
        products = self.store.get_products(
            item.product_id for order in orders for item in order.cart
        )
        return [
            OrderView(
                order=order,
                lines=[CartLine(item, products.get(item.product_id)) for item in order.cart],
            )
            for order in orders
        ]
