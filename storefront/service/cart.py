from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

from storefront.logging import get_logger
from storefront.service.catalog import require_valid_id
from storefront.service.errors import NotFoundError, ValidationError
from storefront.storage.models import CartItem, Product

logger = get_logger(__name__)


@dataclass
class CartLine:
    item: CartItem
    product: Optional[Product]


class CartService:
    """Mutations on the cart embedded in each user record.

    ``edit`` is a read-modify-write of the whole cart, so edits for the same
    user are serialized with a per-user lock within this process.
    """

    def __init__(self, store) -> None:
        self.store = store
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def user_lock(self, user_id: str) -> threading.Lock:
        """Lock guarding every read-modify-write of one user's cart, checkout included."""
        with self._locks_guard:
            return self._locks[user_id]

    def edit(self, user_id: str, product_id: str, quantity: int) -> int:
        """Apply a signed quantity delta for one product and return the cart total.

        An existing line is adjusted and dropped once it reaches zero or
        below. A new line needs a positive quantity and a product that exists
        and is on sale.
        """
        require_valid_id(product_id)
        with self.user_lock(user_id):
            user = self.store.get_user(user_id)
            if user is None:
                raise NotFoundError("user not found", detail={"id": user_id})
            cart = list(user.cart)
            index = next(
                (i for i, item in enumerate(cart) if item.product_id == product_id), None
            )
            if index is not None:
                new_quantity = cart[index].quantity + quantity
                if new_quantity <= 0:
                    cart.pop(index)
                else:
                    cart[index] = CartItem(product_id, new_quantity)
            else:
                product = self.store.get_product(product_id)
                if product is None or not product.sell:
                    raise NotFoundError("product not found", detail={"id": product_id})
                if quantity <= 0:
                    raise ValidationError(
                        "quantity must be positive for a new cart item",
                        detail={"quantity": quantity},
                    )
                cart.append(CartItem(product_id, quantity))
            updated = self.store.set_cart(user_id, cart)
            if updated is None:
                raise NotFoundError("user not found", detail={"id": user_id})
        logger.info(
            "cart_edited",
            user_id=user_id,
            product_id=product_id,
            delta=quantity,
            cart_quantity=updated.cart_quantity,
        )
        return updated.cart_quantity

    def get(self, user_id: str) -> List[CartLine]:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"id": user_id})
        products = self.store.get_products(item.product_id for item in user.cart)
        return [CartLine(item, products.get(item.product_id)) for item in user.cart]
