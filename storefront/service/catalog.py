from __future__ import annotations

from typing import Any, Iterable, List, Optional

from storefront.logging import get_logger
from storefront.service.errors import NotFoundError, ValidationError
from storefront.service.uploads import ImageFile, UploadService
from storefront.storage.common import ListQuery, is_valid_id
from storefront.storage.models import Category, Page, Product

logger = get_logger(__name__)


def require_valid_id(value: str) -> str:
    if not is_valid_id(value):
        raise ValidationError("invalid id", detail={"id": value})
    return value


class CatalogService:
    """Product CRUD plus the public and admin listings."""

    def __init__(self, store, uploads: UploadService) -> None:
        self.store = store
        self.uploads = uploads

    async def create_product(
        self,
        *,
        name: str,
        price: float,
        description: str,
        category: Category,
        sell: bool,
        images: Iterable[ImageFile],
    ) -> Product:
        files = list(images)
        if not files:
            raise ValidationError("at least one product image is required")
        urls = await self.uploads.upload_many(files)
        product = self.store.create_product(
            name=name,
            price=price,
            images=urls,
            description=description,
            category=Category(category).value,
            sell=sell,
        )
        logger.info("product_created", product_id=product.id, images=len(urls))
        return product

    def list_for_sale(self, query: ListQuery) -> Page:
        return self.store.list_products(query, sell_only=True)

    def list_all(self, query: ListQuery) -> Page:
        return self.store.list_products(query, sell_only=False)

    def get_product(self, product_id: str) -> Product:
        require_valid_id(product_id)
        product = self.store.get_product(product_id)
        if product is None:
            raise NotFoundError("product not found", detail={"id": product_id})
        return product

    async def update_product(
        self,
        product_id: str,
        *,
        images: Optional[Iterable[ImageFile]] = None,
        **fields: Any,
    ) -> Product:
        """Apply the non-None ``fields``; images are replaced only if files were sent."""
        require_valid_id(product_id)
        changes = {key: value for key, value in fields.items() if value is not None}
        if "category" in changes:
            changes["category"] = Category(changes["category"]).value
        files: List[ImageFile] = list(images or [])
        if files:
            changes["images"] = await self.uploads.upload_many(files)
        if not changes:
            return self.get_product(product_id)
        product = self.store.update_product(product_id, **changes)
        if product is None:
            raise NotFoundError("product not found", detail={"id": product_id})
        logger.info("product_updated", product_id=product_id, fields=sorted(changes))
        return product

    def delete_product(self, product_id: str) -> None:
        require_valid_id(product_id)
        if not self.store.delete_product(product_id):
            raise NotFoundError("product not found", detail={"id": product_id})
        logger.info("product_deleted", product_id=product_id)
