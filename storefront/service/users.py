from __future__ import annotations

from typing import Any, Optional

from storefront.logging import get_logger
from storefront.service.auth import AuthService
from storefront.service.catalog import require_valid_id
from storefront.service.errors import NotFoundError
from storefront.service.uploads import ImageFile, UploadService
from storefront.storage.common import ListQuery
from storefront.storage.models import Page, Role, User

logger = get_logger(__name__)


class UserService:
    def __init__(self, store, auth: AuthService, uploads: UploadService) -> None:
        self.store = store
        self.auth = auth
        self.uploads = uploads

    def get_user(self, user_id: str) -> User:
        require_valid_id(user_id)
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"id": user_id})
        return user

    def _apply(self, user_id: str, changes: dict[str, Any]) -> User:
        if not changes:
            return self.get_user(user_id)
        user = self.store.update_user(user_id, **changes)
        if user is None:
            raise NotFoundError("user not found", detail={"id": user_id})
        return user

    def update_self(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        if phone is not None:
            changes["phone"] = phone
        if password is not None:
            changes["password_hash"] = self.auth.hash_password(password)
        user = self._apply(user_id, changes)
        logger.info("user_self_updated", user_id=user_id, fields=sorted(changes))
        return user

    async def set_avatar(self, user_id: str, image: ImageFile) -> User:
        url = await self.uploads.upload_one(image)
        return self._apply(user_id, {"avatar": url})

    def list_users(self, query: ListQuery) -> Page:
        return self.store.list_users(query)

    def admin_update(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: Optional[Role] = None,
        blacklist: Optional[bool] = None,
        blacklist_reason: Optional[str] = None,
    ) -> User:
        require_valid_id(user_id)
        changes: dict[str, Any] = {
            key: value
            for key, value in {
                "name": name,
                "phone": phone,
                "role": Role(role).value if role is not None else None,
                "blacklist": blacklist,
                "blacklist_reason": blacklist_reason,
            }.items()
            if value is not None
        }
        user = self._apply(user_id, changes)
        logger.info("user_admin_updated", user_id=user_id, fields=sorted(changes))
        return user

    def delete_user(self, user_id: str) -> None:
        require_valid_id(user_id)
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"id": user_id})
        logger.info("user_deleted", user_id=user_id)
