from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader

from storefront.config import Settings
from storefront.logging import get_logger
from storefront.service.errors import ServerError, ValidationError

logger = get_logger(__name__)

ALLOWED_IMAGE_TYPES = frozenset({"image/png", "image/jpg", "image/jpeg"})


@dataclass
class ImageFile:
    filename: str
    content_type: Optional[str]
    data: bytes


class ImageUploader(Protocol):
    async def upload(self, image: ImageFile) -> str: ...


class CloudinaryUploader:
    """Pushes images to Cloudinary and returns their HTTPS URL."""

    def __init__(self, settings: Settings) -> None:
        self.folder = settings.cloudinary_folder
        cloudinary.config(
            cloud_name=settings.cloudinary_name,
            api_key=settings.cloudinary_key,
            api_secret=settings.cloudinary_secret,
            secure=True,
        )

    async def upload(self, image: ImageFile) -> str:
        try:
            result = await asyncio.to_thread(
                cloudinary.uploader.upload,
                image.data,
                folder=self.folder,
                resource_type="image",
            )
        except cloudinary.exceptions.Error as exc:
            logger.error("cloudinary_upload_failed", filename=image.filename, error=str(exc))
            raise ServerError("image upload failed") from exc
        return result["secure_url"]


@dataclass
class MemoryUploader:
    """Test double that keeps uploaded bytes keyed by their fake URL."""

    base_url: str = "https://images.example.test"
    stored: Dict[str, bytes] = field(default_factory=dict)

    async def upload(self, image: ImageFile) -> str:
        digest = hashlib.sha256(image.data).hexdigest()[:16]
        url = f"{self.base_url}/{digest}/{image.filename or 'upload'}"
        self.stored[url] = image.data
        return url


class UploadService:
    """Validates image type and size before handing files to the uploader."""

    def __init__(self, uploader: ImageUploader, *, max_bytes: int) -> None:
        self.uploader = uploader
        self.max_bytes = max_bytes

    def validate(self, image: ImageFile) -> None:
        if (image.content_type or "").lower() not in ALLOWED_IMAGE_TYPES:
            raise ValidationError(
                "invalid file format",
                detail={"filename": image.filename, "content_type": image.content_type},
            )
        if len(image.data) > self.max_bytes:
            raise ValidationError(
                "file too large",
                detail={"filename": image.filename, "max_bytes": self.max_bytes},
            )

    async def upload_one(self, image: ImageFile) -> str:
        self.validate(image)
        return await self.uploader.upload(image)

    async def upload_many(self, images: Iterable[ImageFile]) -> List[str]:
        batch = list(images)
        # reject the whole batch before anything reaches the image host
        for image in batch:
            self.validate(image)
        return [await self.uploader.upload(image) for image in batch]


def build_uploader(settings: Settings) -> ImageUploader:
    if settings.cloudinary_configured:
        return CloudinaryUploader(settings)
    if settings.test_mode or settings.use_memory_store:
        logger.warning("cloudinary_not_configured", fallback="memory")
        return MemoryUploader()
    raise RuntimeError(
        "CLOUDINARY_NAME, CLOUDINARY_KEY and CLOUDINARY_SECRET are required "
        "unless TEST_MODE or USE_MEMORY_STORE is set"
    )
