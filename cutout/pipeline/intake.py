"""
Intake: Upload Validation and Compression

Uploads are checked (size, type) before anything else, then compressed so
every transform attempt works on an image that fits the configured bounds.
"""

import io
import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field

from cutout.core.exceptions import CompressionError, ValidationError
from cutout.core.logging import get_logger
from cutout.modules.imagery.models import RawImage

logger = get_logger(__name__)

MIME_BY_FORMAT = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}
FORMAT_BY_MIME = {mime: fmt for fmt, mime in MIME_BY_FORMAT.items()}

# Formats that take a lossy quality setting
LOSSY_FORMATS = {"JPEG", "WEBP"}
MIN_QUALITY = 10
QUALITY_STEP = 10


class CompressionLimits(BaseModel):
    """Bounds an intake image must fit after compression."""
    max_bytes: int = Field(gt=0)
    max_width: int = Field(gt=0)
    max_height: int = Field(gt=0)
    quality: float = Field(default=0.8, gt=0.0, le=1.0)

    @classmethod
    def from_settings(cls, settings) -> "CompressionLimits":
        return cls(
            max_bytes=settings.UPLOAD_MAX_BYTES,
            max_width=settings.UPLOAD_MAX_WIDTH,
            max_height=settings.UPLOAD_MAX_HEIGHT,
            quality=settings.UPLOAD_QUALITY,
        )


def sniff_content_type(data: bytes) -> Optional[str]:
    """Detect the MIME type from the image header, None if unreadable."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return MIME_BY_FORMAT.get(image.format or "")
    except (UnidentifiedImageError, OSError):
        return None


def validate_upload(image: RawImage, settings) -> str:
    """
    Check an upload against the intake rules.

    Returns:
        The content type of the upload

    Raises:
        ValidationError: empty, too large, or not an allowed image type
    """
    if not image.data:
        raise ValidationError(f"{image.name}: file is empty")

    if len(image.data) > settings.UPLOAD_MAX_BYTES:
        raise ValidationError(
            f"{image.name}: file is {len(image.data)} bytes, "
            f"limit is {settings.UPLOAD_MAX_BYTES}",
            details={"size": len(image.data), "limit": settings.UPLOAD_MAX_BYTES}
        )

    content_type = image.content_type or sniff_content_type(image.data)
    if content_type not in settings.allowed_upload_types:
        raise ValidationError(
            f"{image.name}: unsupported type {content_type or 'unknown'}",
            details={"content_type": content_type}
        )

    return content_type


class ImageCompressor(ABC):
    """Intake compression collaborator."""

    @abstractmethod
    async def compress(
        self,
        raw_bytes: bytes,
        limits: CompressionLimits,
        content_type: Optional[str] = None
    ) -> bytes:
        """Return a version of the image within `limits` or raise CompressionError."""
        pass


class PillowCompressor(ImageCompressor):
    """Downscale and re-encode with Pillow, off the event loop."""

    async def compress(
        self,
        raw_bytes: bytes,
        limits: CompressionLimits,
        content_type: Optional[str] = None
    ) -> bytes:
        return await asyncio.to_thread(self._compress_sync, raw_bytes, limits, content_type)

    def _compress_sync(
        self,
        raw_bytes: bytes,
        limits: CompressionLimits,
        content_type: Optional[str]
    ) -> bytes:
        try:
            image = Image.open(io.BytesIO(raw_bytes))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise CompressionError(f"Cannot decode image: {e}")

        fmt = FORMAT_BY_MIME.get(content_type or "") or image.format or "PNG"
        original_size = image.size

        if image.width > limits.max_width or image.height > limits.max_height:
            image.thumbnail((limits.max_width, limits.max_height), Image.Resampling.LANCZOS)

        if fmt == "JPEG" and image.mode not in ("RGB", "L"):
            image = image.convert("RGB")

        quality = int(round(limits.quality * 100))
        while True:
            output_bytes = self._encode(image, fmt, quality)
            if len(output_bytes) <= limits.max_bytes:
                break
            if fmt not in LOSSY_FORMATS or quality <= MIN_QUALITY:
                raise CompressionError(
                    f"Cannot compress image below {limits.max_bytes} bytes",
                    details={"size": len(output_bytes), "limit": limits.max_bytes}
                )
            quality = max(MIN_QUALITY, quality - QUALITY_STEP)

        logger.debug(
            "image_compressed",
            format=fmt,
            original_dimensions=original_size,
            dimensions=image.size,
            input_size=len(raw_bytes),
            output_size=len(output_bytes),
            quality=quality if fmt in LOSSY_FORMATS else None
        )
        return output_bytes

    @staticmethod
    def _encode(image: Image.Image, fmt: str, quality: int) -> bytes:
        buffer = io.BytesIO()
        if fmt in LOSSY_FORMATS:
            image.save(buffer, format=fmt, quality=quality)
        else:
            image.save(buffer, format=fmt, optimize=True)
        return buffer.getvalue()
