"""WebP transcoding with quality decisions based on prior processing."""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from PIL import Image, ImageOps

from ..services.events import emit_task_event
from ..services.object_store import ObjectHead
from ..services.settings import WebPConfig
from .errors import ConversionFailure


LOGGER = logging.getLogger(__name__)

WEBP_CONTENT_TYPE = "image/webp"

PASSTHROUGH = "passthrough"
CONVERTED = "converted"
RECOMPRESSED = "recompressed"
REPROCESSED = "reprocessed"
STAGED = "staged"

QUALITY_METADATA_KEY = "webp-quality"
PROCESSING_METADATA_KEY = "processing-type"

_DECODE_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)


def _parse_quality(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        quality = int(float(str(value).strip()))
    except ValueError:
        return None
    return quality if 1 <= quality <= 100 else None


@dataclass(frozen=True)
class PriorImageMeta:
    """What earlier processing recorded about a staged object."""

    content_type: Optional[str] = None
    recorded_quality: Optional[int] = None
    processing_type: Optional[str] = None

    @classmethod
    def from_metadata(
        cls, metadata: Optional[Mapping[str, str]], *, content_type: Optional[str] = None
    ) -> "PriorImageMeta":
        lowered = {str(key).lower(): value for key, value in (metadata or {}).items()}
        quality = _parse_quality(lowered.get(QUALITY_METADATA_KEY) or lowered.get("quality"))
        return cls(
            content_type=content_type,
            recorded_quality=quality,
            processing_type=lowered.get(PROCESSING_METADATA_KEY),
        )

    @classmethod
    def from_head(cls, head: Optional[ObjectHead]) -> "PriorImageMeta":
        if head is None:
            return cls()
        return cls.from_metadata(head.metadata, content_type=head.content_type)


@dataclass(frozen=True)
class OptimizedImage:
    data: bytes
    width: int
    height: int
    original_size: int
    saved_bytes: int
    compression_ratio: int
    action: str
    quality: Optional[int]
    content_type: str = WEBP_CONTENT_TYPE

    @property
    def size(self) -> int:
        return len(self.data)


def compression_stats(original_size: int, final_size: int) -> Tuple[int, int]:
    """Return ``(saved_bytes, ratio)`` with ratio clamped to ``[0, 100]``."""

    saved = max(0, int(original_size) - int(final_size))
    if original_size <= 0:
        return saved, 0
    ratio = int(round(100.0 * saved / original_size))
    return saved, min(100, max(0, ratio))


class ImageOptimizer:
    """Decide how to treat an image and produce WebP bytes."""

    def __init__(self, config: Optional[WebPConfig] = None) -> None:
        self._config = config or WebPConfig()

    @property
    def config(self) -> WebPConfig:
        return self._config

    def decide(self, image_format: Optional[str], prior: PriorImageMeta, *, force: bool) -> Tuple[str, Optional[int]]:
        """Return ``(action, quality)`` for an image of *image_format*."""

        config = self._config
        if force:
            return REPROCESSED, config.publish_quality
        if (image_format or "").upper() != "WEBP":
            return CONVERTED, config.publish_quality
        recorded = prior.recorded_quality
        if recorded is None:
            return CONVERTED, config.publish_quality
        if recorded > config.recompress_threshold:
            return RECOMPRESSED, max(10, config.publish_quality - 5)
        return PASSTHROUGH, recorded

    def optimize(
        self,
        data: bytes,
        prior: Optional[PriorImageMeta] = None,
        *,
        force: bool = False,
        key: Optional[str] = None,
    ) -> OptimizedImage:
        prior = prior or PriorImageMeta()
        start = time.perf_counter()
        image_format, width, height = self._inspect(data, key)
        action, quality = self.decide(image_format, prior, force=force)

        if action == PASSTHROUGH:
            result = OptimizedImage(
                data=data,
                width=width,
                height=height,
                original_size=len(data),
                saved_bytes=0,
                compression_ratio=0,
                action=PASSTHROUGH,
                quality=quality,
            )
        else:
            result = self._encode(data, int(quality or self._config.publish_quality), action, key)

        emit_task_event(
            "optimize",
            f"Image {result.action}",
            payload={
                "key": key,
                "source_format": image_format,
                "quality": result.quality,
                "original_size": result.original_size,
                "final_size": result.size,
                "compression_ratio": result.compression_ratio,
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
            level=logging.DEBUG,
        )
        return result

    def optimize_upload(self, data: bytes, *, key: Optional[str] = None) -> OptimizedImage:
        """Encode a fresh upload at ``upload_quality`` for staging."""

        self._inspect(data, key)
        return self._encode(data, self._config.upload_quality, STAGED, key)

    @staticmethod
    def _inspect(data: bytes, key: Optional[str]) -> Tuple[Optional[str], int, int]:
        try:
            with Image.open(io.BytesIO(data)) as image:
                return image.format, int(image.width), int(image.height)
        except _DECODE_ERRORS as error:
            raise ConversionFailure(f"Unable to read image: {error}", key=key) from error

    def _encode(self, data: bytes, quality: int, action: str, key: Optional[str]) -> OptimizedImage:
        config = self._config
        try:
            with Image.open(io.BytesIO(data)) as source:
                image = ImageOps.exif_transpose(source)
                if image.mode not in ("RGB", "RGBA"):
                    has_alpha = image.mode in ("LA", "RGBa", "La") or "transparency" in image.info
                    image = image.convert("RGBA" if has_alpha else "RGB")
                if image.width > config.max_width:
                    height = max(1, int(round(image.height * config.max_width / image.width)))
                    image = image.resize((config.max_width, height), Image.Resampling.LANCZOS)
                buffer = io.BytesIO()
                image.save(buffer, format="WEBP", quality=int(quality), method=int(config.effort))
                width, height = image.width, image.height
        except _DECODE_ERRORS as error:
            raise ConversionFailure(f"Unable to convert image: {error}", key=key) from error

        encoded = buffer.getvalue()
        saved, ratio = compression_stats(len(data), len(encoded))
        LOGGER.debug(
            "Encoded %s as WebP q%s (%s -> %s bytes, %s%%)", key or "image", quality, len(data), len(encoded), ratio
        )
        return OptimizedImage(
            data=encoded,
            width=width,
            height=height,
            original_size=len(data),
            saved_bytes=saved,
            compression_ratio=ratio,
            action=action,
            quality=int(quality),
        )


__all__ = [
    "CONVERTED",
    "ImageOptimizer",
    "OptimizedImage",
    "PASSTHROUGH",
    "PROCESSING_METADATA_KEY",
    "PriorImageMeta",
    "QUALITY_METADATA_KEY",
    "RECOMPRESSED",
    "REPROCESSED",
    "STAGED",
    "WEBP_CONTENT_TYPE",
    "compression_stats",
]
