from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageOps

from subocr.core.config import settings
from subocr.services.archive import ArchiveEntry
from subocr.services.storage import (
    StorageProvider,
    crop_key,
    cropped_key,
    normalized_key,
    thumbnail_key,
)

logger = logging.getLogger(__name__)

BACKGROUND_COLOR = (0, 0, 0)


@dataclass(frozen=True)
class FrameGeometry:
    width: int = 1280
    height: int = 720
    aspect_tolerance: float = 0.01
    subtitle_band_ratio: float = 0.32

    @classmethod
    def from_settings(cls) -> "FrameGeometry":
        return cls(
            width=settings.TARGET_WIDTH,
            height=settings.TARGET_HEIGHT,
            aspect_tolerance=settings.ASPECT_TOLERANCE,
            subtitle_band_ratio=settings.SUBTITLE_BAND_RATIO,
        )

    def band_top(self, height: int) -> int:
        roi_height = int(height * self.subtitle_band_ratio)
        return max(0, height - roi_height)


def decode_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image = ImageOps.exif_transpose(image)
    return image.convert("RGB")


def normalize_frame(image: Image.Image, geometry: FrameGeometry) -> Image.Image:
    """
    Bring a frame onto the target canvas. Frames already at the target aspect
    ratio are scaled; anything else is letterboxed so text is never cut off.
    """
    target = (geometry.width, geometry.height)
    width, height = image.size
    if not width or not height:
        return Image.new("RGB", target, BACKGROUND_COLOR)

    aspect = width / height
    target_aspect = geometry.width / geometry.height
    if abs(aspect - target_aspect) < geometry.aspect_tolerance:
        return image.resize(target, resample=Image.LANCZOS)
    return ImageOps.pad(image, target, method=Image.LANCZOS, color=BACKGROUND_COLOR)


def crop_subtitle_band(frame: Image.Image, geometry: FrameGeometry) -> Image.Image:
    """Bottom band of the normalized frame, where subtitles are burnt in."""
    width, height = frame.size
    return frame.crop((0, geometry.band_top(height), width, height))


def remove_subtitle_band(frame: Image.Image, geometry: FrameGeometry) -> Image.Image:
    width, height = frame.size
    return frame.crop((0, 0, width, geometry.band_top(height)))


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def encode_like(image: Image.Image, filename: str) -> bytes:
    """Re-encode keeping the entry's own format (PNG or JPEG)."""
    if filename.lower().endswith(".png"):
        return encode_png(image)
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


def content_type_for(filename: str) -> str:
    return "image/png" if filename.lower().endswith(".png") else "image/jpeg"


def make_thumbnail(image: Image.Image, size: int, quality: int) -> bytes:
    """Fit inside size x size without enlarging, as JPEG."""
    thumb = image.copy()
    thumb.thumbnail((size, size), resample=Image.LANCZOS)
    buffer = io.BytesIO()
    thumb.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


class FrameTransformer:
    """
    Turns one archive image into the stored assets the pipeline needs:
    the subtitle crop (OCR jobs), the subtitle-free frame (subtitle removal
    jobs) and, for archive-eligible names, the normalized frame.
    """

    def __init__(self, storage: StorageProvider, geometry: Optional[FrameGeometry] = None):
        self.storage = storage
        self.geometry = geometry or FrameGeometry.from_settings()

    def transform(self, job_id: str, entry: ArchiveEntry, data: bytes, keep_crop: bool = True,
                  keep_without_subtitles: bool = False) -> Image.Image:
        frame = normalize_frame(decode_image(data), self.geometry)

        if keep_crop:
            crop = crop_subtitle_band(frame, self.geometry)
            self.storage.put_bytes(crop_key(job_id, entry.filename), encode_png(crop), "image/png")

        if keep_without_subtitles and entry.include_in_final_archive:
            clean = remove_subtitle_band(frame, self.geometry)
            self.storage.put_bytes(
                cropped_key(job_id, entry.filename),
                encode_like(clean, entry.filename),
                content_type_for(entry.filename),
            )

        if entry.include_in_final_archive:
            self.storage.put_bytes(
                normalized_key(job_id, entry.filename),
                encode_like(frame, entry.filename),
                content_type_for(entry.filename),
            )

        return frame

    def store_thumbnail(self, job_id: str, frame: Image.Image) -> Optional[str]:
        """
        Best-effort preview. Returns the key, or None when it could not be stored.
        """
        try:
            key = thumbnail_key(job_id)
            self.storage.put_bytes(
                key,
                make_thumbnail(frame, settings.THUMBNAIL_SIZE, settings.THUMBNAIL_QUALITY),
                "image/jpeg",
                cache_control="public, max-age=31536000, immutable",
            )
            return key
        except Exception as e:
            logger.warning(f"Failed to generate thumbnail for job {job_id}: {e}")
            return None
