# sayso/media.py

import logging
import os
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

PROFILE_PICS = "profile_pics"
POST_IMAGES = "post_images"
ALLOWED_FORMATS = ("jpg", "jpeg", "png")


class UnsupportedMedia(ValueError):
    """Raised for uploads that are empty, too large, or not an allowed image type."""


class MediaStore:
    """Stores uploaded images on disk and hands back their public URL."""

    def __init__(self, root: Path, url_prefix: str = "/media", max_bytes: int = 5 * 1024 * 1024):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes
        for folder in (PROFILE_PICS, POST_IMAGES):
            (self.root / folder).mkdir(parents=True, exist_ok=True)
        logger.info(f"MediaStore initialized at {self.root}")

    def save(self, folder: str, filename: str, data: bytes) -> str:
        if folder not in (PROFILE_PICS, POST_IMAGES):
            raise UnsupportedMedia(f"Unknown media folder '{folder}'")

        # basename strips any client-supplied directories
        ext = os.path.splitext(os.path.basename(filename or ""))[1].lower().lstrip(".")
        if ext not in ALLOWED_FORMATS:
            raise UnsupportedMedia(f"Allowed formats: {', '.join(ALLOWED_FORMATS)}")
        if not data:
            raise UnsupportedMedia("Empty upload")
        if len(data) > self.max_bytes:
            raise UnsupportedMedia(f"File too large: {len(data)} bytes")

        stored_name = f"{uuid.uuid4().hex}.{ext}"
        (self.root / folder / stored_name).write_bytes(data)
        logger.info(f"Saved {folder}/{stored_name} ({len(data)} bytes)")
        return f"{self.url_prefix}/{folder}/{stored_name}"
