"""
Upload validation for images submitted for recognition.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from typing import Optional

VALID_IMAGE_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB

# mimetypes lacks these on some platforms
_EXTRA_TYPES = {
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".jpg": "image/jpeg",
}


@dataclass(frozen=True)
class UploadValidation:
    valid: bool
    error: Optional[str] = None


def guess_content_type(filename: str) -> Optional[str]:
    suffix = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if suffix in _EXTRA_TYPES:
        return _EXTRA_TYPES[suffix]
    content_type, _ = mimetypes.guess_type(filename)
    return content_type


def validate_image_file(filename: str, size: int, content_type: Optional[str] = None) -> UploadValidation:
    """Check the file kind and size of an upload; rejections carry a user-facing message."""
    kind = (content_type or guess_content_type(filename) or "").lower()
    if kind not in VALID_IMAGE_TYPES:
        return UploadValidation(False, "Please select a valid image file (JPG, PNG, GIF, WEBP, or BMP)")
    if size > MAX_FILE_SIZE:
        return UploadValidation(False, "File size must be less than 10MB")
    return UploadValidation(True)
