"""
Image Preprocessing Module for the Handwritten Digit Reader
Upscaling, grayscale, contrast/brightness, binarisation and sharpening of
uploaded images before digit segmentation.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import DecodeFailed, UnsupportedSurface

logger = logging.getLogger(__name__)

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)

SHARPEN_SIGMA = 1.0
SHARPEN_AMOUNT = 0.5
SHARPEN_CONTRAST = 1.2
SHARPEN_BRIGHTNESS = 1.05


@dataclass(frozen=True)
class FilterConfig:
    """Filter settings for a single preprocessing run."""

    scale: float = 2.0
    grayscale: bool = True
    contrast: float = 1.5
    brightness: float = 1.1
    sharpen: bool = False
    threshold: Optional[float] = None

    def validate(self) -> None:
        if self.scale <= 0:
            raise ValueError(f"scale must be positive, got {self.scale}")
        if self.contrast < 0:
            raise ValueError(f"contrast must be >= 0, got {self.contrast}")
        if self.brightness < 0:
            raise ValueError(f"brightness must be >= 0, got {self.brightness}")
        if self.threshold is not None and not 0 <= self.threshold <= 255:
            raise ValueError(f"threshold must be within [0, 255], got {self.threshold}")


# Constants tuned for handwritten digits on light paper.
RECOGNITION_FILTER = FilterConfig(
    scale=3,
    grayscale=True,
    contrast=2.5,
    brightness=1.2,
    sharpen=False,
    threshold=140,
)


def as_rgba(image: np.ndarray) -> np.ndarray:
    """Return a uint8 (H, W, 4) copy of a grayscale, RGB or RGBA array."""
    arr = np.asarray(image)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 2:
        alpha = np.full(arr.shape, 255, dtype=np.uint8)
        return np.dstack([arr, arr, arr, alpha])
    if arr.ndim == 3 and arr.shape[2] == 3:
        alpha = np.full(arr.shape[:2], 255, dtype=np.uint8)
        return np.dstack([arr, alpha])
    if arr.ndim == 3 and arr.shape[2] == 4:
        return arr.copy()
    raise ValueError(f"Unsupported raster shape: {arr.shape}")


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (jpeg, png, gif, webp, bmp) into an upright RGBA raster."""
    if not data:
        raise DecodeFailed("Failed to load image: no data")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            # Apply EXIF orientation so phone photos arrive upright
            rgba = ImageOps.exif_transpose(img).convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeFailed(f"Failed to load image: {exc}") from exc
    return np.array(rgba, dtype=np.uint8)


def encode_png(image: np.ndarray) -> bytes:
    """Encode an RGBA or grayscale raster as PNG bytes."""
    arr = np.asarray(image, dtype=np.uint8)
    if arr.ndim == 3 and arr.shape[2] == 4:
        arr = cv2.cvtColor(arr, cv2.COLOR_RGBA2BGRA)
    ok, buffer = cv2.imencode(".png", arr)
    if not ok:
        raise UnsupportedSurface("Could not encode raster as PNG")
    return buffer.tobytes()


class ImagePreprocessor:
    """
    Pixel filter pipeline applied to uploaded images before segmentation
    """

    def resize_image(self, image: np.ndarray, scale: float) -> np.ndarray:
        """Resample onto a surface of floor(dim * scale) using an area or bilinear filter"""
        h, w = image.shape[:2]
        new_w = int(w * scale)
        new_h = int(h * scale)
        if new_w < 1 or new_h < 1:
            raise UnsupportedSurface(f"Cannot allocate a {new_w}x{new_h} surface for a {w}x{h} image at scale {scale}")
        if (new_w, new_h) == (w, h):
            return image.copy()
        interpolation = cv2.INTER_AREA if scale < 1 else cv2.INTER_LINEAR
        try:
            return cv2.resize(image, (new_w, new_h), interpolation=interpolation)
        except (cv2.error, MemoryError) as exc:
            raise UnsupportedSurface(f"Cannot allocate a {new_w}x{new_h} surface: {exc}") from exc

    def convert_to_grayscale(self, rgb: np.ndarray) -> np.ndarray:
        """Replace R, G and B with the BT.601 luma value"""
        gray = rgb @ LUMA_WEIGHTS
        return np.repeat(gray[..., np.newaxis], 3, axis=2)

    def adjust_contrast_brightness(self, rgb: np.ndarray, contrast: float, brightness: float) -> np.ndarray:
        """Contrast around mid-gray, then brightness, clamped to [0, 255]"""
        return np.clip(((rgb - 128.0) * contrast + 128.0) * brightness, 0.0, 255.0)

    def binarize(self, rgb: np.ndarray, threshold: float) -> np.ndarray:
        """Pure white where the channel mean exceeds the threshold, pure black elsewhere"""
        mask = rgb.mean(axis=2) > threshold
        value = np.where(mask, 255.0, 0.0).astype(np.float32)
        return np.repeat(value[..., np.newaxis], 3, axis=2)

    def sharpen(self, rgb: np.ndarray) -> np.ndarray:
        """Unsharp mask followed by a mild contrast/brightness boost"""
        blurred = cv2.GaussianBlur(rgb, (0, 0), SHARPEN_SIGMA)
        sharpened = np.clip(rgb + SHARPEN_AMOUNT * (rgb - blurred), 0.0, 255.0)
        return self.adjust_contrast_brightness(sharpened, SHARPEN_CONTRAST, SHARPEN_BRIGHTNESS)

    def preprocess_pipeline(self, image: np.ndarray, config: FilterConfig) -> np.ndarray:
        """
        Apply the filter pipeline in fixed order: resample, grayscale,
        contrast/brightness, threshold, sharpen.

        Args:
            image: Grayscale, RGB or RGBA uint8 raster
            config: Filter settings

        Returns:
            RGBA uint8 raster of size floor(w * scale) x floor(h * scale)
        """
        config.validate()
        resized = self.resize_image(as_rgba(image), config.scale)

        rgb = resized[..., :3].astype(np.float32)
        if config.grayscale:
            rgb = self.convert_to_grayscale(rgb)
        rgb = self.adjust_contrast_brightness(rgb, config.contrast, config.brightness)
        if config.threshold is not None:
            rgb = self.binarize(rgb, config.threshold)
        if config.sharpen:
            rgb = self.sharpen(rgb)

        out = resized.copy()
        out[..., :3] = np.rint(rgb).astype(np.uint8)
        logger.debug("Preprocessed %dx%d -> %dx%d", image.shape[1], image.shape[0], out.shape[1], out.shape[0])
        return out


def preprocess(image: np.ndarray, config: FilterConfig = FilterConfig()) -> np.ndarray:
    """Run the filter pipeline on a raster and return a new RGBA raster."""
    return ImagePreprocessor().preprocess_pipeline(image, config)
