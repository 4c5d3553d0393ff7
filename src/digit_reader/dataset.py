"""
Reference dataset used to train the digit CNN on first use.

The source is a sprite sheet of MNIST glyphs (one 784-pixel row per sample,
or 28x28 tiles stacked vertically) plus a parallel byte array of labels,
either as integers or one-hot rows of ten bytes.
"""

from __future__ import annotations

import io
import logging
import os
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import requests
from PIL import Image
from tqdm import tqdm

from .config import IMAGE_SIZE, NUM_CLASSES, Settings, get_settings

logger = logging.getLogger(__name__)

MIN_TRAIN_SAMPLES = 1000
PIXELS_PER_IMAGE = IMAGE_SIZE * IMAGE_SIZE


def decode_sprite(data: bytes, num_samples: int) -> np.ndarray:
    """Decode the first ``num_samples`` glyphs of a sprite sheet to float32 (n, 28, 28, 1) in [0, 1]."""
    with Image.open(io.BytesIO(data)) as img:
        pixels = np.array(img.convert("RGB"), dtype=np.uint8)[:, :, 0]
    height, width = pixels.shape
    if width == PIXELS_PER_IMAGE:
        available = height
    elif width == IMAGE_SIZE:
        available = height // IMAGE_SIZE
    else:
        raise ValueError(f"Unrecognised sprite layout: {width}x{height}")
    if available < num_samples:
        raise ValueError(f"Sprite holds {available} samples, {num_samples} requested")
    # Both layouts are row-major runs of 784 pixels per glyph
    glyphs = pixels.reshape(-1)[:num_samples * PIXELS_PER_IMAGE].reshape(num_samples, IMAGE_SIZE, IMAGE_SIZE)
    return (glyphs.astype(np.float32) / 255.0).reshape(num_samples, IMAGE_SIZE, IMAGE_SIZE, 1)


def decode_labels(data: bytes, num_samples: int) -> np.ndarray:
    """Decode integer or one-hot label bytes into an int64 vector of ``num_samples`` class indices."""
    raw = np.frombuffer(data, dtype=np.uint8)
    if raw.size >= num_samples * NUM_CLASSES:
        one_hot = raw[:num_samples * NUM_CLASSES].reshape(num_samples, NUM_CLASSES)
        if one_hot.max() <= 1 and np.all(one_hot.sum(axis=1) == 1):
            return one_hot.argmax(axis=1).astype(np.int64)
    if raw.size < num_samples:
        raise ValueError(f"Label data holds {raw.size} entries, {num_samples} requested")
    labels = raw[:num_samples].astype(np.int64)
    if labels.max() >= NUM_CLASSES:
        raise ValueError("Label data is neither one-hot nor integer class indices")
    return labels


class ReferenceDataset:
    """
    Fetches and decodes the bundled MNIST subset, caching downloads on disk
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.cache_dir = Path(self.settings.dataset_cache_dir)

    def _download(self, url: str, destination: Path) -> None:
        logger.info("Downloading %s", url)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_suffix(destination.suffix + ".part")
        with requests.get(url, stream=True, timeout=self.settings.request_timeout) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0)) or None
            with open(partial, "wb") as handle, tqdm(
                total=total, unit="B", unit_scale=True, desc=destination.name, leave=False
            ) as bar:
                for chunk in response.iter_content(chunk_size=1 << 16):
                    handle.write(chunk)
                    bar.update(len(chunk))
        os.replace(partial, destination)

    def fetch(self, source: str, filename: str) -> bytes:
        """Read a local file, or download a URL once into the cache directory"""
        if not source.startswith(("http://", "https://")):
            return Path(source).read_bytes()
        cached = self.cache_dir / filename
        if not cached.exists():
            self._download(source, cached)
        else:
            logger.debug("Using cached %s", cached)
        return cached.read_bytes()

    def load(self, num_samples: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Load labelled training examples

        Returns:
            tuple: (X float32 (n, 28, 28, 1), y int64 (n,))
        """
        n = int(num_samples or self.settings.train_samples)
        if n < MIN_TRAIN_SAMPLES:
            raise ValueError(f"At least {MIN_TRAIN_SAMPLES} training samples are required, got {n}")
        images = decode_sprite(self.fetch(self.settings.images_url, "mnist_images.png"), n)
        labels = decode_labels(self.fetch(self.settings.labels_url, "mnist_labels_uint8"), n)
        logger.info("Loaded %d reference samples", n)
        return images, labels
