"""
Configuration and defaults for the digit reader.

Paths, dataset locations and training hyper-parameters live in a frozen
``Settings`` instance; ``get_settings()`` applies environment overrides.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_MODEL_DIR = Path.home() / ".digit_reader" / "models"
DEFAULT_CACHE_DIR = Path.home() / ".digit_reader" / "cache"

# TensorFlow.js tutorial subset of MNIST: 65000 rows of 784 pixels plus labels.
MNIST_IMAGES_SPRITE_URL = "https://storage.googleapis.com/learnjs-data/model-builder/mnist_images.png"
MNIST_LABELS_URL = "https://storage.googleapis.com/learnjs-data/model-builder/mnist_labels_uint8"

MODEL_KEY = "mnist-model"
NUM_CLASSES = 10
IMAGE_SIZE = 28

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class Settings:
    """Model store location, reference dataset source and training parameters."""

    model_dir: Path = DEFAULT_MODEL_DIR
    model_key: str = MODEL_KEY
    images_url: str = MNIST_IMAGES_SPRITE_URL
    labels_url: str = MNIST_LABELS_URL
    dataset_cache_dir: Path = DEFAULT_CACHE_DIR
    train_samples: int = 5000
    batch_size: int = 512
    validation_split: float = 0.15
    epochs: int = 1
    request_timeout: float = 30.0


def get_settings(**overrides) -> Settings:
    """Default settings with environment overrides, then explicit keyword overrides."""
    settings = Settings()
    env = {}
    if os.environ.get("DIGIT_READER_MODEL_DIR"):
        env["model_dir"] = Path(os.environ["DIGIT_READER_MODEL_DIR"])
    if os.environ.get("DIGIT_READER_CACHE_DIR"):
        env["dataset_cache_dir"] = Path(os.environ["DIGIT_READER_CACHE_DIR"])
    if os.environ.get("DIGIT_READER_IMAGES_URL"):
        env["images_url"] = os.environ["DIGIT_READER_IMAGES_URL"]
    if os.environ.get("DIGIT_READER_LABELS_URL"):
        env["labels_url"] = os.environ["DIGIT_READER_LABELS_URL"]
    if os.environ.get("DIGIT_READER_TRAIN_SAMPLES"):
        env["train_samples"] = int(os.environ["DIGIT_READER_TRAIN_SAMPLES"])
    settings = replace(settings, **env)
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return replace(settings, **overrides) if overrides else settings


def setup_logging(level: int = logging.INFO) -> None:
    """Configure root logging for command-line use."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
