"""
Digit classifier service.

Owns the process-wide cached model: loads a persisted model from the model
store or trains a new one (at most once, shared by concurrent callers), and
maps glyph patches to digit predictions.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import cv2
import numpy as np

from .config import IMAGE_SIZE, NUM_CLASSES, Settings, get_settings
from .errors import InferenceFailed, ModelUnavailable
from .models import MODEL_SUFFIX, ModelTrainer, model_from_bytes, model_to_bytes

logger = logging.getLogger(__name__)

UNRECOGNIZED = -1


class ModelStore:
    """Key-value blob store for serialised models."""

    def load(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def save(self, key: str, data: bytes) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class LocalModelStore(ModelStore):
    """Stores each model as ``<directory>/<key>.keras``."""

    def __init__(self, directory: os.PathLike | str):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}{MODEL_SUFFIX}"

    def load(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def save(self, key: str, data: bytes) -> bool:
        path = self.path_for(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            partial = path.with_suffix(path.suffix + ".part")
            partial.write_bytes(data)
            os.replace(partial, path)
        except OSError as exc:
            logger.warning("Could not save model to %s: %s", path, exc)
            return False
        return True

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)


class MemoryModelStore(ModelStore):
    """In-process store; durable for the lifetime of the process only."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}

    def load(self, key: str) -> Optional[bytes]:
        return self._blobs.get(key)

    def save(self, key: str, data: bytes) -> bool:
        self._blobs[key] = bytes(data)
        return True

    def delete(self, key: str) -> None:
        self._blobs.pop(key, None)


class ModelState(enum.Enum):
    ABSENT = "absent"
    INITIALIZING = "initializing"
    READY = "ready"


@dataclass(frozen=True)
class ModelHandle:
    """A ready, read-only model and where it came from ('store' or 'trained')."""

    model: Any
    source: str
    key: str


@dataclass
class DigitPrediction:
    digit: int
    confidence: float
    probabilities: Tuple[float, ...]

    @property
    def character(self) -> str:
        return str(self.digit) if 0 <= self.digit <= 9 else "?"


class ModelCache:
    """
    Lifecycle owner for the digit model: absent -> initializing -> ready,
    and back to absent on dispose.

    ``ensure_model_ready`` is single-flight: concurrent callers wait on the
    same in-flight attempt and receive the same handle.
    """

    def __init__(self, store: Optional[ModelStore] = None, trainer: Optional[ModelTrainer] = None,
                 settings: Optional[Settings] = None, key: Optional[str] = None,
                 serialize: Callable[[Any], bytes] = model_to_bytes,
                 deserialize: Callable[[bytes], Any] = model_from_bytes):
        self.settings = settings or get_settings()
        self.store = store if store is not None else LocalModelStore(self.settings.model_dir)
        self.trainer = trainer if trainer is not None else ModelTrainer(self.settings)
        self.key = key or self.settings.model_key
        self._serialize = serialize
        self._deserialize = deserialize
        self._lock = threading.Lock()
        self._handle: Optional[ModelHandle] = None
        self._inflight: Optional[Future] = None
        self._state = ModelState.ABSENT

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    @property
    def is_ready(self) -> bool:
        return self._handle is not None

    def ensure_model_ready(self) -> ModelHandle:
        """Return the cached handle, loading or training the model on first use."""
        with self._lock:
            if self._handle is not None:
                return self._handle
            future = self._inflight
            leader = future is None
            if leader:
                future = Future()
                self._inflight = future
                self._state = ModelState.INITIALIZING
        if not leader:
            logger.debug("Waiting for in-flight model initialisation")
            return future.result()

        try:
            handle = self._load_or_train()
        except Exception as exc:
            error = exc if isinstance(exc, ModelUnavailable) else ModelUnavailable(
                f"Failed to initialize MNIST model: {exc}")
            logger.error("%s", error)
            with self._lock:
                self._inflight = None
                self._state = ModelState.ABSENT
            future.set_exception(error)
            if error is exc:
                raise
            raise error from exc
        except BaseException:
            # Interrupted (Ctrl-C, SystemExit): release waiters, then propagate
            logger.warning("Model initialisation interrupted")
            with self._lock:
                self._inflight = None
                self._state = ModelState.ABSENT
            future.set_exception(ModelUnavailable("Model initialisation was interrupted"))
            raise

        with self._lock:
            self._handle = handle
            self._inflight = None
            self._state = ModelState.READY
        future.set_result(handle)
        return handle

    def _load_or_train(self) -> ModelHandle:
        data = None
        try:
            data = self.store.load(self.key)
        except Exception as exc:
            logger.warning("Could not read model %r from store: %s", self.key, exc)

        if data is not None:
            try:
                model = self._deserialize(data)
                logger.info("MNIST model loaded from model store")
                return ModelHandle(model=model, source="store", key=self.key)
            except Exception as exc:
                logger.warning("Stored model %r is unreadable, retraining: %s", self.key, exc)
        else:
            logger.info("No cached model found, creating and training new model...")

        model = self.trainer.train()
        try:
            saved = self.store.save(self.key, self._serialize(model))
        except Exception as exc:
            logger.warning("Could not persist trained model %r: %s", self.key, exc)
            saved = False
        if saved:
            logger.info("Model trained and saved to model store")
        return ModelHandle(model=model, source="trained", key=self.key)

    def dispose(self) -> None:
        """Release the cached model; the next ensure_model_ready() loads or trains again."""
        with self._lock:
            if self._handle is not None:
                logger.info("Disposing cached MNIST model")
            self._handle = None
            if self._inflight is None:
                self._state = ModelState.ABSENT


def normalize_patch(patch: np.ndarray) -> np.ndarray:
    """Resize to 28x28, reduce to one channel in [0, 1], and invert light backgrounds"""
    arr = np.asarray(patch)
    if arr.ndim == 3:
        if arr.shape[2] == 4:
            arr = cv2.cvtColor(arr.astype(np.uint8), cv2.COLOR_RGBA2GRAY)
        elif arr.shape[2] == 3:
            arr = cv2.cvtColor(arr.astype(np.uint8), cv2.COLOR_RGB2GRAY)
        else:
            arr = arr[:, :, 0]
    gray = arr.astype(np.float32)
    resized = cv2.resize(gray, (IMAGE_SIZE, IMAGE_SIZE), interpolation=cv2.INTER_LINEAR)
    normalized = np.clip(resized / 255.0, 0.0, 1.0)
    # MNIST glyphs are bright on dark
    if normalized.mean() > 0.5:
        normalized = 1.0 - normalized
    return normalized.reshape(IMAGE_SIZE, IMAGE_SIZE, 1).astype(np.float32)


def predict_digit(model: Any, patch: np.ndarray) -> DigitPrediction:
    """Run one forward pass; never mutates the model."""
    try:
        batch = normalize_patch(patch)[np.newaxis, ...]
        output = model.predict(batch, verbose=0)
    except Exception as exc:
        raise InferenceFailed(f"Forward pass failed: {exc}") from exc

    probabilities = np.asarray(output, dtype=np.float64).reshape(-1)
    if probabilities.size != NUM_CLASSES or not np.all(np.isfinite(probabilities)):
        raise InferenceFailed(f"Model returned malformed probabilities of shape {np.shape(output)}")
    total = probabilities.sum()
    if total <= 0:
        raise InferenceFailed("Model returned an empty probability distribution")
    probabilities = probabilities / total
    digit = int(np.argmax(probabilities))
    confidence = float(np.clip(probabilities[digit] * 100.0, 0.0, 100.0))
    return DigitPrediction(digit=digit, confidence=confidence,
                           probabilities=tuple(float(p) for p in probabilities))


class DigitClassifier:
    """
    Classifies glyph patches with the model held by a ModelCache.

    Never initialises the model itself: callers run
    ``cache.ensure_model_ready()`` first, otherwise ModelUnavailable is raised.
    """

    def __init__(self, cache: ModelCache):
        self.cache = cache

    def classify(self, patch: np.ndarray) -> DigitPrediction:
        handle = self.cache.handle
        if handle is None:
            raise ModelUnavailable("MNIST model is not loaded; call ensure_model_ready() first")
        return predict_digit(handle.model, patch)
