"""
CNN model for handwritten digit recognition.

Builds the small two-block MNIST network, trains it for a single pass over
the reference dataset and converts trained models to and from bytes for the
model store.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from typing import Optional, Tuple

import numpy as np
from sklearn.metrics import accuracy_score
from sklearn.model_selection import train_test_split

from .config import IMAGE_SIZE, NUM_CLASSES, Settings, get_settings
from .dataset import ReferenceDataset

# TensorFlow is optional at import time so preprocessing and segmentation
# work where it is unavailable; model functions raise a clear error.
try:
    import tensorflow as tf  # type: ignore
    from tensorflow import keras  # type: ignore
    from tensorflow.keras import layers  # type: ignore
    _TF_AVAILABLE = True
    _TF_IMPORT_ERROR = None
except Exception as _e:  # pragma: no cover - environment dependent
    tf = None  # type: ignore
    keras = None  # type: ignore
    layers = None  # type: ignore
    _TF_AVAILABLE = False
    _TF_IMPORT_ERROR = _e

logger = logging.getLogger(__name__)

MODEL_SUFFIX = ".keras"


def _ensure_tf() -> None:
    if not _TF_AVAILABLE:
        raise ImportError(
            "TensorFlow is required for the digit CNN but is not available. "
            f"Original import error: {_TF_IMPORT_ERROR}"
        )


def build_model(input_shape: Tuple[int, int, int] = (IMAGE_SIZE, IMAGE_SIZE, 1),
                num_classes: int = NUM_CLASSES):
    """conv(8, 5x5) -> pool -> conv(16, 5x5) -> pool -> flatten -> dense softmax"""
    _ensure_tf()
    model = keras.Sequential([
        layers.Input(shape=input_shape),
        layers.Conv2D(8, (5, 5), strides=1, activation='relu', kernel_initializer='variance_scaling'),
        layers.MaxPooling2D(pool_size=(2, 2), strides=(2, 2)),
        layers.Conv2D(16, (5, 5), strides=1, activation='relu', kernel_initializer='variance_scaling'),
        layers.MaxPooling2D(pool_size=(2, 2), strides=(2, 2)),
        layers.Flatten(),
        layers.Dense(num_classes, activation='softmax', kernel_initializer='variance_scaling'),
    ], name="mnist_cnn")
    model.compile(
        optimizer=keras.optimizers.Adam(),
        loss='categorical_crossentropy',
        metrics=['accuracy'],
    )
    return model


def train_model(model, X: np.ndarray, y: np.ndarray, settings: Optional[Settings] = None):
    """Fit for the configured number of passes with a stratified validation holdout"""
    _ensure_tf()
    settings = settings or get_settings()
    y_onehot = keras.utils.to_categorical(y, NUM_CLASSES)
    X_train, X_val, y_train, y_val = train_test_split(
        X, y_onehot, test_size=settings.validation_split, random_state=42, stratify=y
    )
    batch_logger = keras.callbacks.LambdaCallback(
        on_train_batch_end=lambda batch, logs: logger.debug(
            "Batch %d: loss = %.4f", batch, (logs or {}).get("loss", float("nan"))
        )
    )
    history = model.fit(
        X_train, y_train,
        batch_size=settings.batch_size,
        epochs=settings.epochs,
        validation_data=(X_val, y_val),
        callbacks=[batch_logger],
        verbose=0,
    )
    val_pred = np.argmax(model.predict(X_val, verbose=0), axis=1)
    accuracy = accuracy_score(np.argmax(y_val, axis=1), val_pred)
    logger.info("Validation accuracy after training: %.4f", accuracy)
    return history


def model_to_bytes(model) -> bytes:
    """Serialise a Keras model to the bytes of a .keras archive"""
    _ensure_tf()
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "model" + MODEL_SUFFIX)
        model.save(path)
        with open(path, "rb") as handle:
            return handle.read()


def model_from_bytes(data: bytes):
    """Rebuild an inference-capable Keras model from .keras archive bytes"""
    _ensure_tf()
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "model" + MODEL_SUFFIX)
        with open(path, "wb") as handle:
            handle.write(data)
        return keras.models.load_model(path)


class ModelTrainer:
    """Builds and trains a fresh digit CNN from the reference dataset"""

    def __init__(self, settings: Optional[Settings] = None, dataset: Optional[ReferenceDataset] = None):
        self.settings = settings or get_settings()
        self.dataset = dataset or ReferenceDataset(self.settings)

    def train(self):
        _ensure_tf()
        logger.info("Loading MNIST training data...")
        X, y = self.dataset.load(self.settings.train_samples)
        model = build_model()
        logger.info("Training model on %d samples (this may take ~30 seconds)...", len(X))
        start_time = time.time()
        train_model(model, X, y, self.settings)
        logger.info("CNN training completed in %.2f seconds", time.time() - start_time)
        return model
