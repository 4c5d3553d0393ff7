"""
Handwritten Digit Reader
Recognises handwritten digit strings in uploaded images: pixel filtering,
connected-component segmentation and a small MNIST-trained CNN.
"""

from .classifier import DigitClassifier, ModelCache, LocalModelStore, MemoryModelStore
from .errors import (
    HandwritingError,
    UnsupportedSurface,
    DecodeFailed,
    ModelUnavailable,
    NoDigitsDetected,
    InferenceFailed,
)
from .pipeline import CancellationToken, HandwritingRecognizer, HandwritingResult
from .preprocess import FilterConfig, RECOGNITION_FILTER, preprocess
from .segmentation import ImageSegmenter, segment, segment_fixed_columns

__version__ = "1.0.0"
__author__ = "HNRS Team"

__all__ = [
    "CancellationToken",
    "DecodeFailed",
    "DigitClassifier",
    "FilterConfig",
    "HandwritingError",
    "HandwritingRecognizer",
    "HandwritingResult",
    "ImageSegmenter",
    "InferenceFailed",
    "LocalModelStore",
    "MemoryModelStore",
    "ModelCache",
    "ModelUnavailable",
    "NoDigitsDetected",
    "RECOGNITION_FILTER",
    "UnsupportedSurface",
    "preprocess",
    "segment",
    "segment_fixed_columns",
]
