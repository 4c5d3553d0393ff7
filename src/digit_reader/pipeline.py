"""
High-level pipeline orchestrating model readiness, preprocessing,
segmentation and per-digit recognition for handwritten digit strings.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .classifier import UNRECOGNIZED, DigitClassifier, DigitPrediction, ModelCache
from .errors import HandwritingError, InferenceFailed, ModelUnavailable, NoDigitsDetected
from .preprocess import RECOGNITION_FILTER, FilterConfig, ImagePreprocessor, as_rgba, decode_image, encode_png
from .segmentation import BoundingBox, ImageSegmenter, SegmentedDigit

logger = logging.getLogger(__name__)

CLASSIFY_START = 55.0
CLASSIFY_SPAN = 40.0

# Stand-in distribution for a glyph whose forward pass failed
UNIFORM_PROBABILITIES = (0.1,) * 10


class RecognitionStage(enum.Enum):
    IDLE = "idle"
    LOADING_MODEL = "loading_model"
    PREPROCESSING = "preprocessing"
    SEGMENTING = "segmenting"
    CLASSIFYING = "classifying"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressUpdate:
    stage: RecognitionStage
    progress: float
    status: str
    index: Optional[int] = None
    total: Optional[int] = None


ProgressSink = Callable[[ProgressUpdate], None]


class CancellationToken:
    """Cooperative cancellation flag, checked between pipeline stages."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class _Cancelled(Exception):
    pass


def confidence_label(confidence: float) -> str:
    if confidence >= 80:
        return "High"
    if confidence >= 60:
        return "Medium"
    return "Low"


@dataclass
class DigitResult:
    prediction: DigitPrediction
    bbox: BoundingBox

    @property
    def digit(self) -> int:
        return self.prediction.digit

    @property
    def confidence(self) -> float:
        return self.prediction.confidence


@dataclass
class HandwritingResult:
    digits: List[DigitResult]
    combined_text: str
    processing_time_ms: int
    preprocessed_image: np.ndarray = field(repr=False)

    @property
    def average_confidence(self) -> float:
        if not self.digits:
            return 0.0
        return float(np.mean([d.confidence for d in self.digits]))

    def preprocessed_png(self) -> bytes:
        return encode_png(self.preprocessed_image)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "combined_text": self.combined_text,
            "processing_time_ms": self.processing_time_ms,
            "average_confidence": round(self.average_confidence, 2),
            "digits": [
                {
                    "digit": d.digit,
                    "confidence": round(d.confidence, 2),
                    "confidence_label": confidence_label(d.confidence),
                    "bbox": list(d.bbox.as_tuple()),
                    "probabilities": [round(p, 6) for p in d.prediction.probabilities],
                }
                for d in self.digits
            ],
        }


def combine_digits(predictions: List[DigitPrediction]) -> str:
    return "".join(p.character for p in predictions)


class _ProgressReporter:
    """Forwards updates to the sink with progress clamped to be non-decreasing."""

    def __init__(self, sink: Optional[ProgressSink]):
        self.sink = sink
        self.progress = 0.0
        self.stage = RecognitionStage.IDLE

    def report(self, stage: RecognitionStage, progress: float, status: str,
               index: Optional[int] = None, total: Optional[int] = None) -> None:
        self.progress = max(self.progress, min(100.0, float(progress)))
        self.stage = stage
        logger.debug("[%5.1f%%] %s", self.progress, status)
        if self.sink is not None:
            self.sink(ProgressUpdate(stage, self.progress, status, index, total))


class HandwritingRecognizer:
    """Recognise a handwritten digit string in raw image bytes."""

    def __init__(self, cache: ModelCache, filter_config: FilterConfig = RECOGNITION_FILTER,
                 segmenter: Optional[ImageSegmenter] = None) -> None:
        self.cache = cache
        self.classifier = DigitClassifier(cache)
        self.filter_config = filter_config
        self.preprocessor = ImagePreprocessor()
        self.segmenter = segmenter or ImageSegmenter()

    @staticmethod
    def _checkpoint(cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            raise _Cancelled()

    def _classify_segments(self, segments: List[SegmentedDigit], reporter: _ProgressReporter,
                           cancel_token: Optional[CancellationToken]) -> List[DigitResult]:
        total = len(segments)
        results: List[DigitResult] = []
        for i, segment in enumerate(segments):
            self._checkpoint(cancel_token)
            reporter.report(RecognitionStage.CLASSIFYING, CLASSIFY_START + (i / total) * CLASSIFY_SPAN,
                            f"Recognizing {total} digit(s)...", index=i, total=total)
            try:
                prediction = self.classifier.classify(segment.patch)
            except (InferenceFailed, ModelUnavailable) as exc:
                logger.error("Error recognizing digit %d of %d: %s", i + 1, total, exc)
                prediction = DigitPrediction(digit=UNRECOGNIZED, confidence=0.0, probabilities=UNIFORM_PROBABILITIES)
            results.append(DigitResult(prediction=prediction, bbox=segment.bbox))
        return results

    def _run(self, data: bytes, reporter: _ProgressReporter, cancel_token: Optional[CancellationToken],
             expected_digits: Optional[int]) -> HandwritingResult:
        start_time = time.monotonic()

        self._checkpoint(cancel_token)
        reporter.report(RecognitionStage.LOADING_MODEL, 10, "Loading AI model (first time may take 30-60s to train)...")
        self.cache.ensure_model_ready()
        reporter.report(RecognitionStage.LOADING_MODEL, 25, "Model ready")

        self._checkpoint(cancel_token)
        reporter.report(RecognitionStage.PREPROCESSING, 35, "Preprocessing image...")
        preprocessed = self.preprocessor.preprocess_pipeline(decode_image(data), self.filter_config)

        self._checkpoint(cancel_token)
        reporter.report(RecognitionStage.PREPROCESSING, 45, "Loading preprocessed image...")
        raster = as_rgba(preprocessed)

        self._checkpoint(cancel_token)
        reporter.report(RecognitionStage.SEGMENTING, 55, "Detecting digits...")
        segments = self.segmenter.segment_digits(raster, expected_digits)
        if not segments:
            raise NoDigitsDetected()
        logger.info("Detected %d digit(s)", len(segments))

        results = self._classify_segments(segments, reporter, cancel_token)
        reporter.report(RecognitionStage.CLASSIFYING, CLASSIFY_START + CLASSIFY_SPAN, "Combining results...")

        combined_text = combine_digits([r.prediction for r in results])
        elapsed_ms = int(round((time.monotonic() - start_time) * 1000))
        reporter.report(RecognitionStage.DONE, 100, "Complete!")
        return HandwritingResult(
            digits=results,
            combined_text=combined_text,
            processing_time_ms=max(0, elapsed_ms),
            preprocessed_image=raster,
        )

    def recognize(self, data: bytes, progress: Optional[ProgressSink] = None,
                  cancel_token: Optional[CancellationToken] = None,
                  expected_digits: Optional[int] = None) -> Optional[HandwritingResult]:
        """
        Recognise the digits in encoded image bytes.

        Args:
            data: Encoded image (jpeg, png, gif, webp or bmp)
            progress: Optional sink receiving a ProgressUpdate at each checkpoint
            cancel_token: Optional token; once cancelled, returns None without error
            expected_digits: Split into this many equal columns instead of
                connected-component segmentation

        Returns:
            HandwritingResult, or None when cancelled
        """
        reporter = _ProgressReporter(progress)
        try:
            result = self._run(data, reporter, cancel_token, expected_digits)
        except _Cancelled:
            logger.info("Recognition cancelled during %s", reporter.stage.value)
            return None
        except (HandwritingError, ValueError) as exc:
            if cancel_token is not None and cancel_token.cancelled:
                return None
            logger.error("Recognition error: %s", exc)
            reporter.report(RecognitionStage.FAILED, reporter.progress, str(exc))
            raise
        logger.info("Recognised %r in %d ms", result.combined_text, result.processing_time_ms)
        return result
