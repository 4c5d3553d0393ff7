"""
Error taxonomy for the handwriting recognition pipeline.
"""


class HandwritingError(Exception):
    """Base class for every recognition failure surfaced to callers."""


class UnsupportedSurface(HandwritingError):
    """No raster surface could be allocated for a filter or resize step."""


class DecodeFailed(HandwritingError):
    """The uploaded bytes are not a readable image."""


class ModelUnavailable(HandwritingError):
    """The digit model is not ready: loading and training both failed, or it was never initialised."""


class NoDigitsDetected(HandwritingError):
    """Segmentation found no glyphs in the image."""

    def __init__(self, message: str = "No digits detected. Try adjusting the image or preprocessing.") -> None:
        super().__init__(message)


class InferenceFailed(HandwritingError):
    """A forward pass for a single glyph failed."""
