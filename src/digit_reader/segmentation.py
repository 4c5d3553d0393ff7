"""
Image Segmentation Module for the Handwritten Digit Reader
Separates a binarised multi-digit image into square, centred glyph patches
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

NEIGHBOUR_OFFSETS: Tuple[Tuple[int, int], ...] = (
    (0, 1), (0, -1), (1, 0), (-1, 0),
    (1, 1), (-1, -1), (-1, 1), (1, -1),
)


@dataclass(frozen=True)
class BoundingBox:
    """Integer box in source raster coordinates."""

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)


@dataclass
class ConnectedComponent:
    """Extent and size of one flood-filled foreground region."""

    min_x: int
    min_y: int
    max_x: int
    max_y: int
    pixel_count: int = 0

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def bbox(self) -> BoundingBox:
        return BoundingBox(self.min_x, self.min_y, self.width, self.height)


@dataclass
class SegmentedDigit:
    """A padded bounding box and the square glyph patch cut from it."""

    bbox: BoundingBox
    patch: np.ndarray


class ImageSegmenter:
    """
    Connected-component segmentation for dark digits on a light background
    """

    def __init__(self, foreground_level: int = 128, min_pixels: int = 50,
                 max_area_ratio: float = 0.9, min_side: int = 10, padding: int = 5):
        self.foreground_level = foreground_level
        self.min_pixels = min_pixels
        self.max_area_ratio = max_area_ratio
        self.min_side = min_side
        self.padding = padding

    def foreground_mask(self, image: np.ndarray) -> np.ndarray:
        """Pixels whose red channel (or intensity) is below the foreground level"""
        channel = image[..., 0] if image.ndim == 3 else image
        return channel < self.foreground_level

    def flood_fill(self, mask: np.ndarray, visited: np.ndarray, start_y: int, start_x: int) -> ConnectedComponent:
        """Label the 8-connected region containing the seed, using an explicit stack"""
        height, width = mask.shape
        component = ConnectedComponent(start_x, start_y, start_x, start_y)
        stack = [(start_y, start_x)]
        visited[start_y, start_x] = True
        while stack:
            y, x = stack.pop()
            component.pixel_count += 1
            if x < component.min_x:
                component.min_x = x
            elif x > component.max_x:
                component.max_x = x
            if y < component.min_y:
                component.min_y = y
            elif y > component.max_y:
                component.max_y = y
            for dy, dx in NEIGHBOUR_OFFSETS:
                ny, nx = y + dy, x + dx
                if 0 <= ny < height and 0 <= nx < width and mask[ny, nx] and not visited[ny, nx]:
                    visited[ny, nx] = True
                    stack.append((ny, nx))
        return component

    def is_digit_component(self, component: ConnectedComponent, image_area: int) -> bool:
        """Reject specks, background blobs and thin strokes"""
        if component.pixel_count < self.min_pixels:
            return False
        if component.bbox.area > image_area * self.max_area_ratio:
            return False
        if component.width < self.min_side or component.height < self.min_side:
            return False
        return True

    def find_components(self, image: np.ndarray) -> List[ConnectedComponent]:
        """
        Return accepted components, left to right

        Candidates are labelled with cv2.connectedComponentsWithStats so that
        specks and background blobs are rejected from their stats alone; only
        accepted candidates are walked with the Python flood fill, which
        keeps large dark regions of an upscaled image cheap.
        """
        mask = self.foreground_mask(image)
        visited = np.zeros(mask.shape, dtype=bool)
        image_area = mask.shape[0] * mask.shape[1]
        num_labels, labels, stats, _ = cv2.connectedComponentsWithStats(mask.astype(np.uint8), connectivity=8)

        seeded: List[Tuple[Tuple[int, int], ConnectedComponent]] = []
        rejected = 0
        for label in range(1, num_labels):
            x, y, w, h, area = (int(v) for v in stats[label])
            candidate = ConnectedComponent(x, y, x + w - 1, y + h - 1, area)
            if not self.is_digit_component(candidate, image_area):
                rejected += 1
                continue
            # First pixel of the label in raster order
            dy, dx = divmod(int(np.argmax(labels[y:y + h, x:x + w] == label)), w)
            seed = (y + dy, x + dx)
            seeded.append((seed, self.flood_fill(mask, visited, seed[0], seed[1])))

        # Raster order of seeds, then a stable sort on the left edge
        seeded.sort(key=lambda item: item[0])
        accepted = [component for _, component in seeded]
        accepted.sort(key=lambda comp: comp.min_x)
        logger.debug("Found %d digit components (%d rejected)", len(accepted), rejected)
        return accepted

    def extract_square(self, image: np.ndarray, x: int, y: int, width: int, height: int) -> np.ndarray:
        """Centre a region on a white square canvas sized to its longer side"""
        size = max(width, height)
        canvas = np.full((size, size) + image.shape[2:], 255, dtype=np.uint8)
        x_offset = (size - width) // 2
        y_offset = (size - height) // 2
        canvas[y_offset:y_offset + height, x_offset:x_offset + width] = image[y:y + height, x:x + width]
        return canvas

    def pad_box(self, bbox: BoundingBox, image_width: int, image_height: int) -> BoundingBox:
        """Grow a box by the padding on every side, clamped to the raster"""
        padded_x = max(0, bbox.x - self.padding)
        padded_y = max(0, bbox.y - self.padding)
        padded_w = min(image_width - padded_x, bbox.width + self.padding * 2)
        padded_h = min(image_height - padded_y, bbox.height + self.padding * 2)
        return BoundingBox(padded_x, padded_y, padded_w, padded_h)

    def segment(self, image: np.ndarray) -> List[SegmentedDigit]:
        """
        Segment a binarised raster into glyph patches

        Args:
            image: RGBA or single-channel uint8 raster, dark digits on white

        Returns:
            Square patches ordered by ascending x; empty when nothing qualifies
        """
        height, width = image.shape[:2]
        digits: List[SegmentedDigit] = []
        for component in self.find_components(image):
            box = self.pad_box(component.bbox, width, height)
            patch = self.extract_square(image, box.x, box.y, box.width, box.height)
            digits.append(SegmentedDigit(bbox=box, patch=patch))
        return digits

    def segment_fixed_columns(self, image: np.ndarray, expected_digits: int) -> List[SegmentedDigit]:
        """Split the raster into equal-width vertical bands, one per expected digit"""
        if expected_digits < 1:
            raise ValueError(f"expected_digits must be >= 1, got {expected_digits}")
        height, width = image.shape[:2]
        digit_width = width // expected_digits
        if digit_width < 1:
            raise ValueError(f"Image width {width} is too narrow for {expected_digits} columns")
        digits: List[SegmentedDigit] = []
        for i in range(expected_digits):
            x = i * digit_width
            patch = self.extract_square(image, x, 0, digit_width, height)
            digits.append(SegmentedDigit(bbox=BoundingBox(x, 0, digit_width, height), patch=patch))
        return digits

    def segment_digits(self, image: np.ndarray, expected_digits: Optional[int] = None) -> List[SegmentedDigit]:
        """Fixed columns when the digit count is known, connected components otherwise"""
        if expected_digits:
            return self.segment_fixed_columns(image, expected_digits)
        return self.segment(image)


_default_segmenter = ImageSegmenter()


def segment(image: np.ndarray) -> List[SegmentedDigit]:
    return _default_segmenter.segment(image)


def segment_fixed_columns(image: np.ndarray, expected_digits: int) -> List[SegmentedDigit]:
    return _default_segmenter.segment_fixed_columns(image, expected_digits)
