"""
Frame encoding for upload.

Turns a BGR camera frame into a small upright JPEG: optional horizontal
mirror (front cameras deliver mirrored images, which would swap left/right
corrections), downscale to a fixed height, and JPEG compression stepped down
until the payload fits the size budget.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from .config import MAX_FRAME_BYTES

logger = logging.getLogger(__name__)


@dataclass
class EncodedFrame:
    """JPEG payload plus the geometry needed to map keypoints back."""
    payload: bytes
    width: int
    height: int
    quality: int


class FrameEncoder:
    """
    Mirror, scale and JPEG-encode camera frames.

    Keypoints returned by the server are in the pixel space of the encoded
    image; scale_factors() maps them onto a display of another size.
    """

    def __init__(
        self,
        target_height: int = 384,
        jpeg_quality: int = 10,
        min_quality: int = 5,
        quality_step: int = 5,
        max_bytes: int = MAX_FRAME_BYTES,
        mirror: bool = False,
    ):
        if target_height <= 0:
            raise ValueError(f"target_height must be positive, got {target_height}")
        if not 1 <= min_quality <= jpeg_quality <= 100:
            raise ValueError(
                f"Need 1 <= min_quality <= jpeg_quality <= 100, got {min_quality}, {jpeg_quality}"
            )
        self.target_height = target_height
        self.jpeg_quality = jpeg_quality
        self.min_quality = min_quality
        self.quality_step = max(quality_step, 1)
        self.max_bytes = max_bytes
        self.mirror = mirror

        self._encoded_count = 0
        self._failed_count = 0
        self._over_budget_count = 0

    def prepare(self, frame: np.ndarray) -> np.ndarray:
        """Mirror (if configured) and resize to target height, keeping aspect ratio."""
        if self.mirror:
            frame = cv2.flip(frame, 1)
        h, w = frame.shape[:2]
        if h == self.target_height:
            return frame
        ratio = self.target_height / h
        new_w = max(int(round(w * ratio)), 1)
        interpolation = cv2.INTER_AREA if ratio < 1.0 else cv2.INTER_LINEAR
        return cv2.resize(frame, (new_w, self.target_height), interpolation=interpolation)

    def encode(self, frame: np.ndarray) -> Optional[EncodedFrame]:
        """
        Prepare and JPEG-encode a frame.

        Returns:
            EncodedFrame, or None if encoding failed
        """
        image = self.prepare(frame)
        quality = self.jpeg_quality
        while True:
            ok, buf = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
            if not ok:
                self._failed_count += 1
                logger.warning("JPEG encoding failed")
                return None
            payload = buf.tobytes()
            if len(payload) <= self.max_bytes or quality <= self.min_quality:
                break
            quality = max(quality - self.quality_step, self.min_quality)

        if len(payload) > self.max_bytes:
            self._over_budget_count += 1
            logger.debug(f"Frame still {len(payload)} bytes at quality {quality}")

        self._encoded_count += 1
        h, w = image.shape[:2]
        return EncodedFrame(payload=payload, width=w, height=h, quality=quality)

    @staticmethod
    def scale_factors(
        encoded: EncodedFrame, display_size: Tuple[int, int]
    ) -> Tuple[float, float]:
        """Factors mapping encoded-image pixels onto a (width, height) display."""
        display_w, display_h = display_size
        return display_w / encoded.width, display_h / encoded.height

    def get_stats(self) -> dict:
        return {
            "encoded": self._encoded_count,
            "failed": self._failed_count,
            "over_budget": self._over_budget_count,
        }
