"""
Capture Gate - Validates camera reads before they are encoded and queued.

Broken reads must never reach the analysis server: they waste the single
in-flight slot and produce meaningless feedback.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class CaptureResult:
    """Outcome of validating one camera read."""
    valid: bool
    reason: str
    frame: Optional[np.ndarray] = None


class CaptureGate:
    """
    Quality gate for camera frames.

    Rejects:
    - failed reads and missing frames
    - empty frames or frames that are not (H, W, 3)
    - resolution changes mid-stream (unless allowed)
    - uniformly black frames (camera covered or not yet delivering)

    A stall is reported once invalid frames persist for stall_timeout_ms.
    """

    def __init__(
        self,
        stall_timeout_ms: int = 1000,
        allow_shape_change: bool = False,
    ):
        """
        Initialize CaptureGate.

        Args:
            stall_timeout_ms: Time in ms of uninterrupted invalid frames after
                which the capture is considered stalled.
            allow_shape_change: Accept frames whose resolution differs from
                the previous valid frame.
        """
        self.stall_timeout_ms = stall_timeout_ms
        self.allow_shape_change = allow_shape_change

        self._invalid_since: Optional[float] = None
        self._last_shape: Optional[Tuple[int, ...]] = None
        self._valid_count = 0
        self._invalid_count = 0
        self._stall_reported = False

    def check(self, ok: bool, frame: Optional[np.ndarray]) -> CaptureResult:
        """
        Validate the return values of cap.read().

        Returns:
            CaptureResult with the frame attached when valid.
        """
        reason = self._rejection_reason(ok, frame)
        if reason is not None:
            self._reject()
            return CaptureResult(False, reason)

        self._valid_count += 1
        self._last_shape = frame.shape
        self._invalid_since = None
        self._stall_reported = False
        return CaptureResult(True, "ok", frame)

    def _rejection_reason(self, ok: bool, frame: Optional[np.ndarray]) -> Optional[str]:
        if not ok:
            return "read_failed"
        if frame is None:
            return "frame_none"
        if frame.size == 0:
            return "empty_frame"
        if frame.ndim != 3 or frame.shape[2] != 3:
            return "invalid_shape"
        if (
            not self.allow_shape_change
            and self._last_shape is not None
            and frame.shape != self._last_shape
        ):
            logger.warning(f"Capture resolution changed from {self._last_shape} to {frame.shape}")
            return "shape_changed"
        if self._is_blank(frame):
            return "blank_frame"
        return None

    @staticmethod
    def _is_blank(frame: np.ndarray) -> bool:
        # Sample a coarse grid rather than the whole image
        h, w = frame.shape[:2]
        grid = frame[:: max(h // 4, 1), :: max(w // 4, 1)]
        return bool(grid.max() < 5)

    def _reject(self) -> None:
        self._invalid_count += 1
        if self._invalid_since is None:
            self._invalid_since = time.monotonic()

    def is_stalled(self) -> bool:
        """
        True once per stall, when invalid frames have lasted past the timeout.
        """
        if self._invalid_since is None or self._stall_reported:
            return False
        elapsed_ms = (time.monotonic() - self._invalid_since) * 1000
        if elapsed_ms >= self.stall_timeout_ms:
            self._stall_reported = True
            logger.warning(f"Capture stalled: {elapsed_ms:.0f}ms of invalid frames")
            return True
        return False

    def reset(self) -> None:
        self._invalid_since = None
        self._last_shape = None
        self._stall_reported = False

    def get_stats(self) -> dict:
        """Get capture statistics."""
        total = self._valid_count + self._invalid_count
        return {
            "total_frames": total,
            "valid_frames": self._valid_count,
            "invalid_frames": self._invalid_count,
            "valid_rate": self._valid_count / total if total > 0 else 0.0,
            "last_shape": self._last_shape,
        }
