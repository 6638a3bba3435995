"""
Flow Controller - latest-wins frame holding and the in-flight marker.

Camera frames are perishable: a stale frame is worse than a lost one. The
controller therefore holds only the newest unsent frame and releases it
only when no earlier frame is still waiting for its response.

The controller is not thread safe on its own; the owning session
serializes access.
"""

import logging
from typing import Optional

from .message import FrameRequest

logger = logging.getLogger(__name__)


class FlowController:
    """
    Holding slot plus InFlightMarker.

    Invariant: at most one frame is in flight at any time.
    """

    def __init__(self):
        self._held: Optional[FrameRequest] = None
        self._in_flight: Optional[FrameRequest] = None

        # Statistics
        self._offered_count = 0
        self._superseded_count = 0
        self._released_count = 0
        self._completed_count = 0

    @property
    def in_flight(self) -> Optional[FrameRequest]:
        return self._in_flight

    @property
    def held(self) -> Optional[FrameRequest]:
        return self._held

    def offer(self, frame: FrameRequest) -> Optional[FrameRequest]:
        """
        Hold a frame, replacing any older unsent one.

        Returns:
            The superseded frame, or None
        """
        superseded = self._held
        self._held = frame
        self._offered_count += 1
        if superseded is not None:
            self._superseded_count += 1
            logger.debug(f"Frame {superseded.seq} superseded by {frame.seq}")
        return superseded

    def take(self) -> Optional[FrameRequest]:
        """
        Pop the held frame and mark it in flight.

        Returns None when a frame is already in flight or nothing is held.
        """
        if self._in_flight is not None or self._held is None:
            return None
        frame, self._held = self._held, None
        self._in_flight = frame
        self._released_count += 1
        return frame

    def complete(self) -> Optional[FrameRequest]:
        """Clear the in-flight marker; returns the frame it covered."""
        frame, self._in_flight = self._in_flight, None
        if frame is not None:
            self._completed_count += 1
        return frame

    def reset(self, keep_held: bool = False) -> None:
        """Drop the in-flight marker and, unless keep_held, the held frame."""
        self._in_flight = None
        if not keep_held:
            self._held = None

    def get_stats(self) -> dict:
        """Get flow statistics."""
        return {
            "offered": self._offered_count,
            "superseded": self._superseded_count,
            "released": self._released_count,
            "completed": self._completed_count,
            "holding": self._held is not None,
            "in_flight": self._in_flight.seq if self._in_flight else None,
        }
