"""
Pose Stream Client - Streaming session client for remote pose estimation.

Captures camera frames locally, sends them as JPEG payloads to a pose
estimation server over a secure WebSocket, and dispatches the returned
skeletons, feedback and repetition events to registered handlers.

At most one frame is in flight at any time; newer frames replace older
unsent ones.
"""

from .events import EventKind
from .models import BodyPoint, ErrorKind, Quality, SessionState
from .session import ConnectionState, StreamingSession

__version__ = "1.0.0"

__all__ = [
    "BodyPoint",
    "ConnectionState",
    "ErrorKind",
    "EventKind",
    "Quality",
    "SessionState",
    "StreamingSession",
]
