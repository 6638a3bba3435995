"""
Event types delivered to session handlers.

Each event is an immutable dataclass tagged with its EventKind; the
dispatcher routes on that tag.
"""

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Tuple

from .models import (
    ErrorKind,
    Feedback,
    MetricValue,
    Pose,
    Repetition,
    SessionQuality,
    SessionState,
)


class EventKind(Enum):
    """Closed set of events a session can emit."""
    READY = "ready"
    SESSION_STATE_CHANGED = "session_state_changed"
    POSE = "pose"
    POSE_INTERPOLATED = "pose_interpolated"
    FEEDBACK = "feedback"
    REPETITION = "repetition"
    METRIC_VALUES = "metric_values"
    SESSION_QUALITY_CHANGED = "session_quality_changed"
    ERROR = "error"
    CLOSE = "close"


@dataclass(frozen=True)
class Event:
    kind: ClassVar[EventKind]


@dataclass(frozen=True)
class ReadyEvent(Event):
    """Connection is up and the exercise has been configured."""
    kind: ClassVar[EventKind] = EventKind.READY
    exercise_key: Optional[int] = None


@dataclass(frozen=True)
class SessionStateChangedEvent(Event):
    kind: ClassVar[EventKind] = EventKind.SESSION_STATE_CHANGED
    state: SessionState = SessionState.NO_HUMAN
    previous: SessionState = SessionState.NO_HUMAN


@dataclass(frozen=True)
class PoseEvent(Event):
    """Completed analysis of a submitted frame."""
    kind: ClassVar[EventKind] = EventKind.POSE
    pose: Optional[Pose] = None
    seq: Optional[int] = None


@dataclass(frozen=True)
class PoseInterpolatedEvent(Event):
    """Intermediate pose; does not answer a submitted frame."""
    kind: ClassVar[EventKind] = EventKind.POSE_INTERPOLATED
    pose: Optional[Pose] = None


@dataclass(frozen=True)
class FeedbackEvent(Event):
    kind: ClassVar[EventKind] = EventKind.FEEDBACK
    feedbacks: Tuple[Feedback, ...] = ()

    @property
    def first_message(self) -> Optional[str]:
        if not self.feedbacks:
            return None
        return self.feedbacks[0].first_message


@dataclass(frozen=True)
class RepetitionEvent(Event):
    kind: ClassVar[EventKind] = EventKind.REPETITION
    repetition: Repetition = Repetition(duration=0.0)


@dataclass(frozen=True)
class MetricValuesEvent(Event):
    kind: ClassVar[EventKind] = EventKind.METRIC_VALUES
    values: Tuple[MetricValue, ...] = ()


@dataclass(frozen=True)
class SessionQualityChangedEvent(Event):
    kind: ClassVar[EventKind] = EventKind.SESSION_QUALITY_CHANGED
    quality: Optional[SessionQuality] = None


@dataclass(frozen=True)
class ErrorEvent(Event):
    """
    A failure reported by the server or detected locally.

    seq is set when the error answers a specific submitted frame.
    """
    kind: ClassVar[EventKind] = EventKind.ERROR
    error: ErrorKind = ErrorKind.OTHER
    message: str = ""
    seq: Optional[int] = None


@dataclass(frozen=True)
class CloseEvent(Event):
    kind: ClassVar[EventKind] = EventKind.CLOSE
    code: int = 1000
    reason: str = ""
