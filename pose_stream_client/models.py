"""
Domain types for pose estimation results.

Covers the 19-point skeleton, exercise feedback, repetitions, metric values
and session quality ratings as they arrive from the analysis server.
"""

import math
from collections import abc
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Iterator, List, Mapping, Optional, Tuple

import numpy as np


class BodyPoint(Enum):
    """Anatomical keypoints, in the fixed order the server reports them."""
    NOSE = "nose"
    NECK = "neck"
    LEFT_EAR = "left_ear"
    RIGHT_EAR = "right_ear"
    LEFT_EYE = "left_eye"
    RIGHT_EYE = "right_eye"
    LEFT_SHOULDER = "left_shoulder"
    RIGHT_SHOULDER = "right_shoulder"
    LEFT_ELBOW = "left_elbow"
    RIGHT_ELBOW = "right_elbow"
    LEFT_WRIST = "left_wrist"
    RIGHT_WRIST = "right_wrist"
    LEFT_HIP = "left_hip"
    RIGHT_HIP = "right_hip"
    LEFT_KNEE = "left_knee"
    RIGHT_KNEE = "right_knee"
    LEFT_ANKLE = "left_ankle"
    RIGHT_ANKLE = "right_ankle"
    MID_HIP = "mid_hip"


POSE_POINT_COUNT = len(BodyPoint)

# Bones drawn by the preview overlay.
SKELETON_EDGES: Tuple[Tuple[BodyPoint, BodyPoint], ...] = (
    (BodyPoint.NOSE, BodyPoint.NECK),
    (BodyPoint.LEFT_EYE, BodyPoint.NOSE),
    (BodyPoint.RIGHT_EYE, BodyPoint.NOSE),
    (BodyPoint.NECK, BodyPoint.LEFT_SHOULDER),
    (BodyPoint.LEFT_SHOULDER, BodyPoint.LEFT_ELBOW),
    (BodyPoint.LEFT_ELBOW, BodyPoint.LEFT_WRIST),
    (BodyPoint.MID_HIP, BodyPoint.RIGHT_HIP),
    (BodyPoint.RIGHT_HIP, BodyPoint.RIGHT_KNEE),
    (BodyPoint.RIGHT_KNEE, BodyPoint.RIGHT_ANKLE),
    (BodyPoint.LEFT_KNEE, BodyPoint.LEFT_ANKLE),
    (BodyPoint.MID_HIP, BodyPoint.LEFT_HIP),
    (BodyPoint.NECK, BodyPoint.MID_HIP),
    (BodyPoint.RIGHT_ELBOW, BodyPoint.RIGHT_WRIST),
    (BodyPoint.RIGHT_SHOULDER, BodyPoint.RIGHT_ELBOW),
    (BodyPoint.NECK, BodyPoint.RIGHT_SHOULDER),
    (BodyPoint.RIGHT_EAR, BodyPoint.RIGHT_EYE),
    (BodyPoint.LEFT_EAR, BodyPoint.LEFT_EYE),
    (BodyPoint.LEFT_HIP, BodyPoint.LEFT_KNEE),
)


class SessionState(Enum):
    """Exercise session state as judged by the server."""
    NO_HUMAN = "no_human"
    POSITIONING = "positioning"
    EXERCISING = "exercising"


class Quality(IntEnum):
    """Ordered quality rating: BAD < POOR < GOOD."""
    BAD = 0
    POOR = 1
    GOOD = 2

    @classmethod
    def from_wire(cls, name: str) -> 'Quality':
        return cls[str(name).upper()]


class ErrorKind(Enum):
    """Error categories surfaced through error events."""
    SERVER_ERROR = "server_error"
    INVALID_INPUT = "invalid_input"
    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"
    OTHER = "other"

    @classmethod
    def from_wire(cls, name: Optional[str]) -> 'ErrorKind':
        try:
            return cls(name)
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class Point:
    """
    A single keypoint.

    Attributes:
        x: Horizontal position in source-image pixels
        y: Vertical position in source-image pixels
        score: Detection confidence in [0, 1]
    """
    x: float
    y: float
    score: float

    def __post_init__(self):
        if not (math.isfinite(self.x) and math.isfinite(self.y)):
            raise ValueError(f"Point coordinates must be finite, got ({self.x}, {self.y})")
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"Point score {self.score} outside [0, 1]")


class Pose(abc.Mapping):
    """
    Immutable skeleton keyed by BodyPoint.

    Always holds exactly one Point per BodyPoint member. Iteration follows
    the BodyPoint declaration order.
    """

    __slots__ = ("_points",)

    def __init__(self, points: Mapping[BodyPoint, Point]):
        missing = [bp.value for bp in BodyPoint if bp not in points]
        if missing:
            raise ValueError(f"Pose is missing points: {', '.join(missing)}")
        if len(points) != POSE_POINT_COUNT:
            raise ValueError(
                f"Pose must have exactly {POSE_POINT_COUNT} points, got {len(points)}"
            )
        self._points = MappingProxyType({bp: points[bp] for bp in BodyPoint})

    def __getitem__(self, key: BodyPoint) -> Point:
        return self._points[key]

    def __iter__(self) -> Iterator[BodyPoint]:
        return iter(self._points)

    def __len__(self) -> int:
        return POSE_POINT_COUNT

    def __repr__(self) -> str:
        return f"Pose({dict(self._points)!r})"

    def as_list(self) -> List[Point]:
        """Points in BodyPoint order."""
        return list(self._points.values())

    def to_array(self) -> np.ndarray:
        """Return a (19, 3) float array of x, y, score rows."""
        return np.array(
            [(p.x, p.y, p.score) for p in self._points.values()],
            dtype=np.float32,
        )

    def visible_edges(
        self, threshold: float = 0.6
    ) -> List[Tuple[Point, Point]]:
        """Skeleton edges whose endpoints both score above threshold."""
        edges = []
        for a, b in SKELETON_EDGES:
            pa, pb = self._points[a], self._points[b]
            if pa.score > threshold and pb.score > threshold:
                edges.append((pa, pb))
        return edges


@dataclass(frozen=True)
class Feedback:
    """A correction tied to a violated movement metric."""
    messages: Tuple[str, ...]
    metric: str

    def __post_init__(self):
        if not self.messages:
            raise ValueError("Feedback needs at least one message")

    @property
    def first_message(self) -> str:
        return self.messages[0]


@dataclass(frozen=True)
class Repetition:
    """
    One completed cycle of the monitored exercise.

    A repetition without any feedback was performed correctly.
    """
    duration: float
    feedbacks: Tuple[Feedback, ...] = field(default_factory=tuple)

    @property
    def is_correct(self) -> bool:
        return not self.feedbacks

    @property
    def first_correction(self) -> Optional[str]:
        """First message of the first feedback, or None if correct."""
        if not self.feedbacks:
            return None
        return self.feedbacks[0].first_message


@dataclass(frozen=True)
class MetricValue:
    """Measured value of a movement metric with its confidence."""
    metric: str
    value: float
    score: float


@dataclass(frozen=True)
class SessionQuality:
    """Latency and environment ratings of the running session."""
    latency: Quality
    environment: Quality

    @property
    def worst(self) -> Quality:
        return min(self.latency, self.environment)
