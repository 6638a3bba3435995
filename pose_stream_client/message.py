"""
Message Schema and Validation for the streaming session.

Defines the JSON envelope exchanged with the analysis server, decodes
inbound messages into typed events, and validates outgoing frame payloads
before they are queued.
"""

import base64
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import MAX_FRAME_BYTES, SessionConfig
from .events import (
    ErrorEvent,
    Event,
    FeedbackEvent,
    MetricValuesEvent,
    PoseEvent,
    PoseInterpolatedEvent,
    RepetitionEvent,
    SessionQualityChangedEvent,
)
from .models import (
    BodyPoint,
    ErrorKind,
    Feedback,
    MetricValue,
    Point,
    Pose,
    Quality,
    Repetition,
    SessionQuality,
    SessionState,
)

logger = logging.getLogger(__name__)


class ProtocolError(Exception):
    """Inbound message could not be decoded."""


@dataclass(frozen=True)
class FrameRequest:
    """
    An encoded image waiting to be analysed.

    Attributes:
        payload: JPEG bytes
        seq: Sequence number assigned at enqueue time
    """
    payload: bytes
    seq: int

    def to_json(self) -> str:
        return json.dumps({
            "type": "input",
            "seq": self.seq,
            "image": base64.b64encode(self.payload).decode("ascii"),
            "ts_ms": int(time.monotonic() * 1000),
        })


@dataclass(frozen=True)
class MetadataAck:
    """Server answer to a metadata (configuration) message."""
    ok: bool
    error: ErrorKind = ErrorKind.OTHER
    message: str = ""


@dataclass(frozen=True)
class SessionStateUpdate:
    """New session state; the session pairs it with the previous value."""
    state: SessionState


Inbound = Union[MetadataAck, SessionStateUpdate, Event]


def encode_metadata(config: SessionConfig) -> str:
    """Serialize the configuration handshake message."""
    return json.dumps({
        "type": "metadata",
        "api_key": config.api_key,
        "exercise_key": config.exercise_key,
        "session_name": config.session_name,
        "ts_ms": int(time.monotonic() * 1000),
    })


def _parse_point(name: str, raw: Any) -> Point:
    try:
        x = float(raw["x"])
        y = float(raw["y"])
        score = float(raw["score"])
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed point {name!r}: {e}") from e
    if not math.isfinite(score):
        raise ProtocolError(f"Point {name!r} has non-finite score")
    # Servers occasionally report scores marginally outside [0, 1]
    score = max(0.0, min(1.0, score))
    try:
        return Point(x=x, y=y, score=score)
    except ValueError as e:
        raise ProtocolError(str(e)) from e


def _parse_pose(raw: Any) -> Pose:
    if not isinstance(raw, dict):
        raise ProtocolError("Pose points must be an object keyed by body point")
    points = {}
    for name, value in raw.items():
        try:
            body_point = BodyPoint(name)
        except ValueError:
            logger.debug(f"Ignoring unknown body point {name!r}")
            continue
        points[body_point] = _parse_point(name, value)
    try:
        return Pose(points)
    except ValueError as e:
        raise ProtocolError(str(e)) from e


def _parse_feedbacks(raw: Any) -> Tuple[Feedback, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ProtocolError("Feedbacks must be a list")
    feedbacks: List[Feedback] = []
    for item in raw:
        try:
            if not isinstance(item["messages"], list):
                raise ProtocolError(f"Feedback messages must be a list: {item['messages']!r}")
            messages = tuple(str(m) for m in item["messages"])
            feedbacks.append(Feedback(messages=messages, metric=str(item.get("metric", ""))))
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed feedback: {e}") from e
    return tuple(feedbacks)


def _parse_metric_values(raw: Any) -> Tuple[MetricValue, ...]:
    if not isinstance(raw, list):
        raise ProtocolError("Metric values must be a list")
    try:
        return tuple(
            MetricValue(
                metric=str(item["metric"]),
                value=float(item["value"]),
                score=float(item.get("score", 1.0)),
            )
            for item in raw
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed metric value: {e}") from e


def _optional_seq(d: Dict[str, Any]) -> Optional[int]:
    seq = d.get("seq")
    if seq is None:
        return None
    try:
        return int(seq)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid seq {seq!r}") from e


def decode_message(data: Union[str, bytes]) -> Inbound:
    """
    Decode one inbound server message.

    Args:
        data: Raw text (or UTF-8 bytes) received from the transport

    Returns:
        MetadataAck, SessionStateUpdate or an Event instance

    Raises:
        ProtocolError: if the message is not valid JSON or not understood
    """
    try:
        d = json.loads(data)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(d, dict):
        raise ProtocolError("Message must be a JSON object")

    try:
        return _decode_fields(d)
    except ProtocolError:
        raise
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed {d.get('type')!r} message: {e}") from e


def _decode_fields(d: Dict[str, Any]) -> Inbound:
    msg_type = d.get("type")

    if msg_type == "metadata_ack":
        if d.get("ok", False):
            return MetadataAck(ok=True)
        err = d.get("error") or {}
        if isinstance(err, str):
            # Bare reason string, no kind
            err = {"message": err}
        if not isinstance(err, dict):
            raise ProtocolError(f"Invalid rejection detail: {err!r}")
        return MetadataAck(
            ok=False,
            error=ErrorKind.from_wire(err.get("kind")),
            message=str(err.get("message", "configuration rejected")),
        )

    if msg_type == "session_state":
        try:
            return SessionStateUpdate(state=SessionState(d["state"]))
        except (KeyError, ValueError) as e:
            raise ProtocolError(f"Invalid session state: {d.get('state')!r}") from e

    if msg_type == "pose":
        return PoseEvent(pose=_parse_pose(d.get("points")), seq=_optional_seq(d))

    if msg_type == "pose_interpolated":
        return PoseInterpolatedEvent(pose=_parse_pose(d.get("points")))

    if msg_type == "feedback":
        return FeedbackEvent(feedbacks=_parse_feedbacks(d.get("feedbacks")))

    if msg_type == "repetition":
        try:
            duration = float(d["duration"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid repetition duration: {e}") from e
        return RepetitionEvent(
            repetition=Repetition(duration=duration, feedbacks=_parse_feedbacks(d.get("feedbacks")))
        )

    if msg_type == "metric_values":
        return MetricValuesEvent(values=_parse_metric_values(d.get("values")))

    if msg_type == "session_quality":
        try:
            quality = SessionQuality(
                latency=Quality.from_wire(d["latency"]),
                environment=Quality.from_wire(d["environment"]),
            )
        except KeyError as e:
            raise ProtocolError(f"Invalid session quality: {e}") from e
        return SessionQualityChangedEvent(quality=quality)

    if msg_type == "error":
        return ErrorEvent(
            error=ErrorKind.from_wire(d.get("kind")),
            message=str(d.get("message", "")),
            seq=_optional_seq(d),
        )

    raise ProtocolError(f"Unknown message type: {msg_type!r}")


class FrameValidator:
    """
    Validates frame payloads before they are queued.

    Ensures:
    - payload is non-empty bytes
    - payload size is within the soft limit (oversized frames pass, with a warning)
    """

    def __init__(self, max_bytes: int = MAX_FRAME_BYTES):
        self.max_bytes = max_bytes
        self._accepted_count = 0
        self._rejected_count = 0
        self._oversized_count = 0

    def validate(self, payload: Any) -> Tuple[bool, str]:
        """
        Validate a frame payload.

        Returns:
            Tuple of (is_valid, reason_string)
        """
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            self._rejected_count += 1
            return False, "payload_not_bytes"

        if len(payload) == 0:
            self._rejected_count += 1
            return False, "payload_empty"

        if len(payload) > self.max_bytes:
            self._oversized_count += 1
            logger.warning(
                f"Frame payload is {len(payload)} bytes, above soft limit of {self.max_bytes}"
            )

        self._accepted_count += 1
        return True, "ok"

    def get_stats(self) -> dict:
        """Get validation statistics."""
        total = self._accepted_count + self._rejected_count
        return {
            "total_frames": total,
            "accepted": self._accepted_count,
            "rejected": self._rejected_count,
            "oversized": self._oversized_count,
        }
