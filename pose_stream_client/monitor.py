"""
Exercise Monitor - consumer-side state built from session events.

Tracks what a UI shows: the session state, the number of correctly
performed repetitions, the current feedback line, the latest pose and the
session quality.
"""

import logging
import threading
from typing import Optional

from .events import (
    CloseEvent,
    ErrorEvent,
    EventKind,
    FeedbackEvent,
    PoseEvent,
    PoseInterpolatedEvent,
    ReadyEvent,
    RepetitionEvent,
    SessionQualityChangedEvent,
    SessionStateChangedEvent,
)
from .models import Pose, SessionQuality, SessionState
from .session import StreamingSession

logger = logging.getLogger(__name__)

GREAT_JOB = "Great job!"
POSITIONING_SUCCESSFUL = "Positioning successful!"


class ExerciseMonitor:
    """
    Collects session events into display state.

    Counts only correct repetitions (those without feedback). When several
    corrections apply, only the first message of the first one is shown.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.ready = False
        self.closed = False
        self.state = SessionState.NO_HUMAN
        self.correct_repetitions = 0
        self.total_repetitions = 0
        self.feedback_text: Optional[str] = None
        self.feedback_positive = False
        self.pose: Optional[Pose] = None
        self.quality: Optional[SessionQuality] = None
        self.last_error: Optional[ErrorEvent] = None
        self.close_event: Optional[CloseEvent] = None

    def attach(self, session: StreamingSession) -> None:
        """Register this monitor's handlers on a session."""
        session.on(EventKind.READY, self.on_ready)
        session.on(EventKind.SESSION_STATE_CHANGED, self.on_session_state_changed)
        session.on(EventKind.POSE, self.on_pose)
        session.on(EventKind.POSE_INTERPOLATED, self.on_pose)
        session.on(EventKind.FEEDBACK, self.on_feedback)
        session.on(EventKind.REPETITION, self.on_repetition)
        session.on(EventKind.SESSION_QUALITY_CHANGED, self.on_session_quality_changed)
        session.on(EventKind.ERROR, self.on_error)
        session.on(EventKind.CLOSE, self.on_close)

    def on_ready(self, event: ReadyEvent) -> None:
        with self._lock:
            self.ready = True
        logger.info(f"Analyser ready (exercise {event.exercise_key})")

    def on_session_state_changed(self, event: SessionStateChangedEvent) -> None:
        with self._lock:
            self.state = event.state
            if (event.previous is SessionState.POSITIONING
                    and event.state is SessionState.EXERCISING):
                self.feedback_text = POSITIONING_SUCCESSFUL
                self.feedback_positive = True
            elif (event.previous is SessionState.EXERCISING
                    and event.state is SessionState.POSITIONING):
                self.feedback_positive = False

    def on_pose(self, event) -> None:
        if isinstance(event, (PoseEvent, PoseInterpolatedEvent)):
            with self._lock:
                self.pose = event.pose

    def on_feedback(self, event: FeedbackEvent) -> None:
        # While exercising, corrections arrive with the repetition instead
        message = event.first_message
        with self._lock:
            if self.state is not SessionState.EXERCISING and message is not None:
                self.feedback_text = message
                self.feedback_positive = False

    def on_repetition(self, event: RepetitionEvent) -> None:
        repetition = event.repetition
        with self._lock:
            self.total_repetitions += 1
            if repetition.is_correct:
                self.correct_repetitions += 1
                self.feedback_text = GREAT_JOB
                self.feedback_positive = True
            else:
                self.feedback_text = repetition.first_correction
                self.feedback_positive = False
        logger.info(
            f"Repetition {self.total_repetitions} ({repetition.duration:.2f}s): "
            f"{'correct' if repetition.is_correct else repetition.first_correction}"
        )

    def on_session_quality_changed(self, event: SessionQualityChangedEvent) -> None:
        with self._lock:
            self.quality = event.quality
        if event.quality is not None:
            logger.info(
                f"Session quality: latency={event.quality.latency.name} "
                f"environment={event.quality.environment.name}"
            )

    def on_error(self, event: ErrorEvent) -> None:
        with self._lock:
            self.last_error = event
        logger.error(f"Error reason: {event.error.value} {event.message}")

    def on_close(self, event: CloseEvent) -> None:
        with self._lock:
            self.closed = True
            self.ready = False
            self.close_event = event
        logger.info(f"Analyser stopped ({event.code} {event.reason})")
