from __future__ import annotations

import pytest

from pose_stream_client.events import (
    CloseEvent,
    ErrorEvent,
    FeedbackEvent,
    RepetitionEvent,
    SessionStateChangedEvent,
)
from pose_stream_client.models import ErrorKind, Feedback, Repetition, SessionState
from pose_stream_client.monitor import GREAT_JOB, POSITIONING_SUCCESSFUL, ExerciseMonitor

from fakes import ACK, pose_message


def feedback(*messages: str, metric: str = "m") -> Feedback:
    return Feedback(messages=messages, metric=metric)


def test_correct_repetition_counts_once() -> None:
    monitor = ExerciseMonitor()
    monitor.on_repetition(RepetitionEvent(repetition=Repetition(duration=1.8)))

    assert monitor.correct_repetitions == 1
    assert monitor.total_repetitions == 1
    assert monitor.feedback_text == GREAT_JOB
    assert monitor.feedback_positive


def test_incorrect_repetition_surfaces_first_message_only() -> None:
    monitor = ExerciseMonitor()
    rep = Repetition(
        duration=2.0,
        feedbacks=(
            feedback("Go lower", "Bend your knees more", metric="depth"),
            feedback("Keep your back straight", metric="back"),
        ),
    )
    monitor.on_repetition(RepetitionEvent(repetition=rep))

    assert monitor.correct_repetitions == 0
    assert monitor.total_repetitions == 1
    assert monitor.feedback_text == "Go lower"
    assert not monitor.feedback_positive


def test_feedback_used_as_guidance_only_outside_exercising() -> None:
    monitor = ExerciseMonitor()
    monitor.on_feedback(FeedbackEvent(feedbacks=(feedback("Step back"), feedback("Turn left"))))
    assert monitor.feedback_text == "Step back"

    monitor.on_session_state_changed(
        SessionStateChangedEvent(state=SessionState.POSITIONING, previous=SessionState.NO_HUMAN)
    )
    monitor.on_session_state_changed(
        SessionStateChangedEvent(state=SessionState.EXERCISING, previous=SessionState.POSITIONING)
    )
    assert monitor.feedback_text == POSITIONING_SUCCESSFUL
    assert monitor.feedback_positive

    monitor.on_feedback(FeedbackEvent(feedbacks=(feedback("Knees out"),)))
    assert monitor.feedback_text == POSITIONING_SUCCESSFUL

    monitor.on_feedback(FeedbackEvent())
    assert monitor.feedback_text == POSITIONING_SUCCESSFUL


def test_leaving_exercising_clears_positive_marker() -> None:
    monitor = ExerciseMonitor()
    monitor.on_session_state_changed(
        SessionStateChangedEvent(state=SessionState.EXERCISING, previous=SessionState.POSITIONING)
    )
    monitor.on_session_state_changed(
        SessionStateChangedEvent(state=SessionState.POSITIONING, previous=SessionState.EXERCISING)
    )
    assert monitor.state is SessionState.POSITIONING
    assert not monitor.feedback_positive


def test_error_and_close_are_recorded() -> None:
    monitor = ExerciseMonitor()
    monitor.on_error(ErrorEvent(error=ErrorKind.TIMEOUT, message="slow"))
    monitor.on_close(CloseEvent(code=1006, reason=""))
    assert monitor.last_error.error is ErrorKind.TIMEOUT
    assert monitor.closed
    assert monitor.close_event.code == 1006


@pytest.mark.asyncio
async def test_monitor_attached_to_session(session, transport) -> None:
    monitor = ExerciseMonitor()
    monitor.attach(session)

    assert await session.connect()
    transport.push(ACK)
    assert monitor.ready

    transport.push(pose_message())
    transport.push({"type": "repetition", "duration": 1.2, "feedbacks": []})
    transport.push({"type": "repetition", "duration": 1.4, "feedbacks": [
        {"messages": ["Go lower", "Squat deeper"], "metric": "depth"},
        {"messages": ["Chest up"], "metric": "back"},
    ]})
    transport.push({"type": "session_quality", "latency": "poor", "environment": "good"})

    assert monitor.pose is not None
    assert monitor.correct_repetitions == 1
    assert monitor.total_repetitions == 2
    assert monitor.feedback_text == "Go lower"
    assert monitor.quality.worst.name == "POOR"

    session.close()
    assert monitor.closed
    assert not monitor.ready
