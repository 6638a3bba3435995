from __future__ import annotations

import asyncio
import base64
import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from pose_stream_client.config import SessionConfig
from pose_stream_client.events import EventKind
from pose_stream_client.models import ErrorKind, SessionState
from pose_stream_client.session import ConnectionState, StreamingSession
from pose_stream_client.transport import TransportError

from fakes import ACK, FakeTransport, Recorder, pose_message, settle


async def make_ready(session: StreamingSession, transport: FakeTransport) -> None:
    assert await session.connect()
    transport.push(ACK)
    assert session.state is ConnectionState.READY


def sent_payloads(transport: FakeTransport) -> list[bytes]:
    return [base64.b64decode(f["image"]) for f in transport.frames]


@pytest.mark.asyncio
async def test_round_trip(session, transport, recorder) -> None:
    assert await session.connect()
    assert session.state is ConnectionState.AWAITING_HANDSHAKE
    assert transport.address == "wss://pose.example.com:443"
    assert transport.credential == "test-key"

    meta = transport.metadata
    assert len(meta) == 1
    assert meta[0]["exercise_key"] == 1
    assert meta[0]["session_name"] == "test-session"
    assert meta[0]["api_key"] == "test-key"

    transport.push(ACK)
    assert session.state is ConnectionState.READY
    assert recorder.kinds == [EventKind.READY]

    seq1 = session.enqueue(b"frame1")
    await settle()
    assert [f["seq"] for f in transport.frames] == [seq1]
    assert sent_payloads(transport) == [b"frame1"]
    assert session.state is ConnectionState.ACTIVE
    assert session.in_flight

    transport.push(pose_message(seq1))
    poses = recorder.of(EventKind.POSE)
    assert len(poses) == 1
    assert len(poses[0].pose) == 19
    assert poses[0].seq == seq1
    assert not session.in_flight

    seq2 = session.enqueue(b"frame2")
    await settle()
    assert [f["seq"] for f in transport.frames] == [seq1, seq2]
    assert session.in_flight


@pytest.mark.asyncio
async def test_latest_frame_wins_before_ready(session, transport) -> None:
    session.enqueue(b"A")
    session.enqueue(b"B")
    assert await session.connect()
    await settle()
    assert transport.frames == []

    transport.push(ACK)
    await settle()
    assert sent_payloads(transport) == [b"B"]
    assert session.get_stats()["flow"]["superseded"] == 1


@pytest.mark.asyncio
async def test_no_frame_sent_before_ready_with_random_enqueues(session, transport, recorder) -> None:
    rng = random.Random(1234)
    assert await session.connect()

    last = None
    for i in range(200):
        if rng.random() < 0.6:
            last = f"frame-{i}".encode()
            session.enqueue(last)
        if rng.random() < 0.3:
            await asyncio.sleep(0)
        assert transport.frames == []
        assert not session.in_flight

    assert recorder.of(EventKind.READY) == []
    transport.push(ACK)
    await settle()
    assert sent_payloads(transport) == [last]


@pytest.mark.asyncio
async def test_at_most_one_frame_in_flight(session, transport) -> None:
    rng = random.Random(99)
    await make_ready(session, transport)

    responses = 0
    for i in range(300):
        roll = rng.random()
        if roll < 0.5:
            session.enqueue(f"f{i}".encode())
        elif roll < 0.7:
            outstanding = len(transport.frames) - responses
            if outstanding:
                transport.push(pose_message(transport.frames[-1]["seq"]))
                responses += 1
        else:
            await settle(rng.randint(1, 3))
        assert len(transport.frames) - responses <= 1

    await settle()
    assert len(transport.frames) - responses <= 1


@pytest.mark.asyncio
async def test_response_releases_exactly_one_held_frame(session, transport) -> None:
    await make_ready(session, transport)

    seq1 = session.enqueue(b"one")
    await settle()
    session.enqueue(b"two")
    seq3 = session.enqueue(b"three")
    await settle()
    assert [f["seq"] for f in transport.frames] == [seq1]

    transport.push(pose_message(seq1))
    await settle()
    assert [f["seq"] for f in transport.frames] == [seq1, seq3]
    assert session.in_flight


@pytest.mark.asyncio
async def test_interpolated_pose_does_not_clear_marker(session, transport, recorder) -> None:
    await make_ready(session, transport)
    session.enqueue(b"one")
    await settle()
    session.enqueue(b"two")

    msg = pose_message()
    msg["type"] = "pose_interpolated"
    transport.push(msg)
    await settle()

    assert len(recorder.of(EventKind.POSE_INTERPOLATED)) == 1
    assert session.in_flight
    assert len(transport.frames) == 1


async def drive_to(state: ConnectionState, session: StreamingSession, transport: FakeTransport):
    """Bring a session into the given state; returns a pending connect task if any."""
    if state is ConnectionState.DISCONNECTED:
        return None
    if state is ConnectionState.CONNECTING:
        transport.gate = asyncio.Event()
        task = asyncio.create_task(session.connect())
        await settle()
        return task
    if state is ConnectionState.FAILED:
        transport.connect_error = TransportError(ErrorKind.CONNECTION_ERROR, "refused")
        assert not await session.connect()
        return None

    assert await session.connect()
    if state is ConnectionState.AWAITING_HANDSHAKE:
        return None
    transport.push(ACK)
    if state is ConnectionState.ACTIVE:
        session.enqueue(b"first")
        await settle()
    if state is ConnectionState.CLOSED:
        session.close()
    return None


CLOSE_EVENTS_BY_STATE = {
    ConnectionState.DISCONNECTED: 0,
    ConnectionState.CONNECTING: 1,
    ConnectionState.AWAITING_HANDSHAKE: 1,
    ConnectionState.READY: 1,
    ConnectionState.ACTIVE: 1,
    ConnectionState.CLOSED: 1,
    ConnectionState.FAILED: 0,
}


@pytest.mark.asyncio
@pytest.mark.parametrize("start_state", list(ConnectionState))
async def test_close_from_every_state(session, transport, recorder, start_state) -> None:
    pending = await drive_to(start_state, session, transport)
    assert session.state is start_state

    session.close()
    assert session.state is ConnectionState.CLOSED
    assert not session.in_flight

    sent_before = len(transport.frames)
    assert session.enqueue(b"late") is None
    assert session.try_release() is False
    session.close()
    await settle()

    assert session.state is ConnectionState.CLOSED
    assert len(transport.frames) == sent_before
    assert len(recorder.of(EventKind.CLOSE)) == CLOSE_EVENTS_BY_STATE[start_state]

    if pending is not None:
        transport.gate.set()
        assert await pending is False
        assert session.state is ConnectionState.CLOSED
        assert transport.close_calls >= 1


@pytest.mark.asyncio
async def test_no_events_after_close(session, transport, recorder) -> None:
    await make_ready(session, transport)
    session.enqueue(b"one")
    await settle()

    session.close()
    transport.push(pose_message(1))
    transport.push({"type": "feedback", "feedbacks": [{"messages": ["Knees out"], "metric": "knee"}]})

    assert recorder.kinds == [EventKind.READY, EventKind.CLOSE]
    close = recorder.of(EventKind.CLOSE)[0]
    assert close.code == 1000


@pytest.mark.asyncio
async def test_handshake_rejection_keeps_awaiting(session, transport, recorder) -> None:
    assert await session.connect()
    transport.push({
        "type": "metadata_ack",
        "ok": False,
        "error": {"kind": "invalid_input", "message": "unknown exercise"},
    })

    assert session.state is ConnectionState.AWAITING_HANDSHAKE
    errors = recorder.of(EventKind.ERROR)
    assert len(errors) == 1
    assert errors[0].error is ErrorKind.INVALID_INPUT
    assert errors[0].message == "unknown exercise"

    session.enqueue(b"held")
    await settle()
    assert transport.frames == []

    assert await session.configure(exercise_key=2)
    assert transport.metadata[-1]["exercise_key"] == 2
    transport.push(ACK)
    await settle()
    assert session.state is ConnectionState.ACTIVE
    assert sent_payloads(transport) == [b"held"]
    assert recorder.of(EventKind.READY)[0].exercise_key == 2


@pytest.mark.asyncio
async def test_rejection_with_bare_reason_keeps_connection(session, transport, recorder) -> None:
    assert await session.connect()
    transport.push({"type": "metadata_ack", "ok": False, "error": "bad key"})
    transport.push({"type": "metadata_ack", "ok": False, "error": ["bad key"]})

    assert session.state is ConnectionState.AWAITING_HANDSHAKE
    assert [(e.error, e.message) for e in recorder.of(EventKind.ERROR)][0] == (ErrorKind.OTHER, "bad key")
    assert recorder.of(EventKind.ERROR)[1].error is ErrorKind.OTHER
    assert recorder.of(EventKind.CLOSE) == []
    assert transport.connected

    assert await session.configure()
    transport.push(ACK)
    assert session.state is ConnectionState.READY


@pytest.mark.asyncio
async def test_reconfigure_while_active_keeps_streaming(session, transport, recorder) -> None:
    await make_ready(session, transport)
    session.enqueue(b"one")
    await settle()
    assert session.state is ConnectionState.ACTIVE

    assert await session.configure(exercise_key=3)
    transport.push(ACK)

    assert session.state is ConnectionState.ACTIVE
    assert len(transport.metadata) == 2
    assert [e.exercise_key for e in recorder.of(EventKind.READY)] == [1, 3]
    assert session.config.exercise_key == 3


@pytest.mark.asyncio
async def test_configure_rejected_when_not_connected(session) -> None:
    assert await session.configure(exercise_key=2) is False


@pytest.mark.asyncio
async def test_send_failure_clears_marker_without_closing(session, transport, recorder) -> None:
    await make_ready(session, transport)
    transport.send_error = TransportError(ErrorKind.TIMEOUT, "slow link")

    seq = session.enqueue(b"lost")
    await settle()

    errors = recorder.of(EventKind.ERROR)
    assert len(errors) == 1
    assert errors[0].error is ErrorKind.TIMEOUT
    assert errors[0].seq == seq
    assert not session.in_flight
    assert session.state is ConnectionState.ACTIVE

    session.enqueue(b"next")
    await settle()
    assert sent_payloads(transport) == [b"next"]
    assert recorder.of(EventKind.CLOSE) == []


@pytest.mark.asyncio
async def test_metadata_send_failure_reports_error(session, transport, recorder) -> None:
    transport.send_error = TransportError(ErrorKind.CONNECTION_ERROR, "broken pipe")
    assert await session.connect() is False
    assert transport.connected

    assert session.state is ConnectionState.AWAITING_HANDSHAKE
    assert [e.error for e in recorder.of(EventKind.ERROR)] == [ErrorKind.CONNECTION_ERROR]

    assert await session.configure()
    assert len(transport.metadata) == 1


@pytest.mark.asyncio
async def test_connect_failure_then_explicit_reconnect(session, transport, recorder) -> None:
    transport.connect_error = TransportError(ErrorKind.TIMEOUT, "no answer")
    assert await session.connect() is False
    assert session.state is ConnectionState.FAILED
    assert [e.error for e in recorder.of(EventKind.ERROR)] == [ErrorKind.TIMEOUT]
    assert recorder.of(EventKind.CLOSE) == []
    assert session.enqueue(b"ignored") is None

    transport.connect_error = None
    assert await session.connect()
    assert session.state is ConnectionState.AWAITING_HANDSHAKE


@pytest.mark.asyncio
async def test_connect_while_live_is_ignored(session, transport) -> None:
    assert await session.connect()
    assert await session.connect() is False
    assert len(transport.metadata) == 1


@pytest.mark.asyncio
async def test_invalid_config_fails_fast(transport) -> None:
    session = StreamingSession(
        SessionConfig(endpoint="pose.example.com:443", api_key=""),
        transport=transport,
    )
    recorder = Recorder(session)

    assert await session.connect() is False
    assert session.state is ConnectionState.FAILED
    assert transport.address is None
    assert [e.error for e in recorder.of(EventKind.ERROR)] == [ErrorKind.INVALID_INPUT]


@pytest.mark.asyncio
@pytest.mark.parametrize("code, expected", [
    (1006, ConnectionState.FAILED),
    (1011, ConnectionState.FAILED),
    (1000, ConnectionState.CLOSED),
])
async def test_transport_disconnect_is_fatal(session, transport, recorder, code, expected) -> None:
    await make_ready(session, transport)
    session.enqueue(b"one")
    await settle()

    transport.drop(code, "server going away")
    assert session.state is expected
    assert not session.in_flight

    closes = recorder.of(EventKind.CLOSE)
    assert len(closes) == 1
    assert closes[0].code == code
    assert closes[0].reason == "server going away"

    assert session.enqueue(b"after") is None
    transport.push(pose_message(1))
    assert recorder.of(EventKind.POSE) == []
    assert recorder.of(EventKind.ERROR) == []


@pytest.mark.asyncio
async def test_error_for_in_flight_frame_completes_it(session, transport, recorder) -> None:
    await make_ready(session, transport)
    seq1 = session.enqueue(b"corrupt")
    await settle()
    seq2 = session.enqueue(b"good")

    transport.push({"type": "error", "kind": "server_error", "message": "oops"})
    await settle()
    assert session.in_flight
    assert len(transport.frames) == 1

    transport.push({"type": "error", "kind": "invalid_input", "message": "bad jpeg", "seq": seq1})
    await settle()
    assert [f["seq"] for f in transport.frames] == [seq1, seq2]
    assert [e.error for e in recorder.of(EventKind.ERROR)] == [
        ErrorKind.SERVER_ERROR,
        ErrorKind.INVALID_INPUT,
    ]


@pytest.mark.asyncio
async def test_undecodable_message_surfaces_error(session, transport, recorder) -> None:
    await make_ready(session, transport)
    transport.push_raw("{not json")
    transport.push({"type": "mystery"})

    errors = recorder.of(EventKind.ERROR)
    assert [e.error for e in errors] == [ErrorKind.OTHER, ErrorKind.OTHER]
    assert session.state is ConnectionState.READY


@pytest.mark.asyncio
async def test_session_state_changes_carry_previous(session, transport, recorder) -> None:
    await make_ready(session, transport)
    transport.push({"type": "session_state", "state": "positioning"})
    transport.push({"type": "session_state", "state": "exercising"})

    changes = recorder.of(EventKind.SESSION_STATE_CHANGED)
    assert [(c.previous, c.state) for c in changes] == [
        (SessionState.NO_HUMAN, SessionState.POSITIONING),
        (SessionState.POSITIONING, SessionState.EXERCISING),
    ]
    assert session.session_state is SessionState.EXERCISING


@pytest.mark.asyncio
async def test_events_arrive_in_order(session, transport, recorder) -> None:
    await make_ready(session, transport)
    transport.push({"type": "session_state", "state": "positioning"})
    transport.push({"type": "session_quality", "latency": "good", "environment": "poor"})
    transport.push({"type": "feedback", "feedbacks": [{"messages": ["Step back"], "metric": "distance"}]})
    transport.push({"type": "metric_values", "values": [{"metric": "depth", "value": 0.4, "score": 0.8}]})
    transport.push({"type": "repetition", "duration": 2.1, "feedbacks": []})

    assert recorder.kinds == [
        EventKind.READY,
        EventKind.SESSION_STATE_CHANGED,
        EventKind.SESSION_QUALITY_CHANGED,
        EventKind.FEEDBACK,
        EventKind.METRIC_VALUES,
        EventKind.REPETITION,
    ]


@pytest.mark.asyncio
async def test_empty_payload_is_rejected(session, transport, recorder) -> None:
    await make_ready(session, transport)
    assert session.enqueue(b"") is None
    await settle()

    assert transport.frames == []
    assert [e.error for e in recorder.of(EventKind.ERROR)] == [ErrorKind.INVALID_INPUT]


@pytest.mark.asyncio
async def test_failing_handler_does_not_stall_flow(session, transport) -> None:
    def broken(event):
        raise RuntimeError("handler bug")

    session.on(EventKind.POSE, broken)
    await make_ready(session, transport)
    seq1 = session.enqueue(b"one")
    await settle()
    seq2 = session.enqueue(b"two")

    transport.push(pose_message(seq1))
    await settle()
    assert [f["seq"] for f in transport.frames] == [seq1, seq2]
    assert session.dispatcher.get_stats()["handler_errors"] == 1


@pytest.mark.asyncio
async def test_handler_may_enqueue_next_frame(session, transport) -> None:
    @session.on(EventKind.POSE)
    def next_frame(event):
        session.enqueue(f"after-{event.seq}".encode())

    await make_ready(session, transport)
    seq1 = session.enqueue(b"one")
    await settle()

    transport.push(pose_message(seq1))
    await settle()
    assert sent_payloads(transport) == [b"one", f"after-{seq1}".encode()]
    assert session.in_flight


@pytest.mark.asyncio
async def test_enqueue_from_producer_threads(session, transport) -> None:
    await make_ready(session, transport)
    loop = asyncio.get_running_loop()

    def produce(worker: int) -> None:
        for i in range(50):
            session.enqueue(f"w{worker}-{i}".encode())

    with ThreadPoolExecutor(max_workers=4) as pool:
        await asyncio.gather(*(loop.run_in_executor(pool, produce, w) for w in range(4)))
    await settle(10)

    assert len(transport.frames) == 1
    assert session.in_flight

    transport.push(pose_message(transport.frames[0]["seq"]))
    await settle()
    assert len(transport.frames) == 2


@pytest.mark.asyncio
async def test_close_from_another_thread(session, transport, recorder) -> None:
    await make_ready(session, transport)
    await asyncio.to_thread(session.close)
    await settle(10)

    assert session.state is ConnectionState.CLOSED
    assert transport.close_calls == 1
    assert len(recorder.of(EventKind.CLOSE)) == 1


@pytest.mark.asyncio
async def test_stop_closes_transport(session, transport, recorder) -> None:
    await make_ready(session, transport)
    session.enqueue(b"one")
    await session.stop()

    assert session.state is ConnectionState.CLOSED
    assert transport.close_calls >= 1
    assert not transport.connected
    assert len(recorder.of(EventKind.CLOSE)) == 1
