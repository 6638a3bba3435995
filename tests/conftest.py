from __future__ import annotations

import pytest

from pose_stream_client.config import SessionConfig
from pose_stream_client.session import StreamingSession

from fakes import FakeTransport, Recorder


@pytest.fixture
def config() -> SessionConfig:
    return SessionConfig(
        endpoint="pose.example.com:443",
        api_key="test-key",
        exercise_key=1,
        session_name="test-session",
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def session(config: SessionConfig, transport: FakeTransport) -> StreamingSession:
    return StreamingSession(config, transport=transport)


@pytest.fixture
def recorder(session: StreamingSession) -> Recorder:
    return Recorder(session)
