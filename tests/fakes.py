from __future__ import annotations

import asyncio
import json
from typing import Any

from pose_stream_client.events import Event, EventKind
from pose_stream_client.models import BodyPoint, ErrorKind
from pose_stream_client.session import StreamingSession
from pose_stream_client.transport import Transport, TransportError


class FakeTransport(Transport):
    """In-memory transport; the test plays the server."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[dict[str, Any]] = []
        self.address: str | None = None
        self.credential: str | None = None
        self.connect_error: TransportError | None = None
        self.send_error: TransportError | None = None
        self.gate: asyncio.Event | None = None
        self.connected = False
        self.close_calls = 0

    async def connect(self, address: str, credential: str) -> None:
        self.address = address
        self.credential = credential
        if self.gate is not None:
            await self.gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def send(self, data: str) -> None:
        if self.send_error is not None:
            error, self.send_error = self.send_error, None
            raise error
        if not self.connected:
            raise TransportError(ErrorKind.CONNECTION_ERROR, "Not connected")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.close_calls += 1
        self.connected = False

    # Server side helpers

    def push(self, payload: dict[str, Any]) -> None:
        self._deliver(json.dumps(payload))

    def push_raw(self, data: str) -> None:
        self._deliver(data)

    def drop(self, code: int = 1006, reason: str = "") -> None:
        self.connected = False
        self._notify_closed(code, reason)

    @property
    def frames(self) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["type"] == "input"]

    @property
    def metadata(self) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["type"] == "metadata"]


def pose_points(score: float = 0.9) -> dict[str, dict[str, float]]:
    return {
        bp.value: {"x": 10.0 + i, "y": 20.0 + i, "score": score}
        for i, bp in enumerate(BodyPoint)
    }


def pose_message(seq: int | None = None, score: float = 0.9) -> dict[str, Any]:
    msg: dict[str, Any] = {"type": "pose", "points": pose_points(score)}
    if seq is not None:
        msg["seq"] = seq
    return msg


ACK = {"type": "metadata_ack", "ok": True}


async def settle(rounds: int = 5) -> None:
    """Let scheduled send tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class Recorder:
    """Registers a handler for every event kind and records deliveries."""

    def __init__(self, session: StreamingSession) -> None:
        self.events: list[Event] = []
        for kind in EventKind:
            session.on(kind, self.events.append)

    def of(self, kind: EventKind) -> list[Event]:
        return [e for e in self.events if e.kind is kind]

    @property
    def kinds(self) -> list[EventKind]:
        return [e.kind for e in self.events]
