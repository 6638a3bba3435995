"""
Streaming Session - connection lifecycle, handshake and flow control.

The session owns the connection state and the in-flight marker. It:
- connects the transport and sends the metadata (configuration) message
- releases frames only after the server acknowledged the configuration
- keeps at most one frame in flight, releasing the newest held frame each
  time a response completes
- routes decoded server messages to the registered handlers

enqueue() and close() may be called from any thread. Inbound messages are
handled on the event loop that ran connect().
"""

import asyncio
import dataclasses
import logging
import threading
from enum import Enum
from typing import Callable, Optional, Set, Union

from .config import MAX_FRAME_BYTES, SessionConfig
from .dispatcher import EventDispatcher, Handler
from .events import (
    CloseEvent,
    ErrorEvent,
    Event,
    EventKind,
    PoseEvent,
    ReadyEvent,
    SessionStateChangedEvent,
)
from .flow import FlowController
from .message import (
    FrameRequest,
    FrameValidator,
    MetadataAck,
    ProtocolError,
    SessionStateUpdate,
    decode_message,
    encode_metadata,
)
from .models import ErrorKind, SessionState
from .transport import Transport, TransportError, WebSocketTransport

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_HANDSHAKE = "awaiting_handshake"
    READY = "ready"
    ACTIVE = "active"
    CLOSED = "closed"
    FAILED = "failed"


LIVE_STATES = frozenset({
    ConnectionState.CONNECTING,
    ConnectionState.AWAITING_HANDSHAKE,
    ConnectionState.READY,
    ConnectionState.ACTIVE,
})
SENDABLE_STATES = frozenset({ConnectionState.READY, ConnectionState.ACTIVE})
DEAD_STATES = frozenset({ConnectionState.CLOSED, ConnectionState.FAILED})


class StreamingSession:
    """
    Client side of one pose analysis session.

    Usage:
        session = StreamingSession(SessionConfig("host:443", api_key))
        session.on(EventKind.POSE, handle_pose)
        await session.connect()
        session.enqueue(jpeg_bytes)   # from any thread
        ...
        await session.stop()
    """

    def __init__(
        self,
        config: SessionConfig,
        transport: Optional[Transport] = None,
        max_frame_bytes: int = MAX_FRAME_BYTES,
    ):
        """
        Initialize the session.

        Args:
            config: Session parameters (endpoint, API key, exercise, name)
            transport: Message channel; a WebSocketTransport by default
            max_frame_bytes: Soft size limit for frame payloads
        """
        self.config = config
        self.transport = transport or WebSocketTransport()
        self.dispatcher = EventDispatcher()
        self.validator = FrameValidator(max_bytes=max_frame_bytes)

        self._flow = FlowController()
        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._session_state = SessionState.NO_HUMAN
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._next_seq = 1

        # Statistics
        self._frames_sent = 0
        self._send_failures = 0
        self._responses = 0
        self._errors = 0

        self.transport.set_listener(self._on_transport_message, self._on_transport_closed)

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session_state(self) -> SessionState:
        return self._session_state

    @property
    def in_flight(self) -> bool:
        """True while a submitted frame is waiting for its response."""
        return self._flow.in_flight is not None

    def on(
        self, kind: EventKind, handler: Optional[Handler] = None
    ) -> Union[Handler, Callable[[Handler], Handler], None]:
        """
        Register the handler for an event kind.

        Can be used directly or as a decorator:

            @session.on(EventKind.REPETITION)
            def count(event): ...
        """
        if handler is None:
            def decorator(fn: Handler) -> Handler:
                self.dispatcher.register(kind, fn)
                return fn
            return decorator
        self.dispatcher.register(kind, handler)
        return handler

    async def connect(self) -> bool:
        """
        Open the connection and send the session metadata.

        Returns:
            True once the metadata was sent; readiness is signalled later by
            a READY event. False if the connection could not be opened, or if
            the metadata send failed, in which case the session stays
            AWAITING_HANDSHAKE and configure() retries.
        """
        with self._lock:
            if self._state in LIVE_STATES:
                logger.warning(f"connect() ignored, session is {self._state.value}")
                return False
            self._state = ConnectionState.CONNECTING
            self._loop = asyncio.get_running_loop()
            self._flow.reset(keep_held=True)
            self._session_state = SessionState.NO_HUMAN
        self.dispatcher.unseal()

        try:
            self.config.validate()
        except ValueError as e:
            logger.error(f"Invalid session configuration: {e}")
            self._fail(ErrorKind.INVALID_INPUT, str(e))
            return False

        try:
            await self.transport.connect(self.config.endpoint, self.config.api_key)
        except TransportError as e:
            self._fail(e.kind, str(e))
            return False

        with self._lock:
            aborted = self._state is not ConnectionState.CONNECTING
            if not aborted:
                self._state = ConnectionState.AWAITING_HANDSHAKE
        if aborted:
            logger.info("Session closed while connecting, releasing transport")
            await self.transport.close()
            return False

        return await self._send_metadata()

    async def configure(self, exercise_key: Optional[int] = None) -> bool:
        """
        Re-send the metadata message.

        Retries a rejected handshake, or re-arms the exercise selection of a
        ready session without reconnecting.
        """
        with self._lock:
            if self._state not in (
                ConnectionState.AWAITING_HANDSHAKE,
                ConnectionState.READY,
                ConnectionState.ACTIVE,
            ):
                logger.warning(f"configure() ignored, session is {self._state.value}")
                return False
            config = self.config
            if exercise_key is not None and exercise_key != config.exercise_key:
                config = dataclasses.replace(config, exercise_key=exercise_key)

        try:
            config.validate()
        except ValueError as e:
            self._emit(ErrorEvent(error=ErrorKind.INVALID_INPUT, message=str(e)))
            return False

        with self._lock:
            self.config = config
        return await self._send_metadata()

    def enqueue(self, payload: bytes) -> Optional[int]:
        """
        Offer an encoded frame for analysis. Never blocks.

        Only the newest unsent frame is kept. Frames offered before the
        session is ready are held until it is.

        Returns:
            Sequence number assigned to the frame, or None if it was dropped
        """
        with self._lock:
            if self._state in DEAD_STATES:
                logger.debug(f"Frame dropped, session is {self._state.value}")
                return None
            valid, reason = self.validator.validate(payload)
            if valid:
                seq = self._next_seq
                self._next_seq += 1
                self._flow.offer(FrameRequest(payload=bytes(payload), seq=seq))

        if not valid:
            logger.warning(f"Frame rejected: {reason}")
            self._emit(ErrorEvent(error=ErrorKind.INVALID_INPUT, message=f"Frame rejected: {reason}"))
            return None

        self.try_release()
        return seq

    def try_release(self) -> bool:
        """
        Submit the held frame if the session is ready and nothing is in flight.

        Returns:
            True if a frame was submitted
        """
        with self._lock:
            if self._state not in SENDABLE_STATES:
                return False
            frame = self._flow.take()
            if frame is None:
                return False
            if self._state is ConnectionState.READY:
                self._state = ConnectionState.ACTIVE
            loop = self._loop

        self._submit(loop, frame)
        return True

    def close(self) -> None:
        """
        Close the session. Idempotent, safe from any thread and any state.

        Pending and future enqueue()/try_release() calls become no-ops and no
        further events are dispatched after the final CLOSE event.
        """
        with self._lock:
            previous = self._state
            if previous is ConnectionState.CLOSED:
                return
            self._state = ConnectionState.CLOSED
            self._flow.reset()
            loop = self._loop

        logger.info(f"Closing session {self.config.session_name} (was {previous.value})")

        if loop is not None and previous is not ConnectionState.DISCONNECTED:
            self._schedule_transport_close(loop)

        if previous in LIVE_STATES:
            self.dispatcher.seal(CloseEvent(code=NORMAL_CLOSURE, reason="closed by client"))
        else:
            self.dispatcher.seal()

    async def stop(self) -> None:
        """Close the session and wait for the transport to shut down."""
        self.close()
        await self.transport.close()

        pending = [t for t in self._tasks if not t.done() and t is not asyncio.current_task()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Session stopped")

    def get_stats(self) -> dict:
        """Get session statistics."""
        with self._lock:
            return {
                "state": self._state.value,
                "session_state": self._session_state.value,
                "frames_sent": self._frames_sent,
                "send_failures": self._send_failures,
                "responses": self._responses,
                "errors": self._errors,
                "flow": self._flow.get_stats(),
                "validation": self.validator.get_stats(),
                "transport": self.transport.get_stats(),
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _emit(self, event: Event) -> None:
        if isinstance(event, ErrorEvent):
            with self._lock:
                self._errors += 1
        self.dispatcher.dispatch(event)

    def _fail(self, kind: ErrorKind, message: str) -> None:
        with self._lock:
            if self._state is not ConnectionState.CONNECTING:
                return
            self._state = ConnectionState.FAILED
            self._flow.reset()
        logger.error(f"Connection failed ({kind.value}): {message}")
        self._emit(ErrorEvent(error=kind, message=message))

    async def _send_metadata(self) -> bool:
        config = self.config
        try:
            await self.transport.send(encode_metadata(config))
        except TransportError as e:
            logger.error(f"Failed to send session metadata: {e}")
            self._emit(ErrorEvent(error=e.kind, message=f"Metadata send failed: {e}"))
            return False
        logger.info(
            f"Sent metadata: exercise={config.exercise_key} session={config.session_name}"
        )
        return True

    def _submit(self, loop: asyncio.AbstractEventLoop, frame: FrameRequest) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._spawn_send(frame)
            return
        try:
            loop.call_soon_threadsafe(self._spawn_send, frame)
        except RuntimeError as e:
            # Loop already closed; nothing can carry the frame
            with self._lock:
                if self._flow.in_flight is frame:
                    self._flow.complete()
            logger.error(f"Cannot submit frame {frame.seq}: {e}")
            self._emit(ErrorEvent(error=ErrorKind.OTHER, message=str(e), seq=frame.seq))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _spawn_send(self, frame: FrameRequest) -> None:
        self._spawn(self._send_frame(frame))

    async def _send_frame(self, frame: FrameRequest) -> None:
        if self._state in DEAD_STATES:
            return
        try:
            await self.transport.send(frame.to_json())
        except TransportError as e:
            with self._lock:
                if self._state in DEAD_STATES:
                    return
                if self._flow.in_flight is frame:
                    self._flow.complete()
                self._send_failures += 1
            logger.warning(f"Frame {frame.seq} send failed: {e}")
            self._emit(ErrorEvent(error=e.kind, message=f"Frame send failed: {e}", seq=frame.seq))
            self.try_release()
            return

        with self._lock:
            self._frames_sent += 1
        logger.debug(f"Sent frame {frame.seq} ({len(frame.payload)} bytes)")

    def _complete(self, seq: Optional[int]) -> bool:
        """Clear the in-flight marker for a finished analysis."""
        with self._lock:
            frame = self._flow.in_flight
            if frame is None:
                return False
            if seq is not None and seq != frame.seq:
                logger.debug(f"Response for frame {seq} while {frame.seq} in flight")
            self._flow.complete()
            self._responses += 1
            return True

    def _on_transport_message(self, data: Union[str, bytes]) -> None:
        if self._state not in LIVE_STATES:
            logger.debug(f"Ignoring message in state {self._state.value}")
            return

        try:
            msg = decode_message(data)
        except ProtocolError as e:
            logger.warning(f"Undecodable server message: {e}")
            self._emit(ErrorEvent(error=ErrorKind.OTHER, message=str(e)))
            return

        if isinstance(msg, MetadataAck):
            self._handle_ack(msg)
        elif isinstance(msg, SessionStateUpdate):
            with self._lock:
                previous, self._session_state = self._session_state, msg.state
            logger.info(f"Session state {previous.value} -> {msg.state.value}")
            self._emit(SessionStateChangedEvent(state=msg.state, previous=previous))
        elif isinstance(msg, PoseEvent):
            self._complete(msg.seq)
            self._emit(msg)
            self.try_release()
        elif isinstance(msg, ErrorEvent):
            logger.warning(f"Server error ({msg.error.value}): {msg.message}")
            answered = False
            with self._lock:
                frame = self._flow.in_flight
                if msg.seq is not None and frame is not None and frame.seq == msg.seq:
                    answered = self._complete(msg.seq)
            self._emit(msg)
            if answered:
                self.try_release()
        else:
            self._emit(msg)

    def _handle_ack(self, ack: MetadataAck) -> None:
        if not ack.ok:
            logger.warning(f"Configuration rejected ({ack.error.value}): {ack.message}")
            self._emit(ErrorEvent(error=ack.error, message=ack.message))
            return

        with self._lock:
            if self._state is ConnectionState.AWAITING_HANDSHAKE:
                self._state = ConnectionState.READY
                logger.info("Session ready")
            elif self._state in SENDABLE_STATES:
                logger.info(f"Exercise re-armed: {self.config.exercise_key}")
            else:
                return
            exercise_key = self.config.exercise_key

        self._emit(ReadyEvent(exercise_key=exercise_key))
        self.try_release()

    def _on_transport_closed(self, code: int, reason: str) -> None:
        with self._lock:
            # A close notice while connecting belongs to a previous connection
            if self._state not in LIVE_STATES or self._state is ConnectionState.CONNECTING:
                return
            self._state = ConnectionState.CLOSED if code == NORMAL_CLOSURE else ConnectionState.FAILED
            self._flow.reset()
            new_state = self._state

        logger.warning(f"Connection lost ({code} {reason}), session {new_state.value}")
        self.dispatcher.seal(CloseEvent(code=code, reason=reason))

    def _schedule_transport_close(self, loop: asyncio.AbstractEventLoop) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._spawn(self.transport.close())
        elif not loop.is_closed():
            asyncio.run_coroutine_threadsafe(self.transport.close(), loop)
