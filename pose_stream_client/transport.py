"""
Transport layer for server communication.

Handles:
- Abstract duplex message channel used by the session
- Secure WebSocket implementation with API key auth
- Mapping of connection failures onto ErrorKind
- Reader task that forwards inbound messages and the close code/reason
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    ConnectionClosed,
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
    WebSocketException,
)

from .config import TransportSettings
from .models import ErrorKind

logger = logging.getLogger(__name__)

MessageListener = Callable[[Union[str, bytes]], None]
CloseListener = Callable[[int, str], None]

# Close code reported when the connection dropped without a close frame.
ABNORMAL_CLOSURE = 1006

# Close code sent when the reader fails locally.
INTERNAL_ERROR = 1011


class TransportError(Exception):
    """Transport-level failure tagged with its ErrorKind."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a connection or send exception onto an ErrorKind."""
    if isinstance(exc, TransportError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, InvalidStatus):
        status = exc.response.status_code
        if status >= 500:
            return ErrorKind.SERVER_ERROR
        if 400 <= status < 500:
            return ErrorKind.INVALID_INPUT
        return ErrorKind.CONNECTION_ERROR
    if isinstance(exc, InvalidURI):
        return ErrorKind.INVALID_INPUT
    if isinstance(exc, (ConnectionClosed, InvalidHandshake, OSError)):
        return ErrorKind.CONNECTION_ERROR
    return ErrorKind.OTHER


@dataclass
class ConnectionStats:
    """Statistics about the transport connection."""
    connected: bool = False
    connect_time: Optional[float] = None
    disconnect_time: Optional[float] = None
    messages_sent: int = 0
    messages_received: int = 0
    messages_failed: int = 0
    last_send_time: Optional[float] = None


class Transport(ABC):
    """
    Duplex message channel to the analysis server.

    Implementations call the registered listeners from the event loop that
    ran connect(): on_message for every inbound message and on_close once
    when the channel goes away.
    """

    def __init__(self):
        self._on_message: Optional[MessageListener] = None
        self._on_close: Optional[CloseListener] = None
        self.stats = ConnectionStats()

    def set_listener(self, on_message: MessageListener, on_close: CloseListener) -> None:
        self._on_message = on_message
        self._on_close = on_close

    @abstractmethod
    async def connect(self, address: str, credential: str) -> None:
        """Open the channel. Raises TransportError on failure."""

    @abstractmethod
    async def send(self, data: str) -> None:
        """Send one message. Raises TransportError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Safe to call repeatedly."""

    def _deliver(self, data: Union[str, bytes]) -> None:
        self.stats.messages_received += 1
        if self._on_message:
            self._on_message(data)

    def _notify_closed(self, code: int, reason: str) -> None:
        self.stats.connected = False
        self.stats.disconnect_time = time.time()
        if self._on_close:
            self._on_close(code, reason)

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "connected": self.stats.connected,
            "connect_time": self.stats.connect_time,
            "disconnect_time": self.stats.disconnect_time,
            "messages_sent": self.stats.messages_sent,
            "messages_received": self.stats.messages_received,
            "messages_failed": self.stats.messages_failed,
            "last_send_time": self.stats.last_send_time,
        }


class WebSocketTransport(Transport):
    """
    Secure WebSocket transport.

    Features:
    - Bearer token authentication
    - Keepalive pings
    - Background reader task forwarding messages to the session
    - No reconnection: a dropped connection is reported once via on_close
    """

    def __init__(self, settings: Optional[TransportSettings] = None):
        super().__init__()
        self.settings = settings or TransportSettings()
        self._ws: Optional[ClientConnection] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and self.stats.connected

    async def connect(self, address: str, credential: str) -> None:
        headers = {
            "Authorization": f"Bearer {credential}"
        }
        self._closing = False

        logger.info(f"Connecting to {address}...")
        try:
            self._ws = await connect(
                address,
                additional_headers=headers,
                open_timeout=self.settings.open_timeout,
                ping_interval=self.settings.ping_interval,
                ping_timeout=self.settings.ping_timeout,
                close_timeout=self.settings.close_timeout,
                max_size=self.settings.max_message_bytes,
            )
        except InvalidStatus as e:
            logger.error(f"Server rejected connection: HTTP {e.response.status_code}")
            raise TransportError(classify_error(e), str(e)) from e
        except ConnectionRefusedError as e:
            logger.error("Connection refused - is the server running?")
            raise TransportError(ErrorKind.CONNECTION_ERROR, str(e)) from e
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(f"Connection failed: {e}")
            raise TransportError(classify_error(e), str(e)) from e

        self.stats.connected = True
        self.stats.connect_time = time.time()
        logger.info("WebSocket connected successfully")

        self._reader_task = asyncio.create_task(self._read_loop(self._ws))

    async def _read_loop(self, ws: ClientConnection) -> None:
        """Forward inbound messages until the connection ends."""
        try:
            async for message in ws:
                try:
                    self._deliver(message)
                except Exception:
                    # A faulty listener must not end the connection
                    logger.exception("Listener failed on inbound message")
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Reader loop error: {e}")
            try:
                await ws.close(code=INTERNAL_ERROR, reason="client reader failed")
            except WebSocketException as close_error:
                logger.warning(f"Error while closing connection: {close_error}")

        # Close code and reason are only known once the closing handshake ends
        try:
            await asyncio.wait_for(ws.wait_closed(), timeout=self.settings.close_timeout)
        except asyncio.TimeoutError:
            logger.debug("Timed out waiting for closing handshake")

        code = ws.close_code if ws.close_code is not None else ABNORMAL_CLOSURE
        reason = ws.close_reason or ""
        if self._closing:
            logger.debug(f"Connection closed locally ({code})")
        else:
            logger.warning(f"Connection closed by peer: {code} {reason}")
        self._ws = None
        self._notify_closed(code, reason)

    async def send(self, data: str) -> None:
        ws = self._ws
        if ws is None or not self.stats.connected:
            self.stats.messages_failed += 1
            raise TransportError(ErrorKind.CONNECTION_ERROR, "Not connected")
        try:
            await ws.send(data)
        except (ConnectionClosed, WebSocketException) as e:
            self.stats.messages_failed += 1
            logger.warning(f"Send failed: {e}")
            raise TransportError(classify_error(e), str(e)) from e
        self.stats.messages_sent += 1
        self.stats.last_send_time = time.time()

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except WebSocketException as e:
                logger.warning(f"Error while closing connection: {e}")
        if self._reader_task is not None:
            task, self._reader_task = self._reader_task, None
            if task is not asyncio.current_task():
                try:
                    await asyncio.wait_for(task, timeout=self.settings.close_timeout)
                except asyncio.TimeoutError:
                    task.cancel()
                except asyncio.CancelledError:
                    pass
        self._ws = None
        self.stats.connected = False
