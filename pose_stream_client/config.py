"""
Session and transport configuration.

SessionConfig holds the parameters supplied by the embedding application
(endpoint, API key, exercise, session name). TransportSettings holds the
WebSocket tunables.
"""

import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

API_KEY_ENV = "POSE_API_KEY"

# Soft size limit for encoded frames; larger payloads are sent but logged.
MAX_FRAME_BYTES = 10 * 1024


def normalize_endpoint(endpoint: str) -> str:
    """
    Turn a bare host:port into a secure WebSocket URL.

    URLs that already carry a ws:// or wss:// scheme are returned unchanged.
    """
    endpoint = endpoint.strip()
    if "://" not in endpoint:
        return f"wss://{endpoint}"
    return endpoint


def default_session_name() -> str:
    """Client-chosen unique session name."""
    return f"session-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class SessionConfig:
    """
    Immutable parameters of one streaming session.

    Attributes:
        endpoint: Server address, ws(s) URL or host:port
        api_key: Credential sent with the connection and the metadata
        exercise_key: Identifier of the exercise to analyse (1 = squat)
        session_name: Unique name chosen by the client
    """
    endpoint: str
    api_key: str
    exercise_key: int = 1
    session_name: str = field(default_factory=default_session_name)

    def __post_init__(self):
        object.__setattr__(self, "endpoint", normalize_endpoint(self.endpoint))

    def validate(self) -> None:
        """
        Check the configuration before connecting.

        Raises:
            ValueError: if any field is unusable
        """
        parsed = urlparse(self.endpoint)
        if parsed.scheme not in ("ws", "wss"):
            raise ValueError(f"Unsupported endpoint scheme: {parsed.scheme!r}")
        if not parsed.hostname:
            raise ValueError(f"Endpoint has no host: {self.endpoint!r}")
        if not self.api_key:
            raise ValueError("API key is required")
        if isinstance(self.exercise_key, bool) or not isinstance(self.exercise_key, int):
            raise ValueError(f"Exercise key must be an integer, got {self.exercise_key!r}")
        if self.exercise_key < 0:
            raise ValueError(f"Exercise key must be non-negative, got {self.exercise_key}")
        if not self.session_name:
            raise ValueError("Session name is required")
        if parsed.scheme == "ws":
            logger.warning(f"Endpoint {self.endpoint} is not TLS protected")

    @classmethod
    def from_env(
        cls,
        endpoint: str,
        exercise_key: int = 1,
        session_name: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> 'SessionConfig':
        """Build a config, taking the API key from the environment if not given."""
        key = api_key or os.environ.get(API_KEY_ENV, "")
        if session_name:
            return cls(endpoint=endpoint, api_key=key,
                       exercise_key=exercise_key, session_name=session_name)
        return cls(endpoint=endpoint, api_key=key, exercise_key=exercise_key)


@dataclass(frozen=True)
class TransportSettings:
    """WebSocket tunables, in seconds unless noted."""
    open_timeout: float = 10.0
    ping_interval: Optional[float] = 20.0
    ping_timeout: Optional[float] = 10.0
    close_timeout: float = 5.0
    max_message_bytes: int = 1024 * 1024
