"""Client-side session and realtime connection lifecycle for the lobby service."""

# Public API exports
from .api import LobbyAPI, ApiError
from .auth import AuthSession, AuthenticationError, display_name_for
from .client import RealtimeTransport, TransientConnectionError, NotConnectedError, RealtimeError
from .config import ClientConfig
from .connection import ConnectionManager, ConnectionHandle, ConnectionCancelledError, backoff_delay
from .context import LobbyContext
from .identity import IdentityStore, JsonFileStore, MemoryStore, StorageError
from .matchmaking import MatchmakingClient
from .models import Session, RestoredSession, QueueTicket, MatchFound, MatchMode, ConnectionState
from .protocol import LobbyLinkError, ProtocolError, decode_payload, restore_session
from .version import __version__

__all__ = [
    # Context
    "LobbyContext",
    "ClientConfig",

    # Components
    "IdentityStore",
    "JsonFileStore",
    "MemoryStore",
    "AuthSession",
    "LobbyAPI",
    "ConnectionManager",
    "ConnectionHandle",
    "RealtimeTransport",
    "MatchmakingClient",

    # Models
    "Session",
    "RestoredSession",
    "QueueTicket",
    "MatchFound",
    "MatchMode",
    "ConnectionState",

    # Errors
    "LobbyLinkError",
    "StorageError",
    "ApiError",
    "AuthenticationError",
    "TransientConnectionError",
    "NotConnectedError",
    "ConnectionCancelledError",
    "RealtimeError",
    "ProtocolError",

    # Helpers
    "backoff_delay",
    "decode_payload",
    "restore_session",
    "display_name_for",
    "__version__",
]
