"""Data models for the lobby client."""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List
import time


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class MatchMode(str, Enum):
    CASUAL = "casual"
    RANKED = "ranked"

    @classmethod
    def parse(cls, value: "MatchMode | str") -> "MatchMode":
        """Accept an enum member or its (case-insensitive) string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown match mode: {value!r}") from None


@dataclass(frozen=True)
class Session:
    """Authenticated context returned by device login."""
    token: str
    username: str
    user_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.username


@dataclass(frozen=True)
class RestoredSession:
    """Session claims decoded locally from a token, used to open the socket."""
    token: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    expires_at: Optional[int] = None
    vars: Dict[str, str] = field(default_factory=dict)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at


@dataclass(frozen=True)
class QueueTicket:
    """Pending matchmaking request; valid only for the connection epoch it was issued on."""
    id: str
    mode: MatchMode
    epoch: int


@dataclass(frozen=True)
class MatchFound:
    ticket: str
    match_id: str
    mode: MatchMode
    token: Optional[str] = None
    users: List[Dict[str, Any]] = field(default_factory=list)
