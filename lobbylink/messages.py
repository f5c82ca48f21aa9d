"""Log icons and message formatting helpers."""

from __future__ import annotations
from typing import Optional


class Icons:
    SUCCESS = "✅"
    ERROR = "❌"
    WARNING = "⚠️"
    INFO = "ℹ️"
    RETRY = "🔄"
    CONNECT = "🔌"
    QUEUE = "⏳"
    MATCH = "🎮"


def short_token(token: Optional[str], keep: int = 10) -> str:
    """Shorten a token for display, e.g. 'eyJhbGciOi...'."""
    if not token:
        return ""
    return token[:keep] + "..." if len(token) > keep else token


def format_state_change(old: str, new: str, attempt: int = 0) -> str:
    line = f"{Icons.CONNECT} Connection {old} -> {new}"
    if attempt:
        line += f" (attempt {attempt})"
    return line


def format_retry(attempt: int, delay: float, reason: object = None) -> str:
    line = f"{Icons.RETRY} Reconnect attempt {attempt} in {delay:g}s"
    if reason:
        line += f": {reason}"
    return line


def format_login(username: str, token: str) -> str:
    return f"{Icons.SUCCESS} Logged in as {username} (token {short_token(token)})"


def format_match_found(match_id: str, mode: str) -> str:
    return f"{Icons.MATCH} Match found: {match_id} [{mode}]"
