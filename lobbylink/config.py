"""Client configuration."""

from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Optional, Mapping
from urllib.parse import urlencode

from .constants import (
    DEFAULT_HOST, DEFAULT_PORT, DEFAULT_USE_SSL, SERVER_KEY,
    DEFAULT_TIMEOUT, DEFAULT_CONNECT_TIMEOUT, DEFAULT_STATE_FILE,
    RECONNECT_BASE_DELAY, RECONNECT_MAX_DELAY,
    DEFAULT_PING_INTERVAL, DEFAULT_PING_TIMEOUT,
    WS_PATH, WS_LANG,
)

_TRUTHY = ("1", "true", "yes", "y")


def env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUTHY


@dataclass
class ClientConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    use_ssl: bool = DEFAULT_USE_SSL
    server_key: str = SERVER_KEY
    timeout: float = DEFAULT_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    proxy: Optional[str] = None
    state_file: str = DEFAULT_STATE_FILE
    base_delay: float = RECONNECT_BASE_DELAY
    max_delay: float = RECONNECT_MAX_DELAY
    ping_interval: Optional[float] = DEFAULT_PING_INTERVAL
    ping_timeout: Optional[float] = DEFAULT_PING_TIMEOUT
    debug_wire: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        """Build a config from NAKAMA_* / LOBBYLINK_* environment variables.

        Raises:
            ValueError: If NAKAMA_PORT is not an integer"""
        env = os.environ if environ is None else environ
        cfg = cls()
        cfg.host = env.get("NAKAMA_HOST") or cfg.host
        port = (env.get("NAKAMA_PORT") or "").strip()
        if port:
            try:
                cfg.port = int(port)
            except ValueError:
                raise ValueError(f"NAKAMA_PORT must be an integer, got {port!r}") from None
        cfg.use_ssl = env_flag(env.get("NAKAMA_SSL"))
        cfg.server_key = env.get("NAKAMA_SERVER_KEY") or cfg.server_key
        cfg.proxy = (env.get("LOBBYLINK_PROXY") or "").strip() or None
        cfg.state_file = env.get("LOBBYLINK_STATE_FILE") or cfg.state_file
        cfg.debug_wire = env_flag(env.get("LOBBYLINK_DEBUG_WIRE"))
        return cfg

    @property
    def http_base_url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.host}:{self.port}"

    def ws_url(self, token: str) -> str:
        scheme = "wss" if self.use_ssl else "ws"
        query = urlencode({"lang": WS_LANG, "status": "false", "token": token})
        return f"{scheme}://{self.host}:{self.port}{WS_PATH}?{query}"
