"""Realtime socket transport for the lobby service."""

from __future__ import annotations
import asyncio
import itertools
import json
import logging
import socket
from typing import Any, Callable, Dict, Optional, Protocol

from websockets.asyncio.client import connect as ws_connect, ClientConnection
from websockets.exceptions import ConnectionClosed, InvalidStatus, InvalidURI, WebSocketException

from .config import ClientConfig
from .messages import Icons
from .models import RestoredSession
from .protocol import Envelope, LobbyLinkError, ProtocolError, build_envelope, parse_envelope
from .proxy_utils import open_proxy_socket

log = logging.getLogger(__name__)


class TransientConnectionError(LobbyLinkError):
    """A connect attempt failed or a live socket dropped; recoverable by retrying."""
    pass


class NotConnectedError(LobbyLinkError):
    """Raised when an operation requires a live connection but none is available."""
    pass


class RealtimeError(LobbyLinkError):
    """The server answered a realtime request with an error, or never answered."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


CloseCallback = Callable[[Any, Exception], None]
EventCallback = Callable[[str, Dict[str, Any]], None]


class Transport(Protocol):
    """What ConnectionManager needs from a socket. One instance per connect attempt."""

    @property
    def is_open(self) -> bool: ...

    async def connect(
        self,
        session: RestoredSession,
        *,
        on_close: Optional[CloseCallback] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None: ...

    async def request(self, kind: str, body: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Envelope: ...

    async def close(self) -> None: ...


def _peek_cid(raw: Any) -> Optional[str]:
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if isinstance(msg, dict) and msg.get("cid") is not None:
        return str(msg["cid"])
    return None


class RealtimeTransport:
    """Single-use websocket channel speaking JSON envelopes.

    Requests are correlated with replies by ``cid``; frames without a cid are
    server pushes and go to ``on_event``. A close that was not requested via
    :meth:`close` is reported once through ``on_close``. The transport is never
    reconnected; the owner builds a fresh one instead.
    """

    def __init__(self, config: ClientConfig):
        self.config = config
        self._ws: Optional[ClientConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._cid = itertools.count(1)
        self._used = False
        self._closing = False
        self._on_close: Optional[CloseCallback] = None
        self._on_event: Optional[EventCallback] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    async def _open_proxy_socket(self) -> Optional[socket.socket]:
        if not self.config.proxy:
            return None
        return await asyncio.to_thread(
            open_proxy_socket,
            self.config.proxy,
            self.config.host,
            self.config.port,
            timeout=self.config.connect_timeout,
        )

    async def connect(
        self,
        session: RestoredSession,
        *,
        on_close: Optional[CloseCallback] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        """Open the socket authenticated by the restored session.

        Raises:
            TransientConnectionError: If the socket cannot be opened or the handshake is refused
            RuntimeError: If this transport was already used"""
        if self._used:
            raise RuntimeError("RealtimeTransport instances are single-use")
        self._used = True
        self._on_close = on_close
        self._on_event = on_event
        target = f"{self.config.host}:{self.config.port}"
        log.info(f"{Icons.CONNECT} Connecting to {target}...")
        sock = None
        try:
            sock = await self._open_proxy_socket()
            kwargs: Dict[str, Any] = {}
            if sock is not None:
                kwargs["sock"] = sock
            self._ws = await ws_connect(
                self.config.ws_url(session.token),
                open_timeout=self.config.connect_timeout,
                ping_interval=self.config.ping_interval,
                ping_timeout=self.config.ping_timeout,
                **kwargs,
            )
        except InvalidURI:
            self._discard_socket(sock)
            raise
        except InvalidStatus as e:
            self._discard_socket(sock)
            raise TransientConnectionError(f"Handshake with {target} refused: HTTP {e.response.status_code}") from e
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self._discard_socket(sock)
            raise TransientConnectionError(f"Cannot connect to {target}: {e}") from e
        except asyncio.CancelledError:
            self._discard_socket(sock)
            raise
        log.info(f"{Icons.SUCCESS} Connected to {target}")
        self._reader = asyncio.create_task(self._read_loop(self._ws), name="lobbylink-reader")

    @staticmethod
    def _discard_socket(sock: Optional[socket.socket]) -> None:
        if sock is not None:
            sock.close()

    async def _read_loop(self, ws: ClientConnection) -> None:
        reason: Exception = TransientConnectionError("Server closed the connection")
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            reason = TransientConnectionError(f"Connection dropped: {e}")
        except asyncio.CancelledError:
            self._fail_pending(NotConnectedError("Connection closed"))
            raise
        self._finish(reason)

    def _finish(self, reason: Exception) -> None:
        self._fail_pending(NotConnectedError("Connection lost"))
        if self._closing:
            return
        self._closing = True
        log.warning(f"{Icons.WARNING} {reason}")
        if self._on_close is not None:
            self._on_close(self, reason)

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(exc)

    def _dispatch(self, raw: Any) -> None:
        if self.config.debug_wire:
            log.info(f"RX: {raw}")
        try:
            env = parse_envelope(raw)
        except ProtocolError as e:
            cid = _peek_cid(raw)
            fut = self._pending.pop(cid, None) if cid is not None else None
            if fut is not None and not fut.done():
                fut.set_exception(e)
            else:
                log.warning(f"{Icons.WARNING} Dropping malformed frame: {e}")
            return
        if env.cid is not None:
            fut = self._pending.pop(env.cid, None)
            if fut is None or fut.done():
                log.debug(f"Reply for unknown cid={env.cid} ignored")
                return
            if env.is_error:
                code, message = env.error_info()
                fut.set_exception(RealtimeError(message or "Request failed", code))
            else:
                fut.set_result(env)
            return
        if env.kind and self._on_event is not None:
            try:
                self._on_event(env.kind, env.body)
            except Exception:
                log.exception(f"Event handler error for {env.kind}")

    async def request(self, kind: str, body: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Envelope:
        """Send one request and wait for its correlated reply.

        Raises:
            NotConnectedError: If the socket is closed before or while the request is in flight
            RealtimeError: If the server returns an error or does not answer in time
            ProtocolError: If the reply cannot be parsed"""
        if not self.is_open:
            raise NotConnectedError("Realtime socket is not open")
        assert self._ws is not None
        cid = str(next(self._cid))
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[cid] = fut
        frame = build_envelope(cid, kind, body)
        if self.config.debug_wire:
            log.info(f"TX: {frame}")
        try:
            await self._ws.send(frame)
        except ConnectionClosed as e:
            self._pending.pop(cid, None)
            raise NotConnectedError(f"Connection lost while sending {kind}") from e
        wait = self.config.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(fut, wait)
        except asyncio.TimeoutError:
            self._pending.pop(cid, None)
            raise RealtimeError(f"No reply to {kind} within {wait:g}s") from None

    async def close(self) -> None:
        """Close the socket without triggering on_close."""
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            await reader
        self._fail_pending(NotConnectedError("Connection closed"))
