"""Lifecycle of the single realtime connection: connect, backoff, reconnect, teardown."""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .client import NotConnectedError, TransientConnectionError, Transport
from .constants import RECONNECT_BASE_DELAY, RECONNECT_MAX_DELAY, DEFAULT_TIMEOUT
from .messages import Icons, format_retry, format_state_change
from .models import ConnectionState, RestoredSession, Session
from .protocol import Envelope, restore_session

log = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]
SleepFn = Callable[[float], Awaitable[Any]]
StateListener = Callable[[ConnectionState, ConnectionState], None]
CloseListener = Callable[[Exception], None]
EventListener = Callable[[Dict[str, Any]], None]


class ConnectionCancelledError(NotConnectedError):
    """A pending connect() was superseded or torn down before it succeeded."""
    pass


def backoff_delay(attempt: int, base: float = RECONNECT_BASE_DELAY, cap: float = RECONNECT_MAX_DELAY) -> float:
    """Delay before retry number ``attempt``: ``min(base * 2**attempt, cap)``."""
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    # cap the exponent so huge attempt counts never build huge ints
    return min(base * (2 ** min(attempt, 62)), cap)


class ConnectionHandle:
    """Caller-facing view of one established connection.

    A handle is bound to the connection epoch it was issued for; after a drop
    and reconnect it stays dead and a new handle is issued.
    """

    def __init__(self, manager: "ConnectionManager", epoch: int):
        self._manager = manager
        self.epoch = epoch

    @property
    def is_live(self) -> bool:
        return self._manager.state is ConnectionState.CONNECTED and self._manager.epoch == self.epoch

    async def request(self, kind: str, body: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Envelope:
        if not self.is_live:
            raise NotConnectedError("Connection handle is no longer live")
        return await self._manager.request(kind, body, timeout=timeout)

    def __repr__(self) -> str:
        return f"<ConnectionHandle epoch={self.epoch} live={self.is_live}>"


class ConnectionManager:
    """Owns the realtime transport and keeps it alive while a session exists.

    States: DISCONNECTED -> CONNECTING -> CONNECTED; a failed attempt or an
    unexpected close moves to RECONNECTING, waits out the backoff delay and
    goes back to CONNECTING. Retries are unbounded. ``close()`` (or a new
    ``connect()``) cancels the pending retry and drops the transport.

    Exactly one retry loop task exists at a time; the backoff wait lives inside
    it, so cancelling that task is cancelling the timer.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_delay: float = RECONNECT_MAX_DELAY,
        request_timeout: float = DEFAULT_TIMEOUT,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._transport_factory = transport_factory
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.request_timeout = request_timeout
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self.attempt_count = 0
        # bumped on every successful connect; tickets and handles compare against it
        self.epoch = 0
        self._session: Optional[RestoredSession] = None
        self._transport: Optional[Transport] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._waiting_retry = False
        self._ready: Optional[asyncio.Future] = None
        self._handle: Optional[ConnectionHandle] = None
        # bumped by every connect() and close(); a connect() that sees it move was overtaken
        self._generation = 0

        self._state_listeners: List[StateListener] = []
        self._close_listeners: List[CloseListener] = []
        self._event_listeners: Dict[str, List[EventListener]] = {}

    # ---- observation ----
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def retry_pending(self) -> bool:
        """True while a backoff wait is outstanding."""
        return self._waiting_retry

    @property
    def handle(self) -> Optional[ConnectionHandle]:
        return self._handle if self.is_connected else None

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_close_listener(self, listener: CloseListener) -> None:
        """Subscribe to unexpected drops of the live transport."""
        self._close_listeners.append(listener)

    def add_event_listener(self, kind: str, listener: EventListener) -> None:
        """Subscribe to server pushes of ``kind``; survives reconnects."""
        self._event_listeners.setdefault(kind, []).append(listener)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        log.info(format_state_change(old.value, new.value, self.attempt_count))
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception:
                log.exception("State listener error")

    def _dispatch_event(self, kind: str, body: Dict[str, Any]) -> None:
        for listener in list(self._event_listeners.get(kind, ())):
            listener(body)

    # ---- lifecycle ----
    async def connect(self, session: Session | RestoredSession) -> ConnectionHandle:
        """Connect for ``session`` and return once the first attempt succeeds.

        Transient failures are retried with backoff without resolving. Any
        previous connection, pending retry or pending connect() is superseded.

        Raises:
            ProtocolError: If the session token cannot be restored
            ConnectionCancelledError: If close() or another connect() supersedes this call"""
        restored = session if isinstance(session, RestoredSession) else restore_session(session.token)
        if restored.is_expired():
            log.warning(f"{Icons.WARNING} Session token for {restored.username or restored.user_id} is expired")
        self._generation += 1
        generation = self._generation
        await self._shutdown("superseded by a new connect()")
        if generation != self._generation:
            raise ConnectionCancelledError("connect() cancelled: overtaken by another connect() or close()")
        self._session = restored
        self.attempt_count = 0
        ready = asyncio.get_running_loop().create_future()
        self._ready = ready
        self._loop_task = asyncio.create_task(self._run(None), name="lobbylink-connect")
        return await ready

    async def close(self) -> None:
        """Tear down: cancel any pending retry, drop the transport, go DISCONNECTED."""
        self._generation += 1
        self._session = None
        self.attempt_count = 0
        await self._shutdown("connection closed")

    async def _shutdown(self, reason: str) -> None:
        # detach everything before the first await so a concurrent connect() starts clean
        task, self._loop_task = self._loop_task, None
        ready, self._ready = self._ready, None
        transport, self._transport = self._transport, None
        self._handle = None
        self._waiting_retry = False
        if task is not None and task is asyncio.current_task():
            task = None
        if task is not None and not task.done():
            task.cancel()
        if ready is not None and not ready.done():
            ready.set_exception(ConnectionCancelledError(f"connect() cancelled: {reason}"))
        self._set_state(ConnectionState.DISCONNECTED)
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if transport is not None:
            await transport.close()

    def _record_failure(self, reason: object) -> float:
        self.attempt_count += 1
        delay = backoff_delay(self.attempt_count, self.base_delay, self.max_delay)
        log.warning(format_retry(self.attempt_count, delay, reason))
        return delay

    async def _run(self, delay: Optional[float]) -> None:
        """Attempt loop: optional backoff wait, connect, repeat on transient failure."""
        assert self._session is not None
        while True:
            if delay is not None:
                self._set_state(ConnectionState.RECONNECTING)
                self._waiting_retry = True
                try:
                    await self._sleep(delay)
                finally:
                    self._waiting_retry = False
            self._set_state(ConnectionState.CONNECTING)
            transport = self._transport_factory()
            try:
                await transport.connect(
                    self._session,
                    on_close=self._on_transport_closed,
                    on_event=self._dispatch_event,
                )
            except TransientConnectionError as e:
                delay = self._record_failure(e)
                continue
            except asyncio.CancelledError:
                await transport.close()
                raise
            except Exception as e:
                log.exception(f"{Icons.ERROR} Unexpected error while connecting")
                self._set_state(ConnectionState.DISCONNECTED)
                ready, self._ready = self._ready, None
                if ready is not None and not ready.done():
                    ready.set_exception(e)
                return
            self._transport = transport
            self.attempt_count = 0
            self.epoch += 1
            self._handle = ConnectionHandle(self, self.epoch)
            self._set_state(ConnectionState.CONNECTED)
            ready, self._ready = self._ready, None
            if ready is not None and not ready.done():
                ready.set_result(self._handle)
            return

    def _on_transport_closed(self, transport: Transport, reason: Exception) -> None:
        if transport is not self._transport:
            log.debug("Close from a discarded transport ignored")
            return
        self._transport = None
        self._handle = None
        delay = self._record_failure(reason)
        self._set_state(ConnectionState.RECONNECTING)
        for listener in list(self._close_listeners):
            try:
                listener(reason)
            except Exception:
                log.exception("Close listener error")
        if self._session is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._loop_task = asyncio.create_task(self._run(delay), name="lobbylink-reconnect")

    # ---- requests ----
    async def request(self, kind: str, body: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Envelope:
        """Send a request over the live transport.

        Raises:
            NotConnectedError: If not CONNECTED, or the connection drops mid-request"""
        transport = self._transport
        if transport is None or not self.is_connected:
            raise NotConnectedError(f"Not connected (state={self._state.value})")
        return await transport.request(kind, body, timeout=self.request_timeout if timeout is None else timeout)
