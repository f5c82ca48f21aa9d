"""Per-process wiring of identity, auth, connection and matchmaking."""

from __future__ import annotations
import asyncio
import logging
from typing import Optional

from .api import LobbyAPI
from .auth import AuthSession, RpcCaller
from .client import RealtimeTransport
from .config import ClientConfig
from .connection import ConnectionCancelledError, ConnectionHandle, ConnectionManager, TransportFactory
from .identity import IdentityStore, JsonFileStore, KeyValueStore
from .matchmaking import MatchmakingClient
from .models import ConnectionState, Session
from .protocol import restore_session

log = logging.getLogger(__name__)


class LobbyContext:
    """Explicit context object: create once, use, dispose.

    Components receive their collaborators from here instead of reaching for
    module globals. After :meth:`dispose` every accessor raises RuntimeError.

    Example::

        async with LobbyContext(ClientConfig.from_env()) as ctx:
            await ctx.login()
            await ctx.wait_connected()
            ticket = await ctx.matchmaking.enqueue("casual")
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        store: Optional[KeyValueStore] = None,
        api: Optional[RpcCaller] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.config = config or ClientConfig()
        self._store = store if store is not None else JsonFileStore(self.config.state_file)
        self._api = api if api is not None else LobbyAPI(self.config)
        factory = transport_factory or (lambda: RealtimeTransport(self.config))
        self._identity = IdentityStore(self._store)
        self._auth = AuthSession(self._api, self._identity)
        self._connection = ConnectionManager(
            factory,
            base_delay=self.config.base_delay,
            max_delay=self.config.max_delay,
            request_timeout=self.config.timeout,
        )
        self._matchmaking = MatchmakingClient(self._connection)
        self._connect_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._disposed = False
        self._auth.add_listener(self._on_session_changed)

    def _check(self) -> None:
        if self._disposed:
            raise RuntimeError("LobbyContext has been disposed")

    @property
    def identity(self) -> IdentityStore:
        self._check()
        return self._identity

    @property
    def auth(self) -> AuthSession:
        self._check()
        return self._auth

    @property
    def connection(self) -> ConnectionManager:
        self._check()
        return self._connection

    @property
    def matchmaking(self) -> MatchmakingClient:
        self._check()
        return self._matchmaking

    @property
    def session(self) -> Optional[Session]:
        return None if self._disposed else self._auth.session

    async def login(self) -> Session:
        """Authenticate and start connecting in the background."""
        self._check()
        try:
            session = await self._auth.login()
            restored = restore_session(session.token)
        except Exception:
            # a failed login leaves no session, so no connection either
            self._auth.logout()
            await self._teardown()
            await self._drain_teardown()
            raise
        await self._drain_teardown()
        await self._stop_connect_task()
        self._connect_task = asyncio.create_task(self._connection.connect(restored), name="lobbylink-login-connect")
        return session

    async def wait_connected(self) -> ConnectionHandle:
        """Wait until the connection started by login() is established."""
        self._check()
        if self._connect_task is None:
            raise RuntimeError("login() has not been called")
        return await asyncio.shield(self._connect_task)

    def _on_session_changed(self, session: Optional[Session]) -> None:
        # the connection lives only as long as the session
        if session is not None or self._disposed:
            return
        if self._connection.state is ConnectionState.DISCONNECTED and self._connect_task is None:
            return
        self._teardown_task = asyncio.get_running_loop().create_task(self._teardown(), name="lobbylink-teardown")

    async def _teardown(self) -> None:
        if self._auth.session is not None:
            # a new login got in first
            return
        await self._connection.close()
        await self._stop_connect_task()

    async def _drain_teardown(self) -> None:
        task, self._teardown_task = self._teardown_task, None
        if task is not None:
            await task

    async def _stop_connect_task(self) -> None:
        task, self._connect_task = self._connect_task, None
        if task is None:
            return
        if task.done():
            if not task.cancelled() and task.exception() is not None:
                log.debug(f"Previous connect ended with {task.exception()!r}")
            return
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, ConnectionCancelledError):
            pass

    async def logout(self) -> None:
        """Clear the session and tear the connection down."""
        self._check()
        self._auth.logout()
        await self._teardown()
        await self._drain_teardown()

    async def dispose(self) -> None:
        if self._disposed:
            return
        await self.logout()
        close = getattr(self._api, "close", None)
        if close is not None:
            close()
        self._disposed = True
        log.debug("LobbyContext disposed")

    async def __aenter__(self) -> "LobbyContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()
