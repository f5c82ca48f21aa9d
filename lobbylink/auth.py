"""Device login and current-session holder."""

from __future__ import annotations
import asyncio
import logging
from typing import Callable, List, Optional, Protocol, Any, Dict

from .api import ApiError
from .constants import RPC_AUTH_DEVICE, DISPLAY_NAME_PREFIX, DISPLAY_NAME_ID_CHARS
from .identity import IdentityStore
from .messages import Icons, format_login
from .models import Session
from .protocol import LobbyLinkError, decode_payload, require_str

log = logging.getLogger(__name__)

SessionListener = Callable[[Optional[Session]], None]


class AuthenticationError(LobbyLinkError):
    """Remote authentication was rejected or could not be reached."""
    pass


class RpcCaller(Protocol):
    def rpc(self, rpc_id: str, payload: Dict[str, Any]) -> Any: ...


def display_name_for(device_id: str) -> str:
    """Default display name: fixed prefix plus the first characters of the device id."""
    return DISPLAY_NAME_PREFIX + str(device_id)[:DISPLAY_NAME_ID_CHARS]


class AuthSession:
    """Exchanges the device id for a session token and holds the result.

    At most one session is live at a time. Sessions are not renewed; once the
    server stops accepting a token the caller has to log in again.
    """

    def __init__(self, api: RpcCaller, identity: IdentityStore):
        self.api = api
        self.identity = identity
        self._session: Optional[Session] = None
        self._listeners: List[SessionListener] = []

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_authed(self) -> bool:
        return self._session is not None

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_session(self, session: Optional[Session]) -> None:
        if session == self._session:
            return
        self._session = session
        for listener in list(self._listeners):
            listener(session)

    async def login(self) -> Session:
        """Authenticate this device and store the resulting session.

        Returns:
            The new Session

        Raises:
            StorageError: If the device id cannot be read or persisted
            AuthenticationError: If the RPC fails
            ProtocolError: If the reply is malformed"""
        try:
            device_id = self.identity.get_or_create_identity()
            nickname = display_name_for(device_id)
            log.debug(f"Device login for {nickname}")
            raw = await asyncio.to_thread(
                self.api.rpc, RPC_AUTH_DEVICE, {"device_id": device_id, "nickname": nickname}
            )
            body = decode_payload(raw)
            session = Session(
                token=require_str(body, "token"),
                username=require_str(body, "username"),
                user_id=body.get("user_id") or None,
            )
        except ApiError as e:
            self._set_session(None)
            log.error(f"{Icons.ERROR} Device login failed: {e}")
            raise AuthenticationError(f"Device login failed: {e}") from e
        except LobbyLinkError:
            self._set_session(None)
            raise
        self._set_session(session)
        log.info(format_login(session.username, session.token))
        return session

    def logout(self) -> None:
        """Forget the current session locally; the server is not notified."""
        if self._session is not None:
            log.info(f"{Icons.INFO} Logged out {self._session.username}")
        self._set_session(None)
