import json

import pytest

from lobbylink.api import ApiError
from lobbylink.auth import AuthSession, AuthenticationError, display_name_for
from lobbylink.identity import IdentityStore, MemoryStore, StorageError
from lobbylink.models import Session
from lobbylink.protocol import ProtocolError

from conftest import FakeApi

DEVICE_ID = "abc123ef-0000-4000-8000-000000000000"


def make_auth(reply=None, error=None, store=None):
    api = FakeApi(reply=reply, error=error)
    identity = IdentityStore(store if store is not None else MemoryStore(), id_factory=lambda: DEVICE_ID)
    return api, AuthSession(api, identity)


class BrokenStore:
    def get(self, key):
        raise OSError("disk gone")

    def set(self, key, value):
        raise OSError("disk gone")


def test_display_name_uses_first_six_chars():
    assert display_name_for("abc123ef-xyz") == "Player-abc123"
    assert display_name_for("ab") == "Player-ab"


@pytest.mark.asyncio
async def test_first_login_on_new_device():
    store = MemoryStore()
    api, auth = make_auth(reply=json.dumps({"token": "t1", "username": "Player-abc123"}), store=store)

    session = await auth.login()

    assert session == Session(token="t1", username="Player-abc123")
    assert auth.session == session
    assert auth.is_authed
    assert api.calls == [("auth_device", {"device_id": DEVICE_ID, "nickname": "Player-abc123"})]
    assert store.data["device_id"] == DEVICE_ID


@pytest.mark.asyncio
async def test_structured_reply_accepted():
    api, auth = make_auth(reply={"token": "t2", "username": "neo", "user_id": "u-9"})

    session = await auth.login()

    assert session.token == "t2"
    assert session.username == "neo"
    assert session.user_id == "u-9"


@pytest.mark.asyncio
async def test_same_device_gets_same_display_name():
    store = MemoryStore()
    api, auth = make_auth(reply={"token": "t", "username": "x"}, store=store)
    await auth.login()
    api2, auth2 = make_auth(reply={"token": "t", "username": "x"}, store=store)
    await auth2.login()
    assert api.calls[0][1] == api2.calls[0][1]
    assert store.writes == 1


@pytest.mark.asyncio
async def test_rpc_failure_is_authentication_error():
    api, auth = make_auth(error=ApiError("503 unavailable", status=503))
    changes = []
    auth.add_listener(changes.append)

    with pytest.raises(AuthenticationError):
        await auth.login()

    assert auth.session is None
    assert changes == []


@pytest.mark.asyncio
async def test_failed_relogin_clears_previous_session():
    api, auth = make_auth(reply={"token": "t1", "username": "p"})
    await auth.login()
    api.error = ApiError("401 rejected", status=401)

    with pytest.raises(AuthenticationError):
        await auth.login()

    assert auth.session is None


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [
    "not json",
    json.dumps(["token", "t1"]),
    {"token": "t1"},
    {"username": "p"},
    {"token": 5, "username": "p"},
    None,
])
async def test_malformed_reply_is_protocol_error(reply):
    api, auth = make_auth(reply=reply)
    with pytest.raises(ProtocolError):
        await auth.login()
    assert auth.session is None


@pytest.mark.asyncio
async def test_storage_failure_stops_login():
    api, auth = make_auth(reply={"token": "t", "username": "p"}, store=BrokenStore())
    with pytest.raises(StorageError):
        await auth.login()
    assert api.calls == []
    assert auth.session is None


@pytest.mark.asyncio
async def test_logout_clears_session_and_notifies():
    api, auth = make_auth(reply={"token": "t1", "username": "p"})
    changes = []
    auth.add_listener(changes.append)
    session = await auth.login()

    auth.logout()

    assert auth.session is None
    assert not auth.is_authed
    assert changes == [session, None]
    assert len(api.calls) == 1
    auth.logout()
    assert changes == [session, None]
