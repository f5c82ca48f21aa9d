import asyncio
import base64
import json
import time

import pytest

from lobbylink.client import NotConnectedError, TransientConnectionError
from lobbylink.identity import MemoryStore
from lobbylink.protocol import Envelope


def _b64(obj) -> str:
    raw = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def make_token(uid="user-1", usn="Player-abc123", exp=None, vrs=None) -> str:
    """Unsigned JWT-shaped session token."""
    claims = {"tid": "t", "uid": uid, "usn": usn, "exp": exp or int(time.time()) + 3600}
    if vrs is not None:
        claims["vrs"] = vrs
    return f"{_b64({'alg': 'HS256', 'typ': 'JWT'})}.{_b64(claims)}.signature"


async def wait_until(predicate, rounds: int = 200):
    """Yield to the event loop until predicate() holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class FakeApi:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []
        self.closed = False

    def rpc(self, rpc_id, payload):
        self.calls.append((rpc_id, payload))
        if self.error is not None:
            raise self.error
        return self.reply

    def close(self):
        self.closed = True


class FakeTransport:
    """Scripted stand-in for RealtimeTransport."""

    def __init__(self, fail_with=None, replies=None):
        self.fail_with = fail_with
        self.replies = replies if replies is not None else {}
        self.requests = []
        self.connected = False
        self.closed = False
        self.session = None
        self.on_close = None
        self.on_event = None

    @property
    def is_open(self):
        return self.connected and not self.closed

    async def connect(self, session, *, on_close=None, on_event=None):
        self.session = session
        self.on_close = on_close
        self.on_event = on_event
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        self.connected = True

    async def request(self, kind, body=None, *, timeout=None):
        if not self.is_open:
            raise NotConnectedError("fake transport is not open")
        self.requests.append((kind, body))
        await asyncio.sleep(0)
        reply = self.replies.get(kind)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(kind, body)
        return reply if reply is not None else Envelope(cid="1", kind=None)

    async def close(self):
        self.closed = True
        self.connected = False

    def drop(self, reason=None):
        self.connected = False
        self.on_close(self, reason or TransientConnectionError("peer went away"))

    def push(self, kind, body):
        self.on_event(kind, body)


class TransportScript:
    """Transport factory: the first ``failures`` transports refuse to connect."""

    def __init__(self, failures=0, replies=None):
        self.failures = failures
        self.replies = replies if replies is not None else {}
        self.created = []

    def __call__(self):
        n = len(self.created)
        fail = TransientConnectionError(f"refused #{n + 1}") if n < self.failures else None
        t = FakeTransport(fail_with=fail, replies=self.replies)
        self.created.append(t)
        return t

    @property
    def last(self):
        return self.created[-1]


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class BlockingSleep:
    """Backoff wait that never finishes on its own."""

    def __init__(self):
        self.delays = []
        self.cancelled = 0

    async def __call__(self, delay):
        self.delays.append(delay)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def token():
    return make_token()
