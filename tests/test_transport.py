import asyncio
import json
import socket
from urllib.parse import urlparse, parse_qs

import pytest
import pytest_asyncio
from websockets.asyncio.server import serve
from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus, InvalidURI
from websockets.http11 import Response

from lobbylink import client as client_module
from lobbylink.client import NotConnectedError, RealtimeError, RealtimeTransport, TransientConnectionError
from lobbylink.config import ClientConfig
from lobbylink.protocol import ProtocolError, restore_session

from conftest import make_token, wait_until


class LobbyServer:
    """Tiny in-process websocket server answering matchmaker envelopes."""

    def __init__(self):
        self.paths = []
        self.received = []
        self.connections = []

    async def handler(self, ws):
        self.paths.append(ws.request.path)
        self.connections.append(ws)
        async for raw in ws:
            msg = json.loads(raw)
            self.received.append(msg)
            cid = msg.get("cid")
            if "matchmaker_add" in msg:
                await ws.send(json.dumps({"cid": cid, "matchmaker_ticket": {"ticket": "tk-1"}}))
            elif "matchmaker_remove" in msg:
                await ws.send(json.dumps({"cid": cid}))
            elif "bad_request" in msg:
                await ws.send(json.dumps({"cid": cid, "error": {"code": 3, "message": "bad input"}}))
            elif "garbled" in msg:
                await ws.send(json.dumps({"cid": cid, "a": {}, "b": {}}))
            elif "push_me" in msg:
                await ws.send(json.dumps({"matchmaker_matched": {"ticket": "tk-1", "match_id": "m-1"}}))
                await ws.send(json.dumps({"cid": cid}))
            elif "hang_up" in msg:
                await ws.close()
            # "silence" gets no reply


@pytest_asyncio.fixture
async def lobby():
    server = LobbyServer()
    async with serve(server.handler, "127.0.0.1", 0) as ws_server:
        port = ws_server.sockets[0].getsockname()[1]
        yield server, port


def make_config(port, **overrides):
    params = dict(host="127.0.0.1", port=port, timeout=2.0, connect_timeout=2.0, ping_interval=None)
    params.update(overrides)
    return ClientConfig(**params)


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.mark.asyncio
async def test_request_reply_round_trip(lobby):
    server, port = lobby
    transport = RealtimeTransport(make_config(port))
    await transport.connect(restore_session(make_token()))
    try:
        reply = await transport.request("matchmaker_add", {"min_count": 2, "max_count": 2})
        assert reply.kind == "matchmaker_ticket"
        assert reply.body == {"ticket": "tk-1"}

        ack = await transport.request("matchmaker_remove", {"ticket": "tk-1"})
        assert ack.kind is None
    finally:
        await transport.close()

    assert server.received[0]["matchmaker_add"] == {"min_count": 2, "max_count": 2}
    assert server.received[0]["cid"] != server.received[1]["cid"]


@pytest.mark.asyncio
async def test_token_sent_in_query(lobby):
    server, port = lobby
    token = make_token()
    transport = RealtimeTransport(make_config(port))
    await transport.connect(restore_session(token))
    await transport.close()

    url = urlparse(server.paths[0])
    assert url.path == "/ws"
    assert parse_qs(url.query)["token"] == [token]


@pytest.mark.asyncio
async def test_error_reply_raises_realtime_error(lobby):
    _, port = lobby
    transport = RealtimeTransport(make_config(port))
    await transport.connect(restore_session(make_token()))
    try:
        with pytest.raises(RealtimeError) as ei:
            await transport.request("bad_request", {})
        assert ei.value.code == 3
        assert "bad input" in str(ei.value)
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_malformed_reply_fails_the_request(lobby):
    _, port = lobby
    transport = RealtimeTransport(make_config(port))
    await transport.connect(restore_session(make_token()))
    try:
        with pytest.raises(ProtocolError):
            await transport.request("garbled", {})
        assert transport.is_open
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_unanswered_request_times_out(lobby):
    _, port = lobby
    transport = RealtimeTransport(make_config(port))
    await transport.connect(restore_session(make_token()))
    try:
        with pytest.raises(RealtimeError):
            await transport.request("silence", {}, timeout=0.05)
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_push_goes_to_event_callback(lobby):
    _, port = lobby
    events = []
    transport = RealtimeTransport(make_config(port))
    await transport.connect(restore_session(make_token()), on_event=lambda kind, body: events.append((kind, body)))
    try:
        await transport.request("push_me", {})
    finally:
        await transport.close()
    assert events == [("matchmaker_matched", {"ticket": "tk-1", "match_id": "m-1"})]


@pytest.mark.asyncio
async def test_server_close_reports_once(lobby):
    _, port = lobby
    closes = []
    transport = RealtimeTransport(make_config(port))
    await transport.connect(restore_session(make_token()), on_close=lambda t, exc: closes.append((t, exc)))

    with pytest.raises(NotConnectedError):
        await transport.request("hang_up", {})
    await wait_until(lambda: closes, rounds=1000)

    assert len(closes) == 1
    assert closes[0][0] is transport
    assert isinstance(closes[0][1], TransientConnectionError)
    assert not transport.is_open
    await transport.close()
    assert len(closes) == 1


@pytest.mark.asyncio
async def test_local_close_does_not_report(lobby):
    _, port = lobby
    closes = []
    transport = RealtimeTransport(make_config(port))
    await transport.connect(restore_session(make_token()), on_close=lambda t, exc: closes.append(exc))
    await transport.close()
    await asyncio.sleep(0.01)
    assert closes == []
    assert not transport.is_open


@pytest.mark.asyncio
async def test_refused_connect_is_transient():
    transport = RealtimeTransport(make_config(free_port()))
    with pytest.raises(TransientConnectionError):
        await transport.connect(restore_session(make_token()))
    assert not transport.is_open


@pytest.mark.asyncio
async def test_request_before_connect_raises():
    transport = RealtimeTransport(make_config(free_port()))
    with pytest.raises(NotConnectedError):
        await transport.request("matchmaker_add", {})


@pytest.mark.asyncio
async def test_transport_is_single_use(lobby):
    _, port = lobby
    transport = RealtimeTransport(make_config(port))
    await transport.connect(restore_session(make_token()))
    await transport.close()
    with pytest.raises(RuntimeError):
        await transport.connect(restore_session(make_token()))


def handshake_rejected():
    return InvalidStatus(Response(status_code=401, reason_phrase="Unauthorized", headers=Headers()))


@pytest.mark.asyncio
@pytest.mark.parametrize("failure,expected", [
    (handshake_rejected, TransientConnectionError),
    (lambda: InvalidURI("ws://bad host", "not a valid URI"), InvalidURI),
    (lambda: ConnectionRefusedError("refused"), TransientConnectionError),
])
async def test_failed_handshake_closes_proxy_socket(monkeypatch, failure, expected):
    tunnel, far_end = socket.socketpair()
    seen = {}

    async def fake_open_proxy_socket():
        return tunnel

    async def fake_ws_connect(url, **kwargs):
        seen["sock"] = kwargs.get("sock")
        raise failure()

    transport = RealtimeTransport(make_config(7350, proxy="http://10.0.0.1:3128"))
    monkeypatch.setattr(transport, "_open_proxy_socket", fake_open_proxy_socket)
    monkeypatch.setattr(client_module, "ws_connect", fake_ws_connect)

    with pytest.raises(expected):
        await transport.connect(restore_session(make_token()))

    assert seen["sock"] is tunnel
    assert tunnel.fileno() == -1
    assert not transport.is_open
    far_end.close()
