from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import BrokenChannel, EchoChannel, MemoryChannel, StubConnection, make_settings
from matlab_bridge.server import create_app, event_stream
from matlab_bridge.session import BridgeSession


def make_client(channel=None, **overrides) -> TestClient:
    settings = make_settings(**overrides)
    session = BridgeSession(settings, StubConnection(settings, channel))
    return TestClient(create_app(session))


def test_health_reports_connectivity_consistently() -> None:
    with make_client() as client:
        first = client.get("/health").json()
        second = client.get("/health").json()

    assert first["status"] == "ok"
    assert first["connected"] is False
    assert second["connected"] == first["connected"]
    assert "timestamp" in first


def test_health_when_connected() -> None:
    with make_client(EchoChannel()) as client:
        assert client.get("/health").json()["connected"] is True


def test_disconnected_tools_list_is_simulated() -> None:
    with make_client() as client:
        resp = client.post("/mcp", json={"jsonrpc": "2.0", "id": "t1", "method": "tools/list"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == "t1"
    assert [tool["name"] for tool in body["result"]["tools"]] == ["matlab_execute", "matlab_script"]


def test_disconnected_unknown_method_is_method_not_found() -> None:
    with make_client() as client:
        resp = client.post("/mcp", json={"method": "unknown/thing", "id": "t2"})

    assert resp.status_code == 200
    assert resp.json()["error"]["code"] == -32601


def test_connected_request_is_relayed_with_caller_id() -> None:
    channel = EchoChannel()
    with make_client(channel, request_timeout=5.0) as client:
        resp = client.post("/mcp", json={"jsonrpc": "2.0", "id": "mine", "method": "tools/call"})

    assert resp.status_code == 200
    assert resp.json() == {"jsonrpc": "2.0", "id": "mine", "result": {"echo": "tools/call"}}
    assert channel.written == [{"jsonrpc": "2.0", "id": "mine", "method": "tools/call"}]


def test_connected_timeout_is_500() -> None:
    with make_client(MemoryChannel(), request_timeout=0.05) as client:
        resp = client.post("/mcp", json={"jsonrpc": "2.0", "id": "abc", "method": "tools/call"})

    assert resp.status_code == 500
    assert resp.json()["error"] == "Internal server error"
    assert "timeout" in resp.json()["message"].lower()


def test_connected_write_failure_is_500() -> None:
    with make_client(BrokenChannel(), request_timeout=5.0) as client:
        resp = client.post("/mcp", json={"jsonrpc": "2.0", "id": "w", "method": "tools/list"})

    assert resp.status_code == 500
    assert "broken pipe" in resp.json()["message"]


@pytest.mark.parametrize("body", ["not json", "[1, 2]"])
def test_malformed_body_is_500(body: str) -> None:
    with make_client() as client:
        resp = client.post("/mcp", content=body, headers={"content-type": "application/json"})

    assert resp.status_code == 500
    assert resp.json()["error"] == "Internal server error"


def test_websocket_path_is_rejected() -> None:
    with make_client() as client:
        resp = client.get("/ws")

    assert resp.status_code == 400
    assert resp.json()["error"] == "WebSocket upgrade required"
    assert "/mcp" in resp.json()["message"]


def test_cors_headers_are_present() -> None:
    with make_client() as client:
        resp = client.get("/health", headers={"Origin": "http://example.com"})

    assert resp.headers["access-control-allow-origin"] == "*"


@pytest.mark.asyncio
async def test_event_stream_sends_connected_then_pings() -> None:
    checks = iter([False, False, True])

    async def is_disconnected() -> bool:
        return next(checks)

    events = [event async for event in event_stream(is_disconnected, interval=0.01)]

    assert events[0] == 'event: connected\ndata: {"status": "ready"}\n\n'
    assert len(events) == 3
    for ping in events[1:]:
        assert ping.startswith("event: ping\ndata: {\"timestamp\": ")
        assert ping.endswith("}\n\n")


@pytest.mark.asyncio
async def test_sse_route_streams_connected_then_ping() -> None:
    settings = make_settings(sse_ping_interval=0.01)
    app = create_app(BridgeSession(settings, StubConnection(settings, None)))
    messages: list[dict] = []
    saw_ping = asyncio.Event()
    request_sent = False

    async def receive() -> dict:
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await saw_ping.wait()
        return {"type": "http.disconnect"}

    async def send(message: dict) -> None:
        messages.append(message)
        if b"event: ping" in message.get("body", b""):
            saw_ping.set()

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/sse",
        "raw_path": b"/sse",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"host", b"bridge"), (b"accept", b"text/event-stream")],
        "client": ("127.0.0.1", 50000),
        "server": ("bridge", 80),
    }

    await asyncio.wait_for(app(scope, receive, send), timeout=5.0)

    start = messages[0]
    assert start["type"] == "http.response.start"
    assert start["status"] == 200
    headers = {name.decode(): value.decode() for name, value in start["headers"]}
    assert headers["content-type"].startswith("text/event-stream")
    assert headers["cache-control"] == "no-cache"

    body = b"".join(message.get("body", b"") for message in messages[1:]).decode()
    assert body.startswith('event: connected\ndata: {"status": "ready"}\n\n')
    assert "event: ping\ndata: {\"timestamp\": " in body
