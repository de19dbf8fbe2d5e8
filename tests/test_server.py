"""
Tests for the HTTP surface (application factory and session gateway).

This test module validates:
- Session admission on POST (initialize, compatibility mode, unknown IDs)
- Session ID transport (header and query parameter fallback)
- GET/DELETE rejection for unknown sessions and DELETE termination
- The notification stream attached by GET
- Liveness, CORS, and shutdown cleanup
- A full initialize / call / delete conversation through the prefix
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from typing import Any

import pytest
from conftest import RecordingFetcher, call_message, initialize_message
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.responses import StreamingResponse

from mcp_web_reader.config import AppConfig, FetchConfig, ServerConfig
from mcp_web_reader.fetcher import FetchResult
from mcp_web_reader.gateway import (
    INVALID_SESSION_TEXT,
    SESSION_HEADER,
    SessionGateway,
    extract_session_id,
)
from mcp_web_reader.server import create_app
from mcp_web_reader.sessions import SessionStore
from mcp_web_reader.tools import create_capability_registry

PREFIX = "https://proxy.example/fetch"

# =============================================================================
# Helper Functions and Fixtures
# =============================================================================


def ping_message(request_id: int = 10) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "method": "ping"}


def make_request(
    method: str,
    headers: dict[str, str] | None = None,
    query: str = "",
    body: bytes = b"",
) -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": "/mcp",
        "query_string": query.encode(),
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
    }

    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def make_gateway(fetcher: Any, keepalive_seconds: float = 5) -> SessionGateway:
    return SessionGateway(
        SessionStore(),
        lambda: create_capability_registry(FetchConfig(), fetcher),
        keepalive_seconds=keepalive_seconds,
    )


class GatedFetcher(RecordingFetcher):
    """RecordingFetcher that holds each fetch until released."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch(self, final_url: str) -> FetchResult:
        self.started.set()
        await self.release.wait()
        return await super().fetch(final_url)


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def client(store: SessionStore, recording_fetcher: RecordingFetcher) -> Iterator[TestClient]:
    config = AppConfig(fetch=FetchConfig(prefix=PREFIX))
    app = create_app(config, store=store, fetcher=recording_fetcher)
    with TestClient(app) as test_client:
        yield test_client


def open_session(client: TestClient) -> str:
    response = client.post("/mcp", json=initialize_message())
    assert response.status_code == 200
    return response.headers[SESSION_HEADER]


# =============================================================================
# Tests for extract_session_id
# =============================================================================


class TestExtractSessionId:
    """Tests for reading the session ID from a request."""

    def test_header(self) -> None:
        assert extract_session_id(make_request("GET", {SESSION_HEADER: "abc"})) == "abc"

    def test_query_fallback(self) -> None:
        assert extract_session_id(make_request("GET", query="sessionId=xyz")) == "xyz"

    def test_header_preferred(self) -> None:
        request = make_request("GET", {SESSION_HEADER: "abc"}, query="sessionId=xyz")
        assert extract_session_id(request) == "abc"

    def test_missing_or_blank(self) -> None:
        assert extract_session_id(make_request("GET")) is None
        assert extract_session_id(make_request("GET", {SESSION_HEADER: "  "})) is None


# =============================================================================
# Tests for POST admission
# =============================================================================


class TestPostAdmission:
    """Tests for POST session admission."""

    def test_initialize_creates_session(self, client: TestClient, store: SessionStore) -> None:
        """initialize without an ID creates a session and returns its ID."""
        response = client.post("/mcp", json=initialize_message())

        assert response.status_code == 200
        session_id = response.headers[SESSION_HEADER]
        assert session_id in store
        assert response.json()["result"]["serverInfo"]["name"] == "mcp-web-url-reader"

    def test_distinct_sessions(self, client: TestClient, store: SessionStore) -> None:
        """Each initialize gets its own session and registry."""
        first = open_session(client)
        second = open_session(client)

        assert first != second
        assert store.get(first).handler.registry is not store.get(second).handler.registry

    def test_unknown_session_rejected(self, client: TestClient, store: SessionStore) -> None:
        """A non-initialize POST with an unknown ID is rejected with -32000."""
        response = client.post(
            "/mcp", json=ping_message(), headers={SESSION_HEADER: "no-such-session"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["jsonrpc"] == "2.0"
        assert body["id"] is None
        assert body["error"] == {
            "code": -32000,
            "message": "Bad Request: No valid session ID provided",
        }
        assert len(store) == 0

    def test_unknown_session_initialize_creates_new(
        self, client: TestClient, store: SessionStore
    ) -> None:
        """initialize with a stale ID creates a fresh session."""
        response = client.post(
            "/mcp", json=initialize_message(), headers={SESSION_HEADER: "stale"}
        )

        assert response.status_code == 200
        assert response.headers[SESSION_HEADER] != "stale"
        assert "stale" not in store
        assert len(store) == 1

    def test_no_session_compat_mode(self, client: TestClient, store: SessionStore) -> None:
        """A POST without any ID creates a session even without initialize."""
        response = client.post("/mcp", json=ping_message())

        assert response.status_code == 200
        assert response.json()["result"] == {}
        assert response.headers[SESSION_HEADER] in store

    def test_active_session_reused(self, client: TestClient, store: SessionStore) -> None:
        """Requests with an active ID reach the same handler."""
        session_id = open_session(client)
        response = client.post("/mcp", json=ping_message(), headers={SESSION_HEADER: session_id})

        assert response.status_code == 200
        assert response.headers[SESSION_HEADER] == session_id
        assert len(store) == 1

    def test_initialize_on_active_session(self, client: TestClient, store: SessionStore) -> None:
        """A second initialize is handled by the existing session and rejected."""
        session_id = open_session(client)
        response = client.post(
            "/mcp", json=initialize_message(request_id=5), headers={SESSION_HEADER: session_id}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32600
        assert store.session_ids() == [session_id]

    def test_query_param_fallback(self, client: TestClient) -> None:
        """The session ID can be passed as a query parameter."""
        session_id = open_session(client)
        response = client.post(f"/mcp?sessionId={session_id}", json=ping_message())

        assert response.status_code == 200
        assert response.headers[SESSION_HEADER] == session_id

    def test_notification_accepted(self, client: TestClient) -> None:
        """Notifications are answered with 202 and no body."""
        session_id = open_session(client)
        response = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 202
        assert response.content == b""

    def test_malformed_json(self, client: TestClient, store: SessionStore) -> None:
        """An unparseable body is a parse error and creates no session."""
        response = client.post(
            "/mcp", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700
        assert len(store) == 0

    @pytest.mark.parametrize(
        ("payload", "expected_id", "code"),
        [
            (5, None, -32600),
            ("initialize", None, -32600),
            ([], None, -32600),
            ({"jsonrpc": "2.0", "id": 3}, 3, -32600),
            ({"id": 4, "method": "ping"}, 4, -32600),
            ({"jsonrpc": "2.0", "id": 6, "method": "ping", "params": [1]}, 6, -32602),
        ],
    )
    def test_invalid_payload_creates_no_session(
        self,
        client: TestClient,
        store: SessionStore,
        payload: Any,
        expected_id: Any,
        code: int,
    ) -> None:
        """Malformed payloads without an ID are rejected before a session exists."""
        response = client.post("/mcp", json=payload)

        assert response.status_code == 400
        assert response.json()["id"] == expected_id
        assert response.json()["error"]["code"] == code
        assert SESSION_HEADER not in response.headers
        assert len(store) == 0

    def test_invalid_initialize_with_stale_id_creates_no_session(
        self, client: TestClient, store: SessionStore
    ) -> None:
        """An initialize with bad params and a stale ID is rejected without a session."""
        message = initialize_message(request_id=7)
        message["params"] = ["2025-06-18"]

        response = client.post("/mcp", json=message, headers={SESSION_HEADER: "stale"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32602
        assert len(store) == 0

    def test_invalid_notification_on_active_session(self, client: TestClient) -> None:
        """A notification with bad params is accepted with 202 and no body."""
        session_id = open_session(client)
        response = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "method": "notifications/x", "params": [1]},
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 202
        assert response.content == b""


# =============================================================================
# Tests for GET and DELETE
# =============================================================================


class TestGetDelete:
    """Tests for GET and DELETE on the endpoint."""

    def test_get_unknown_session(self, client: TestClient) -> None:
        """GET without a valid session is a plain-text 400."""
        response = client.get("/mcp", headers={SESSION_HEADER: "nope"})

        assert response.status_code == 400
        assert response.text == INVALID_SESSION_TEXT
        assert response.headers["content-type"].startswith("text/plain")

    def test_get_missing_session(self, client: TestClient) -> None:
        """GET with no ID at all is also rejected."""
        response = client.get("/mcp")
        assert response.status_code == 400
        assert response.text == INVALID_SESSION_TEXT

    def test_get_second_stream_conflict(self, client: TestClient, store: SessionStore) -> None:
        """Only one stream may be attached to a session."""
        session_id = open_session(client)
        assert store.get(session_id).handler.claim_stream() is not None

        response = client.get("/mcp", headers={SESSION_HEADER: session_id})

        assert response.status_code == 409

    def test_delete_session(self, client: TestClient, store: SessionStore) -> None:
        """DELETE removes the session and returns 204."""
        session_id = open_session(client)
        handler = store.get(session_id).handler

        response = client.delete("/mcp", headers={SESSION_HEADER: session_id})

        assert response.status_code == 204
        assert session_id not in store
        assert handler.closed is True

    def test_delete_twice(self, client: TestClient) -> None:
        """A second DELETE for the same ID is rejected."""
        session_id = open_session(client)
        client.delete("/mcp", headers={SESSION_HEADER: session_id})

        response = client.delete("/mcp", headers={SESSION_HEADER: session_id})

        assert response.status_code == 400
        assert response.text == INVALID_SESSION_TEXT

    def test_requests_after_delete(self, client: TestClient) -> None:
        """After DELETE, GET and POST for that ID are rejected."""
        session_id = open_session(client)
        client.delete("/mcp", headers={SESSION_HEADER: session_id})

        get_response = client.get("/mcp", headers={SESSION_HEADER: session_id})
        post_response = client.post(
            "/mcp", json=ping_message(), headers={SESSION_HEADER: session_id}
        )

        assert get_response.status_code == 400
        assert post_response.status_code == 400
        assert post_response.json()["error"]["code"] == -32000

    def test_delete_leaves_other_sessions(self, client: TestClient, store: SessionStore) -> None:
        """Deleting one session does not disturb another."""
        first = open_session(client)
        second = open_session(client)

        client.delete("/mcp", headers={SESSION_HEADER: first})
        response = client.post("/mcp", json=ping_message(), headers={SESSION_HEADER: second})

        assert response.status_code == 200
        assert store.session_ids() == [second]


class TestNotificationStream:
    """Tests for the GET stream driven directly through the gateway."""

    @pytest.mark.asyncio
    async def test_stream_ends_on_delete(self, recording_fetcher: RecordingFetcher) -> None:
        """Removing the session ends its open stream."""
        gateway = make_gateway(recording_fetcher)
        session = gateway.create_session()
        headers = {SESSION_HEADER: session.session_id}

        response = await gateway.handle_get(make_request("GET", headers))
        assert isinstance(response, StreamingResponse)
        assert response.media_type == "text/event-stream"
        assert response.headers[SESSION_HEADER] == session.session_id

        frames = response.body_iterator
        session.handler.notify("notifications/message", {"level": "info", "data": "x"})
        first = await asyncio.wait_for(frames.__anext__(), timeout=1)
        assert first.startswith("event: message\n")

        delete = await gateway.handle_delete(make_request("DELETE", headers))
        assert delete.status_code == 204
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(frames.__anext__(), timeout=1)

    @pytest.mark.asyncio
    async def test_unsent_stream_closed_allows_new_get(
        self, recording_fetcher: RecordingFetcher
    ) -> None:
        """Closing a stream body that was never sent lets the next GET attach."""
        gateway = make_gateway(recording_fetcher)
        session = gateway.create_session()
        headers = {SESSION_HEADER: session.session_id}

        first = await gateway.handle_get(make_request("GET", headers))
        assert isinstance(first, StreamingResponse)
        assert session.handler.stream_open is True

        await first.body_iterator.aclose()
        assert session.handler.stream_open is False

        second = await gateway.handle_get(make_request("GET", headers))
        assert isinstance(second, StreamingResponse)
        assert second.status_code == 200
        assert session.handler.stream_open is True
        await second.body_iterator.aclose()


class TestConcurrentDelete:
    """Tests for DELETE arriving while a POST is still running."""

    @pytest.mark.asyncio
    async def test_delete_during_inflight_post(self) -> None:
        """The running call finishes before the handler is released."""
        fetcher = GatedFetcher()
        gateway = make_gateway(fetcher)
        session = gateway.create_session()
        handler = session.handler
        headers = {SESSION_HEADER: session.session_id}
        body = json.dumps(call_message("https://example.com/slow")).encode()

        post = asyncio.create_task(gateway.handle_post(make_request("POST", headers, body=body)))
        await asyncio.wait_for(fetcher.started.wait(), timeout=1)

        delete = await gateway.handle_delete(make_request("DELETE", headers))
        assert delete.status_code == 204
        assert session.session_id not in gateway.store
        assert session.inflight == 1
        assert handler.closed is False

        rejected = await gateway.handle_post(
            make_request("POST", headers, body=json.dumps(ping_message()).encode())
        )
        assert rejected.status_code == 400
        assert json.loads(rejected.body)["error"]["code"] == -32000

        fetcher.release.set()
        response = await asyncio.wait_for(post, timeout=1)

        assert response.status_code == 200
        result = json.loads(response.body)["result"]
        assert result["content"][0]["text"] == "hello"
        assert fetcher.urls == ["https://example.com/slow"]
        assert session.inflight == 0
        assert handler.closed is True
        assert handler.registry.closed is True


# =============================================================================
# Tests for the application
# =============================================================================


class TestApplication:
    """Tests for liveness, CORS, configuration and shutdown."""

    def test_liveness(self, client: TestClient) -> None:
        """GET / reports status without session semantics."""
        open_session(client)
        response = client.get("/")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["prefixConfigured"] is True
        assert body["port"] == 8080
        assert body["activeSessions"] == 1
        assert SESSION_HEADER not in response.headers

    def test_cors_preflight(self, client: TestClient) -> None:
        """Preflight requests allow the session header."""
        response = client.options(
            "/mcp",
            headers={
                "Origin": "https://app.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Mcp-Session-Id, Content-Type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_cors_exposes_session_header(self, client: TestClient) -> None:
        """Browsers can read the session header."""
        response = client.post(
            "/mcp", json=initialize_message(), headers={"Origin": "https://app.example"}
        )
        assert SESSION_HEADER.lower() in response.headers["access-control-expose-headers"].lower()

    def test_custom_endpoint_path(self, recording_fetcher: RecordingFetcher) -> None:
        """The endpoint path is configurable."""
        config = AppConfig(server=ServerConfig(endpoint_path="/rpc"))
        with TestClient(create_app(config, fetcher=recording_fetcher)) as client:
            assert client.post("/rpc", json=initialize_message()).status_code == 200
            assert client.post("/mcp", json=initialize_message()).status_code in (404, 405)

    def test_shutdown_closes_sessions(self, recording_fetcher: RecordingFetcher) -> None:
        """Stopping the application closes every session."""
        store = SessionStore()
        app = create_app(AppConfig(), store=store, fetcher=recording_fetcher)
        with TestClient(app) as client:
            session_id = open_session(client)
            handler = store.get(session_id).handler

        assert len(store) == 0
        assert handler.closed is True


# =============================================================================
# End-to-end conversation
# =============================================================================


@pytest.mark.integration
class TestConversation:
    """A full client conversation through the HTTP surface."""

    def test_initialize_call_delete(
        self, client: TestClient, recording_fetcher: RecordingFetcher
    ) -> None:
        """initialize, list, call through the prefix, then delete."""
        session_id = open_session(client)
        headers = {SESSION_HEADER: session_id}

        initialized = client.post(
            "/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"}, headers=headers
        )
        assert initialized.status_code == 202

        tools = client.post(
            "/mcp", json={"jsonrpc": "2.0", "id": 2, "method": "tools/list"}, headers=headers
        )
        assert [t["name"] for t in tools.json()["result"]["tools"]] == ["read_web_url"]

        call = client.post("/mcp", json=call_message("https://example.com", 3), headers=headers)
        assert call.status_code == 200
        assert call.json() == {
            "jsonrpc": "2.0",
            "id": 3,
            "result": {"content": [{"type": "text", "text": "hello"}]},
        }
        assert recording_fetcher.urls == [f"{PREFIX}/https://example.com"]

        assert client.delete("/mcp", headers=headers).status_code == 204
        assert client.get("/mcp", headers=headers).status_code == 400

    def test_invalid_url_not_fetched(
        self, client: TestClient, recording_fetcher: RecordingFetcher
    ) -> None:
        """A rejected URL is reported as a tool error and never fetched."""
        session_id = open_session(client)

        response = client.post(
            "/mcp", json=call_message("ftp://example.com"), headers={SESSION_HEADER: session_id}
        )

        assert response.status_code == 200
        assert response.json()["result"]["isError"] is True
        assert recording_fetcher.urls == []
