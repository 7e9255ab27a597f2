"""Tests for the HTTP and unix-socket transports."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from flaps.clients.errors import NetworkError
from flaps.clients.transport import (
    HttpTransport,
    TransportResult,
    UnixSocketTransport,
    format_auth_header,
)

TOKEN = "fly_test_token"
URL = "https://api.machines.dev/v1/apps/my-app/machines/m1/start"


def make_http_transport(handler, token=TOKEN):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(token, http)


class TestFormatAuthHeader:
    def test_plain_token_is_bearer(self):
        assert format_auth_header("abc") == "Bearer abc"

    def test_macaroon_passes_through(self):
        assert format_auth_header("FlyV1 fm2_xyz") == "FlyV1 fm2_xyz"


class TestHttpTransport:
    async def test_sends_standard_headers(self):
        captured = {}

        def handler(request: httpx.Request):
            captured["headers"] = dict(request.headers)
            captured["method"] = request.method
            captured["url"] = str(request.url)
            captured["body"] = request.content
            return httpx.Response(200, json={"ok": True})

        transport = make_http_transport(handler)
        await transport.send(
            "POST",
            URL,
            '{"signal": 9}',
            {"fly-machine-lease-nonce": "n1"},
            "flaps-client/test",
        )

        headers = captured["headers"]
        assert captured["method"] == "POST"
        assert captured["url"] == URL
        assert captured["body"] == b'{"signal": 9}'
        assert headers["authorization"] == f"Bearer {TOKEN}"
        assert headers["user-agent"] == "flaps-client/test"
        assert headers["content-type"] == "application/json"
        assert headers["fly-machine-lease-nonce"] == "n1"

    async def test_macaroon_token(self):
        captured = {}

        def handler(request: httpx.Request):
            captured.update(dict(request.headers))
            return httpx.Response(200, json={})

        transport = make_http_transport(handler, token="FlyV1 fm2_abc")
        await transport.send("GET", URL, None, {}, "ua")
        assert captured["authorization"] == "FlyV1 fm2_abc"

    async def test_no_body(self):
        captured = {}

        def handler(request: httpx.Request):
            captured["body"] = request.content
            return httpx.Response(200, json={})

        transport = make_http_transport(handler)
        await transport.send("GET", URL, None, {}, "ua")
        assert captured["body"] == b""

    async def test_result_carries_status_body_and_request_id(self):
        def handler(request: httpx.Request):
            return httpx.Response(
                404,
                content=b'{"error": "not found"}',
                headers={"fly-request-id": "01HREQ"},
            )

        transport = make_http_transport(handler)
        result = await transport.send("GET", URL, None, {}, "ua")
        assert result == TransportResult(
            body=b'{"error": "not found"}', status_code=404, request_id="01HREQ"
        )

    async def test_missing_request_id(self):
        transport = make_http_transport(lambda request: httpx.Response(200, json={}))
        result = await transport.send("GET", URL, None, {}, "ua")
        assert result.request_id is None

    async def test_connection_failure_is_network_error(self):
        def handler(request: httpx.Request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = make_http_transport(handler)
        with pytest.raises(NetworkError) as exc_info:
            await transport.send("GET", URL, None, {}, "ua")
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.parametrize(
        "error_type", [httpx.DecodingError, httpx.TooManyRedirects, httpx.ReadTimeout]
    )
    async def test_other_request_errors_are_network_errors(self, error_type):
        def handler(request: httpx.Request):
            raise error_type("request failed", request=request)

        transport = make_http_transport(handler)
        with pytest.raises(NetworkError) as exc_info:
            await transport.send("GET", URL, None, {}, "ua")
        assert isinstance(exc_info.value.__cause__, error_type)

    async def test_does_not_close_borrowed_client(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        transport = HttpTransport(TOKEN, http)
        await transport.aclose()
        assert not http.is_closed
        await http.aclose()


async def serve_once(socket_path, response: bytes, captured: dict):
    """Start a unix-socket server that records one request and replies with `response`."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        head = await reader.readuntil(b"\r\n\r\n")
        captured["head"] = head.decode()
        writer.write(response)
        await writer.drain()
        writer.close()

    return await asyncio.start_unix_server(handle, path=str(socket_path))


def http_response(status_line: str, body: bytes, extra_headers: str = "") -> bytes:
    return (
        f"HTTP/1.1 {status_line}\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"{extra_headers}"
        "Connection: close\r\n"
        "\r\n"
    ).encode() + body


class TestUnixSocketTransport:
    async def test_round_trip_over_socket(self, tmp_path):
        socket_path = tmp_path / "api.sock"
        captured: dict = {}
        body = b'{"id": "m1"}'
        server = await serve_once(
            socket_path,
            http_response("200 OK", body, "fly-request-id: sock-req\r\n"),
            captured,
        )
        transport = UnixSocketTransport(str(socket_path))
        try:
            async with server:
                result = await transport.send(
                    "GET",
                    "http://localhost/v1/apps/my-app/machines/m1?x=1",
                    None,
                    {"fly-machine-lease-nonce": "n1"},
                    "flaps-client-unix/test",
                )
        finally:
            await transport.aclose()

        assert result.status_code == 200
        assert result.body == body
        assert result.request_id == "sock-req"

        head = captured["head"].lower()
        assert head.startswith("get /v1/apps/my-app/machines/m1?x=1 http/1.1")
        assert "user-agent: flaps-client-unix/test" in head
        assert "content-type: application/json" in head
        assert "fly-machine-lease-nonce: n1" in head
        assert "authorization" not in head

    async def test_missing_socket_is_network_error(self, tmp_path):
        transport = UnixSocketTransport(str(tmp_path / "absent.sock"))
        try:
            with pytest.raises(NetworkError):
                await transport.send("GET", "http://localhost/v1/apps/a/machines/", None, {}, "ua")
        finally:
            await transport.aclose()
