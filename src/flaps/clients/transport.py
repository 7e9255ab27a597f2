"""Physical channels a Machines API request can travel over."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from flaps.clients.errors import NetworkError

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/.fly/api"
LEASE_NONCE_HEADER = "fly-machine-lease-nonce"
REQUEST_ID_HEADER = "fly-request-id"

# Long enough for a wait call, which the server may hold open for up to a minute.
DEFAULT_TIMEOUT = httpx.Timeout(90.0, connect=10.0)


@dataclass(frozen=True)
class TransportResult:
    body: bytes
    status_code: int
    request_id: str | None = None


class Transport(Protocol):
    async def send(
        self,
        method: str,
        url: str,
        body: str | None,
        headers: dict[str, str],
        user_agent: str,
    ) -> TransportResult: ...

    async def aclose(self) -> None: ...


def format_auth_header(token: str) -> str:
    """Macaroon tokens already carry their scheme; anything else is a bearer token."""
    if token.startswith("FlyV1 "):
        return token
    return f"Bearer {token}"


async def _send(
    http: httpx.AsyncClient,
    method: str,
    url: str,
    body: str | None,
    headers: dict[str, str],
) -> TransportResult:
    try:
        resp = await http.request(method, url, content=body, headers=headers)
    except httpx.RequestError as exc:
        raise NetworkError(f"{method} {url}: {exc}") from exc

    result = TransportResult(
        body=resp.content,
        status_code=resp.status_code,
        request_id=resp.headers.get(REQUEST_ID_HEADER),
    )
    logger.debug(
        "%s %s -> %d (request id %s)",
        method,
        url,
        result.status_code,
        result.request_id,
    )
    return result


class HttpTransport:
    """Pooled HTTPS transport authenticating every request with an API token."""

    def __init__(self, auth_token: str, http: httpx.AsyncClient | None = None) -> None:
        self._auth_header = format_auth_header(auth_token)
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

    async def send(
        self,
        method: str,
        url: str,
        body: str | None,
        headers: dict[str, str],
        user_agent: str,
    ) -> TransportResult:
        request_headers = {
            "User-Agent": user_agent,
            "Content-Type": "application/json",
            "Authorization": self._auth_header,
            **headers,
        }
        return await _send(self._http, method, url, body, request_headers)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


class UnixSocketTransport:
    """Transport over the local API socket available inside a Fly machine.

    The socket handles authentication, so no Authorization header is sent.
    Only the path and query of the URL matter; the host is ignored.
    """

    def __init__(
        self,
        socket_path: str = DEFAULT_SOCKET_PATH,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.socket_path = socket_path
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            transport=httpx.AsyncHTTPTransport(uds=socket_path),
            timeout=DEFAULT_TIMEOUT,
        )

    async def send(
        self,
        method: str,
        url: str,
        body: str | None,
        headers: dict[str, str],
        user_agent: str,
    ) -> TransportResult:
        request_headers = {
            "User-Agent": user_agent,
            "Content-Type": "application/json",
            **headers,
        }
        return await _send(self._http, method, url, body, request_headers)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
