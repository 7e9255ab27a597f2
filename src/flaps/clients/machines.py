"""Fly.io Machines API client."""

from __future__ import annotations

import asyncio
import logging
import time
from functools import lru_cache
from typing import Any, TypeVar
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from flaps import __version__, env
from flaps.backoff import BackoffPolicy, Clock, Sleep, retry
from flaps.clients.errors import (
    DecodeError,
    DesiredStateNotReached,
    Endpoint,
    InvalidAppNameError,
    InvalidBaseUrlError,
    MissingAppNameError,
    NoMachineIdError,
    NotFoundError,
    classify,
)
from flaps.clients.transport import (
    DEFAULT_SOCKET_PATH,
    LEASE_NONCE_HEADER,
    HttpTransport,
    Transport,
    UnixSocketTransport,
)
from flaps.config import default_base_url, load_settings
from flaps.models import (
    ClientSettings,
    FlyAppsMachines,
    LaunchMachineInput,
    Machine,
    MachineExecRequest,
    MachineExecResponse,
    MachineLease,
    MachineRef,
    MachineStartResponse,
    MachineState,
    ProcessStat,
    RemoveMachineInput,
    RestartMachineInput,
    Signal,
    StopMachineInput,
    machine_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# The proxy in front of the API cuts requests off after a minute.
MIN_WAIT_TIMEOUT = 1.0
MAX_WAIT_TIMEOUT = 60.0
# Upper bound on the window requested by each attempt of wait_for_state.
WAIT_ATTEMPT_TIMEOUT = 2.0
WAIT_GRACE = 0.1

LEASE_NOT_FOUND_MESSAGE = "lease not found"

# Hostname is never used for routing over the socket, but a URL needs one.
SOCKET_BASE_URL = "http://localhost"

_INVALID_APP_NAME_CHARS = frozenset("/:\\")
_OTHER = Endpoint.other()


def validate_app_name(app_name: str | None) -> str:
    if not app_name:
        raise MissingAppNameError()
    if any(c in _INVALID_APP_NAME_CHARS for c in app_name):
        raise InvalidAppNameError(app_name)
    return app_name


def validate_base_url(base_url: str) -> str:
    try:
        url = httpx.URL(base_url)
    except httpx.InvalidURL as exc:
        raise InvalidBaseUrlError(base_url) from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidBaseUrlError(base_url)
    return base_url.rstrip("/")


def clamp_wait_timeout(timeout: float) -> int:
    """Whole seconds to request from the wait endpoint, within [1, 60]."""
    return int(min(max(timeout, MIN_WAIT_TIMEOUT), MAX_WAIT_TIMEOUT))


def encode_query(params: dict[str, Any]) -> str:
    """Percent-encode non-None params into a query string, including the leading '?'."""
    pairs = [(k, _query_value(v)) for k, v in params.items() if v is not None]
    if not pairs:
        return ""
    return "?" + urlencode(pairs, quote_via=quote)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _lease_headers(nonce: str | None) -> dict[str, str]:
    if nonce is None:
        return {}
    return {LEASE_NONCE_HEADER: nonce}


@lru_cache(maxsize=None)
def _adapter(response_type: Any) -> TypeAdapter:
    return TypeAdapter(response_type)


def _is_wait_timeout(exc: Exception) -> bool:
    return isinstance(exc, DesiredStateNotReached)


def _is_not_found(exc: Exception) -> bool:
    return isinstance(exc, NotFoundError)


class MachinesClient:
    """Client for the machines of one app.

    Configuration is fixed at construction; the client holds no other state
    and may be shared freely between tasks. Use `from_settings` for the public
    HTTPS API or `from_socket` for the local API socket inside a machine.
    """

    def __init__(
        self,
        transport: Transport,
        app_name: str | None,
        *,
        base_url: str,
        user_agent: str | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self.app_name = validate_app_name(app_name)
        self._transport = transport
        self._app_url = f"{validate_base_url(base_url)}/v1/apps/{self.app_name}/machines/"
        self._user_agent = user_agent or f"flaps-client/{__version__}"
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings | None = None,
        http: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> MachinesClient:
        """Client for the HTTPS API. Settings default to `load_settings()`."""
        if settings is None:
            settings = load_settings()
        # Validate before the transport opens a connection pool.
        app_name = validate_app_name(settings.app_name or env.current_app_name())
        base_url = validate_base_url(settings.base_url or default_base_url())
        return cls(
            HttpTransport(settings.auth_token, http),
            app_name,
            base_url=base_url,
            user_agent=settings.user_agent,
            **kwargs,
        )

    @classmethod
    def from_socket(
        cls,
        app_name: str | None = None,
        socket_path: str = DEFAULT_SOCKET_PATH,
        http: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> MachinesClient:
        """Client for the local API socket; the app name defaults to the current app."""
        app_name = validate_app_name(app_name or env.current_app_name())
        return cls(
            UnixSocketTransport(socket_path, http),
            app_name,
            base_url=SOCKET_BASE_URL,
            user_agent=f"flaps-client-unix/{__version__}",
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._transport.aclose()

    async def __aenter__(self) -> MachinesClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ── Request pipeline ─────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        body: BaseModel | None,
        headers: dict[str, str] | None,
        endpoint: Endpoint,
    ) -> bytes:
        payload = body.model_dump_json(exclude_none=True) if body is not None else None
        result = await self._transport.send(
            method,
            self._app_url + path,
            payload,
            headers or {},
            self._user_agent,
        )
        if result.status_code > 299:
            raise classify(result.body, result.request_id, result.status_code, endpoint)
        return result.body

    def _decode(self, response_type: Any, data: bytes, method: str, path: str) -> Any:
        try:
            return _adapter(response_type).validate_json(data)
        except ValidationError as exc:
            raise DecodeError(
                f"Unexpected response to {method} {path or '/'}: {exc}", body=data
            ) from exc

    async def _call(
        self,
        method: str,
        path: str,
        *,
        body: BaseModel | None = None,
        headers: dict[str, str] | None = None,
        endpoint: Endpoint = _OTHER,
        response_type: Any = None,
    ) -> Any:
        """Send one request relative to the app's machines URL and decode the reply.

        With no `response_type` the success body is ignored.
        """
        data = await self._request(method, path, body, headers, endpoint)
        if response_type is None:
            return None
        return self._decode(response_type, data, method, path)

    async def _call_into(
        self,
        target: list[T],
        method: str,
        path: str,
        *,
        item_type: type[T],
        headers: dict[str, str] | None = None,
    ) -> None:
        """Like `_call`, but replaces the contents of `target` with the decoded list."""
        data = await self._request(method, path, None, headers, _OTHER)
        target[:] = self._decode(list[item_type], data, method, path)

    # ── Lifecycle ────────────────────────────────────────────────

    async def launch(self, machine_input: LaunchMachineInput) -> Machine:
        machine = await self._call("POST", "", body=machine_input, response_type=Machine)
        logger.info("Machine launched: app=%s id=%s", self.app_name, machine.id)
        return machine

    async def update(self, machine_input: LaunchMachineInput, nonce: str | None = None) -> Machine:
        if not machine_input.id:
            raise NoMachineIdError()
        return await self._call(
            "POST",
            machine_input.id,
            body=machine_input,
            headers=_lease_headers(nonce),
            response_type=Machine,
        )

    async def start(self, machine: MachineRef, nonce: str | None = None) -> MachineStartResponse:
        return await self._call(
            "POST",
            f"{machine_id(machine)}/start",
            headers=_lease_headers(nonce),
            response_type=MachineStartResponse,
        )

    async def stop(self, stop_input: StopMachineInput, nonce: str | None = None) -> None:
        await self._call(
            "POST",
            f"{stop_input.id}/stop",
            body=stop_input,
            headers=_lease_headers(nonce),
        )

    async def restart(self, restart_input: RestartMachineInput, nonce: str | None = None) -> None:
        timeout_ns = None
        if restart_input.timeout_seconds is not None:
            timeout_ns = int(restart_input.timeout_seconds * 1_000_000_000)
        query = encode_query(
            {
                "force_stop": restart_input.force_stop,
                "timeout": timeout_ns,
                "signal": restart_input.signal,
            }
        )
        await self._call(
            "POST",
            f"{restart_input.id}/restart{query}",
            headers=_lease_headers(nonce),
        )

    async def destroy(self, remove_input: RemoveMachineInput, nonce: str | None = None) -> None:
        query = encode_query({"kill": remove_input.kill})
        await self._call(
            "DELETE",
            f"{remove_input.id}/destroy{query}",
            headers=_lease_headers(nonce),
        )
        logger.info("Machine destroyed: app=%s id=%s", self.app_name, remove_input.id)

    async def kill(self, machine: MachineRef) -> None:
        await self._call("POST", f"{machine_id(machine)}/signal", body=Signal(signal=9))

    async def exec(self, machine: MachineRef, exec_input: MachineExecRequest) -> MachineExecResponse:
        return await self._call(
            "POST",
            f"{machine_id(machine)}/exec",
            body=exec_input,
            response_type=MachineExecResponse,
        )

    async def get_processes(self, machine: MachineRef) -> list[ProcessStat]:
        return await self._call(
            "GET", f"{machine_id(machine)}/ps", response_type=list[ProcessStat]
        )

    # ── Reads ────────────────────────────────────────────────────

    async def get(self, machine: MachineRef) -> Machine:
        return await self._call("GET", machine_id(machine), response_type=Machine)

    async def get_many(self, machines: list[MachineRef]) -> list[Machine]:
        """Fetch machines concurrently. Any single failure fails the whole call.

        On failure the remaining fetches are cancelled before the error propagates.
        """
        tasks = [asyncio.create_task(self.get(m)) for m in machines]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def list(self, query: str | None = None) -> list[Machine]:
        """List the app's machines, optionally filtered by a raw query string."""
        return await self._call("GET", f"?{query}" if query else "", response_type=list[Machine])

    async def list_into(self, machines: list[Machine], query: str | None = None) -> None:
        await self._call_into(machines, "GET", f"?{query}" if query else "", item_type=Machine)

    async def list_active(self) -> list[Machine]:
        """Non-destroyed machines outside the reserved release-command and console groups."""
        return [m for m in await self.list() if _is_active_app_machine(m)]

    async def list_active_into(self, machines: list[Machine]) -> None:
        await self.list_into(machines)
        machines[:] = [m for m in machines if _is_active_app_machine(m)]

    async def list_fly_apps_machines(self) -> FlyAppsMachines:
        """Platform machines with the release-command machine split out.

        A freshly created app may briefly 404 on listing, so NotFound is retried.
        """
        machines = await retry(
            self.list,
            BackoffPolicy(),
            _is_not_found,
            sleep=self._sleep,
            clock=self._clock,
            description=f"listing machines of {self.app_name}",
        )
        release_cmd = next((m for m in machines if m.is_release_command_machine()), None)
        return FlyAppsMachines(
            machines=[
                m
                for m in machines
                if not m.is_release_command_machine() and not m.is_fly_apps_console()
            ],
            release_cmd_machine=release_cmd,
        )

    # ── State convergence ────────────────────────────────────────

    async def wait(
        self,
        machine: Machine,
        state: MachineState | None = None,
        timeout: float = MAX_WAIT_TIMEOUT,
    ) -> None:
        """Long-poll until `machine` reaches `state` (default started).

        The requested timeout is clamped to [1s, 60s]. Raises
        `DesiredStateNotReached` if the server gives up first; use
        `wait_for_state` for longer waits.
        """
        state = state or MachineState.STARTED
        query = encode_query(
            {
                "instance_id": (
                    machine.version if machine.version is not None else machine.instance_id
                ),
                "state": str(state),
                "timeout": clamp_wait_timeout(timeout),
            }
        )
        await self._call("GET", f"{machine.id}/wait{query}", endpoint=Endpoint.wait(state))

    async def wait_for_state(
        self,
        machine: Machine,
        state: MachineState | None = None,
        timeout: float = MAX_WAIT_TIMEOUT,
    ) -> None:
        """Call `wait` repeatedly with backoff until the state is reached or `timeout` elapses."""
        deadline = self._clock() + timeout + WAIT_GRACE

        async def attempt() -> None:
            time_left = max(0.0, min(deadline - self._clock(), WAIT_ATTEMPT_TIMEOUT))
            await self.wait(machine, state, time_left)

        await retry(
            attempt,
            BackoffPolicy(max_elapsed=timeout),
            _is_wait_timeout,
            sleep=self._sleep,
            clock=self._clock,
            description=f"waiting for machine {machine.id} to be {state or MachineState.STARTED}",
        )

    # ── Leases ───────────────────────────────────────────────────

    async def find_lease(self, machine: MachineRef) -> MachineLease | None:
        """Current lease on the machine, or None if nobody holds one."""
        try:
            return await self._call(
                "GET", f"{machine_id(machine)}/lease", response_type=MachineLease
            )
        except NotFoundError as exc:
            if exc.raw.message == LEASE_NOT_FOUND_MESSAGE:
                return None
            raise

    async def acquire_lease(self, machine: MachineRef, ttl: int | None = None) -> MachineLease:
        lease = await self._call(
            "POST",
            f"{machine_id(machine)}/lease{encode_query({'ttl': ttl})}",
            response_type=MachineLease,
        )
        logger.info(
            "Lease acquired: machine=%s owner=%s expires_at=%d",
            machine_id(machine),
            lease.owner,
            lease.expires_at,
        )
        return lease

    async def refresh_lease(
        self, machine: MachineRef, nonce: str, ttl: int | None = None
    ) -> MachineLease:
        return await self._call(
            "POST",
            f"{machine_id(machine)}/lease/refresh{encode_query({'ttl': ttl})}",
            headers=_lease_headers(nonce),
            response_type=MachineLease,
        )

    async def release_lease(self, machine: MachineRef, nonce: str | None = None) -> None:
        await self._call(
            "DELETE", f"{machine_id(machine)}/lease", headers=_lease_headers(nonce)
        )
        logger.info("Lease released: machine=%s", machine_id(machine))


def _is_active_app_machine(machine: Machine) -> bool:
    return (
        not machine.is_release_command_machine()
        and not machine.is_fly_apps_console()
        and machine.is_active()
    )
