"""Exception hierarchy for the Machines API and classification of error responses."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import ValidationError

from flaps.models import MachineState, RawApiError


class FlapsError(Exception):
    """Base exception for every failure this client raises."""


# ── Construction ────────────────────────────────────────────────


class ClientCreationError(FlapsError):
    """The client could not be configured."""


class MissingAppNameError(ClientCreationError):
    def __init__(self) -> None:
        super().__init__("Missing app name")


class InvalidAppNameError(ClientCreationError):
    def __init__(self, app_name: str) -> None:
        self.app_name = app_name
        super().__init__(f"Invalid app name: {app_name!r}")


class InvalidBaseUrlError(ClientCreationError):
    def __init__(self, base_url: str) -> None:
        self.base_url = base_url
        super().__init__(f"Invalid base url: {base_url!r}")


# ── Request time ────────────────────────────────────────────────


class NetworkError(FlapsError):
    """The request failed without producing a usable response."""


class UnexpectedHttpStatus(FlapsError):
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"Unexpected HTTP status code {status_code}")


class NoMachineIdError(FlapsError):
    def __init__(self) -> None:
        super().__init__("No Machine ID provided")


class LeaseNotHeldError(FlapsError):
    def __init__(self, machine_id: str) -> None:
        self.machine_id = machine_id
        super().__init__(f"No lease held on machine {machine_id}")


class DecodeError(FlapsError):
    """A success response did not match the expected shape."""

    def __init__(self, message: str, *, body: bytes = b"") -> None:
        self.body = body
        super().__init__(message)


class ApiError(FlapsError):
    """An error response from the control plane, with its parsed body."""

    def __init__(self, raw: RawApiError, message: str | None = None) -> None:
        self.raw = raw
        super().__init__(message or str(raw))

    @property
    def status_code(self) -> int:
        return self.raw.status_code

    @property
    def request_id(self) -> str | None:
        return self.raw.fly_request_id


class NotFoundError(ApiError):
    def __init__(self, raw: RawApiError) -> None:
        super().__init__(raw, f"Not found: {raw}")


class UnknownApiError(ApiError):
    def __init__(self, raw: RawApiError) -> None:
        super().__init__(raw, f"Unknown flaps error: {raw}")


class DesiredStateNotReached(ApiError):
    """The wait endpoint timed out before the machine reached the desired state."""

    def __init__(self, desired_state: MachineState, raw: RawApiError) -> None:
        self.desired_state = desired_state
        super().__init__(
            raw,
            f"Timed out waiting for machine to reach desired state '{desired_state}'",
        )


# ── Classification ──────────────────────────────────────────────


@dataclass(frozen=True)
class Endpoint:
    """Which kind of call produced a response; decides how errors are classified."""

    desired_state: MachineState | None = None

    @classmethod
    def other(cls) -> Endpoint:
        return cls()

    @classmethod
    def wait(cls, desired_state: MachineState) -> Endpoint:
        return cls(desired_state=desired_state)


def parse_error_body(body: bytes, request_id: str | None, status_code: int) -> RawApiError:
    """Parse the error envelope, synthesizing one from the raw body if it is not JSON."""
    try:
        raw = RawApiError.model_validate_json(body)
    except ValidationError:
        return RawApiError(
            status_code=status_code,
            fly_request_id=request_id,
            error=(
                f"Server returned non-2xx status code {status_code}, "
                f"raw response: {body.decode('utf-8', errors='replace')!r}"
            ),
        )
    # Bodies often omit the envelope fields the response itself carries.
    update: dict[str, object] = {}
    if "status_code" not in raw.model_fields_set:
        update["status_code"] = status_code
    if raw.fly_request_id is None and request_id is not None:
        update["fly_request_id"] = request_id
    return raw.model_copy(update=update) if update else raw


def classify(
    body: bytes,
    request_id: str | None,
    status_code: int,
    endpoint: Endpoint,
) -> FlapsError:
    """Turn a non-2xx response into a typed error.

    Must never be called with a success status. A 408 from a wait call is
    checked before 404 so that the long-poll timeout is always reported as
    ``DesiredStateNotReached``.
    """
    if 200 <= status_code < 300:
        raise AssertionError(f"classify called with success status {status_code}")

    if not 400 <= status_code < 600:
        return UnexpectedHttpStatus(status_code)

    raw = parse_error_body(body, request_id, status_code)

    if endpoint.desired_state is not None and status_code == 408:
        return DesiredStateNotReached(endpoint.desired_state, raw)

    if status_code == 404:
        return NotFoundError(raw)

    return UnknownApiError(raw)
