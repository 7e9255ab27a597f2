"""All Pydantic models: settings, machine entities, request inputs and API responses."""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

# ── Settings ──────────────────────────────────────────────────────────────────


class ClientSettings(BaseModel):
    base_url: str | None = None
    user_agent: str | None = None
    auth_token: str = ""
    app_name: str | None = None


# ── Machine state ─────────────────────────────────────────────────────────────


class MachineState(str, Enum):
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"

    @classmethod
    def from_name(cls, name: str) -> MachineState | None:
        return _STATE_BY_NAME.get(name)

    def __str__(self) -> str:
        return _NAME_BY_STATE[self]


_NAME_BY_STATE: dict[MachineState, str] = {
    MachineState.CREATED: "created",
    MachineState.STARTED: "started",
    MachineState.STOPPED: "stopped",
    MachineState.DESTROYING: "destroying",
    MachineState.DESTROYED: "destroyed",
}
_STATE_BY_NAME: dict[str, MachineState] = {name: state for state, name in _NAME_BY_STATE.items()}

_INACTIVE_STATES: frozenset[str] = frozenset(
    {str(MachineState.DESTROYED), str(MachineState.DESTROYING)}
)

# ── Machine entities ──────────────────────────────────────────────────────────

METADATA_KEY_PLATFORM_VERSION = "fly_platform_version"
PLATFORM_VERSION_V2 = "v2"
METADATA_KEY_PROCESS_GROUP = "fly_process_group"
PROCESS_GROUP_RELEASE_COMMAND = "fly_app_release_command"
PROCESS_GROUP_CONSOLE = "fly_app_console"

# Older machines carry these instead of the keys above.
_LEGACY_METADATA_KEY_PROCESS_GROUP = "process_group"
_LEGACY_PROCESS_GROUP_RELEASE_COMMAND = "release_command"


class ImageRef(BaseModel):
    registry: str = ""
    repository: str = ""
    tag: str | None = None
    digest: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)

    def full_ref(self) -> str:
        ref = f"{self.registry}/{self.repository}"
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref

    def str_with_version(self) -> str:
        """Format as ``repository:tag (fly.version)``, omitting the version if unlabeled."""
        ref = f"{self.repository}:{self.tag or ''}"
        version = self.labels.get("fly.version")
        if version:
            ref += f" ({version})"
        return ref


class MachineConfig(BaseModel):
    """Machine config. Only the fields this client inspects are typed; the rest pass through."""

    model_config = ConfigDict(extra="allow")

    image: str = ""
    env: dict[str, str] | None = None
    metadata: dict[str, str] | None = None
    auto_destroy: bool = False


class CheckStatus(BaseModel):
    name: str = ""
    status: str = ""
    output: str = ""
    updated_at: str | None = None


class MachineEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = ""
    status: str = ""
    source: str = ""
    timestamp: int = 0


class Machine(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    state: str = ""
    region: str = ""
    image_ref: ImageRef | None = None
    instance_id: str = ""
    version: str | None = None
    private_ip: str = ""
    created_at: str = ""
    updated_at: str = ""
    config: MachineConfig | None = None
    events: list[MachineEvent] = Field(default_factory=list)
    checks: list[CheckStatus] = Field(default_factory=list)
    lease_nonce: str | None = Field(default=None, alias="nonce")

    @property
    def process_group(self) -> str | None:
        metadata = self.config.metadata if self.config else None
        if not metadata:
            return None
        if METADATA_KEY_PROCESS_GROUP in metadata:
            return metadata[METADATA_KEY_PROCESS_GROUP]
        return metadata.get(_LEGACY_METADATA_KEY_PROCESS_GROUP)

    def has_process_group(self, group: str) -> bool:
        return self.process_group == group

    def has_any_process_group(self, groups: list[str]) -> bool:
        group = self.process_group
        return group is not None and group in groups

    def is_release_command_machine(self) -> bool:
        return self.has_any_process_group(
            [PROCESS_GROUP_RELEASE_COMMAND, _LEGACY_PROCESS_GROUP_RELEASE_COMMAND]
        )

    def is_apps_v2(self) -> bool:
        metadata = self.config.metadata if self.config else None
        if not metadata:
            return False
        return metadata.get(METADATA_KEY_PLATFORM_VERSION) == PLATFORM_VERSION_V2

    def is_active(self) -> bool:
        return self.state not in _INACTIVE_STATES

    def is_fly_apps_platform(self) -> bool:
        return self.is_apps_v2() and self.is_active()

    def is_fly_apps_console(self) -> bool:
        return self.is_fly_apps_platform() and self.has_process_group(PROCESS_GROUP_CONSOLE)


class HasMachineId(Protocol):
    @property
    def id(self) -> str: ...


MachineRef = str | HasMachineId


def machine_id(ref: MachineRef) -> str:
    """Resolve a machine reference (bare id or anything with an ``id``) to its id."""
    if isinstance(ref, str):
        return ref
    return ref.id


class ListenSocket(BaseModel):
    proto: str
    address: str


class ProcessStat(BaseModel):
    pid: int
    stime: int = 0
    rtime: int = 0
    command: str = ""
    directory: str = ""
    cpu: int = 0
    rss: int = 0
    listen_sockets: list[ListenSocket] = Field(default_factory=list)


# ── Request inputs ────────────────────────────────────────────────────────────


class LaunchMachineInput(BaseModel):
    config: MachineConfig | None = None
    region: str | None = None
    name: str | None = None
    skip_launch: bool = False
    lease_ttl: int | None = None
    # Client side only: the machine to update.
    id: str | None = Field(default=None, exclude=True)


class StopMachineInput(BaseModel):
    id: str
    signal: str | None = None
    # Go duration text, e.g. "30s".
    timeout: str | None = None


class RestartMachineInput(BaseModel):
    id: str
    signal: str | None = None
    timeout_seconds: float | None = None
    force_stop: bool = False


class RemoveMachineInput(BaseModel):
    id: str
    kill: bool = False


class Signal(BaseModel):
    signal: int


class MachineExecRequest(BaseModel):
    cmd: str
    timeout: int


# ── API responses ─────────────────────────────────────────────────────────────


class MachineStartResponse(BaseModel):
    message: str = ""
    status: str = ""
    previous_state: str = ""


class MachineLeaseData(BaseModel):
    nonce: str
    expires_at: int
    owner: str = ""


class MachineLease(BaseModel):
    status: str = ""
    data: MachineLeaseData
    message: str = ""
    code: str = ""

    @property
    def nonce(self) -> str:
        return self.data.nonce

    @property
    def owner(self) -> str:
        return self.data.owner

    @property
    def expires_at(self) -> int:
        return self.data.expires_at


class MachineExecResponse(BaseModel):
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""


class RawApiError(BaseModel):
    """The error body the control plane returns with non-2xx responses."""

    status_code: int = 0
    fly_request_id: str | None = None
    error: str = ""
    message: str | None = None

    def __str__(self) -> str:
        if self.error and self.message:
            return f"{self.error}: {self.message}"
        return self.error or self.message or f"HTTP {self.status_code}"


class FlyAppsMachines(BaseModel):
    machines: list[Machine] = Field(default_factory=list)
    release_cmd_machine: Machine | None = None
