"""Tests for Pydantic data models."""

from __future__ import annotations

from flaps.models import (
    ImageRef,
    LaunchMachineInput,
    Machine,
    MachineConfig,
    MachineLease,
    MachineState,
    RawApiError,
    machine_id,
)


def make_machine(state="started", metadata=None, **kwargs):
    config = MachineConfig(metadata=metadata) if metadata is not None else None
    return Machine(id=kwargs.pop("id", "m1"), state=state, config=config, **kwargs)


class TestMachineState:
    def test_names_round_trip(self):
        for state in MachineState:
            assert MachineState.from_name(str(state)) is state

    def test_wire_names(self):
        assert str(MachineState.STARTED) == "started"
        assert str(MachineState.DESTROYING) == "destroying"
        assert f"{MachineState.STOPPED}" == "stopped"

    def test_unknown_name(self):
        assert MachineState.from_name("replacing") is None
        assert MachineState.from_name("Started") is None


class TestMachine:
    def test_from_api_json(self):
        m = Machine.model_validate(
            {
                "id": "148ed193b95389",
                "name": "web",
                "state": "started",
                "region": "iad",
                "instance_id": "01H3JK",
                "private_ip": "fdaa::3",
                "nonce": "abc123",
                "image_ref": {
                    "registry": "registry.fly.io",
                    "repository": "my-app",
                    "tag": "deployment-1",
                    "labels": {"fly.version": "0.1"},
                },
                "config": {"image": "my-app:latest", "guest": {"cpus": 1}},
                "some_new_field": True,
            }
        )
        assert m.lease_nonce == "abc123"
        assert m.image_ref is not None
        assert m.image_ref.repository == "my-app"
        assert m.config is not None
        assert m.config.image == "my-app:latest"
        assert m.version is None

    def test_unknown_config_fields_round_trip(self):
        config = MachineConfig.model_validate({"image": "nginx", "guest": {"cpus": 2}})
        dumped = config.model_dump()
        assert dumped["guest"] == {"cpus": 2}

    def test_is_active(self):
        assert make_machine("started").is_active()
        assert make_machine("stopped").is_active()
        assert not make_machine("destroyed").is_active()
        assert not make_machine("destroying").is_active()

    def test_process_group_prefers_modern_key(self):
        m = make_machine(metadata={"fly_process_group": "web", "process_group": "worker"})
        assert m.process_group == "web"

    def test_process_group_legacy_key(self):
        m = make_machine(metadata={"process_group": "worker"})
        assert m.process_group == "worker"
        assert m.has_process_group("worker")

    def test_no_config(self):
        m = make_machine()
        assert m.process_group is None
        assert not m.has_process_group("app")
        assert not m.is_release_command_machine()
        assert not m.is_apps_v2()

    def test_release_command_modern_and_legacy(self):
        modern = make_machine(metadata={"fly_process_group": "fly_app_release_command"})
        legacy = make_machine(metadata={"process_group": "release_command"})
        app = make_machine(metadata={"fly_process_group": "app"})
        assert modern.is_release_command_machine()
        assert legacy.is_release_command_machine()
        assert not app.is_release_command_machine()

    def test_console_requires_apps_v2(self):
        v2_console = make_machine(
            metadata={"fly_platform_version": "v2", "fly_process_group": "fly_app_console"}
        )
        v1_console = make_machine(metadata={"fly_process_group": "fly_app_console"})
        assert v2_console.is_fly_apps_console()
        assert not v1_console.is_fly_apps_console()

    def test_destroyed_console_is_not_platform(self):
        m = make_machine(
            "destroyed",
            metadata={"fly_platform_version": "v2", "fly_process_group": "fly_app_console"},
        )
        assert not m.is_fly_apps_platform()
        assert not m.is_fly_apps_console()


class TestMachineRef:
    def test_string(self):
        assert machine_id("m1") == "m1"

    def test_machine(self):
        assert machine_id(make_machine(id="m2")) == "m2"


class TestImageRef:
    def test_full_ref(self):
        ref = ImageRef(registry="registry.fly.io", repository="app", tag="v1", digest="sha256:ab")
        assert ref.full_ref() == "registry.fly.io/app:v1@sha256:ab"

    def test_full_ref_bare(self):
        assert ImageRef(registry="docker.io", repository="nginx").full_ref() == "docker.io/nginx"

    def test_str_with_version(self):
        ref = ImageRef(repository="app", tag="v1", labels={"fly.version": "2.0"})
        assert ref.str_with_version() == "app:v1 (2.0)"
        assert ImageRef(repository="app", tag="v1").str_with_version() == "app:v1"


class TestLaunchMachineInput:
    def test_id_is_never_serialized(self):
        inp = LaunchMachineInput(id="m1", region="iad")
        dumped = inp.model_dump(exclude_none=True)
        assert "id" not in dumped
        assert dumped["region"] == "iad"


class TestMachineLease:
    def test_convenience_properties(self):
        lease = MachineLease.model_validate(
            {
                "status": "success",
                "data": {"nonce": "n1", "expires_at": 1700000000, "owner": "me@example.com"},
                "message": "",
                "code": "",
            }
        )
        assert lease.nonce == "n1"
        assert lease.owner == "me@example.com"
        assert lease.expires_at == 1700000000


class TestRawApiError:
    def test_str_with_message(self):
        raw = RawApiError(status_code=400, error="bad request", message="invalid config")
        assert str(raw) == "bad request: invalid config"

    def test_str_without_message(self):
        assert str(RawApiError(status_code=500, error="boom")) == "boom"

    def test_str_message_only(self):
        assert str(RawApiError(status_code=404, message="lease not found")) == "lease not found"
