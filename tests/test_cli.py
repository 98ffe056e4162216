"""Tests for the cpctl command line."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from fakes import FakeInstaller, FakeProvider, FakeRegistrationClient
from typer.testing import CliRunner, Result

from cpctl import __version__, cli
from cpctl.cli import app
from cpctl.models import ControlPlaneInstance, ProviderKind
from cpctl.orchestrator import Orchestrator
from cpctl.state.registry import InstanceRegistry

runner = CliRunner()


def _env(tmp_path: Path) -> dict[str, str]:
    return {
        "CPCTL_CONFIG_FILE": str(tmp_path / "config.yml"),
        "CPCTL_STATE_DIR": str(tmp_path / "state"),
        "CPCTL_PROVIDER_CONFIG_DIR": str(tmp_path / "providers"),
        "CPCTL_READINESS__DELAY": "0",
        "CPCTL_REST_MAPPING_DELAY": "0",
        "CPCTL_INVENTORY_GRACE_PERIOD": "0",
    }


def _invoke(tmp_path: Path, *args: str) -> Result:
    return runner.invoke(app, list(args), env=_env(tmp_path))


def _operations(tmp_path: Path) -> list[dict[str, Any]]:
    log = tmp_path / "state" / "logs" / "operations.jsonl"
    return [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]


def _registry(tmp_path: Path) -> InstanceRegistry:
    return InstanceRegistry(tmp_path / "state" / "registry")


@pytest.fixture
def fake_orchestrator(monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    """Route the CLI through an orchestrator wired to fakes."""
    state: dict[str, Any] = {"provider_fail": {}, "installer_fail": {}}

    def build(runtime: cli.RuntimeContext) -> Orchestrator:
        provider = FakeProvider(
            "alpha", fail_on=state["provider_fail"], api_endpoint="http://localhost:80"
        )
        state["provider"] = provider
        client = FakeRegistrationClient(control_planes=({"Name": "alpha"},))
        return Orchestrator(
            runtime.config,
            runtime.registry,
            provider_factory=lambda instance, request, progress: provider,
            installer_factory=lambda handle, instance: FakeInstaller(
                handle, fail_on=state["installer_fail"]
            ),
            client_factory=client.factory,
            sleep=lambda _seconds: None,
        )

    monkeypatch.setattr(cli, "_build_orchestrator", build)
    return state


def test_version_flag(tmp_path: Path) -> None:
    """--version prints the package version."""
    result = _invoke(tmp_path, "--version")

    assert result.exit_code == 0
    assert f"cpctl {__version__}" in result.stdout


def test_no_command_prints_help(tmp_path: Path) -> None:
    """Running without a command shows help."""
    result = _invoke(tmp_path)

    assert result.exit_code == 0
    assert "create" in result.stdout
    assert "delete" in result.stdout


def test_config_show_json_reflects_environment(tmp_path: Path) -> None:
    """config show --json reports merged values."""
    result = _invoke(tmp_path, "config", "show", "--json")

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["state_dir"] == str(tmp_path / "state")
    assert data["readiness"]["delay"] == 0.0
    assert data["namespace"] == "cpctl-control-plane"


def test_invalid_config_exits_with_environment_code(tmp_path: Path) -> None:
    """A config file with unknown keys is an environment error."""
    (tmp_path / "config.yml").write_text("unknown_key: 1\n", encoding="utf-8")

    result = _invoke(tmp_path, "list")

    assert result.exit_code == 3
    assert "unknown_key" in result.stdout


def test_list_empty_registry(tmp_path: Path) -> None:
    """An empty registry lists no control planes."""
    result = _invoke(tmp_path, "list")

    assert result.exit_code == 0
    assert "(none)" in result.stdout


def test_create_rejects_invalid_name(tmp_path: Path) -> None:
    """An invalid name exits with the validation code and is logged."""
    result = _invoke(tmp_path, "create", "--name", "Bad_Name")

    assert result.exit_code == 2
    assert "invalid instance name" in result.stdout
    record = _operations(tmp_path)[-1]
    assert record["command"] == "create"
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 2


def test_create_rejects_auth_disabled_on_managed_provider(tmp_path: Path) -> None:
    """Only kind may run without client certificate authentication."""
    result = _invoke(tmp_path, "create", "--name", "alpha", "--provider", "eks", "--auth-disabled")

    assert result.exit_code == 2
    assert not _registry(tmp_path).exists("alpha")


def test_create_list_show_use(tmp_path: Path, fake_orchestrator: dict[str, Any]) -> None:
    """A created control plane shows up in list and show without secrets."""
    result = _invoke(tmp_path, "create", "--name", "alpha", "--auth-disabled", "--json")

    assert result.exit_code == 0, result.stdout
    assert "alpha" in result.stdout

    listed = _invoke(tmp_path, "list", "--json")
    assert listed.exit_code == 0
    entries = json.loads(listed.stdout)["control_planes"]
    assert [entry["name"] for entry in entries] == ["alpha"]
    assert entries[0]["current"] is True

    shown = _invoke(tmp_path, "show", "alpha", "--json")
    assert shown.exit_code == 0
    data = json.loads(shown.stdout)
    assert data["encryption_key"] == "<redacted>"
    assert data["api_server"] == "http://localhost:80"
    assert "token" not in data["kube_api"]

    used = _invoke(tmp_path, "use", "alpha")
    assert used.exit_code == 0
    assert _registry(tmp_path).current() == "alpha"

    record = _operations(tmp_path)[0]
    assert record["command"] == "create"
    assert record["result"]["status"] == "success"
    assert record["result"]["context"]["state"] == "complete"


def test_create_failure_exits_with_provider_code(
    tmp_path: Path, fake_orchestrator: dict[str, Any]
) -> None:
    """A failed step exits 4 and the failure is recorded with its step."""
    fake_orchestrator["installer_fail"]["install_agent"] = RuntimeError("image pull failed")

    result = _invoke(tmp_path, "create", "--name", "alpha", "--auth-disabled")

    assert result.exit_code == 4
    assert "image pull failed" in result.stdout
    assert not _registry(tmp_path).exists("alpha")
    record = _operations(tmp_path)[-1]
    assert record["result"]["context"]["step"] == "install agent"


def test_create_existing_name_is_conflict(tmp_path: Path, fake_orchestrator: dict[str, Any]) -> None:
    """Re-creating a recorded name without --force-overwrite exits 5."""
    first = _invoke(tmp_path, "create", "--name", "alpha", "--auth-disabled")
    assert first.exit_code == 0, first.stdout

    second = _invoke(tmp_path, "create", "--name", "alpha", "--auth-disabled")

    assert second.exit_code == 5


def test_show_unknown_instance(tmp_path: Path) -> None:
    """show on an unknown name exits with the conflict code."""
    result = _invoke(tmp_path, "show", "ghost")

    assert result.exit_code == 5


def test_use_unknown_instance(tmp_path: Path) -> None:
    """use on an unknown name exits with the conflict code."""
    result = _invoke(tmp_path, "use", "ghost")

    assert result.exit_code == 5


def test_delete_non_genesis_is_refused(tmp_path: Path) -> None:
    """Deleting a non-genesis record exits 5 and keeps the record."""
    registry = _registry(tmp_path)
    registry.upsert(
        "child",
        lambda _current: ControlPlaneInstance(
            name="child", provider=ProviderKind.KIND, genesis=False
        ),
    )

    result = _invoke(tmp_path, "delete", "--name", "child")

    assert result.exit_code == 5
    assert "not a genesis instance" in result.stdout
    assert registry.exists("child")


def test_delete_created_instance(tmp_path: Path, fake_orchestrator: dict[str, Any]) -> None:
    """A created control plane can be deleted through the CLI."""
    created = _invoke(tmp_path, "create", "--name", "alpha", "--auth-disabled")
    assert created.exit_code == 0, created.stdout

    result = _invoke(tmp_path, "delete", "--name", "alpha")

    assert result.exit_code == 0, result.stdout
    assert "deleted" in result.stdout
    assert not _registry(tmp_path).exists("alpha")
    assert fake_orchestrator["provider"].deleted is True
