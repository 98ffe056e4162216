"""Tests for the create workflow of the provisioning orchestrator."""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest
from fakes import FakeInstaller, FakeProvider, FakeRegistrationClient, FakeRunner, make_config

from cpctl import credentials
from cpctl.errors import (
    ProvisioningError,
    ReadinessTimeoutError,
    StateConflictError,
    TeardownError,
    ValidationError,
)
from cpctl.inventory import InventoryStore
from cpctl.models import ProviderKind
from cpctl.orchestrator import (
    CreateRequest,
    Orchestrator,
    ProvisioningState,
    validate_create_request,
)
from cpctl.providers.local import LocalProvider
from cpctl.retry import RetryExhaustedError
from cpctl.state.registry import InstanceRegistry


@pytest.fixture(autouse=True)
def _small_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep RSA generation quick."""
    monkeypatch.setattr(credentials, "KEY_SIZE", 2048)


class Harness:
    """Orchestrator wired to fakes that share one event log."""

    def __init__(
        self,
        tmp_path: Path,
        *,
        provider_fail: dict[str, BaseException] | None = None,
        installer_fail: dict[str, BaseException] | None = None,
        client_fail: dict[str, BaseException] | None = None,
        token_lifetime: timedelta | None = None,
        with_inventory: bool = True,
    ) -> None:
        self.events: list[str] = []
        self.config = make_config(tmp_path)
        self.registry = InstanceRegistry(self.config.registry_dir)
        self.inventory = (
            InventoryStore(tmp_path / "providers" / "eks-inventory-alpha.json")
            if with_inventory
            else None
        )
        self.provider = FakeProvider(
            "alpha",
            events=self.events,
            inventory=self.inventory,
            fail_on=provider_fail,
            token_lifetime=token_lifetime,
        )
        self.installers: list[FakeInstaller] = []
        self.installer_fail = installer_fail or {}
        self.client = FakeRegistrationClient(events=self.events, fail_on=client_fail)
        self.progress: list[str] = []
        self.orchestrator = Orchestrator(
            self.config,
            self.registry,
            provider_factory=lambda instance, request, progress: self.provider,
            installer_factory=self._installer,
            client_factory=self.client.factory,
            on_progress=self.progress.append,
            sleep=lambda _seconds: None,
        )

    def _installer(self, handle: Any, instance: Any) -> FakeInstaller:
        installer = FakeInstaller(handle, events=self.events, fail_on=self.installer_fail)
        self.installers.append(installer)
        return installer


def _request(**overrides: Any) -> CreateRequest:
    values: dict[str, Any] = {"name": "alpha", "provider": "eks", "aws_region": "us-east-1"}
    values.update(overrides)
    return CreateRequest(**values)


def test_create_reaches_complete_and_records_instance(tmp_path: Path) -> None:
    """A successful run walks every state and marks the instance current."""
    harness = Harness(tmp_path)

    result = harness.orchestrator.create(_request())

    assert result.state is ProvisioningState.COMPLETE
    assert result.states == [
        ProvisioningState.INFRA_READY,
        ProvisioningState.SECRETS_READY,
        ProvisioningState.COMPONENTS_INSTALLED,
        ProvisioningState.API_REACHABLE,
        ProvisioningState.AUTH_INSTALLED,
        ProvisioningState.CONTROLLERS_INSTALLED,
        ProvisioningState.AGENT_INSTALLED,
        ProvisioningState.SELF_REGISTERED,
        ProvisioningState.COMPLETE,
    ]
    record = harness.registry.get("alpha")
    assert record.genesis is True
    assert record.api_server == "https://localhost:8443"
    assert record.ca_cert and record.client_cert and record.client_key
    assert record.encryption_key
    assert harness.registry.current() == "alpha"
    assert harness.provider.registered == ["alpha"]
    assert harness.client.closed == 1


def test_create_registers_runtime_before_control_plane(tmp_path: Path) -> None:
    """Self-registration records the runtime, provider objects, then the control plane."""
    harness = Harness(tmp_path)

    harness.orchestrator.create(_request())

    names = [name for name, _payload in harness.client.created]
    assert names == [
        "create_kubernetes_runtime_definition",
        "create_kubernetes_runtime_instance",
        "create_control_plane_definition",
        "create_control_plane_instance",
    ]
    runtime = dict(harness.client.created[1][1])
    assert runtime["Name"] == "cpctl-alpha"
    assert runtime["KubernetesRuntimeDefinitionID"] == 1
    control_plane = dict(harness.client.created[3][1])
    assert control_plane["Genesis"] is True
    assert control_plane["KubernetesRuntimeInstanceID"] == 2
    assert harness.events.index("register") < harness.events.index(
        "create_control_plane_definition"
    )


STEP_FAILURES = [
    pytest.param(
        "prepare provider identity",
        {"provider_fail": {"prepare_identity": RuntimeError("iam denied")}},
        [],
        id="prepare-identity",
    ),
    pytest.param(
        "create infrastructure",
        {"provider_fail": {"create": RuntimeError("quota exceeded")}},
        ["delete", "undo fake role"],
        id="create-infra",
    ),
    pytest.param(
        "install control plane components",
        {"installer_fail": {"install_dependencies": RuntimeError("forbidden")}},
        ["uninstall", "delete", "undo fake role"],
        id="install-components",
    ),
    pytest.param(
        "install control plane components",
        {"provider_fail": {"post_install": RuntimeError("policy failed")}},
        ["uninstall", "delete", "undo fake role"],
        id="post-install",
    ),
    pytest.param(
        "wait for control plane API",
        {"client_fail": {"wait_until_ready": RetryExhaustedError(2, 0.0, None)}},
        ["uninstall", "delete", "undo fake role"],
        id="readiness",
    ),
    pytest.param(
        "install controllers",
        {"installer_fail": {"install_controllers": RuntimeError("bad image")}},
        ["uninstall", "delete", "undo fake role"],
        id="controllers",
    ),
    pytest.param(
        "install agent",
        {"installer_fail": {"install_agent": RuntimeError("bad image")}},
        ["uninstall", "delete", "undo fake role"],
        id="agent",
    ),
    pytest.param(
        "self-register control plane",
        {
            "client_fail": {
                "create_kubernetes_runtime_definition": RuntimeError("api rejected payload")
            }
        },
        ["uninstall", "delete", "undo fake role"],
        id="self-register",
    ),
]


@pytest.mark.mutation_timeout
@pytest.mark.parametrize(("step", "failures", "teardown"), STEP_FAILURES)
def test_failure_at_each_step_is_fully_compensated(
    tmp_path: Path,
    step: str,
    failures: dict[str, dict[str, BaseException]],
    teardown: list[str],
) -> None:
    """Whatever step fails, everything created so far is removed in reverse order."""
    harness = Harness(tmp_path, **failures)

    with pytest.raises(ProvisioningError) as excinfo:
        harness.orchestrator.create(_request())

    assert excinfo.value.step == step
    assert excinfo.value.teardown_error is None
    assert not harness.registry.exists("alpha")
    assert harness.inventory is not None and not harness.inventory.exists()
    failure_index = max(
        i for i, event in enumerate(harness.events) if event not in teardown
    )
    assert harness.events[failure_index + 1 :] == teardown


def test_failure_in_credential_generation_is_compensated(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A secret generation failure still removes the created infrastructure."""
    harness = Harness(tmp_path)

    def explode() -> str:
        raise RuntimeError("no entropy")

    monkeypatch.setattr("cpctl.orchestrator.generate_encryption_key", explode)

    with pytest.raises(ProvisioningError) as excinfo:
        harness.orchestrator.create(_request())

    assert excinfo.value.step == "generate credentials"
    assert excinfo.value.state == ProvisioningState.INFRA_READY.value
    assert harness.events[-2:] == ["delete", "undo fake role"]
    assert not harness.registry.exists("alpha")


def test_readiness_timeout_reports_budget(tmp_path: Path) -> None:
    """An unreachable API surfaces as a readiness timeout naming the budget."""
    harness = Harness(
        tmp_path, client_fail={"wait_until_ready": RetryExhaustedError(30, 10.0, None)}
    )

    with pytest.raises(ReadinessTimeoutError) as excinfo:
        harness.orchestrator.create(_request())

    assert "timed out after 300 seconds" in str(excinfo.value)
    assert excinfo.value.state == ProvisioningState.COMPONENTS_INSTALLED.value


def test_skip_teardown_leaves_everything_in_place(tmp_path: Path) -> None:
    """With skip-teardown the record, inventory and infrastructure persist."""
    harness = Harness(tmp_path, installer_fail={"install_controllers": RuntimeError("bad image")})

    with pytest.raises(ProvisioningError):
        harness.orchestrator.create(_request(skip_teardown=True))

    assert harness.registry.exists("alpha")
    assert harness.inventory is not None and harness.inventory.exists()
    assert "delete" not in harness.events
    assert "uninstall" not in harness.events
    assert "undo fake role" not in harness.events


def test_teardown_failure_is_attached_to_original_error(tmp_path: Path) -> None:
    """A failing compensation step is reported alongside the triggering error."""
    harness = Harness(
        tmp_path,
        installer_fail={"install_agent": RuntimeError("bad image")},
        provider_fail={"delete": RuntimeError("vpc has dependencies")},
    )

    with pytest.raises(ProvisioningError) as excinfo:
        harness.orchestrator.create(_request())

    teardown = excinfo.value.teardown_error
    assert isinstance(teardown, TeardownError)
    assert teardown.errors == ["delete infrastructure: vpc has dependencies"]
    assert "bad image" in str(excinfo.value)
    assert "vpc has dependencies" in str(excinfo.value)
    # Later steps still ran.
    assert harness.events[-1] == "undo fake role"
    assert not harness.registry.exists("alpha")


def test_control_plane_only_failure_keeps_infrastructure(tmp_path: Path) -> None:
    """Control-plane-only runs only remove the components they installed."""
    harness = Harness(tmp_path, installer_fail={"install_controllers": RuntimeError("boom")})

    with pytest.raises(ProvisioningError):
        harness.orchestrator.create(_request(control_plane_only=True))

    assert "create" not in harness.events
    assert "prepare_identity" not in harness.events
    assert "get_connection" in harness.events
    assert "uninstall" in harness.events
    assert "delete" not in harness.events


def test_control_plane_only_is_recorded(tmp_path: Path) -> None:
    """The record remembers that the runtime existed before the control plane."""
    harness = Harness(tmp_path)

    harness.orchestrator.create(_request(control_plane_only=True))

    assert harness.registry.get("alpha").control_plane_only is True



def test_infra_only_stops_after_infrastructure(tmp_path: Path) -> None:
    """An infra-only run stops at INFRA_READY without installing components."""
    harness = Harness(tmp_path)

    result = harness.orchestrator.create(_request(infra_only=True))

    assert result.state is ProvisioningState.INFRA_READY
    assert harness.installers == []
    record = harness.registry.get("alpha")
    assert record.kube_api is not None
    assert record.api_server is None
    assert harness.registry.current() is None


def test_token_is_refreshed_before_kube_client_is_built(tmp_path: Path) -> None:
    """A token close to expiry is replaced before the installer is constructed."""
    harness = Harness(tmp_path, token_lifetime=timedelta(minutes=1))

    harness.orchestrator.create(_request())

    assert harness.installers[0].handle is not None
    assert harness.installers[0].handle.token == "fresh-token-1"
    assert harness.events.index("refresh_connection") < harness.events.index(
        "install_dependencies"
    )


def test_existing_name_requires_force_overwrite(tmp_path: Path) -> None:
    """A second create with the same name is a state conflict."""
    harness = Harness(tmp_path)
    harness.orchestrator.create(_request(infra_only=True))

    with pytest.raises(StateConflictError, match="force-overwrite"):
        harness.orchestrator.create(_request())


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"name": "a" * 31}, "too long"),
        ({"name": "Bad_Name"}, "invalid instance name"),
        ({"provider": "gke"}, "invalid provider"),
        ({"auth_enabled": False}, "client certificate authentication"),
        ({"infra_only": True, "control_plane_only": True}, "cannot be combined"),
        ({"port_forwards": ("8080:80",)}, "kind provider"),
        ({"provider": "kind", "port_forwards": ("8080",)}, "invalid port forward"),
        ({"worker_nodes": -1}, "negative"),
        ({"root_domain": "not a domain"}, "invalid root domain"),
    ],
)
def test_invalid_requests_are_rejected(overrides: dict[str, Any], message: str) -> None:
    """Bad input is rejected before anything is created."""
    with pytest.raises(ValidationError, match=message):
        validate_create_request(_request(**overrides))


def test_validation_happens_before_any_provider_call(tmp_path: Path) -> None:
    """A rejected request never reaches the provider or the registry."""
    harness = Harness(tmp_path)

    with pytest.raises(ValidationError):
        harness.orchestrator.create(_request(name="x" * 40))

    assert harness.events == []
    assert not harness.registry.path.exists()


def test_local_create_and_delete_with_auth_disabled(tmp_path: Path) -> None:
    """A kind control plane named dev is created and deleted end to end."""
    config = make_config(tmp_path)
    registry = InstanceRegistry(config.registry_dir)
    runner = FakeRunner()
    installers: list[FakeInstaller] = []
    client = FakeRegistrationClient()

    def provider_factory(instance: Any, request: Any, progress: Any) -> LocalProvider:
        return LocalProvider(
            instance.name,
            auth_enabled=instance.auth_enabled,
            runner=runner,
            on_progress=progress,
        )

    def installer_factory(handle: Any, instance: Any) -> FakeInstaller:
        installer = FakeInstaller(handle)
        installers.append(installer)
        return installer

    orchestrator = Orchestrator(
        config,
        registry,
        provider_factory=provider_factory,
        installer_factory=installer_factory,
        client_factory=client.factory,
        sleep=lambda _seconds: None,
    )

    result = orchestrator.create(CreateRequest(name="dev", provider="kind", auth_enabled=False))

    assert result.state is ProvisioningState.COMPLETE
    assert ProvisioningState.AUTH_INSTALLED not in result.states
    record = registry.get("dev")
    assert record.provider is ProviderKind.KIND
    assert record.api_server == "http://localhost:80"
    assert record.ca_cert is None
    assert runner.clusters == {"cpctl-dev"}
    constructed_args, constructed_kwargs = client.constructed[0]
    assert constructed_args == ("http://localhost:80",)
    assert constructed_kwargs["client_cert"] is None
    runtime_payload = dict(client.created[1][1])
    assert runtime_payload["APIEndpoint"] == "https://kubernetes.default.svc"

    orchestrator.delete("dev")

    assert runner.clusters == set()
    assert not registry.exists("dev")
    assert installers[-1].uninstalled is True
