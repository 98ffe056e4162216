"""In-memory stand-ins for the provider, installer, API client and command runner."""
from __future__ import annotations

import base64
import subprocess
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, ClassVar

import yaml

from cpctl.config import AppConfig, load_config
from cpctl.inventory import InventoryEntry, InventoryStore
from cpctl.models import ControlPlaneInstance, ProviderKind, RuntimeHandle
from cpctl.providers.base import InfrastructureProvider, ProviderCommandError

CA_PEM = "-----BEGIN CERTIFICATE-----\nfake-ca\n-----END CERTIFICATE-----\n"


def _raise_if(fail_on: Mapping[str, BaseException], name: str) -> None:
    error = fail_on.get(name)
    if error is not None:
        raise error


class FakeProvider(InfrastructureProvider):
    """Provider that records its calls in a shared ``events`` list."""

    kind: ClassVar[ProviderKind] = ProviderKind.EKS
    api_service_type: ClassVar[str] = "LoadBalancer"
    uses_load_balancer: ClassVar[bool] = False

    def __init__(
        self,
        name: str,
        *,
        events: list[str] | None = None,
        inventory: InventoryStore | None = None,
        fail_on: Mapping[str, BaseException] | None = None,
        token_lifetime: timedelta | None = None,
        api_endpoint: str = "https://localhost:8443",
        create_hook: Any = None,
    ) -> None:
        """Configure the fake; *fail_on* maps method names to errors to raise."""
        super().__init__(name)
        self.events = events if events is not None else []
        self._inventory = inventory
        self.fail_on = dict(fail_on or {})
        self.token_lifetime = token_lifetime
        self.api_endpoint = api_endpoint
        self.create_hook = create_hook
        self.refreshes = 0
        self.identity_released = False
        self.deleted = False
        self.registered: list[str] = []

    @property
    def inventory(self) -> InventoryStore | None:
        """Return the optional inventory store."""
        return self._inventory

    def _handle(self, token: str | None) -> RuntimeHandle:
        expiration = None
        if self.token_lifetime is not None:
            expiration = datetime.now(tz=UTC) + self.token_lifetime
        return RuntimeHandle(
            endpoint="https://runtime.example:6443",
            ca_cert=CA_PEM,
            token=token,
            token_expiration=expiration,
        )

    def prepare_identity(self, context: Any) -> None:
        """Record the call and register an undo for a fake role."""
        self.events.append("prepare_identity")
        _raise_if(self.fail_on, "prepare_identity")
        context.register_undo("fake role", lambda: self.events.append("undo fake role"))

    def create(self) -> RuntimeHandle:
        """Record an inventory entry and return a handle."""
        self.events.append("create")
        if self._inventory is not None:
            self._inventory.append(InventoryEntry(kind="vpc", id="vpc-1", region="us-east-1"))
        if self.create_hook is not None:
            self.create_hook()
        _raise_if(self.fail_on, "create")
        return self._handle("initial-token")

    def delete(self) -> None:
        """Record the deletion."""
        self.events.append("delete")
        _raise_if(self.fail_on, "delete")
        self.deleted = True

    def get_connection(self) -> RuntimeHandle:
        """Return a handle with a fresh token."""
        self.events.append("get_connection")
        _raise_if(self.fail_on, "get_connection")
        return self._handle("existing-token")

    def refresh_connection(self) -> RuntimeHandle:
        """Return a handle with a numbered refreshed token."""
        self.refreshes += 1
        self.events.append("refresh_connection")
        return RuntimeHandle(
            endpoint="https://runtime.example:6443",
            ca_cert=CA_PEM,
            token=f"fresh-token-{self.refreshes}",
            token_expiration=datetime.now(tz=UTC) + timedelta(hours=1),
        )

    def local_api_endpoint(self, auth_enabled: bool) -> str | None:
        """Return the configured API endpoint."""
        return self.api_endpoint

    def post_install(self, installer: Any, instance: ControlPlaneInstance, context: Any) -> None:
        """Record the call."""
        self.events.append("post_install")
        _raise_if(self.fail_on, "post_install")

    def register(self, client: Any, instance: ControlPlaneInstance) -> None:
        """Record the call."""
        self.events.append("register")
        self.registered.append(instance.name)

    def release_identity(self) -> None:
        """Record the call."""
        self.events.append("release_identity")
        _raise_if(self.fail_on, "release_identity")
        self.identity_released = True


class FakeInstaller:
    """Component installer that records calls instead of talking to Kubernetes."""

    def __init__(
        self,
        handle: RuntimeHandle | None = None,
        *,
        events: list[str] | None = None,
        fail_on: Mapping[str, BaseException] | None = None,
    ) -> None:
        """Remember the handle it was built with."""
        self.handle = handle
        self.events = events if events is not None else []
        self.fail_on = dict(fail_on or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.secrets: dict[str, dict[str, str]] = {}
        self.service_accounts: set[str] = set()
        self.uninstalled = False

    def _record(self, name: str, /, **details: Any) -> None:
        self.events.append(name)
        self.calls.append((name, details))
        _raise_if(self.fail_on, name)

    def install_dependencies(self, encryption_key: str, database: Any) -> None:
        """Record the call."""
        self._record("install_dependencies", encryption_key=encryption_key)

    def install_api_server(self, **kwargs: Any) -> None:
        """Record the call."""
        self._record("install_api_server", **kwargs)

    def install_api_tls(self, server: Any, client: Any, ca_cert: str) -> None:
        """Record the call."""
        self._record("install_api_tls", ca_cert=ca_cert)

    def api_endpoint(self, budget: Any) -> str:
        """Return a fixed load balancer host."""
        self._record("api_endpoint")
        return "lb.example.com"

    def install_controllers(self, **kwargs: Any) -> None:
        """Record the call."""
        self._record("install_controllers", **kwargs)

    def install_agent(self, **kwargs: Any) -> None:
        """Record the call."""
        self._record("install_agent", **kwargs)

    def install_support_services(self, *, settle: float) -> None:
        """Record the call."""
        self._record("install_support_services", settle=settle)

    def apply_secret(self, name: str, data: Mapping[str, str]) -> None:
        """Record the secret."""
        self._record("apply_secret", name=name)
        self.secrets[name] = dict(data)

    def apply_service_account(self, name: str, annotations: Mapping[str, str]) -> None:
        """Record the service account."""
        self._record("apply_service_account", name=name, annotations=dict(annotations))
        self.service_accounts.add(name)

    def apply_config_map(self, namespace: str, name: str, data: Mapping[str, str]) -> None:
        """Record the config map."""
        self._record("apply_config_map", namespace=namespace, name=name)

    def uninstall(self) -> None:
        """Record the removal."""
        self._record("uninstall")
        self.uninstalled = True


class FakeRegistrationClient:
    """Registration client that stores payloads in memory."""

    def __init__(
        self,
        *,
        events: list[str] | None = None,
        fail_on: Mapping[str, BaseException] | None = None,
        workloads: Sequence[Mapping[str, Any]] = (),
        control_planes: Sequence[Mapping[str, Any]] = ({"Name": "self"},),
    ) -> None:
        """Configure canned list responses."""
        self.events = events if events is not None else []
        self.fail_on = dict(fail_on or {})
        self.workloads = [dict(item) for item in workloads]
        self.control_planes = [dict(item) for item in control_planes]
        self.created: list[tuple[str, dict[str, Any]]] = []
        self.updates: list[tuple[object, dict[str, Any]]] = []
        self.constructed: list[tuple[tuple[Any, ...], dict[str, Any]]] = []
        self.closed = 0
        self._next_id = 0

    def factory(self, *args: Any, **kwargs: Any) -> FakeRegistrationClient:
        """Stand in for the ``RegistrationClient`` constructor."""
        self.constructed.append((args, kwargs))
        return self

    def close(self) -> None:
        """Count closes."""
        self.closed += 1

    def wait_until_ready(self, *, attempts: int, delay: float) -> dict[str, Any]:
        """Record the readiness wait."""
        self.events.append("wait_until_ready")
        _raise_if(self.fail_on, "wait_until_ready")
        return {"version": "v0.6.0"}

    def _create(self, name: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        self.events.append(name)
        _raise_if(self.fail_on, name)
        self._next_id += 1
        self.created.append((name, dict(payload)))
        return {"ID": self._next_id, **dict(payload)}

    def __getattr__(self, name: str) -> Any:
        if name.startswith("create_"):
            return lambda payload: self._create(name, payload)
        raise AttributeError(name)

    def list_workload_instances(self) -> list[dict[str, Any]]:
        """Return the canned workloads."""
        self.events.append("list_workload_instances")
        _raise_if(self.fail_on, "list_workload_instances")
        return list(self.workloads)

    def list_control_plane_instances(self) -> list[dict[str, Any]]:
        """Return the canned control planes."""
        self.events.append("list_control_plane_instances")
        return list(self.control_planes)

    def get_kubernetes_runtime_instance(self, name: str) -> dict[str, Any]:
        """Return a runtime instance stub."""
        self.events.append("get_kubernetes_runtime_instance")
        return {"ID": 7, "Name": name}

    def update_kubernetes_runtime_instance(
        self, instance_id: object, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Record the update."""
        self.events.append("update_kubernetes_runtime_instance")
        self.updates.append((instance_id, dict(payload)))
        return {"ID": instance_id}


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def kind_kubeconfig(cluster: str, server: str = "https://127.0.0.1:40000") -> str:
    """Return the kubeconfig ``kind get kubeconfig`` would print for *cluster*."""
    entry = f"kind-{cluster}"
    return yaml.safe_dump(
        {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [
                {
                    "name": entry,
                    "cluster": {"server": server, "certificate-authority-data": _b64(CA_PEM)},
                }
            ],
            "users": [
                {
                    "name": entry,
                    "user": {
                        "client-certificate-data": _b64("client-cert"),
                        "client-key-data": _b64("client-key"),
                    },
                }
            ],
            "contexts": [{"name": entry, "context": {"cluster": entry, "user": entry}}],
            "current-context": entry,
        }
    )


class FakeRunner:
    """Simulates the ``kind`` and ``docker`` binaries."""

    def __init__(self) -> None:
        """Start with no clusters."""
        self.clusters: set[str] = set()
        self.commands: list[list[str]] = []
        self.inputs: list[str | None] = []
        self.fail_create = False
        self.registry_running = False

    def __call__(
        self,
        args: Sequence[str],
        *,
        input_text: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Dispatch on the sub-command and return a completed process."""
        argv = list(args)
        self.commands.append(argv)
        self.inputs.append(input_text)
        stdout = ""
        returncode = 0
        stderr = ""
        if argv[1:3] == ["get", "clusters"]:
            stdout = "\n".join(sorted(self.clusters)) + "\n"
        elif argv[1:3] == ["create", "cluster"]:
            if self.fail_create:
                returncode, stderr = 1, "boom"
            else:
                self.clusters.add(argv[argv.index("--name") + 1])
        elif argv[1:3] == ["delete", "cluster"]:
            self.clusters.discard(argv[argv.index("--name") + 1])
        elif argv[1:3] == ["get", "kubeconfig"]:
            name = argv[argv.index("--name") + 1]
            if name not in self.clusters:
                returncode, stderr = 1, f"cluster {name} not found"
            else:
                stdout = kind_kubeconfig(name)
        elif argv[0] == "docker" and argv[1] == "inspect":
            if self.registry_running:
                stdout = "true\n"
            else:
                returncode, stderr = 1, "No such object"
        elif argv[0] == "docker" and argv[1] == "rm":
            returncode, stderr = 1, "Error: No such container: cpctl-registry"
        if check and returncode != 0:
            raise ProviderCommandError(
                f"{' '.join(argv[:3])} failed (exit {returncode}): {stderr}",
                returncode=returncode,
                stderr=stderr,
            )
        return subprocess.CompletedProcess(argv, returncode, stdout=stdout, stderr=stderr)


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Return a config rooted under *tmp_path* with zero-delay waits."""
    values: dict[str, object] = {
        "state_dir": str(tmp_path / "state"),
        "provider_config_dir": str(tmp_path / "providers"),
        "readiness": {"attempts": 2, "delay": 0},
        "iam": {"attempts": 2, "delay": 0, "settle": 0},
        "load_balancer": {"attempts": 2, "delay": 0},
        "inventory_grace_period": 0,
        "rest_mapping_delay": 0,
    }
    values.update(overrides)
    return load_config(config_file=tmp_path / "config.yml", env={}, overrides=values)
