"""Local provider backed by ``kind`` clusters running in docker."""
from __future__ import annotations

import base64
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

import yaml

from ..kube import API_NODE_PORT
from ..models import ControlPlaneInstance, ProviderKind, RuntimeHandle, runtime_name
from .base import (
    CommandRunner,
    InfrastructureProvider,
    ProgressCallback,
    ProviderCommandError,
    ProviderError,
)

if TYPE_CHECKING:
    from ..compensator import CompensationContext
    from ..kube import ComponentInstaller

IN_CLUSTER_KUBE_ENDPOINT = "https://kubernetes.default.svc"
REGISTRY_CONTAINER = "cpctl-registry"
REGISTRY_IMAGE = "registry:2"
REGISTRY_HOST_PORT = 5001
KIND_NETWORK = "kind"


@dataclass(frozen=True, slots=True)
class PortForward:
    """A container port exposed on the host."""

    container_port: int
    host_port: int

    @classmethod
    def parse(cls, value: str) -> PortForward:
        """Parse ``container:host`` notation."""
        parts = value.split(":")
        if len(parts) != 2:
            raise ValueError(f"invalid port forward '{value}', expected container:host")
        try:
            container_port, host_port = (int(part) for part in parts)
        except ValueError as exc:
            raise ValueError(f"invalid port forward '{value}', ports must be integers") from exc
        for port in (container_port, host_port):
            if not 0 < port < 65536:
                raise ValueError(f"invalid port forward '{value}', port {port} out of range")
        return cls(container_port=container_port, host_port=host_port)


class LocalProvider(InfrastructureProvider):
    """Create kind clusters and optionally wire a local image registry."""

    kind: ClassVar[ProviderKind] = ProviderKind.KIND
    api_service_type: ClassVar[str] = "NodePort"
    uses_load_balancer: ClassVar[bool] = False

    def __init__(
        self,
        name: str,
        *,
        auth_enabled: bool = True,
        worker_nodes: int = 0,
        port_forwards: Sequence[PortForward] = (),
        local_registry: bool = False,
        owns_registry: bool = False,
        kind_bin: str = "kind",
        docker_bin: str = "docker",
        kubeconfig: Path | None = None,
        runner: CommandRunner | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Configure the kind cluster for control plane *name*."""
        super().__init__(name, on_progress=on_progress)
        self.auth_enabled = auth_enabled
        self.worker_nodes = worker_nodes
        self.port_forwards = list(port_forwards)
        self.local_registry = local_registry
        self.owns_registry = owns_registry
        self.kind_bin = kind_bin
        self.docker_bin = docker_bin
        self.kubeconfig = kubeconfig
        self.run = runner or CommandRunner()

    @property
    def cluster_name(self) -> str:
        """Return the kind cluster name."""
        return runtime_name(self.name)

    @property
    def api_host_port(self) -> int:
        """Return the host port the API server NodePort is mapped to."""
        return 443 if self.auth_enabled else 80

    def settings(self) -> Mapping[str, object]:
        """Record whether this runtime started the shared registry container."""
        return {"owns_local_registry": self.owns_registry}

    def local_api_endpoint(self, auth_enabled: bool) -> str | None:
        """Return ``http(s)://localhost:<port>``."""
        scheme = "https" if auth_enabled else "http"
        return f"{scheme}://localhost:{self.api_host_port}"

    def registered_kube_endpoint(self, handle: RuntimeHandle) -> str:
        """Return the in-cluster API address; the host mapping is not reachable from pods."""
        return IN_CLUSTER_KUBE_ENDPOINT

    # ------------------------------------------------------------------
    def cluster_config(self) -> dict[str, Any]:
        """Return the kind ``Cluster`` document for this runtime."""
        mappings = [{"containerPort": API_NODE_PORT, "hostPort": self.api_host_port}]
        mappings.extend(
            {"containerPort": forward.container_port, "hostPort": forward.host_port}
            for forward in self.port_forwards
        )
        nodes: list[dict[str, Any]] = [{"role": "control-plane", "extraPortMappings": mappings}]
        nodes.extend({"role": "worker"} for _ in range(self.worker_nodes))
        config: dict[str, Any] = {
            "kind": "Cluster",
            "apiVersion": "kind.x-k8s.io/v1alpha4",
            "nodes": nodes,
        }
        if self.local_registry:
            config["containerdConfigPatches"] = [
                '[plugins."io.containerd.grpc.v1.cri".registry.mirrors.'
                f'"localhost:{REGISTRY_HOST_PORT}"]\n'
                f'  endpoint = ["http://{REGISTRY_CONTAINER}:5000"]'
            ]
        return config

    def create(self) -> RuntimeHandle:
        """Create the kind cluster and return its connection handle."""
        if self.local_registry:
            self._ensure_registry()
        self.on_progress(f"creating kind cluster {self.cluster_name}")
        document = yaml.safe_dump(self.cluster_config(), sort_keys=False)
        self.run(
            [
                self.kind_bin, "create", "cluster", "--name", self.cluster_name,
                "--config", "-", *self._kubeconfig_args(),
            ],
            input_text=document,
        )
        if self.local_registry:
            self._connect_registry()
        return self.get_connection()

    def delete(self) -> None:
        """Delete the kind cluster; an absent cluster counts as deleted."""
        failures: list[str] = []
        if self.cluster_name in self._clusters():
            self.on_progress(f"deleting kind cluster {self.cluster_name}")
            try:
                self.run(
                    [
                        self.kind_bin, "delete", "cluster", "--name", self.cluster_name,
                        *self._kubeconfig_args(),
                    ]
                )
            except ProviderCommandError as exc:
                failures.append(str(exc))
        if self.owns_registry:
            result = self.run([self.docker_bin, "rm", "--force", REGISTRY_CONTAINER], check=False)
            if result.returncode != 0 and "No such container" not in (result.stderr or ""):
                failures.append(f"remove registry container: {result.stderr.strip()}")
        if failures:
            raise ProviderError("; ".join(failures))

    def get_connection(self) -> RuntimeHandle:
        """Read connection details from ``kind get kubeconfig``."""
        result = self.run([self.kind_bin, "get", "kubeconfig", "--name", self.cluster_name])
        return handle_from_kubeconfig(result.stdout, self.cluster_name)

    def exists(self) -> bool:
        """Return True when the kind cluster is present."""
        return self.cluster_name in self._clusters()

    def post_install(
        self,
        installer: ComponentInstaller,
        instance: ControlPlaneInstance,
        context: CompensationContext,
    ) -> None:
        """Advertise the local registry to in-cluster tooling."""
        if not self.local_registry:
            return
        installer.apply_config_map(
            "kube-public",
            "local-registry-hosting",
            {
                "localRegistryHosting.v1": yaml.safe_dump(
                    {"host": f"localhost:{REGISTRY_HOST_PORT}"}, sort_keys=False
                )
            },
        )

    # Internal helpers -------------------------------------------------
    def _kubeconfig_args(self) -> list[str]:
        return ["--kubeconfig", str(self.kubeconfig)] if self.kubeconfig else []

    def _clusters(self) -> list[str]:
        result = self.run([self.kind_bin, "get", "clusters"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _ensure_registry(self) -> None:
        inspect = self.run(
            [self.docker_bin, "inspect", "-f", "{{.State.Running}}", REGISTRY_CONTAINER],
            check=False,
        )
        if inspect.returncode == 0 and inspect.stdout.strip() == "true":
            return
        self.on_progress(f"starting local registry on localhost:{REGISTRY_HOST_PORT}")
        self.run(
            [
                self.docker_bin,
                "run",
                "-d",
                "--restart=always",
                "-p",
                f"127.0.0.1:{REGISTRY_HOST_PORT}:5000",
                "--name",
                REGISTRY_CONTAINER,
                REGISTRY_IMAGE,
            ]
        )
        self.owns_registry = True

    def _connect_registry(self) -> None:
        result = self.run(
            [self.docker_bin, "network", "connect", KIND_NETWORK, REGISTRY_CONTAINER],
            check=False,
        )
        if result.returncode != 0 and "already exists" not in (result.stderr or ""):
            raise ProviderCommandError(
                f"docker network connect failed: {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr or "",
            )


def handle_from_kubeconfig(document: str, cluster: str) -> RuntimeHandle:
    """Build a runtime handle from a kubeconfig YAML document."""
    try:
        config = yaml.safe_load(document) or {}
    except yaml.YAMLError as exc:
        raise ProviderError(f"invalid kubeconfig for {cluster}: {exc}") from exc
    try:
        cluster_entry = _named(config.get("clusters"), f"kind-{cluster}", "cluster")
        user_entry = _named(config.get("users"), f"kind-{cluster}", "user")
        return RuntimeHandle(
            endpoint=str(cluster_entry["server"]),
            ca_cert=_decode(cluster_entry["certificate-authority-data"]),
            client_cert=_decode(user_entry["client-certificate-data"]),
            client_key=_decode(user_entry["client-key-data"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ProviderError(f"kubeconfig for {cluster} is missing {exc}") from exc


def _named(entries: object, name: str, key: str) -> dict[str, Any]:
    if not isinstance(entries, list) or not entries:
        raise KeyError(f"{key}s")
    for entry in entries:
        if isinstance(entry, dict) and entry.get("name") == name:
            return dict(entry[key])
    first = entries[0]
    if not isinstance(first, dict):
        raise KeyError(key)
    return dict(first[key])


def _decode(value: object) -> str:
    return base64.b64decode(str(value)).decode("utf-8")


__all__ = ["LocalProvider", "PortForward", "handle_from_kubeconfig"]
