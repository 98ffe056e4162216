"""Install and remove the control plane's in-cluster components.

Manifests are plain dictionaries submitted through the official
``kubernetes`` client. Every install is create-or-replace so a re-run against
a runtime that already holds some components converges instead of failing.
"""
from __future__ import annotations

import base64
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from .config import RetryConfig
from .credentials import CertificatePair, DatabaseCredentials
from .models import API_SERVICE_NAME, RuntimeHandle
from .retry import RetryExhaustedError, retry

CONTROLLER_NAMES: tuple[str, ...] = (
    "workload-controller",
    "kubernetes-runtime-controller",
    "aws-controller",
    "gateway-controller",
    "control-plane-controller",
    "helm-workload-controller",
    "terraform-controller",
    "observability-controller",
)
API_COMPONENT = "rest-api"
AGENT_COMPONENT = "agent"
MIGRATOR_COMPONENT = "database-migrator"
SUPPORT_SERVICES_OPERATOR = "support-services-operator"

API_CONTAINER_PORT = 1323
API_NODE_PORT = 30000
DB_SERVICE = "cpctl-db"
NATS_SERVICE = "nats"
ENCRYPTION_SECRET = "encryption-key"
DB_SECRET = "db-credentials"
API_TLS_SECRET = "api-server-tls"
CLIENT_TLS_SECRET = "api-client-tls"


class KubeError(RuntimeError):
    """Raised when a Kubernetes API call fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        """Record the HTTP status of the failed call, when known."""
        super().__init__(message)
        self.status = status

    @property
    def unauthorized(self) -> bool:
        """Return True when the runtime rejected the credentials."""
        return self.status in (401, 403)


def component_names() -> list[str]:
    """Return the components reported when the control plane registers itself."""
    return [*CONTROLLER_NAMES, API_COMPONENT, AGENT_COMPONENT]


@dataclass(frozen=True, slots=True)
class ImageSettings:
    """Where component images are pulled from."""

    repo: str
    tag: str

    def image(self, component: str) -> str:
        """Return the image reference for *component*."""
        return f"{self.repo}/threeport-{component}:{self.tag}"


class ComponentInstaller:
    """Apply and remove control plane components in one namespace."""

    def __init__(
        self,
        api_client: k8s.ApiClient,
        *,
        namespace: str,
        images: ImageSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Bind the installer to a connected API client."""
        self.api_client = api_client
        self.namespace = namespace
        self.images = images
        self.core = k8s.CoreV1Api(api_client)
        self.apps = k8s.AppsV1Api(api_client)
        self.service_accounts: set[str] = set()
        self._sleep = sleep

    @classmethod
    def connect(
        cls,
        handle: RuntimeHandle,
        *,
        name: str,
        namespace: str,
        images: ImageSettings,
    ) -> ComponentInstaller:
        """Build an installer from a runtime handle."""
        api_client = k8s_config.new_client_from_config_dict(handle.to_kubeconfig(name))
        return cls(api_client, namespace=namespace, images=images)

    # ------------------------------------------------------------------
    # Installation steps
    # ------------------------------------------------------------------
    def install_dependencies(self, encryption_key: str, database: DatabaseCredentials) -> None:
        """Create the namespace, base secrets, NATS and the database."""
        self._ensure_namespace()
        self.apply_secret(ENCRYPTION_SECRET, {"ENCRYPTION_KEY": encryption_key})
        self.apply_secret(
            DB_SECRET,
            {
                "DB_USER": database.user,
                "DB_PASSWORD": database.password,
                "DB_NAME": database.database,
            },
        )
        self._apply_deployment(
            _deployment(NATS_SERVICE, "nats:2.10", ports=[4222], args=["--jetstream"])
        )
        self._apply_service(_service(NATS_SERVICE, port=4222, target_port=4222))
        self._apply_deployment(
            _deployment(
                DB_SERVICE,
                "postgres:16",
                ports=[5432],
                env=[
                    _secret_env("POSTGRES_USER", DB_SECRET, "DB_USER"),
                    _secret_env("POSTGRES_PASSWORD", DB_SECRET, "DB_PASSWORD"),
                    _secret_env("POSTGRES_DB", DB_SECRET, "DB_NAME"),
                ],
            )
        )
        self._apply_service(_service(DB_SERVICE, port=5432, target_port=5432))

    def install_api_server(
        self,
        *,
        service_type: str,
        auth_enabled: bool,
        annotations: Mapping[str, str] | None = None,
    ) -> None:
        """Deploy the API server and expose it with *service_type*."""
        env = [
            {"name": "DB_HOST", "value": DB_SERVICE},
            {"name": "NATS_URL", "value": f"nats://{NATS_SERVICE}:4222"},
            {"name": "AUTH_ENABLED", "value": str(auth_enabled).lower()},
            _secret_env("ENCRYPTION_KEY", ENCRYPTION_SECRET, "ENCRYPTION_KEY"),
            _secret_env("DB_USER", DB_SECRET, "DB_USER"),
            _secret_env("DB_PASSWORD", DB_SECRET, "DB_PASSWORD"),
            _secret_env("DB_NAME", DB_SECRET, "DB_NAME"),
        ]
        migrator = {
            "name": MIGRATOR_COMPONENT,
            "image": self.images.image(MIGRATOR_COMPONENT),
            "env": env,
        }
        volumes = [API_TLS_SECRET] if auth_enabled else []
        self._apply_deployment(
            _deployment(
                API_SERVICE_NAME,
                self.images.image(API_COMPONENT),
                ports=[API_CONTAINER_PORT],
                env=env,
                init_containers=[migrator],
                secret_volumes=volumes,
            )
        )
        port = 443 if auth_enabled else 80
        node_port = API_NODE_PORT if service_type == "NodePort" else None
        self._apply_service(
            _service(
                API_SERVICE_NAME,
                port=port,
                target_port=API_CONTAINER_PORT,
                service_type=service_type,
                node_port=node_port,
                annotations=annotations,
            )
        )

    def install_api_tls(self, server: CertificatePair, client: CertificatePair, ca_cert: str) -> None:
        """Store the API server and in-cluster client certificates."""
        self.apply_secret(
            API_TLS_SECRET,
            {"tls.crt": server.certificate, "tls.key": server.private_key, "ca.crt": ca_cert},
        )
        self.apply_secret(
            CLIENT_TLS_SECRET,
            {"tls.crt": client.certificate, "tls.key": client.private_key, "ca.crt": ca_cert},
        )

    def api_endpoint(self, budget: RetryConfig) -> str:
        """Wait for the API load balancer and return its host name or address."""

        def lookup() -> str:
            service = self._call(
                self.core.read_namespaced_service, API_SERVICE_NAME, self.namespace
            )
            ingress = (service.status.load_balancer.ingress or []) if service.status else []
            if not ingress or not (ingress[0].hostname or ingress[0].ip):
                raise KubeError("load balancer has no ingress address yet")
            return str(ingress[0].hostname or ingress[0].ip)

        try:
            return retry(
                lookup,
                attempts=budget.attempts,
                delay=budget.delay,
                retry_on=(KubeError,),
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            raise KubeError(f"API load balancer endpoint not available: {exc}") from exc

    def install_controllers(
        self,
        *,
        auth_enabled: bool,
        api_url: str,
        root_domain: str | None = None,
    ) -> None:
        """Deploy every reconciling controller."""
        for controller in CONTROLLER_NAMES:
            name = f"cpctl-{controller}"
            self._apply_deployment(
                _deployment(
                    name,
                    self.images.image(controller),
                    env=self._client_env(auth_enabled, api_url, root_domain),
                    secret_volumes=[CLIENT_TLS_SECRET] if auth_enabled else [],
                    service_account=name if name in self.service_accounts else None,
                )
            )

    def install_agent(self, *, auth_enabled: bool, api_url: str) -> None:
        """Deploy the in-cluster agent."""
        self._apply_deployment(
            _deployment(
                "cpctl-agent",
                self.images.image(AGENT_COMPONENT),
                env=self._client_env(auth_enabled, api_url),
                secret_volumes=[CLIENT_TLS_SECRET] if auth_enabled else [],
            )
        )

    def install_support_services(self, *, settle: float) -> None:
        """Deploy the support services operator and let its CRDs register."""
        self._apply_deployment(
            _deployment(
                SUPPORT_SERVICES_OPERATOR,
                f"{self.images.repo}/{SUPPORT_SERVICES_OPERATOR}:{self.images.tag}",
            )
        )
        if settle > 0:
            self._sleep(settle)

    def apply_config_map(self, namespace: str, name: str, data: Mapping[str, str]) -> None:
        """Create or replace a ConfigMap outside the control plane namespace."""
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": name, "namespace": namespace},
            "data": dict(data),
        }
        try:
            self._call(self.core.create_namespaced_config_map, namespace, body)
        except KubeError as exc:
            if exc.status != 409:
                raise
            self._call(self.core.replace_namespaced_config_map, name, namespace, body)

    def apply_service_account(self, name: str, annotations: Mapping[str, str]) -> None:
        """Create or replace an annotated service account."""
        body = {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {
                "name": name,
                "namespace": self.namespace,
                "annotations": dict(annotations),
            },
        }
        try:
            self._call(self.core.create_namespaced_service_account, self.namespace, body)
        except KubeError as exc:
            if exc.status != 409:
                raise
            self._call(self.core.replace_namespaced_service_account, name, self.namespace, body)
        self.service_accounts.add(name)

    def apply_secret(self, name: str, data: Mapping[str, str]) -> None:
        """Create or replace an Opaque secret in the control plane namespace."""
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": name, "namespace": self.namespace},
            "type": "Opaque",
            "data": {
                key: base64.b64encode(value.encode("utf-8")).decode("ascii")
                for key, value in data.items()
            },
        }
        try:
            self._call(self.core.create_namespaced_secret, self.namespace, body)
        except KubeError as exc:
            if exc.status != 409:
                raise
            self._call(self.core.replace_namespaced_secret, name, self.namespace, body)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------
    def uninstall(self) -> None:
        """Remove the API Service (releasing any load balancer), then the namespace."""
        self._delete(self.core.delete_namespaced_service, API_SERVICE_NAME, self.namespace)
        self._delete(self.core.delete_namespace, self.namespace)

    # Internal helpers -------------------------------------------------
    def _client_env(
        self,
        auth_enabled: bool,
        api_url: str,
        root_domain: str | None = None,
    ) -> list[dict[str, Any]]:
        env = [
            {"name": "API_SERVER", "value": api_url},
            {"name": "NATS_URL", "value": f"nats://{NATS_SERVICE}:4222"},
            {"name": "AUTH_ENABLED", "value": str(auth_enabled).lower()},
        ]
        if root_domain:
            env.append({"name": "ROOT_DOMAIN", "value": root_domain})
        return env

    def _ensure_namespace(self) -> None:
        body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": self.namespace}}
        try:
            self._call(self.core.create_namespace, body)
        except KubeError as exc:
            if exc.status != 409:
                raise

    def _apply_deployment(self, body: dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        body["metadata"]["namespace"] = self.namespace
        try:
            self._call(self.apps.create_namespaced_deployment, self.namespace, body)
        except KubeError as exc:
            if exc.status != 409:
                raise
            self._call(self.apps.replace_namespaced_deployment, name, self.namespace, body)

    def _apply_service(self, body: dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        body["metadata"]["namespace"] = self.namespace
        try:
            self._call(self.core.create_namespaced_service, self.namespace, body)
        except KubeError as exc:
            if exc.status != 409:
                raise
            self._call(self.core.patch_namespaced_service, name, self.namespace, body)

    def _delete(self, method: Callable[..., Any], *args: object) -> None:
        try:
            self._call(method, *args)
        except KubeError as exc:
            if exc.status != 404:
                raise

    def _call(self, method: Callable[..., Any], *args: object) -> Any:
        try:
            return method(*args)
        except ApiException as exc:
            raise KubeError(
                f"{getattr(method, '__name__', 'kubernetes call')} failed "
                f"({exc.status}): {exc.reason}",
                status=exc.status,
            ) from exc


def _secret_env(name: str, secret: str, key: str) -> dict[str, Any]:
    return {"name": name, "valueFrom": {"secretKeyRef": {"name": secret, "key": key}}}


def _deployment(
    name: str,
    image: str,
    *,
    ports: Sequence[int] = (),
    env: Sequence[Mapping[str, Any]] = (),
    args: Sequence[str] = (),
    init_containers: Sequence[Mapping[str, Any]] = (),
    secret_volumes: Sequence[str] = (),
    service_account: str | None = None,
) -> dict[str, Any]:
    container: dict[str, Any] = {"name": name, "image": image}
    if ports:
        container["ports"] = [{"containerPort": port} for port in ports]
    if env:
        container["env"] = [dict(item) for item in env]
    if args:
        container["args"] = list(args)
    if secret_volumes:
        container["volumeMounts"] = [
            {"name": secret, "mountPath": f"/etc/cpctl/{secret}", "readOnly": True}
            for secret in secret_volumes
        ]
    pod_spec: dict[str, Any] = {"containers": [container]}
    if service_account:
        pod_spec["serviceAccountName"] = service_account
    if init_containers:
        pod_spec["initContainers"] = [dict(item) for item in init_containers]
    if secret_volumes:
        pod_spec["volumes"] = [
            {"name": secret, "secret": {"secretName": secret}} for secret in secret_volumes
        ]
    labels = {"app.kubernetes.io/name": name, "app.kubernetes.io/part-of": "cpctl"}
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "labels": labels},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": {"app.kubernetes.io/name": name}},
            "template": {"metadata": {"labels": labels}, "spec": pod_spec},
        },
    }


def _service(
    name: str,
    *,
    port: int,
    target_port: int,
    service_type: str = "ClusterIP",
    node_port: int | None = None,
    annotations: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    port_spec: dict[str, Any] = {"port": port, "targetPort": target_port, "protocol": "TCP"}
    if node_port is not None:
        port_spec["nodePort"] = node_port
    metadata: dict[str, Any] = {"name": name}
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata,
        "spec": {
            "type": service_type,
            "selector": {"app.kubernetes.io/name": name},
            "ports": [port_spec],
        },
    }


__all__ = [
    "CONTROLLER_NAMES",
    "ComponentInstaller",
    "ImageSettings",
    "KubeError",
    "component_names",
]
