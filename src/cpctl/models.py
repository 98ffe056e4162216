"""Data model for control plane instances and runtime connections."""
from __future__ import annotations

import base64
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

NAME_PREFIX = "cpctl"
INSTANCE_NAME_MAX_LENGTH = 30
DEFAULT_NAMESPACE = "cpctl-control-plane"
API_SERVICE_NAME = "cpctl-api-server"


class ProviderKind(str, Enum):
    """Infrastructure substrates a control plane can run on."""

    KIND = "kind"
    EKS = "eks"
    OKE = "oke"

    @property
    def is_cloud(self) -> bool:
        """Return True for managed cloud providers."""
        return self is not ProviderKind.KIND


def runtime_name(name: str) -> str:
    """Return the provider-side runtime name for control plane *name*."""
    return f"{NAME_PREFIX}-{name}"


def _b64(value: str | None) -> str | None:
    if value is None:
        return None
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _unb64(value: object) -> str | None:
    if value in (None, ""):
        return None
    return base64.b64decode(str(value)).decode("utf-8")


def _format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_time(value: object) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    text = str(value).replace("Z", "+00:00")
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass(frozen=True, slots=True)
class RuntimeHandle:
    """Live connection details for a Kubernetes runtime.

    Static-credential providers fill ``client_cert``/``client_key``;
    token-based providers fill ``token`` and ``token_expiration``.
    """

    endpoint: str
    ca_cert: str
    client_cert: str | None = None
    client_key: str | None = None
    token: str | None = None
    token_expiration: datetime | None = None

    def expired(self, now: datetime | None = None) -> bool:
        """Return True when the token has passed its expiration."""
        return self.needs_refresh(timedelta(0), now=now)

    def needs_refresh(self, margin: timedelta, *, now: datetime | None = None) -> bool:
        """Return True when the token expires within *margin* of *now*."""
        if self.token_expiration is None:
            return False
        current = now or datetime.now(tz=UTC)
        return self.token_expiration - margin <= current

    def to_kubeconfig(self, name: str) -> dict[str, Any]:
        """Return a kubeconfig mapping for the ``kubernetes`` client loader."""
        user: dict[str, str] = {}
        if self.token:
            user["token"] = self.token
        if self.client_cert and self.client_key:
            user["client-certificate-data"] = _b64(self.client_cert) or ""
            user["client-key-data"] = _b64(self.client_key) or ""
        return {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [
                {
                    "name": name,
                    "cluster": {
                        "server": self.endpoint,
                        "certificate-authority-data": _b64(self.ca_cert) or "",
                    },
                }
            ],
            "users": [{"name": name, "user": user}],
            "contexts": [{"name": name, "context": {"cluster": name, "user": name}}],
            "current-context": name,
        }

    def to_record(self) -> dict[str, object]:
        """Return the registry representation (PEM material base64 encoded)."""
        return {
            "endpoint": self.endpoint,
            "ca_cert": _b64(self.ca_cert),
            "client_cert": _b64(self.client_cert),
            "client_key": _b64(self.client_key),
            "token": self.token,
            "token_expiration": _format_time(self.token_expiration),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, object]) -> RuntimeHandle:
        """Build a handle from its registry representation."""
        token = record.get("token")
        return cls(
            endpoint=str(record.get("endpoint", "")),
            ca_cert=_unb64(record.get("ca_cert")) or "",
            client_cert=_unb64(record.get("client_cert")),
            client_key=_unb64(record.get("client_key")),
            token=str(token) if token else None,
            token_expiration=_parse_time(record.get("token_expiration")),
        )


@dataclass(frozen=True, slots=True)
class EKSSettings:
    """AWS addressing recorded for an EKS-hosted control plane."""

    profile: str = "default"
    region: str = ""
    account_id: str = ""
    resource_manager_role_arn: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "profile": self.profile,
            "region": self.region,
            "account_id": self.account_id,
            "resource_manager_role_arn": self.resource_manager_role_arn,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> EKSSettings:
        """Build settings from a registry mapping."""
        role_arn = data.get("resource_manager_role_arn")
        return cls(
            profile=str(data.get("profile") or "default"),
            region=str(data.get("region") or ""),
            account_id=str(data.get("account_id") or ""),
            resource_manager_role_arn=str(role_arn) if role_arn else None,
        )


@dataclass(frozen=True, slots=True)
class OKESettings:
    """OCI addressing recorded for an OKE-hosted control plane."""

    profile: str = "DEFAULT"
    region: str = ""
    compartment_id: str = ""
    tenancy_id: str | None = None
    cluster_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "profile": self.profile,
            "region": self.region,
            "compartment_id": self.compartment_id,
            "tenancy_id": self.tenancy_id,
            "cluster_id": self.cluster_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> OKESettings:
        """Build settings from a registry mapping."""
        tenancy = data.get("tenancy_id")
        cluster = data.get("cluster_id")
        return cls(
            profile=str(data.get("profile") or "DEFAULT"),
            region=str(data.get("region") or ""),
            compartment_id=str(data.get("compartment_id") or ""),
            tenancy_id=str(tenancy) if tenancy else None,
            cluster_id=str(cluster) if cluster else None,
        )


@dataclass(frozen=True, slots=True)
class ControlPlaneInstance:
    """Registry record for one control plane."""

    name: str
    provider: ProviderKind
    genesis: bool = True
    namespace: str = DEFAULT_NAMESPACE
    auth_enabled: bool = True
    control_plane_only: bool = False
    owns_local_registry: bool = False
    api_server: str | None = None
    encryption_key: str | None = None
    ca_cert: str | None = None
    client_cert: str | None = None
    client_key: str | None = None
    kube_api: RuntimeHandle | None = None
    eks: EKSSettings | None = None
    oke: OKESettings | None = None
    created_at: str = field(default_factory=lambda: _format_time(datetime.now(tz=UTC)) or "")

    def evolve(self, **changes: object) -> ControlPlaneInstance:
        """Return a copy with *changes* applied."""
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        """Return the registry representation."""
        return {
            "name": self.name,
            "provider": self.provider.value,
            "genesis": self.genesis,
            "namespace": self.namespace,
            "auth_enabled": self.auth_enabled,
            "control_plane_only": self.control_plane_only,
            "owns_local_registry": self.owns_local_registry,
            "api_server": self.api_server,
            "encryption_key": self.encryption_key,
            "ca_cert": _b64(self.ca_cert),
            "client_cert": _b64(self.client_cert),
            "client_key": _b64(self.client_key),
            "kube_api": self.kube_api.to_record() if self.kube_api else None,
            "eks": self.eks.to_dict() if self.eks else None,
            "oke": self.oke.to_dict() if self.oke else None,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ControlPlaneInstance:
        """Build an instance from its registry representation."""
        kube_api = data.get("kube_api")
        eks = data.get("eks")
        oke = data.get("oke")
        api_server = data.get("api_server")
        encryption_key = data.get("encryption_key")
        return cls(
            name=str(data["name"]),
            provider=ProviderKind(str(data["provider"])),
            genesis=bool(data.get("genesis", False)),
            namespace=str(data.get("namespace") or DEFAULT_NAMESPACE),
            auth_enabled=bool(data.get("auth_enabled", True)),
            control_plane_only=bool(data.get("control_plane_only", False)),
            owns_local_registry=bool(data.get("owns_local_registry", False)),
            api_server=str(api_server) if api_server else None,
            encryption_key=str(encryption_key) if encryption_key else None,
            ca_cert=_unb64(data.get("ca_cert")),
            client_cert=_unb64(data.get("client_cert")),
            client_key=_unb64(data.get("client_key")),
            kube_api=RuntimeHandle.from_record(kube_api) if isinstance(kube_api, Mapping) else None,
            eks=EKSSettings.from_dict(eks) if isinstance(eks, Mapping) else None,
            oke=OKESettings.from_dict(oke) if isinstance(oke, Mapping) else None,
            created_at=str(data.get("created_at") or ""),
        )


__all__ = [
    "API_SERVICE_NAME",
    "ControlPlaneInstance",
    "DEFAULT_NAMESPACE",
    "EKSSettings",
    "INSTANCE_NAME_MAX_LENGTH",
    "OKESettings",
    "ProviderKind",
    "RuntimeHandle",
    "runtime_name",
]
