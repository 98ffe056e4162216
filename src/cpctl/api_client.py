"""HTTP client for registering objects with a control plane's own API."""
from __future__ import annotations

import ssl
import tempfile
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from types import TracebackType
from typing import Any

import httpx

from .retry import retry

API_PREFIX = "/v0"


class RegistrationError(RuntimeError):
    """Raised when the control plane API rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Record the HTTP status, when one was received."""
        super().__init__(message)
        self.status_code = status_code


def build_ssl_context(ca_cert: str, client_cert: str, client_key: str) -> ssl.SSLContext:
    """Return an SSL context trusting *ca_cert* and presenting the client pair."""
    context = ssl.create_default_context(cadata=ca_cert)
    with tempfile.TemporaryDirectory(prefix="cpctl-tls-") as tmp:
        cert_path = Path(tmp) / "client.crt"
        key_path = Path(tmp) / "client.key"
        cert_path.write_text(client_cert, encoding="ascii")
        key_path.write_text(client_key, encoding="ascii")
        key_path.chmod(0o600)
        context.load_cert_chain(str(cert_path), str(key_path))
    return context


class RegistrationClient:
    """Thin create/get/list client for the control plane REST API."""

    def __init__(
        self,
        base_url: str,
        *,
        ca_cert: str | None = None,
        client_cert: str | None = None,
        client_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Open a client against *base_url*; mTLS when certificates are given."""
        verify: ssl.SSLContext | bool = True
        if ca_cert and client_cert and client_key:
            verify = build_ssl_context(ca_cert, client_cert, client_key)
        self.base_url = base_url.rstrip("/")
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=self.base_url,
            verify=verify,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        """Close the underlying connection pool."""
        self._client.close()

    def __enter__(self) -> RegistrationClient:
        """Return the client for use in a ``with`` block."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the client on exit."""
        self.close()

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------
    def version(self) -> dict[str, Any]:
        """Return the API version document."""
        return self._request("GET", "/version")

    def wait_until_ready(self, *, attempts: int, delay: float) -> dict[str, Any]:
        """Poll ``/version`` until the API answers.

        Raises :class:`cpctl.retry.RetryExhaustedError` when the budget runs
        out.
        """
        return retry(
            self.version,
            attempts=attempts,
            delay=delay,
            retry_on=(RegistrationError,),
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Kubernetes runtimes
    # ------------------------------------------------------------------
    def create_kubernetes_runtime_definition(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register a Kubernetes runtime definition."""
        return self._create("kubernetes-runtime-definitions", payload)

    def create_kubernetes_runtime_instance(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register a Kubernetes runtime instance."""
        return self._create("kubernetes-runtime-instances", payload)

    def get_kubernetes_runtime_instance(self, name: str) -> dict[str, Any]:
        """Return the Kubernetes runtime instance called *name*."""
        return self._get_by_name("kubernetes-runtime-instances", name)

    def update_kubernetes_runtime_instance(
        self,
        instance_id: object,
        payload: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Patch a Kubernetes runtime instance."""
        return self._request(
            "PATCH",
            f"{API_PREFIX}/kubernetes-runtime-instances/{instance_id}",
            json=dict(payload),
        )

    # ------------------------------------------------------------------
    # Provider objects
    # ------------------------------------------------------------------
    def create_aws_account(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register an AWS account."""
        return self._create("aws-accounts", payload)

    def create_aws_eks_runtime_definition(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register an EKS runtime definition."""
        return self._create("aws-eks-kubernetes-runtime-definitions", payload)

    def create_aws_eks_runtime_instance(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register an EKS runtime instance."""
        return self._create("aws-eks-kubernetes-runtime-instances", payload)

    def create_oci_account(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register an OCI account."""
        return self._create("oci-accounts", payload)

    def create_oke_runtime_definition(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register an OKE runtime definition."""
        return self._create("oci-oke-kubernetes-runtime-definitions", payload)

    def create_oke_runtime_instance(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register an OKE runtime instance."""
        return self._create("oci-oke-kubernetes-runtime-instances", payload)

    # ------------------------------------------------------------------
    # Control planes and workloads
    # ------------------------------------------------------------------
    def create_control_plane_definition(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register a control plane definition."""
        return self._create("control-plane-definitions", payload)

    def create_control_plane_instance(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Register a control plane instance."""
        return self._create("control-plane-instances", payload)

    def list_control_plane_instances(self) -> list[dict[str, Any]]:
        """Return every registered control plane instance."""
        return self._list("control-plane-instances")

    def list_workload_instances(self) -> list[dict[str, Any]]:
        """Return every registered workload instance."""
        return self._list("workload-instances")

    # Internal helpers -------------------------------------------------
    def _create(self, collection: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"{API_PREFIX}/{collection}", json=dict(payload))

    def _list(self, collection: str, params: Mapping[str, str] | None = None) -> list[dict[str, Any]]:
        payload = self._request("GET", f"{API_PREFIX}/{collection}", params=params)
        data = payload.get("data", []) if isinstance(payload, Mapping) else payload
        if not isinstance(data, list):
            raise RegistrationError(f"Unexpected response listing {collection}.")
        return [dict(item) for item in data if isinstance(item, Mapping)]

    def _get_by_name(self, collection: str, name: str) -> dict[str, Any]:
        items = self._list(collection, params={"name": name})
        if not items:
            raise RegistrationError(f"{collection} '{name}' not found", status_code=404)
        return items[0]

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        try:
            response = self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            raise RegistrationError(f"{method} {path} failed: {exc}") from exc
        if response.is_error:
            detail = response.text.strip() or response.reason_phrase
            raise RegistrationError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise RegistrationError(f"{method} {path} returned invalid JSON") from exc
        if isinstance(payload, Mapping) and "data" in payload and method != "GET":
            data = payload["data"]
            if isinstance(data, list) and data and isinstance(data[0], Mapping):
                return dict(data[0])
        return payload


__all__ = ["RegistrationClient", "RegistrationError", "build_ssl_context"]
