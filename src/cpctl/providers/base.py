"""Infrastructure provider interface shared by kind, EKS and OKE."""
from __future__ import annotations

import queue
import subprocess
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from datetime import timedelta
from types import TracebackType
from typing import TYPE_CHECKING, ClassVar

from ..inventory import InventoryEntry, InventoryStore
from ..models import ControlPlaneInstance, ProviderKind, RuntimeHandle

if TYPE_CHECKING:
    from ..api_client import RegistrationClient
    from ..compensator import CompensationContext
    from ..kube import ComponentInstaller

ProgressCallback = Callable[[str], None]


class ProviderError(RuntimeError):
    """Raised when an infrastructure provider operation fails."""


class ProviderCommandError(ProviderError):
    """Raised when an external provider binary exits unsuccessfully."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        """Record the exit status and stderr of the failed command."""
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def _ignore(_: str) -> None:
    return None


class CommandRunner:
    """Run external binaries (``kind``, ``docker``, ``oci``) via subprocess."""

    def __call__(
        self,
        args: Sequence[str],
        *,
        input_text: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* capturing output, raising on failure when *check* is set."""
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ProviderCommandError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ProviderCommandError(
                f"{' '.join(args[:3])} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return result


class ProgressStreams:
    """Two producer/consumer queues drained by threads for one blocking call.

    ``progress`` carries human-readable text for *on_progress*; ``record``
    carries inventory entries appended to *inventory*. Both drain threads are
    started on ``__enter__`` and joined on ``__exit__`` after the producer side
    is closed, so no entry produced inside the block is lost.
    """

    _CLOSED = object()

    def __init__(
        self,
        on_progress: ProgressCallback,
        inventory: InventoryStore | None,
    ) -> None:
        """Bind the streams to their consumers."""
        self._on_progress = on_progress
        self._inventory = inventory
        self._messages: queue.Queue[object] = queue.Queue()
        self._resources: queue.Queue[object] = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._errors: list[BaseException] = []

    def progress(self, message: str) -> None:
        """Queue a progress message."""
        self._messages.put(message)

    def record(self, entry: InventoryEntry) -> None:
        """Queue an inventory entry."""
        self._resources.put(entry)

    def __enter__(self) -> ProgressStreams:
        """Start the drain threads."""
        self._messages = queue.Queue()
        self._resources = queue.Queue()
        self._errors = []
        self._threads = [
            threading.Thread(target=self._drain_messages, name="cpctl-progress", daemon=True),
            threading.Thread(target=self._drain_resources, name="cpctl-inventory", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close both streams and wait for the consumers to finish."""
        self._messages.put(self._CLOSED)
        self._resources.put(self._CLOSED)
        for thread in self._threads:
            thread.join()
        self._threads = []
        if self._errors and exc_type is None:
            raise ProviderError(f"inventory stream failed: {self._errors[0]}") from self._errors[0]

    def _drain_messages(self) -> None:
        while True:
            item = self._messages.get()
            if item is self._CLOSED:
                return
            try:
                self._on_progress(str(item))
            except Exception:  # noqa: BLE001 - display failures must not stop the drain
                continue

    def _drain_resources(self) -> None:
        while True:
            item = self._resources.get()
            if item is self._CLOSED:
                return
            if self._inventory is None or not isinstance(item, InventoryEntry):
                continue
            try:
                self._inventory.append(item)
            except Exception as exc:  # noqa: BLE001 - surfaced on __exit__
                self._errors.append(exc)


class InfrastructureProvider(ABC):
    """Create, delete and connect to the Kubernetes runtime for a control plane."""

    kind: ClassVar[ProviderKind]
    api_service_type: ClassVar[str] = "LoadBalancer"
    uses_load_balancer: ClassVar[bool] = True
    token_refresh_margin: ClassVar[timedelta] = timedelta(minutes=5)

    def __init__(self, name: str, *, on_progress: ProgressCallback | None = None) -> None:
        """Initialise the provider for control plane *name*."""
        self.name = name
        self.on_progress = on_progress or _ignore

    @property
    def inventory(self) -> InventoryStore | None:
        """Return the resource inventory, for providers that keep one."""
        return None

    @abstractmethod
    def create(self) -> RuntimeHandle:
        """Create the runtime and return its connection handle."""

    @abstractmethod
    def delete(self) -> None:
        """Delete the runtime; safe on partially created infrastructure."""

    @abstractmethod
    def get_connection(self) -> RuntimeHandle:
        """Return a handle for an existing runtime."""

    def refresh_connection(self) -> RuntimeHandle:
        """Return a handle with fresh credentials."""
        return self.get_connection()

    def ensure_fresh(self, handle: RuntimeHandle) -> RuntimeHandle:
        """Return *handle*, refreshed first if its token is about to expire."""
        if handle.needs_refresh(self.token_refresh_margin):
            return self.refresh_connection()
        return handle

    # Hooks used by the orchestrator -------------------------------------
    def api_service_annotations(self) -> Mapping[str, str]:
        """Return annotations for the API server Service."""
        return {}

    def local_api_endpoint(self, auth_enabled: bool) -> str | None:
        """Return the API endpoint when it is known without discovery."""
        return None

    def registered_kube_endpoint(self, handle: RuntimeHandle) -> str:
        """Return the Kubernetes API endpoint as reachable from inside the runtime."""
        return handle.endpoint

    def settings(self) -> Mapping[str, object]:
        """Return provider sub-configuration to record on the instance."""
        return {}

    def prepare_identity(self, context: CompensationContext) -> None:
        """Create identity resources needed before ``create``."""
        return None

    def post_install(
        self,
        installer: ComponentInstaller,
        instance: ControlPlaneInstance,
        context: CompensationContext,
    ) -> None:
        """Provider specific work after the API server is installed."""
        return None

    def register(self, client: RegistrationClient, instance: ControlPlaneInstance) -> None:
        """Record provider specific objects through the control plane API."""
        return None

    def release_identity(self) -> None:
        """Delete identity resources on the delete path."""
        return None


__all__ = [
    "CommandRunner",
    "InfrastructureProvider",
    "ProgressCallback",
    "ProgressStreams",
    "ProviderCommandError",
    "ProviderError",
]
