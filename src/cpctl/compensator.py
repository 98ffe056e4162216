"""Best-effort teardown of a failed or interrupted provisioning run.

The :class:`CompensationContext` accumulates what a run has created so far.
It is the only state shared between the main workflow and the interrupt
handler, so every write goes through :meth:`CompensationContext.mutate`,
which holds a single lock. An interrupt arriving while that lock is held is
deferred until the mutation completes; one arriving while compensation is
already running, or after the run has finished, is ignored.
"""
from __future__ import annotations

import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from types import FrameType, TracebackType
from typing import TYPE_CHECKING

from .errors import ProvisioningError, ProvisioningInterrupted, TeardownError

if TYPE_CHECKING:
    from .kube import ComponentInstaller
    from .providers.base import InfrastructureProvider, ProgressCallback
    from .state.registry import InstanceRegistry

UndoAction = Callable[[], None]


class CompensationContext:
    """Everything a provisioning run has created, guarded by one lock."""

    def __init__(
        self,
        name: str,
        provider: InfrastructureProvider,
        *,
        skip_teardown: bool = False,
        control_plane_only: bool = False,
    ) -> None:
        """Start an empty context for control plane *name*."""
        self.name = name
        self.provider = provider
        self.skip_teardown = skip_teardown
        self.control_plane_only = control_plane_only
        self.installer: ComponentInstaller | None = None
        self.identity_undo: list[tuple[str, UndoAction]] = []
        self.clean_registry = False
        self.infra_requested = False
        self.triggering_error: BaseException | None = None
        self.compensating = False
        self.compensated = False
        self.finished = False
        self._lock = threading.Lock()
        self._pending_interrupt: int | None = None

    @contextmanager
    def mutate(self) -> Iterator[CompensationContext]:
        """Hold the context lock for the duration of a write."""
        with self._lock:
            yield self
        pending = self._pending_interrupt
        if pending is not None and not self.compensating:
            self._pending_interrupt = None
            raise ProvisioningInterrupted(pending)

    def register_undo(self, label: str, action: UndoAction) -> None:
        """Push the inverse of a creation that just succeeded."""
        with self.mutate():
            self.identity_undo.append((label, action))

    def attach_installer(self, installer: ComponentInstaller) -> None:
        """Record the live component installer."""
        with self.mutate():
            self.installer = installer

    def request_interrupt(self, signum: int) -> None:
        """Handle an operator interrupt delivered to the main thread."""
        if self.compensating or self.compensated or self.finished:
            return
        if not self._lock.acquire(blocking=False):
            self._pending_interrupt = signum
            return
        self._lock.release()
        raise ProvisioningInterrupted(signum)

    def begin_compensation(self, error: BaseException) -> bool:
        """Claim the context for compensation; False when already claimed."""
        with self._lock:
            if self.compensating or self.compensated or self.finished:
                return False
            self.compensating = True
            self.triggering_error = error
            self._pending_interrupt = None
            return True

    def finish(self) -> None:
        """Mark the run as complete; later interrupts and failures undo nothing."""
        with self._lock:
            self.finished = True
            self._pending_interrupt = None

    def finish_compensation(self) -> None:
        """Mark the context as consumed."""
        with self._lock:
            self.compensating = False
            self.compensated = True


class Compensator:
    """Tear down what a failed run created, in reverse order."""

    def __init__(
        self,
        registry: InstanceRegistry,
        *,
        grace_period: float,
        on_progress: ProgressCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Configure the compensator."""
        self.registry = registry
        self.grace_period = grace_period
        self.on_progress = on_progress or (lambda _message: None)
        self._sleep = sleep

    def compensate(self, context: CompensationContext, error: ProvisioningError) -> ProvisioningError:
        """Undo the run described by *context*; return *error* with any teardown failure.

        Each step is attempted even when an earlier one failed. Failures are
        collected into a :class:`TeardownError` attached to *error*.
        """
        if context.skip_teardown:
            return error
        if not context.begin_compensation(error):
            return error

        failures: list[str] = []
        try:
            self._run(context, failures)
        finally:
            context.finish_compensation()
        if failures:
            error.attach_teardown(TeardownError(failures))
        return error

    def _run(self, context: CompensationContext, failures: list[str]) -> None:
        provider = context.provider
        if context.installer is not None:
            self.on_progress("removing control plane components")
            self._attempt("remove control plane components", context.installer.uninstall, failures)

        if context.control_plane_only:
            return

        if context.infra_requested:
            if provider.inventory is not None:
                self._sleep(self.grace_period)
            self.on_progress(f"deleting {provider.kind.value} infrastructure")
            self._attempt("delete infrastructure", provider.delete, failures)

        while context.identity_undo:
            label, action = context.identity_undo.pop()
            self.on_progress(f"removing {label}")
            self._attempt(f"remove {label}", action, failures)

        inventory = provider.inventory
        if inventory is not None:
            self._attempt("remove inventory file", inventory.remove, failures)

        if context.clean_registry:
            self._attempt(
                "remove registry record", lambda: self.registry.remove(context.name), failures
            )

    @staticmethod
    def _attempt(label: str, action: Callable[[], object], failures: list[str]) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001 - every teardown step must be attempted
            failures.append(f"{label}: {exc}")


class InterruptGuard:
    """Route SIGINT/SIGTERM into the compensation context while a run is active."""

    def __init__(
        self,
        context: CompensationContext,
        signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        """Prepare to guard *context*."""
        self.context = context
        self.signals = signals
        self._previous: dict[signal.Signals, object] = {}

    def handle(self, signum: int, frame: FrameType | None) -> None:
        """Signal handler entry point."""
        self.context.request_interrupt(signum)

    def __enter__(self) -> InterruptGuard:
        """Install the handlers (only possible on the main thread)."""
        if threading.current_thread() is threading.main_thread():
            for sig in self.signals:
                self._previous[sig] = signal.signal(sig, self.handle)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Restore the previous handlers."""
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)  # type: ignore[arg-type]
        self._previous = {}


__all__ = ["CompensationContext", "Compensator", "InterruptGuard"]
