"""Error taxonomy shared by the orchestrator and the CLI.

Lower-level modules raise their own ``RuntimeError`` subclasses (registry,
config, providers). The orchestrator wraps those failures in the classes
below so the CLI can pick an exit code without inspecting the cause.
"""
from __future__ import annotations

from collections.abc import Iterable

from .exit_codes import ExitCode


class CpctlError(RuntimeError):
    """Base class for errors surfaced to the operator."""

    exit_code: ExitCode = ExitCode.PROVIDER


class ValidationError(CpctlError):
    """Operator input was rejected before anything was created."""

    exit_code = ExitCode.VALIDATION


class StateConflictError(CpctlError):
    """The requested change conflicts with recorded control plane state."""

    exit_code = ExitCode.CONFLICT


class TeardownError(CpctlError):
    """One or more teardown steps failed.

    Every step is still attempted; ``errors`` lists each failure in the order
    it happened.
    """

    exit_code = ExitCode.PROVIDER

    def __init__(self, errors: Iterable[str]) -> None:
        """Aggregate the individual step failures."""
        self.errors = list(errors)
        joined = "; ".join(self.errors) if self.errors else "unknown failure"
        super().__init__(
            f"teardown incomplete ({joined}); inspect the provider account "
            "for dangling resources that may need manual cleanup"
        )


class ProvisioningError(CpctlError):
    """A provisioning step failed.

    ``step`` names the orchestrator step that failed and ``state`` the last
    state reached. When compensation ran and itself failed, the teardown
    failure is kept in ``teardown_error`` and appended to the message.
    """

    exit_code = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        state: str | None = None,
        teardown_error: TeardownError | None = None,
    ) -> None:
        """Initialise the error with its step context."""
        self.message = message
        self.step = step
        self.state = state
        self.teardown_error = teardown_error
        super().__init__(self._render())

    def attach_teardown(self, teardown_error: TeardownError) -> None:
        """Record a compensation failure alongside the original error."""
        self.teardown_error = teardown_error
        self.args = (self._render(),)

    def _render(self) -> str:
        if self.teardown_error is None:
            return self.message
        return f"{self.message}; additionally {self.teardown_error}"


class ReadinessTimeoutError(ProvisioningError):
    """The control plane API did not become reachable within the retry budget."""


class ProvisioningInterrupted(BaseException):  # noqa: N818 - mirrors KeyboardInterrupt
    """Raised in the main thread when the operator interrupts a run."""

    exit_code = ExitCode.INTERRUPTED

    def __init__(self, signum: int) -> None:
        """Record the signal that interrupted the run."""
        self.signum = signum
        self.teardown_error: TeardownError | None = None
        super().__init__(f"interrupted by signal {signum}")


__all__ = [
    "CpctlError",
    "ProvisioningError",
    "ProvisioningInterrupted",
    "ReadinessTimeoutError",
    "StateConflictError",
    "TeardownError",
    "ValidationError",
]
