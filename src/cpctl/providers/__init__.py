"""Infrastructure providers for cpctl."""
from __future__ import annotations

from .base import (
    CommandRunner,
    InfrastructureProvider,
    ProgressStreams,
    ProviderCommandError,
    ProviderError,
)
from .eks import EKSProvider
from .iam import IdentityError, IdentityManager
from .local import LocalProvider, PortForward
from .oke import OKEProvider

__all__ = [
    "CommandRunner",
    "EKSProvider",
    "IdentityError",
    "IdentityManager",
    "InfrastructureProvider",
    "LocalProvider",
    "OKEProvider",
    "PortForward",
    "ProgressStreams",
    "ProviderCommandError",
    "ProviderError",
]
