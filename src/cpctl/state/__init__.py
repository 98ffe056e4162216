"""Persisted local state helpers."""
from __future__ import annotations

from .registry import InstanceRegistry, StateRegistry, StateRegistryError

__all__ = ["InstanceRegistry", "StateRegistry", "StateRegistryError"]
