"""Provision, register and tear down cpctl control planes."""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in step with ``pyproject.toml``.
__version__ = "0.1.0a0"
