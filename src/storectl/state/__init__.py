"""Persistent state helpers."""
from __future__ import annotations

from .registry import InstallationRegistry, StateRegistry, StateRegistryError

__all__ = ["InstallationRegistry", "StateRegistry", "StateRegistryError"]
