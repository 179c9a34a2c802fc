"""
PoolForge Backend Abstraction Layer.

The NAS backend performs formatting, parity and union mounts; PoolForge
drives it through the StorageBackend interface.
"""

from __future__ import annotations

from poolforge.backend.base import StorageBackend
from poolforge.core.config import BackendConfig


def get_backend(config: BackendConfig) -> StorageBackend:
    """Get the storage backend for a configuration."""
    from poolforge.backend.http import HttpBackend

    return HttpBackend(config)


__all__ = ["StorageBackend", "get_backend"]
