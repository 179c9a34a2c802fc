"""
PoolForge CLI Module.

Provides command-line interface for PoolForge operations.
"""

from poolforge.cli.main import main, cli

__all__ = ["main", "cli"]
