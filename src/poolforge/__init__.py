"""
PoolForge - Storage pool provisioning for home NAS systems.

Guides the creation of a SnapRAID + MergerFS pool from raw disks, follows
the initial parity sync and provisions disks attached later.
"""

__version__ = "1.0.0"
__author__ = "PoolForge Team"

from poolforge.core.config import PoolForgeConfig
from poolforge.core.session import PoolSession

__all__ = ["PoolForgeConfig", "PoolSession", "__version__"]
