"""
PoolForge Core - Provisioning service layer.

Contains the inventory, selection rules, setup wizard, provisioning
orchestrator, sync monitor and session management.
"""

from poolforge.core.config import PoolForgeConfig
from poolforge.core.errors import (
    BackendError,
    PoolForgeError,
    ProvisionError,
    SessionError,
    SyncError,
    ValidationError,
)
from poolforge.core.logging import get_logger, setup_logging
from poolforge.core.orchestrator import ProvisioningOrchestrator
from poolforge.core.session import PoolSession
from poolforge.core.wizard import WizardStateMachine

__all__ = [
    "PoolForgeConfig",
    "BackendError",
    "PoolForgeError",
    "ProvisionError",
    "SessionError",
    "SyncError",
    "ValidationError",
    "ProvisioningOrchestrator",
    "PoolSession",
    "WizardStateMachine",
    "get_logger",
    "setup_logging",
]
