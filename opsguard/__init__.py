"""
OpsGuard - Guarded Autonomy Execution Runtime

Turns declarative, versioned playbooks into supervised runs of
side-effecting back-office actions, bounded by blast radius caps,
concurrency limits, dual-control approval, canary sampling, cooldown
and timeouts, with rollback through inverse actions.

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "OpsGuard Team"

from .core import OpsGuardRuntime
from .core.config import Config
from .core.exceptions import (
    OpsGuardError,
    PolicyViolationError,
    ForbiddenError,
    NotFoundError,
    ActionExecutionError,
)

__all__ = [
    "OpsGuardRuntime",
    "Config",
    "OpsGuardError",
    "PolicyViolationError",
    "ForbiddenError",
    "NotFoundError",
    "ActionExecutionError",
]
