"""
OpsGuard Core Module

Run lifecycle, guard policies, playbook versions and the runtime facade.
"""

from .engine import OpsGuardRuntime, RunExecutor
from .config import Config
from .run import Run, RunStatus, RunStep, RollbackStep
from .exceptions import (
    OpsGuardError,
    PolicyViolationError,
    ForbiddenError,
    NotFoundError,
    ActionExecutionError,
    RollbackPartialFailure,
)

__all__ = [
    "OpsGuardRuntime",
    "RunExecutor",
    "Config",
    "Run",
    "RunStatus",
    "RunStep",
    "RollbackStep",
    "OpsGuardError",
    "PolicyViolationError",
    "ForbiddenError",
    "NotFoundError",
    "ActionExecutionError",
    "RollbackPartialFailure",
]
