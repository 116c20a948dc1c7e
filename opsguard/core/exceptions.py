"""
OpsGuard Exception Hierarchy

Custom exceptions for guard enforcement, run lifecycle and action execution.
"""

from typing import Any, Dict, List, Optional


class OpsGuardError(Exception):
    """Base exception for all OpsGuard errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "OPSGUARD_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class PolicyViolationError(OpsGuardError):
    """Raised when a guard policy constraint is violated."""

    def __init__(
        self,
        message: str,
        guard: Optional[str] = None,
        violations: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {
            "guard": guard,
            "violations": violations or [],
        }
        merged.update(details or {})
        super().__init__(message, code="POLICY_VIOLATION", details=merged)
        self.guard = guard
        self.violations = violations or []


class BlastRadiusExceededError(PolicyViolationError):
    """Raised when a run scope exceeds the blast radius limits."""

    def __init__(
        self,
        message: str,
        entity_count: int = 0,
        percentage: float = 0.0,
        max_entities: Optional[int] = None,
        max_percent: Optional[float] = None,
    ):
        super().__init__(
            message,
            guard="blast_radius",
            violations=[message],
            details={
                "entity_count": entity_count,
                "percentage": percentage,
                "max_entities": max_entities,
                "max_percent": max_percent,
            },
        )
        self.entity_count = entity_count
        self.percentage = percentage
        self.max_entities = max_entities
        self.max_percent = max_percent


class ConcurrencyLimitError(PolicyViolationError):
    """Raised when the tenant already has the maximum number of running runs."""

    def __init__(
        self,
        message: str,
        current_running: int = 0,
        max_concurrent: int = 1,
    ):
        super().__init__(
            message,
            guard="concurrency",
            violations=[message],
            details={
                "current_running": current_running,
                "max_concurrent": max_concurrent,
            },
        )
        self.current_running = current_running
        self.max_concurrent = max_concurrent


class CooldownActiveError(PolicyViolationError):
    """Raised when a playbook is started again inside its cooldown window."""

    def __init__(self, message: str, remaining_sec: float = 0.0):
        super().__init__(
            message,
            guard="cooldown",
            violations=[message],
            details={"remaining_sec": remaining_sec},
        )
        self.remaining_sec = remaining_sec


class DuplicateRunError(PolicyViolationError):
    """Raised when an in-flight run already covers the same playbook and scope."""

    def __init__(self, message: str, existing_run_id: Optional[str] = None):
        super().__init__(
            message,
            guard="duplicate_run",
            violations=[message],
            details={"existing_run_id": existing_run_id},
        )
        self.existing_run_id = existing_run_id


class ForbiddenError(OpsGuardError):
    """Raised when the actor is not allowed to perform the operation."""

    def __init__(
        self,
        message: str,
        actor: Optional[str] = None,
        code: str = "FORBIDDEN",
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"actor": actor}
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.actor = actor


class DualControlViolationError(ForbiddenError):
    """Raised when the requester of a dual-control run tries to approve it."""

    def __init__(self, message: str, run_id: Optional[str] = None, actor: Optional[str] = None):
        super().__init__(
            message,
            actor=actor,
            code="DUAL_CONTROL_VIOLATION",
            details={"run_id": run_id},
        )
        self.run_id = run_id


class NotFoundError(OpsGuardError):
    """Raised when a playbook, version or run does not exist."""

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": str(resource_id),
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class InvalidTransitionError(OpsGuardError):
    """Raised when a run status transition is not allowed."""

    def __init__(
        self,
        run_id: str,
        from_status: Optional[str],
        to_status: str,
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"Run {run_id} cannot transition from {from_status} to {to_status}",
            code="INVALID_TRANSITION",
            details={
                "run_id": run_id,
                "from_status": from_status,
                "to_status": to_status,
            },
        )
        self.run_id = run_id
        self.from_status = from_status
        self.to_status = to_status


class PlaybookSpecError(OpsGuardError):
    """Raised when a playbook spec fails validation on publish."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(
            message,
            code="PLAYBOOK_SPEC_INVALID",
            details={"errors": errors or []},
        )
        self.errors = errors or []


class ActionExecutionError(OpsGuardError):
    """Raised when an action invocation fails."""

    def __init__(
        self,
        message: str,
        action_code: Optional[str] = None,
        code: str = "ACTION_EXECUTION_FAILED",
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"action_code": action_code}
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.action_code = action_code


class ActionTimeoutError(ActionExecutionError):
    """Raised when an action does not finish before the run deadline."""

    def __init__(self, message: str, action_code: Optional[str] = None, timeout_sec: float = 0.0):
        super().__init__(
            message,
            action_code=action_code,
            code="ACTION_TIMEOUT",
            details={"timeout_sec": timeout_sec},
        )
        self.timeout_sec = timeout_sec


class InputValidationError(ActionExecutionError):
    """Raised when an action input does not satisfy its contract."""

    def __init__(self, message: str, action_code: Optional[str] = None, errors: Optional[List[str]] = None):
        super().__init__(
            message,
            action_code=action_code,
            code="INVALID_ACTION_INPUT",
            details={"errors": errors or []},
        )
        self.errors = errors or []


class RunCancelledError(ActionExecutionError):
    """Raised when an in-flight action is interrupted by run cancellation."""

    def __init__(self, message: str, action_code: Optional[str] = None, run_id: Optional[str] = None):
        super().__init__(
            message,
            action_code=action_code,
            code="RUN_CANCELLED",
            details={"run_id": run_id},
        )
        self.run_id = run_id


class RollbackPartialFailure(OpsGuardError):
    """Recorded when a single rollback step fails. Never aborts the rollback."""

    def __init__(
        self,
        message: str,
        rollback_step_id: Optional[str] = None,
        action_code: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="ROLLBACK_PARTIAL_FAILURE",
            details={
                "rollback_step_id": rollback_step_id,
                "action_code": action_code,
            },
        )
        self.rollback_step_id = rollback_step_id
        self.action_code = action_code


class MetricsUnavailableError(OpsGuardError):
    """Raised when the metrics source cannot be reached."""

    def __init__(self, message: str, metric_name: Optional[str] = None):
        super().__init__(
            message,
            code="METRICS_UNAVAILABLE",
            details={"metric_name": metric_name},
        )
        self.metric_name = metric_name
