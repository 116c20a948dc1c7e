"""
OpsGuard - Action Registry

Catalog mapping action codes to an input contract, an effect class,
default guard hints and an optional inverse descriptor. Actions are
dispatched through an explicit code -> handler map populated at startup.

A dry run with no bound handler returns the action's simulated output.
A live run with no bound handler fails; nothing is executed by guesswork.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import jsonschema

from ..core.exceptions import (
    ActionExecutionError,
    InputValidationError,
    NotFoundError,
    OpsGuardError,
)
from ..observability import MetricsCollector

logger = logging.getLogger(__name__)

READ = "read"


def write_effect(resource: str) -> str:
    return f"write:{resource}"


@dataclass
class ActionContext:
    """Execution context handed to every action invocation."""
    company_id: str
    actor_id: str
    dry_run: bool
    run_id: Optional[str] = None
    step_id: Optional[str] = None
    deadline: Optional[float] = None  # loop.time() based
    cancel_event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def remaining_sec(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())


@dataclass
class ActionResult:
    """Output and per-invocation metrics of an action."""
    output: Dict[str, Any]
    metrics: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class InverseDescriptor:
    """Counter-action of a forward action, with its input derivation."""
    action_code: str
    derive_input: Callable[[Dict[str, Any]], Dict[str, Any]]


@dataclass
class InverseAction:
    """A concrete inverse invocation derived from a step output."""
    action_code: str
    input: Dict[str, Any]


class ActionHandler:
    """
    Typed handler bound to one action code.

    Subclasses implement execute(); validate() and inverse() are optional
    refinements of the descriptor's schema and inverse.
    """

    async def execute(self, input: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
        raise NotImplementedError

    def validate(self, input: Dict[str, Any]) -> List[str]:
        return []

    def inverse(self, output: Dict[str, Any]) -> Optional[InverseAction]:
        return None


class FunctionHandler(ActionHandler):
    """Adapts a plain coroutine function to ActionHandler."""

    def __init__(self, func: Callable[[Dict[str, Any], ActionContext], Awaitable[Dict[str, Any]]]):
        self._func = func

    async def execute(self, input: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
        return await self._func(input, context)


@dataclass
class ActionDescriptor:
    """Catalog entry for an action code."""
    code: str
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object"})
    effect: str = READ
    dry_run_only: bool = False
    default_guards: Dict[str, Any] = field(default_factory=dict)
    inverse: Optional[InverseDescriptor] = None
    simulated_output: Dict[str, Any] = field(default_factory=lambda: {"count": 0})
    description: str = ""

    @property
    def is_write(self) -> bool:
        return self.effect.startswith("write:")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "description": self.description,
            "effect": self.effect,
            "dry_run_only": self.dry_run_only,
            "default_guards": self.default_guards,
            "inverse": self.inverse.action_code if self.inverse else None,
            "input_schema": self.input_schema,
        }


class ActionRegistry:
    """
    Registry of executable actions.

    Records per-action execution counts and durations into the injected
    metrics collector.
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self._descriptors: Dict[str, ActionDescriptor] = {}
        self._handlers: Dict[str, ActionHandler] = {}
        self.metrics = metrics or MetricsCollector()

    def register(
        self,
        descriptor: ActionDescriptor,
        handler: Optional[Union[ActionHandler, Callable]] = None,
    ) -> None:
        """Register an action, optionally binding its handler."""
        if descriptor.code in self._descriptors:
            logger.warning(f"Re-registering action {descriptor.code}")
        self._descriptors[descriptor.code] = descriptor
        if handler is not None:
            self.bind_handler(descriptor.code, handler)

    def bind_handler(self, code: str, handler: Union[ActionHandler, Callable]) -> None:
        if code not in self._descriptors:
            raise NotFoundError("action", code)
        if not isinstance(handler, ActionHandler):
            handler = FunctionHandler(handler)
        self._handlers[code] = handler

    def has_action(self, code: str) -> bool:
        return code in self._descriptors

    def get_action(self, code: str) -> ActionDescriptor:
        descriptor = self._descriptors.get(code)
        if descriptor is None:
            raise NotFoundError("action", code)
        return descriptor

    def list_actions(self) -> List[ActionDescriptor]:
        return [self._descriptors[c] for c in sorted(self._descriptors)]

    def validate_input(self, code: str, input: Dict[str, Any]) -> ValidationResult:
        """Check an input against the action's schema and handler rules."""
        descriptor = self._descriptors.get(code)
        if descriptor is None:
            return ValidationResult(valid=False, errors=[f"Unknown action: {code}"])

        errors = []
        validator = jsonschema.Draft7Validator(descriptor.input_schema)
        for error in sorted(validator.iter_errors(input), key=lambda e: list(e.path)):
            path = ".".join(str(p) for p in error.path) or "<root>"
            errors.append(f"{path}: {error.message}")

        handler = self._handlers.get(code)
        if handler is not None:
            errors.extend(handler.validate(input))

        return ValidationResult(valid=not errors, errors=errors)

    async def execute(
        self,
        code: str,
        input: Dict[str, Any],
        context: ActionContext,
    ) -> ActionResult:
        """
        Execute an action.

        Raises:
            NotFoundError: unknown action code
            InputValidationError: input violates the action contract
            ActionExecutionError: the action failed or cannot run live
        """
        descriptor = self.get_action(code)

        validation = self.validate_input(code, input)
        if not validation.valid:
            self.metrics.counter_inc(
                "opsguard_action_executions_total",
                labels={"action": code, "status": "invalid"},
            )
            raise InputValidationError(
                f"Invalid input for {code}: {'; '.join(validation.errors)}",
                action_code=code,
                errors=validation.errors,
            )

        if descriptor.dry_run_only and not context.dry_run:
            raise ActionExecutionError(
                f"Action {code} may only run as a dry run",
                action_code=code,
            )

        handler = self._handlers.get(code)
        if handler is None and not context.dry_run:
            raise ActionExecutionError(
                f"No handler bound for live execution of {code}",
                action_code=code,
            )

        start = time.perf_counter()
        status = "succeeded"
        try:
            if handler is None:
                output = copy.deepcopy(descriptor.simulated_output)
                output.setdefault("simulated", True)
            else:
                output = await handler.execute(input, context)
                if isinstance(output, ActionResult):
                    output = output.output
                output = output or {}
        except (OpsGuardError, asyncio.CancelledError):
            status = "failed"
            raise
        except Exception as e:
            status = "failed"
            logger.error(f"Action {code} raised: {e}")
            raise ActionExecutionError(f"Action {code} failed: {e}", action_code=code) from e
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.metrics.counter_inc(
                "opsguard_action_executions_total",
                labels={"action": code, "status": status},
            )
            self.metrics.histogram_observe(
                "opsguard_action_duration_ms",
                duration_ms,
                labels={"action": code},
            )

        return ActionResult(
            output=output,
            metrics={"duration_ms": round(duration_ms, 3), "dry_run": context.dry_run},
        )

    def get_inverse(self, code: str, step_output: Optional[Dict[str, Any]]) -> Optional[InverseAction]:
        """Derive the inverse invocation for a forward step, if any."""
        output = step_output or {}

        handler = self._handlers.get(code)
        if handler is not None:
            inverse = handler.inverse(output)
            if inverse is not None:
                return inverse

        descriptor = self._descriptors.get(code)
        if descriptor is None or descriptor.inverse is None:
            return None

        inverse_code = descriptor.inverse.action_code
        if inverse_code not in self._descriptors:
            logger.warning(f"Inverse {inverse_code} of {code} is not registered")
            return None

        return InverseAction(
            action_code=inverse_code,
            input=descriptor.inverse.derive_input(output),
        )

    def get_action_metrics(self, code: str) -> Dict[str, Any]:
        """Execution counts and durations recorded for one action."""
        durations = self.metrics.histogram_values("opsguard_action_duration_ms", {"action": code})
        return {
            "action": code,
            "succeeded": int(self.metrics.counter_value(
                "opsguard_action_executions_total", {"action": code, "status": "succeeded"}
            )),
            "failed": int(self.metrics.counter_value(
                "opsguard_action_executions_total", {"action": code, "status": "failed"}
            )),
            "invalid": int(self.metrics.counter_value(
                "opsguard_action_executions_total", {"action": code, "status": "invalid"}
            )),
            "avg_duration_ms": sum(durations) / len(durations) if durations else 0.0,
        }


def _id_list(description: str) -> Dict[str, Any]:
    return {"type": "array", "items": {"type": ["string", "integer"]}, "description": description}


def default_action_descriptors() -> List[ActionDescriptor]:
    """The back-office action catalog."""
    return [
        ActionDescriptor(
            code="cash.alerts.run",
            description="Evaluate cash alert rules for a scenario",
            input_schema={
                "type": "object",
                "required": ["scenario"],
                "properties": {
                    "scenario": {"type": "string"},
                    "company_ids": _id_list("Companies to evaluate"),
                },
            },
            effect=write_effect("alerts"),
            default_guards={"maxEntities": 50},
            simulated_output={"alerts_created": 0, "count": 0},
        ),
        ActionDescriptor(
            code="payments.run.select",
            description="Select payments for a payment run",
            input_schema={
                "type": "object",
                "properties": {"filters": {"type": "object"}},
            },
            simulated_output={"payment_ids": [], "count": 0},
        ),
        ActionDescriptor(
            code="payments.run.approve",
            description="Approve selected payments",
            input_schema={
                "type": "object",
                "required": ["payment_ids"],
                "properties": {"payment_ids": _id_list("Payments to approve")},
            },
            effect=write_effect("payments"),
            default_guards={"maxEntities": 100},
            simulated_output={"approved_payments": [], "count": 0},
        ),
        ActionDescriptor(
            code="payments.run.export",
            description="Export a payment run file",
            input_schema={
                "type": "object",
                "required": ["format"],
                "properties": {
                    "format": {"enum": ["csv", "xlsx"]},
                    "filters": {"type": "object"},
                },
            },
            simulated_output={"export_id": None, "count": 0},
        ),
        ActionDescriptor(
            code="payments.run.dispatch",
            description="Dispatch an approved payment run to the bank",
            input_schema={
                "type": "object",
                "required": ["run_id"],
                "properties": {
                    "run_id": {"type": "string"},
                    "dry_run": {"type": "boolean"},
                },
            },
            effect=write_effect("payments"),
            default_guards={"maxEntities": 50},
            inverse=InverseDescriptor(
                action_code="payments.run.reverse",
                derive_input=lambda output: {
                    "payment_ids": list(output.get("dispatched_payments") or []),
                },
            ),
            simulated_output={"dispatched_payments": [], "count": 0},
        ),
        ActionDescriptor(
            code="payments.run.reverse",
            description="Reverse dispatched payments",
            input_schema={
                "type": "object",
                "required": ["payment_ids"],
                "properties": {"payment_ids": _id_list("Payments to reverse")},
            },
            effect=write_effect("payments"),
            simulated_output={"reversed_payments": [], "count": 0},
        ),
        ActionDescriptor(
            code="fx.revalue.run",
            description="Run FX revaluation for a period",
            input_schema={
                "type": "object",
                "required": ["company_id", "year", "month"],
                "properties": {
                    "company_id": {"type": "string"},
                    "year": {"type": "integer", "minimum": 1900},
                    "month": {"type": "integer", "minimum": 1, "maximum": 12},
                    "dry_run": {"type": "boolean"},
                },
            },
            effect=write_effect("fx_revaluations"),
            dry_run_only=True,
            default_guards={"canaryRequired": True},
            simulated_output={"revaluations": [], "count": 0},
        ),
        ActionDescriptor(
            code="ar.dunning.run",
            description="Send dunning notices",
            input_schema={
                "type": "object",
                "properties": {
                    "customer_ids": _id_list("Customers to dun"),
                    "template_id": {"type": "string"},
                },
            },
            effect=write_effect("dunning"),
            default_guards={"maxEntities": 200},
            simulated_output={"notices_sent": 0, "count": 0},
        ),
        ActionDescriptor(
            code="ar.cashapp.run",
            description="Apply cash receipts to invoices",
            input_schema={
                "type": "object",
                "required": ["payment_ids", "invoice_ids"],
                "properties": {
                    "payment_ids": _id_list("Receipts to apply"),
                    "invoice_ids": _id_list("Invoices to match"),
                },
            },
            effect=write_effect("cash_application"),
            default_guards={"maxEntities": 100},
            simulated_output={"matches": [], "count": 0},
        ),
        ActionDescriptor(
            code="alloc.run",
            description="Execute an allocation rule for a period",
            input_schema={
                "type": "object",
                "required": ["allocation_rule_id", "period"],
                "properties": {
                    "allocation_rule_id": {"type": "string"},
                    "period": {"type": "string"},
                },
            },
            effect=write_effect("allocations"),
            default_guards={"canaryRequired": True, "maxEntities": 50},
            simulated_output={"allocations": [], "count": 0},
        ),
        ActionDescriptor(
            code="rev.recognize.run",
            description="Recognize contract revenue",
            input_schema={
                "type": "object",
                "required": ["contract_ids", "recognition_date"],
                "properties": {
                    "contract_ids": _id_list("Contracts to recognize"),
                    "recognition_date": {"type": "string"},
                },
            },
            effect=write_effect("revenue"),
            dry_run_only=True,
            default_guards={"maxEntities": 25},
            simulated_output={"schedules": [], "count": 0},
        ),
        ActionDescriptor(
            code="ctrl.execute",
            description="Execute control tests",
            input_schema={
                "type": "object",
                "required": ["control_ids", "test_period"],
                "properties": {
                    "control_ids": _id_list("Controls to test"),
                    "test_period": {"type": "string"},
                },
            },
            simulated_output={"results": [], "count": 0},
        ),
        ActionDescriptor(
            code="insights.harvest",
            description="Harvest operational insights",
            input_schema={
                "type": "object",
                "required": ["metric_types", "date_range"],
                "properties": {
                    "metric_types": {"type": "array", "items": {"type": "string"}},
                    "date_range": {
                        "type": "object",
                        "required": ["from", "to"],
                        "properties": {
                            "from": {"type": "string"},
                            "to": {"type": "string"},
                        },
                    },
                },
            },
            simulated_output={"insights": [], "count": 0},
        ),
    ]


def register_default_actions(
    registry: ActionRegistry,
    handlers: Optional[Dict[str, Union[ActionHandler, Callable]]] = None,
) -> ActionRegistry:
    """Register the back-office catalog and bind any supplied handlers."""
    handlers = handlers or {}
    for descriptor in default_action_descriptors():
        registry.register(descriptor, handlers.get(descriptor.code))
    unknown = set(handlers) - {d.code for d in registry.list_actions()}
    if unknown:
        raise NotFoundError("action", ", ".join(sorted(unknown)))
    return registry
