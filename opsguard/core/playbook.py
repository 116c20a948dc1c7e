"""
OpsGuard Playbook Definition

Immutable playbook versions and the spec contract they are published from.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

import jsonschema

from .exceptions import PlaybookSpecError
from .run import utcnow

_THRESHOLD_SCHEMA = {
    "type": "object",
    "required": ["metric"],
    "properties": {
        "metric": {"type": "string", "minLength": 1},
        "op": {"enum": ["lt", "gt", "eq", "between"]},
        "value": {
            "oneOf": [
                {"type": "number"},
                {"type": "array", "items": {"type": "number"}, "minItems": 2, "maxItems": 2},
            ],
        },
    },
}

PLAYBOOK_SPEC_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["steps"],
    "properties": {
        "code": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "description": {"type": "string"},
        "guards": {
            "type": "object",
            "properties": {
                "requiresDualControl": {"type": "boolean"},
                "maxConcurrent": {"type": "integer", "minimum": 1},
                "blastRadius": {
                    "type": "object",
                    "properties": {
                        "maxEntities": {"type": "integer", "minimum": 0},
                        "maxPercent": {"type": "number", "minimum": 0, "maximum": 100},
                    },
                },
                "timeoutSec": {"type": "integer", "minimum": 1},
                "cooldownSec": {"type": "integer", "minimum": 0},
                "canary": {
                    "type": "object",
                    "properties": {
                        "enabled": {"type": "boolean"},
                        "samplePercent": {"type": "number", "exclusiveMinimum": 0, "maximum": 100},
                        "minEntities": {"type": "integer", "minimum": 0},
                    },
                },
                "rollbackPolicy": {
                    "type": "object",
                    "properties": {
                        "type": {"enum": ["inverse_action", "custom", "none"]},
                        "timeoutSec": {"type": "integer", "minimum": 1},
                    },
                },
                "postChecks": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["check"],
                        "properties": {
                            "check": {"enum": ["bvaImproves", "breachesZero", "errCountBelow"]},
                            "params": {"type": "object"},
                        },
                    },
                },
            },
        },
        "steps": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["action"],
                "additionalProperties": False,
                "properties": {
                    "id": {"type": "string"},
                    "action": {"type": "string", "minLength": 1},
                    "input": {"type": "object"},
                    "outcomeChecks": {"type": "array", "items": _THRESHOLD_SCHEMA},
                    "rollback": {
                        "type": "object",
                        "required": ["action"],
                        "additionalProperties": False,
                        "properties": {
                            "action": {"type": "string", "minLength": 1},
                            "input": {"type": "object"},
                        },
                    },
                },
            },
        },
    },
}


def validate_playbook_spec(spec: Dict[str, Any]) -> List[str]:
    """
    Validate a playbook spec against the publish contract.

    Returns:
        List of validation errors (empty if valid)
    """
    validator = jsonschema.Draft7Validator(PLAYBOOK_SPEC_SCHEMA)
    errors = []
    for error in sorted(validator.iter_errors(spec), key=lambda e: list(e.path)):
        path = ".".join(str(p) for p in error.path) or "<root>"
        errors.append(f"{path}: {error.message}")
    return errors


def compute_content_hash(spec: Dict[str, Any]) -> str:
    """Content hash over the canonical JSON form of a spec."""
    canonical = json.dumps(spec, sort_keys=True, separators=(",", ":"), default=str)
    return f"sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"


@dataclass(frozen=True)
class PlaybookStep:
    """One declared step of a playbook version."""
    id: str
    action: str
    input: Dict[str, Any] = field(default_factory=dict)
    outcome_checks: List[Dict[str, Any]] = field(default_factory=list)
    rollback: Optional[Dict[str, Any]] = None

    @classmethod
    def from_spec(cls, index: int, data: Dict[str, Any]) -> "PlaybookStep":
        return cls(
            id=data.get("id") or f"step-{index + 1}",
            action=data["action"],
            input=dict(data.get("input") or {}),
            outcome_checks=list(data.get("outcomeChecks") or []),
            rollback=data.get("rollback"),
        )

    def to_spec(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {"id": self.id, "action": self.action, "input": self.input}
        if self.outcome_checks:
            spec["outcomeChecks"] = self.outcome_checks
        if self.rollback:
            spec["rollback"] = self.rollback
        return spec


@dataclass(frozen=True)
class PlaybookVersion:
    """
    An immutable, published playbook version.

    A new spec never mutates a version; it is published as version N+1.
    """
    playbook_id: str
    playbook_code: str
    version: int
    steps: List[PlaybookStep]
    guards: Dict[str, Any]
    content_hash: str
    created_by: str
    id: str = field(default_factory=lambda: str(uuid4()))
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_spec(
        cls,
        playbook_id: str,
        playbook_code: str,
        version: int,
        spec: Dict[str, Any],
        created_by: str,
    ) -> "PlaybookVersion":
        """Build a version from a spec, validating it first."""
        errors = validate_playbook_spec(spec)
        if errors:
            raise PlaybookSpecError(
                f"Playbook spec for {playbook_code} is invalid",
                errors=errors,
            )
        return cls(
            playbook_id=playbook_id,
            playbook_code=playbook_code,
            version=version,
            steps=[PlaybookStep.from_spec(i, s) for i, s in enumerate(spec["steps"])],
            guards=dict(spec.get("guards") or {}),
            content_hash=compute_content_hash(spec),
            created_by=created_by,
            name=spec.get("name"),
        )

    def to_spec(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "code": self.playbook_code,
            "guards": self.guards,
            "steps": [s.to_spec() for s in self.steps],
        }
        if self.name:
            spec["name"] = self.name
        return spec

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "playbook_id": self.playbook_id,
            "playbook_code": self.playbook_code,
            "version": self.version,
            "name": self.name,
            "content_hash": self.content_hash,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "spec": self.to_spec(),
        }
