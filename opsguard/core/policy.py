"""
OpsGuard Guard Policy Definitions

Stored guard policies and the effective policy they resolve to.
Stored policies are partial: unset fields never override a lower layer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

GLOBAL_SCOPE = "global"


def playbook_scope(playbook_code: str) -> str:
    """Policy scope key for a playbook."""
    return f"playbook:{playbook_code}"


class RollbackType(Enum):
    """How a halted run is unwound."""
    INVERSE_ACTION = "inverse_action"
    CUSTOM = "custom"
    NONE = "none"


@dataclass
class BlastRadiusLimits:
    """Caps on how many entities a run may touch."""
    max_entities: Optional[int] = None
    max_percent: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"maxEntities": self.max_entities, "maxPercent": self.max_percent}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlastRadiusLimits":
        return cls(
            max_entities=data.get("maxEntities", data.get("max_entities")),
            max_percent=data.get("maxPercent", data.get("max_percent")),
        )


@dataclass
class CanaryPolicy:
    """Canary sampling parameters."""
    sample_percent: float = 10.0
    min_entities: int = 5

    def to_dict(self) -> Dict[str, Any]:
        return {"samplePercent": self.sample_percent, "minEntities": self.min_entities}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanaryPolicy":
        return cls(
            sample_percent=data.get("samplePercent", data.get("sample_percent", 10.0)),
            min_entities=data.get("minEntities", data.get("min_entities", 5)),
        )


@dataclass
class RollbackPolicy:
    """Rollback behaviour for halted runs."""
    type: RollbackType = RollbackType.INVERSE_ACTION
    timeout_sec: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "timeoutSec": self.timeout_sec}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackPolicy":
        return cls(
            type=RollbackType(data.get("type", RollbackType.INVERSE_ACTION.value)),
            timeout_sec=data.get("timeoutSec", data.get("timeout_sec")),
        )


@dataclass
class GuardPolicy:
    """
    A stored guard policy for one (company, scope) pair.

    Nested objects are kept in their wire form so that a scope policy
    can override a single nested key.
    """
    company_id: str
    scope: str = GLOBAL_SCOPE
    max_concurrent: Optional[int] = None
    blast_radius: Optional[Dict[str, Any]] = None
    requires_dual_control: Optional[bool] = None
    canary: Optional[Dict[str, Any]] = None
    rollback_policy: Optional[Dict[str, Any]] = None
    timeout_sec: Optional[int] = None
    cooldown_sec: Optional[int] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    def overrides(self) -> Dict[str, Any]:
        """Fields this policy actually sets."""
        values = {
            "max_concurrent": self.max_concurrent,
            "blast_radius": self.blast_radius,
            "requires_dual_control": self.requires_dual_control,
            "canary": self.canary,
            "rollback_policy": self.rollback_policy,
            "timeout_sec": self.timeout_sec,
            "cooldown_sec": self.cooldown_sec,
        }
        return {k: v for k, v in values.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company_id": self.company_id,
            "scope": self.scope,
            "max_concurrent": self.max_concurrent,
            "blast_radius": self.blast_radius,
            "requires_dual_control": self.requires_dual_control,
            "canary": self.canary,
            "rollback_policy": self.rollback_policy,
            "timeout_sec": self.timeout_sec,
            "cooldown_sec": self.cooldown_sec,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class EffectivePolicy:
    """Fully resolved guard policy for one run."""
    max_concurrent: int
    blast_radius: BlastRadiusLimits
    requires_dual_control: bool
    timeout_sec: int
    cooldown_sec: int
    canary: Optional[CanaryPolicy] = None
    rollback_policy: RollbackPolicy = field(default_factory=RollbackPolicy)
    post_checks: List[Dict[str, Any]] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_concurrent": self.max_concurrent,
            "blast_radius": self.blast_radius.to_dict(),
            "requires_dual_control": self.requires_dual_control,
            "timeout_sec": self.timeout_sec,
            "cooldown_sec": self.cooldown_sec,
            "canary": self.canary.to_dict() if self.canary else None,
            "rollback_policy": self.rollback_policy.to_dict(),
            "post_checks": self.post_checks,
            "sources": self.sources,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EffectivePolicy":
        return cls(
            max_concurrent=data["max_concurrent"],
            blast_radius=BlastRadiusLimits.from_dict(data.get("blast_radius") or {}),
            requires_dual_control=data.get("requires_dual_control", False),
            timeout_sec=data["timeout_sec"],
            cooldown_sec=data["cooldown_sec"],
            canary=CanaryPolicy.from_dict(data["canary"]) if data.get("canary") else None,
            rollback_policy=RollbackPolicy.from_dict(data.get("rollback_policy") or {}),
            post_checks=list(data.get("post_checks") or []),
            sources=list(data.get("sources") or []),
        )
