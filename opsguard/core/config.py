"""
OpsGuard Configuration Management

Centralized configuration for the runtime and its collaborators.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


class DuplicateRunPolicy(Enum):
    """What to do when an identical run is already in flight."""
    REJECT = "reject"
    REUSE = "reuse"
    ALLOW = "allow"


@dataclass
class GuardDefaultsConfig:
    """Hard-coded guard policy used when no stored policy applies."""
    max_concurrent: int = 1
    max_entities: Optional[int] = 100
    max_percent: Optional[float] = 10.0
    requires_dual_control: bool = False
    timeout_sec: int = 900
    cooldown_sec: int = 3600
    canary_sample_percent: float = 10.0
    canary_min_entities: int = 5


@dataclass
class BlastRadiusConfig:
    """Blast radius evaluation settings."""
    default_population: int = 1000
    entity_list_keys: List[str] = field(default_factory=lambda: [
        "entity_ids",
        "company_ids",
        "payment_ids",
        "customer_ids",
        "contract_ids",
        "invoice_ids",
    ])


@dataclass
class ExecutionConfig:
    """Run executor settings."""
    duplicate_policy: DuplicateRunPolicy = DuplicateRunPolicy.REJECT
    interrupt_on_cancel: bool = True
    enforce_cooldown: bool = True
    system_actor: str = "system"


@dataclass
class StoreConfig:
    """Persistence settings."""
    db_path: str = "data/opsguard.db"


@dataclass
class OutcomeConfig:
    """Outcome manager settings."""
    metrics_url: Optional[str] = None
    request_timeout_sec: float = 5.0
    improvement_window_minutes: int = 60


@dataclass
class AttestationConfig:
    """Run attestation signing settings."""
    signing_key_path: Optional[str] = None
    signer_id: str = "opsguard"


@dataclass
class Config:
    """
    Main configuration class for OpsGuard.

    Aggregates all subsystem configurations.
    """
    guards: GuardDefaultsConfig = field(default_factory=GuardDefaultsConfig)
    blast_radius: BlastRadiusConfig = field(default_factory=BlastRadiusConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    outcomes: OutcomeConfig = field(default_factory=OutcomeConfig)
    attestation: AttestationConfig = field(default_factory=AttestationConfig)

    # Operational settings
    log_level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[str] = None

    @classmethod
    def from_file(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to configuration YAML file

        Returns:
            Populated Config object
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Populated Config object
        """
        config = cls()

        if "guards" in data:
            config.guards = GuardDefaultsConfig(**data["guards"])
        if "blast_radius" in data:
            config.blast_radius = BlastRadiusConfig(**data["blast_radius"])
        if "execution" in data:
            execution_data = data["execution"].copy()
            if "duplicate_policy" in execution_data:
                execution_data["duplicate_policy"] = DuplicateRunPolicy(
                    execution_data["duplicate_policy"]
                )
            config.execution = ExecutionConfig(**execution_data)
        if "store" in data:
            config.store = StoreConfig(**data["store"])
        if "outcomes" in data:
            config.outcomes = OutcomeConfig(**data["outcomes"])
        if "attestation" in data:
            config.attestation = AttestationConfig(**data["attestation"])

        # Operational settings
        if "log_level" in data:
            config.log_level = data["log_level"]
        if "json_logs" in data:
            config.json_logs = data["json_logs"]
        if "log_file" in data:
            config.log_file = data["log_file"]

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        execution = asdict(self.execution)
        execution["duplicate_policy"] = self.execution.duplicate_policy.value
        return {
            "guards": asdict(self.guards),
            "blast_radius": asdict(self.blast_radius),
            "execution": execution,
            "store": asdict(self.store),
            "outcomes": asdict(self.outcomes),
            "attestation": asdict(self.attestation),
            "log_level": self.log_level,
            "json_logs": self.json_logs,
            "log_file": self.log_file,
        }

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.guards.max_concurrent < 1:
            errors.append("Guard max_concurrent must be at least 1")

        if self.guards.max_entities is not None and self.guards.max_entities < 0:
            errors.append("Guard max_entities must be non-negative")

        if self.guards.max_percent is not None and not 0 <= self.guards.max_percent <= 100:
            errors.append("Guard max_percent must be between 0 and 100")

        if self.guards.timeout_sec <= 0:
            errors.append("Guard timeout_sec must be positive")

        if self.guards.cooldown_sec < 0:
            errors.append("Guard cooldown_sec must be non-negative")

        if not 0 < self.guards.canary_sample_percent <= 100:
            errors.append("Canary sample percent must be between 0 and 100")

        if self.blast_radius.default_population < 1:
            errors.append("Blast radius default population must be at least 1")

        if self.outcomes.request_timeout_sec <= 0:
            errors.append("Outcome request timeout must be positive")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Unknown log level: {self.log_level}")

        return errors
