"""Agent operations configuration using pydantic-settings.

This module defines the AgentOpsSettings class that reads configuration
from environment variables with the AGENTOPS_ prefix. Every field has a
default, so the service starts with an in-memory store and no environment.

Settings are turned into per-instance configuration values (PoolConfig,
ApprovalPolicy) that are injected into the components; nothing reads the
settings as ambient global state.
"""

from typing import Dict, Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_ops.workers.models import DEFAULT_CONTEXT_WINDOW_LIMIT, AgentRole
from agent_ops.workers.pool import PoolConfig
from agent_ops.workflow.models import DEFAULT_APPROVAL_POLICY, ApprovalPolicy, Transition


class AgentOpsSettings(BaseSettings):
    """Agent operations configuration from environment variables.

    All environment variables are prefixed with AGENTOPS_ (e.g.
    AGENTOPS_MAX_WORKERS). Mapping fields are read as JSON, e.g.
    AGENTOPS_APPROVAL_DEFAULTS='{"review_to_done": false}'.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTOPS_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Worker Pool
    # -------------------------------------------------------------------------
    # Ceiling on simultaneously active (idle + working) workers
    max_workers: int = 10

    # Default context window given to spawned workers
    context_window_limit: int = DEFAULT_CONTEXT_WINDOW_LIMIT

    # Re-read attempts after an optimistic-lock conflict
    max_conflict_retries: int = 5

    # -------------------------------------------------------------------------
    # Workflow
    # -------------------------------------------------------------------------
    # Transition name → requires approval; merged over the built-in defaults
    approval_defaults: Dict[str, bool] = Field(
        default_factory=lambda: {t.value: flag for t, flag in DEFAULT_APPROVAL_POLICY.items()}
    )

    # Role → template id; roles left out use the template whose default
    # role matches
    role_templates: Dict[str, str] = Field(default_factory=dict)

    # -------------------------------------------------------------------------
    # Event Hub
    # -------------------------------------------------------------------------
    # Maximum number of retained trace events
    trace_retention_limit: int = 1000

    # Undelivered events buffered per live subscriber before dropping
    subscriber_queue_size: int = 256

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; unset means in-memory storage
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server and logging
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 8080

    log_level: str = "INFO"

    # "json" for log aggregation, "console" for local development
    log_format: str = "json"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator(
        "max_workers", "context_window_limit", "trace_retention_limit", "subscriber_queue_size"
    )
    @classmethod
    def validate_positive(cls, v: int, info: ValidationInfo) -> int:
        """Validate that limits are positive."""
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator("max_conflict_retries")
    @classmethod
    def validate_conflict_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_conflict_retries must be at least 1")
        return v

    @field_validator("approval_defaults")
    @classmethod
    def validate_approval_defaults(cls, v: Dict[str, bool]) -> Dict[str, bool]:
        """Validate transition names and merge over the built-in defaults."""
        known = {t.value for t in Transition}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"Unknown transitions in approval_defaults: {', '.join(unknown)}")
        merged = {t.value: flag for t, flag in DEFAULT_APPROVAL_POLICY.items()}
        merged.update(v)
        return merged

    @field_validator("role_templates")
    @classmethod
    def validate_role_templates(cls, v: Dict[str, str]) -> Dict[str, str]:
        known = {r.value for r in AgentRole}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"Unknown roles in role_templates: {', '.join(unknown)}")
        empty = sorted(role for role, template_id in v.items() if not template_id.strip())
        if empty:
            raise ValueError(f"Empty template id for roles: {', '.join(empty)}")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database URL format when one is set."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError("database_url must start with postgresql:// or postgres://")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("log_level must be a standard logging level name")
        return v

    def pool_config(self) -> PoolConfig:
        """Build a fresh PoolConfig for one WorkerPool."""
        return PoolConfig(
            max_workers=self.max_workers,
            context_window_limit=self.context_window_limit,
            max_conflict_retries=self.max_conflict_retries,
        )

    def approval_policy(self) -> ApprovalPolicy:
        """Build a fresh ApprovalPolicy for one WorkflowEngine."""
        return ApprovalPolicy(
            defaults={Transition(name): flag for name, flag in self.approval_defaults.items()}
        )


def get_settings() -> AgentOpsSettings:
    """Create and return an AgentOpsSettings instance.

    Raises:
        pydantic.ValidationError: If a value is invalid.
    """
    return AgentOpsSettings()
