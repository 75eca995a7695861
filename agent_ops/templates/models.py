"""Agent template models.

A template is reusable configuration (role, prompt and tooling) from which
workers are spawned. Tool and permission settings are opaque to the core
and passed through to execution unchanged.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from agent_ops.workers.models import AgentRole
from agent_ops.workflow.models import WorkItemType


# Matches every work item type in allowed_work_item_types
ANY_WORK_ITEM_TYPE = "*"

SYSTEM_CREATOR = "system"


class Template(BaseModel):
    """Reusable worker configuration.

    Attributes:
        id: Unique template identifier.
        name: Unique (case-insensitive) display name.
        description: What the template is for.
        default_role: Role the template is meant to play, if any.
        system_prompt: Prompt handed to the execution engine.
        config: Permission and tool configuration, opaque to the core.
        allowed_work_item_types: Work item types the template handles;
            "*" means any.
        created_by: "system" for built-in templates, else the creator.
    """

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    default_role: Optional[AgentRole] = None
    system_prompt: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    allowed_work_item_types: List[str] = Field(
        default_factory=lambda: [ANY_WORK_ITEM_TYPE]
    )
    created_by: str = SYSTEM_CREATOR
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(default=1, ge=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Template name cannot be empty")
        return v

    @field_validator("allowed_work_item_types")
    @classmethod
    def validate_work_item_types(cls, v: List[str]) -> List[str]:
        known = {t.value for t in WorkItemType} | {ANY_WORK_ITEM_TYPE}
        unknown = [t for t in v if t not in known]
        if unknown:
            raise ValueError(f"Unknown work item types: {', '.join(unknown)}")
        return v

    def handles(self, work_item_type: WorkItemType) -> bool:
        """Whether the template accepts work items of this type."""
        allowed = self.allowed_work_item_types
        return ANY_WORK_ITEM_TYPE in allowed or WorkItemType(work_item_type).value in allowed


def builtin_templates() -> List[Template]:
    """Return the read-only system templates, one per role."""
    prompts = {
        AgentRole.REFINER: "Refine backlog items into actionable, unblocked work.",
        AgentRole.IMPLEMENTER: "Implement the work item and satisfy its success criteria.",
        AgentRole.TESTER: "Verify the implementation against the success criteria.",
        AgentRole.REVIEWER: "Review the result and recommend acceptance or rework.",
    }
    return [
        Template(
            id=f"{role.value}-template",
            name=f"{role.value.capitalize()}",
            description=f"Built-in {role.value} agent",
            default_role=role,
            system_prompt=prompt,
            created_by=SYSTEM_CREATOR,
        )
        for role, prompt in prompts.items()
    ]
