"""Agent templates and role → template resolution."""

from agent_ops.templates.models import (
    ANY_WORK_ITEM_TYPE,
    SYSTEM_CREATOR,
    Template,
    builtin_templates,
)
from agent_ops.templates.registry import (
    RoleTemplateMap,
    TemplateRegistry,
    resolve_role_templates,
)

__all__ = [
    "ANY_WORK_ITEM_TYPE",
    "SYSTEM_CREATOR",
    "Template",
    "builtin_templates",
    "RoleTemplateMap",
    "TemplateRegistry",
    "resolve_role_templates",
]
