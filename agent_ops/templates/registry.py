"""Template registry and role → template resolution.

The registry manages built-in and user-defined templates. RoleTemplateMap
is resolved once at startup: every role used for assignment must map to a
registered template, and startup fails on an unmapped role instead of an
assignment failing later.
"""

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional

from agent_ops.errors import InvalidArgumentError, InvalidStateError, NotFoundError
from agent_ops.templates.models import SYSTEM_CREATOR, Template, builtin_templates
from agent_ops.workers.models import AgentRole
from agent_ops.workflow.models import WorkItemType

if TYPE_CHECKING:
    from agent_ops.store.base import RecordStore


logger = logging.getLogger(__name__)


class TemplateRegistry:
    """Lookup and lifecycle management for agent templates."""

    def __init__(self, store: "RecordStore[Template]"):
        self.store = store

    async def register(self, template: Template) -> Template:
        """Add a template.

        Raises:
            InvalidArgumentError: If the name (case-insensitive) or id is
                already taken.
        """
        existing = await self.store.find_all()
        if any(t.name.lower() == template.name.lower() for t in existing):
            raise InvalidArgumentError(
                f"Template with name '{template.name}' already exists"
            )
        created = await self.store.create(template)
        logger.info(
            "Template registered",
            extra={
                "template_id": created.id,
                "template_name": created.name,
                "default_role": created.default_role.value if created.default_role else None,
            },
        )
        return created

    async def ensure_builtin(self) -> List[Template]:
        """Register any missing built-in template. Returns those added."""
        added = []
        for template in builtin_templates():
            if await self.store.find_by_id(template.id) is None:
                added.append(await self.register(template))
        return added

    async def unregister(self, template_id: str) -> None:
        """Delete a user-defined template.

        Raises:
            NotFoundError: If the template does not exist.
            InvalidStateError: If it is a system template.
        """
        template = await self.get(template_id)
        if template.created_by == SYSTEM_CREATOR:
            raise InvalidStateError(
                template_id,
                "system",
                "unregister",
                message="Cannot delete system template. System templates are read-only.",
            )
        await self.store.delete(template_id)

    async def get(self, template_id: str) -> Template:
        template = await self.store.find_by_id(template_id)
        if template is None:
            raise NotFoundError("template", template_id)
        return template

    async def list(self) -> List[Template]:
        return await self.store.find_all()

    async def find_by_role(self, role: AgentRole) -> List[Template]:
        return await self.store.find_all(default_role=AgentRole(role))

    async def find_for_work_item_type(self, work_item_type: WorkItemType) -> List[Template]:
        return [t for t in await self.store.find_all() if t.handles(work_item_type)]


class RoleTemplateMap:
    """Validated mapping from every required role to a template id."""

    def __init__(self, mapping: Mapping[AgentRole, str]):
        self._mapping: Dict[AgentRole, str] = {
            AgentRole(role): template_id for role, template_id in mapping.items()
        }

    def template_for(self, role: AgentRole) -> str:
        """Return the template id for a role.

        Raises:
            InvalidArgumentError: If the role was not part of the resolved map.
        """
        try:
            return self._mapping[AgentRole(role)]
        except (KeyError, ValueError) as e:
            raise InvalidArgumentError(f"No template mapped for role {role}") from e

    def as_dict(self) -> Dict[str, str]:
        return {role.value: template_id for role, template_id in self._mapping.items()}

    def __contains__(self, role: object) -> bool:
        return role in self._mapping


async def resolve_role_templates(
    registry: TemplateRegistry,
    explicit: Optional[Mapping[str, str]] = None,
    required_roles: Iterable[AgentRole] = tuple(AgentRole),
) -> RoleTemplateMap:
    """Build the role → template map, failing fast on gaps.

    Explicitly configured entries win. A role without one falls back to the
    first registered template whose default_role is that role.

    Raises:
        InvalidArgumentError: If a configured template does not exist or a
            required role has no template.
    """
    mapping: Dict[AgentRole, str] = {}
    for role_name, template_id in (explicit or {}).items():
        role = AgentRole(role_name)
        if await registry.store.find_by_id(template_id) is None:
            raise InvalidArgumentError(
                f"Role {role.value} is mapped to unknown template {template_id}"
            )
        mapping[role] = template_id

    missing = []
    for role in required_roles:
        if role in mapping:
            continue
        candidates = await registry.find_by_role(role)
        if candidates:
            mapping[role] = candidates[0].id
        else:
            missing.append(role.value)

    if missing:
        raise InvalidArgumentError(f"No template mapped for roles: {', '.join(missing)}")

    logger.info(
        "Role templates resolved",
        extra={"role_templates": {r.value: t for r, t in mapping.items()}},
    )
    return RoleTemplateMap(mapping)
