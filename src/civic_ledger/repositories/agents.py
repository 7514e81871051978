"""Agent repository."""

from __future__ import annotations

import logging
from typing import Any

from ..domain.entities import Agent
from ..errors import ValidationError
from .base import BaseRepository

logger = logging.getLogger(__name__)


class AgentRepository(BaseRepository[Agent]):
    """Agents are referenced by AgentResults and cannot be deleted while they are."""

    entity_cls = Agent
    table = "agents"
    text_fields = ("name", "description", "system_prompt")

    def _prepare_create(self, data: dict[str, Any]) -> dict[str, Any]:
        self._check_fields(data)
        if not str(data.get("name") or "").strip():
            raise ValidationError("Agent name is required", field="name")
        return self._normalize(data)

    def _prepare_update(self, current: Agent, patch: dict[str, Any]) -> dict[str, Any]:
        self._check_fields(patch)
        if "name" in patch and not str(patch["name"] or "").strip():
            raise ValidationError("Agent name cannot be empty", field="name")
        if "config" in patch and not isinstance(patch["config"], dict):
            raise ValidationError("Agent config must be an object", field="config")
        return self._normalize(patch)

    def _describe(self, operation: str, entity: Agent, changes: dict[str, Any]) -> str:
        verb = "Created" if operation == "create" else "Updated"
        return f'{verb} agent "{entity.name}"'

    def _count_references(self, entity_id: int) -> dict[str, int]:
        return {"agent_results": self._store.count("agent_results", {"agent_id": entity_id})}

    def delete(self, agent_id: int) -> bool:
        """Delete an agent unless AgentResults reference it."""
        return self._guarded_delete(agent_id)

    def get_by_type(self, agent_type: str) -> list[Agent]:
        return self._find({"type": agent_type})

    def get_by_name(self, name: str) -> Agent | None:
        agents = self._find({"name": name}, limit=1)
        return agents[0] if agents else None

    def get_active(self) -> list[Agent]:
        return self._find({"is_active": True})


__all__ = ["AgentRepository"]
