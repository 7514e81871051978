"""Agent result repository - immutable outputs of agent runs."""

from __future__ import annotations

import json
import logging
from typing import Any

from ..domain.entities import ENTITY_TABLES, AgentResult, EntityType
from ..errors import ValidationError
from .base import BaseRepository

logger = logging.getLogger(__name__)

_REQUIRED = ("agent_id", "entity_type", "entity_id", "action_type")


class AgentResultRepository(BaseRepository[AgentResult]):
    """AgentResults are written once and never updated or deleted."""

    entity_cls = AgentResult
    table = "agent_results"

    def _prepare_create(self, data: dict[str, Any]) -> dict[str, Any]:
        self._check_fields(data)
        missing = [name for name in _REQUIRED if data.get(name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required field(s): {', '.join(missing)}", field=missing[0]
            )

        try:
            EntityType(data["entity_type"])
        except ValueError:
            raise ValidationError(
                f"Unknown entity type '{data['entity_type']}'", field="entity_type"
            ) from None

        if self._store.get("agents", data["agent_id"]) is None:
            raise ValidationError(f"Agent #{data['agent_id']} does not exist", field="agent_id")

        # Structured results are stored as JSON text
        result = data.get("result", "")
        if not isinstance(result, str):
            data["result"] = json.dumps(result, ensure_ascii=False, default=str)
        return data

    def _parents(self, values: dict[str, Any]) -> list[tuple[str, str, int]]:
        return [
            ("agent_id", "agents", values["agent_id"]),
            ("entity_id", ENTITY_TABLES[values["entity_type"]], values["entity_id"]),
        ]

    def _describe(self, operation: str, entity: AgentResult, changes: dict[str, Any]) -> str:
        return (
            f"Created {entity.action_type} result of agent #{entity.agent_id} "
            f"for {entity.entity_type} #{entity.entity_id}"
        )

    def update(self, entity_id: int, patch: dict[str, Any]) -> AgentResult | None:
        raise ValidationError("Agent results are immutable and cannot be updated")

    def get_by_entity(self, entity_type: str, entity_id: int) -> list[AgentResult]:
        return self._find({"entity_type": entity_type, "entity_id": entity_id})

    def get_by_agent_id(self, agent_id: int) -> list[AgentResult]:
        return self._find({"agent_id": agent_id})

    def get_by_action_type(self, action_type: str) -> list[AgentResult]:
        return self._find({"action_type": action_type})


__all__ = ["AgentResultRepository"]
