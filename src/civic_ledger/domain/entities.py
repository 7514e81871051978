"""Domain records handled by the pipeline.

Entities are plain dataclasses. Each one is owned by exactly one repository;
rows coming back from the persistence port are turned into entities with
``from_row`` and nothing outside the pipeline mutates them.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar


class EntityType(str, Enum):
    """Type tags used in audit entries, ledger records and cache namespaces."""

    CITIZEN_REQUEST = "citizen_request"
    AGENT = "agent"
    AGENT_RESULT = "agent_result"
    LEDGER_RECORD = "ledger_record"


# Store table holding the rows of each entity type
ENTITY_TABLES: dict[str, str] = {
    EntityType.CITIZEN_REQUEST.value: "citizen_requests",
    EntityType.AGENT.value: "agents",
    EntityType.AGENT_RESULT.value: "agent_results",
    EntityType.LEDGER_RECORD.value: "ledger_records",
}


class LedgerStatus(str, Enum):
    """Lifecycle of a ledger anchor."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(kw_only=True)
class Entity:
    """Base for all records with an integer identity."""

    type_tag: ClassVar[str] = ""

    id: int
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Entity:
        """Build an entity from a store row, ignoring unknown columns."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in known})


@dataclass(kw_only=True)
class CitizenRequest(Entity):
    """A request submitted by a citizen. The primary anchorable entity."""

    type_tag: ClassVar[str] = EntityType.CITIZEN_REQUEST.value

    full_name: str
    contact_info: str = ""
    request_type: str = "general"
    subject: str = ""
    description: str = ""
    status: str = "new"
    priority: str = "medium"
    assigned_to: int | None = None
    ai_processed: bool = False
    ai_classification: str | None = None
    response_text: str | None = None
    blockchain_hash: str | None = None


@dataclass(kw_only=True)
class Agent(Entity):
    """An AI agent definition."""

    type_tag: ClassVar[str] = EntityType.AGENT.value

    name: str
    type: str = "general"
    description: str = ""
    model_id: int | None = None
    is_active: bool = True
    system_prompt: str = ""
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(kw_only=True)
class AgentResult(Entity):
    """Output of an agent run against some entity. Immutable once created."""

    type_tag: ClassVar[str] = EntityType.AGENT_RESULT.value

    agent_id: int
    entity_type: str
    entity_id: int
    action_type: str
    result: str = ""

    def parsed_result(self) -> Any:
        """Decode ``result`` when it holds JSON, else return the raw text."""
        try:
            return json.loads(self.result)
        except (TypeError, ValueError):
            return self.result


@dataclass(kw_only=True)
class LedgerRecord(Entity):
    """Local record of a digest anchored on the external ledger."""

    type_tag: ClassVar[str] = EntityType.LEDGER_RECORD.value

    record_type: str
    title: str = ""
    entity_type: str
    entity_id: int
    transaction_hash: str
    status: str = LedgerStatus.PENDING.value
    metadata: dict[str, Any] = field(default_factory=dict)
    confirmed_at: str | None = None

    @property
    def is_active(self) -> bool:
        """Pending and confirmed records count as active; failed ones do not."""
        return self.status != LedgerStatus.FAILED.value

    @property
    def action(self) -> str | None:
        return self.metadata.get("action")

    @property
    def content_digest(self) -> str | None:
        return self.metadata.get("content_digest")


@dataclass
class AuditEntry:
    """A single append-only audit journal entry.

    Entries reference entities weakly by (entity_type, entity_id); deleting
    the entity leaves its history in place.
    """

    entry_id: str
    operation: str
    entity_type: str
    entity_id: int | None = None
    description: str = ""
    actor_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEntry:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


__all__ = [
    "ENTITY_TABLES",
    "EntityType",
    "LedgerStatus",
    "Entity",
    "CitizenRequest",
    "Agent",
    "AgentResult",
    "LedgerRecord",
    "AuditEntry",
]
