"""Domain layer - Entities and the citizen request state machine."""

from .entities import (
    Agent,
    AgentResult,
    AuditEntry,
    CitizenRequest,
    Entity,
    EntityType,
    LedgerRecord,
    LedgerStatus,
)
from .state_machine import RequestStatus, validate_transition

__all__ = [
    "Agent",
    "AgentResult",
    "AuditEntry",
    "CitizenRequest",
    "Entity",
    "EntityType",
    "LedgerRecord",
    "LedgerStatus",
    "RequestStatus",
    "validate_transition",
]
