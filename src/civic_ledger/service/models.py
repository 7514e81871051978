"""Pydantic models backing the pipeline API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Priority = Literal["low", "medium", "high", "urgent"]


# ---------------------------------------------------------------------------
# Citizen Request Models
# ---------------------------------------------------------------------------


class CitizenRequestCreate(BaseModel):
    """Intake of a new citizen request."""

    full_name: str = Field(..., min_length=1, max_length=255)
    contact_info: str = Field(default="", max_length=255)
    request_type: str = Field(default="general", max_length=100)
    subject: str = Field(default="", max_length=500)
    description: str = Field(default="", max_length=20000)
    priority: Priority = "medium"
    status: str = "new"
    assigned_to: int | None = None


class CitizenRequestUpdate(BaseModel):
    """Partial update of a citizen request. Only fields that are set are applied."""

    model_config = ConfigDict(extra="forbid")

    full_name: str | None = Field(default=None, min_length=1, max_length=255)
    contact_info: str | None = Field(default=None, max_length=255)
    request_type: str | None = Field(default=None, max_length=100)
    subject: str | None = Field(default=None, max_length=500)
    description: str | None = Field(default=None, max_length=20000)
    status: str | None = None
    priority: Priority | None = None
    assigned_to: int | None = None
    response_text: str | None = Field(default=None, max_length=20000)


class StatusChangeRequest(BaseModel):
    """Manual status transition."""

    status: str


class AssignRequest(BaseModel):
    """Assignment change; ``None`` clears the assignee."""

    assigned_to: int | None = None


class ProcessRequest(BaseModel):
    """Callback of an external agent worker that processed a request."""

    agent_id: int
    classification: str = Field(..., min_length=1, max_length=255)
    result: Any = Field(default="", description="Raw agent output; objects are stored as JSON")
    response_text: str | None = Field(default=None, max_length=20000)
    priority: Priority | None = None


class CitizenRequestOut(BaseModel):
    """Citizen request as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: str
    contact_info: str
    request_type: str
    subject: str
    description: str
    status: str
    priority: str
    assigned_to: int | None = None
    ai_processed: bool
    ai_classification: str | None = None
    response_text: str | None = None
    blockchain_hash: str | None = None
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Agent Models
# ---------------------------------------------------------------------------


class AgentCreate(BaseModel):
    """Definition of a new agent."""

    name: str = Field(..., min_length=1, max_length=255)
    type: str = Field(default="general", max_length=100)
    description: str = Field(default="", max_length=5000)
    model_id: int | None = None
    is_active: bool = True
    system_prompt: str = Field(default="", max_length=50000)
    config: dict[str, Any] = Field(default_factory=dict)


class AgentUpdate(BaseModel):
    """Partial update of an agent."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    type: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=5000)
    model_id: int | None = None
    is_active: bool | None = None
    system_prompt: str | None = Field(default=None, max_length=50000)
    config: dict[str, Any] | None = None


class AgentOut(BaseModel):
    """Agent as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: str
    description: str
    model_id: int | None = None
    is_active: bool
    system_prompt: str
    config: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Agent Result Models
# ---------------------------------------------------------------------------


class AgentResultCreate(BaseModel):
    """A result reported by an agent run."""

    agent_id: int
    entity_type: str
    entity_id: int
    action_type: str = Field(..., min_length=1, max_length=100)
    result: Any = ""


class AgentResultOut(BaseModel):
    """Agent result as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    agent_id: int
    entity_type: str
    entity_id: int
    action_type: str
    result: str
    created_at: str


# ---------------------------------------------------------------------------
# Audit & Ledger Models
# ---------------------------------------------------------------------------


class AuditEntryOut(BaseModel):
    """Single audit journal entry."""

    model_config = ConfigDict(from_attributes=True)

    entry_id: str
    operation: str
    entity_type: str
    entity_id: int | None = None
    description: str
    actor_id: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class LedgerRecordOut(BaseModel):
    """Local record of an anchored digest."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    record_type: str
    title: str
    entity_type: str
    entity_id: int
    transaction_hash: str
    status: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    confirmed_at: str | None = None


class ReconcileResponse(BaseModel):
    """Outcome of a reconciliation pass."""

    checked: int
    confirmed: int
    failed: int
    still_pending: int
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Error Models
# ---------------------------------------------------------------------------


class DeleteResponse(BaseModel):
    """Result of a delete request."""

    deleted: bool
    reason: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    reason: str | None = None
    field: str | None = None
    correlation_id: str | None = None
