"""FastAPI router for the pipeline service.

Implements the endpoints for:
- Citizen requests (/citizen-requests/*)
- Agents (/agents/*)
- Agent results (/agent-results)
- Audit history (/audit/*)
- Ledger anchors (/ledger/*)

Handlers are plain ``def`` functions: repositories are synchronous and
FastAPI runs them in its thread pool.
"""

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from ..domain.entities import EntityType
from ..errors import NotFoundError
from .models import (
    AgentCreate,
    AgentOut,
    AgentResultCreate,
    AgentResultOut,
    AgentUpdate,
    AssignRequest,
    AuditEntryOut,
    CitizenRequestCreate,
    CitizenRequestOut,
    CitizenRequestUpdate,
    DeleteResponse,
    LedgerRecordOut,
    ProcessRequest,
    ReconcileResponse,
    StatusChangeRequest,
)

if TYPE_CHECKING:
    from .core import Pipeline


def _require(entity: Any, label: str) -> Any:
    if entity is None:
        raise NotFoundError(f"{label} not found")
    return entity


def _blocked(reason: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=DeleteResponse(deleted=False, reason=reason).model_dump(),
    )


def build_router(pipeline: "Pipeline") -> APIRouter:
    """Build the pipeline API router.

    Args:
        pipeline: The Pipeline instance

    Returns:
        Configured APIRouter
    """
    router = APIRouter()
    requests = pipeline.citizen_requests
    agents = pipeline.agents
    agent_results = pipeline.agent_results
    ledger_records = pipeline.ledger_records
    journal = pipeline.journal

    # -----------------------------------------------------------------------
    # Citizen Request Endpoints
    # -----------------------------------------------------------------------

    @router.get("/citizen-requests", response_model=list[CitizenRequestOut])
    def list_requests(
        status_filter: str | None = Query(default=None, alias="status"),
        assigned_to: int | None = Query(default=None),
    ) -> list[CitizenRequestOut]:
        """List citizen requests, optionally filtered by status or assignee."""
        if status_filter is not None:
            found = requests.get_by_status(status_filter)
        elif assigned_to is not None:
            found = requests.get_by_assignee(assigned_to)
        else:
            found = requests.get_all()
        return [CitizenRequestOut.model_validate(r) for r in found]

    @router.post(
        "/citizen-requests",
        response_model=CitizenRequestOut,
        status_code=status.HTTP_201_CREATED,
    )
    def create_request(body: CitizenRequestCreate) -> CitizenRequestOut:
        """Intake of a new citizen request."""
        return CitizenRequestOut.model_validate(requests.create(body.model_dump()))

    @router.get("/citizen-requests/{request_id}", response_model=CitizenRequestOut)
    def get_request(request_id: int) -> CitizenRequestOut:
        entity = _require(requests.get_by_id(request_id), f"Citizen request #{request_id}")
        return CitizenRequestOut.model_validate(entity)

    @router.patch("/citizen-requests/{request_id}", response_model=CitizenRequestOut)
    def update_request(request_id: int, body: CitizenRequestUpdate) -> CitizenRequestOut:
        """Partial update; a status change goes through the state machine."""
        entity = requests.update(request_id, body.model_dump(exclude_unset=True))
        return CitizenRequestOut.model_validate(
            _require(entity, f"Citizen request #{request_id}")
        )

    @router.delete("/citizen-requests/{request_id}", response_model=DeleteResponse)
    def delete_request(request_id: int) -> Any:
        _require(requests.get_by_id(request_id), f"Citizen request #{request_id}")
        if not requests.delete(request_id):
            return _blocked("Request is referenced by agent results or ledger records")
        return DeleteResponse(deleted=True)

    @router.post("/citizen-requests/{request_id}/status", response_model=CitizenRequestOut)
    def change_status(request_id: int, body: StatusChangeRequest) -> CitizenRequestOut:
        entity = requests.update_status(request_id, body.status)
        return CitizenRequestOut.model_validate(
            _require(entity, f"Citizen request #{request_id}")
        )

    @router.post("/citizen-requests/{request_id}/assign", response_model=CitizenRequestOut)
    def assign_request(request_id: int, body: AssignRequest) -> CitizenRequestOut:
        entity = requests.assign(request_id, body.assigned_to)
        return CitizenRequestOut.model_validate(
            _require(entity, f"Citizen request #{request_id}")
        )

    @router.post("/citizen-requests/{request_id}/process", response_model=CitizenRequestOut)
    def process_request(request_id: int, body: ProcessRequest) -> CitizenRequestOut:
        """Callback from an agent worker that processed the request."""
        entity = requests.process_with_agent(
            request_id,
            body.agent_id,
            body.classification,
            body.result,
            response_text=body.response_text,
            priority=body.priority,
        )
        return CitizenRequestOut.model_validate(
            _require(entity, f"Citizen request #{request_id}")
        )

    @router.get(
        "/citizen-requests/{request_id}/activities", response_model=list[AuditEntryOut]
    )
    def request_activities(request_id: int) -> list[AuditEntryOut]:
        """Audit history of one request, oldest first."""
        entries = journal.get_by_entity(EntityType.CITIZEN_REQUEST.value, request_id)
        return [AuditEntryOut.model_validate(e) for e in entries]

    @router.get(
        "/citizen-requests/{request_id}/agent-results", response_model=list[AgentResultOut]
    )
    def request_agent_results(request_id: int) -> list[AgentResultOut]:
        results = agent_results.get_by_entity(EntityType.CITIZEN_REQUEST.value, request_id)
        return [AgentResultOut.model_validate(r) for r in results]

    # -----------------------------------------------------------------------
    # Agent Endpoints
    # -----------------------------------------------------------------------

    @router.get("/agents", response_model=list[AgentOut])
    def list_agents(
        agent_type: str | None = Query(default=None, alias="type"),
    ) -> list[AgentOut]:
        found = agents.get_by_type(agent_type) if agent_type else agents.get_all()
        return [AgentOut.model_validate(a) for a in found]

    @router.post("/agents", response_model=AgentOut, status_code=status.HTTP_201_CREATED)
    def create_agent(body: AgentCreate) -> AgentOut:
        return AgentOut.model_validate(agents.create(body.model_dump()))

    @router.get("/agents/{agent_id}", response_model=AgentOut)
    def get_agent(agent_id: int) -> AgentOut:
        return AgentOut.model_validate(_require(agents.get_by_id(agent_id), f"Agent #{agent_id}"))

    @router.patch("/agents/{agent_id}", response_model=AgentOut)
    def update_agent(agent_id: int, body: AgentUpdate) -> AgentOut:
        entity = agents.update(agent_id, body.model_dump(exclude_unset=True))
        return AgentOut.model_validate(_require(entity, f"Agent #{agent_id}"))

    @router.delete("/agents/{agent_id}", response_model=DeleteResponse)
    def delete_agent(agent_id: int) -> Any:
        _require(agents.get_by_id(agent_id), f"Agent #{agent_id}")
        if not agents.delete(agent_id):
            return _blocked("Agent is referenced by agent results")
        return DeleteResponse(deleted=True)

    # -----------------------------------------------------------------------
    # Agent Result Endpoints
    # -----------------------------------------------------------------------

    @router.get("/agent-results", response_model=list[AgentResultOut])
    def list_agent_results(
        agent_id: int | None = Query(default=None),
        action_type: str | None = Query(default=None),
        entity_type: str | None = Query(default=None),
        entity_id: int | None = Query(default=None),
    ) -> list[AgentResultOut]:
        if entity_type is not None and entity_id is not None:
            found = agent_results.get_by_entity(entity_type, entity_id)
        elif agent_id is not None:
            found = agent_results.get_by_agent_id(agent_id)
        elif action_type is not None:
            found = agent_results.get_by_action_type(action_type)
        else:
            found = agent_results.get_all()
        return [AgentResultOut.model_validate(r) for r in found]

    @router.post(
        "/agent-results", response_model=AgentResultOut, status_code=status.HTTP_201_CREATED
    )
    def create_agent_result(body: AgentResultCreate) -> AgentResultOut:
        return AgentResultOut.model_validate(agent_results.create(body.model_dump()))

    # -----------------------------------------------------------------------
    # Audit Endpoints
    # -----------------------------------------------------------------------

    @router.get("/audit/recent", response_model=list[AuditEntryOut])
    def audit_recent(limit: int = Query(default=50, ge=1, le=1000)) -> list[AuditEntryOut]:
        return [AuditEntryOut.model_validate(e) for e in journal.get_recent(limit)]

    @router.get("/audit/entity/{entity_type}/{entity_id}", response_model=list[AuditEntryOut])
    def audit_by_entity(
        entity_type: str,
        entity_id: int,
        limit: int | None = Query(default=None, ge=1, le=1000),
    ) -> list[AuditEntryOut]:
        entries = journal.get_by_entity(entity_type, entity_id, limit=limit)
        return [AuditEntryOut.model_validate(e) for e in entries]

    @router.get("/audit/stats")
    def audit_stats() -> dict[str, Any]:
        return journal.stats()

    # -----------------------------------------------------------------------
    # Ledger Endpoints
    # -----------------------------------------------------------------------

    @router.get("/ledger/records", response_model=list[LedgerRecordOut])
    def ledger_recent(limit: int = Query(default=10, ge=1, le=1000)) -> list[LedgerRecordOut]:
        return [LedgerRecordOut.model_validate(r) for r in ledger_records.get_recent(limit)]

    @router.get(
        "/ledger/records/entity/{entity_type}/{entity_id}",
        response_model=list[LedgerRecordOut],
    )
    def ledger_by_entity(entity_type: str, entity_id: int) -> list[LedgerRecordOut]:
        records = ledger_records.get_by_entity(entity_type, entity_id)
        return [LedgerRecordOut.model_validate(r) for r in records]

    @router.get("/ledger/records/tx/{transaction_hash}", response_model=LedgerRecordOut)
    def ledger_by_hash(transaction_hash: str) -> LedgerRecordOut:
        record = ledger_records.get_by_transaction_hash(transaction_hash)
        return LedgerRecordOut.model_validate(
            _require(record, f"Ledger record for {transaction_hash}")
        )

    @router.post("/ledger/reconcile", response_model=ReconcileResponse)
    def ledger_reconcile(
        limit: int | None = Query(default=None, ge=1, le=1000),
    ) -> ReconcileResponse:
        """Run one reconciliation pass over pending ledger records."""
        return ReconcileResponse(**pipeline.reconcile(limit).to_dict())

    return router


__all__ = ["build_router"]
