"""Citizen request repository - the primary anchorable entity.

Creation, status transitions and AI processing are anchored on the ledger.
Plain field edits and assignment changes are audited only.
"""

from __future__ import annotations

import logging
from typing import Any

from ..domain.entities import CitizenRequest, EntityType
from ..domain.state_machine import RequestStatus, parse_status, validate_transition
from ..errors import ValidationError
from ..ledger.anchor import AnchorRequest
from .agent_results import AgentResultRepository
from .base import AuditNote, BaseRepository

logger = logging.getLogger(__name__)

AI_PROCESS_ACTION = "ai_process"
STATUS_CHANGE_ACTION = "status_change"


class CitizenRequestRepository(BaseRepository[CitizenRequest]):
    """Citizen requests with their status state machine.

    A request cannot be deleted while AgentResults or LedgerRecords
    reference it.
    """

    entity_cls = CitizenRequest
    table = "citizen_requests"
    text_fields = ("full_name", "contact_info", "subject", "description", "response_text")
    read_only_fields = frozenset({"blockchain_hash", "ai_processed", "ai_classification"})

    def __init__(
        self,
        *args: Any,
        agent_results: AgentResultRepository | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._agent_results = agent_results

    # -----------------------------------------------------------------------
    # Hooks
    # -----------------------------------------------------------------------

    def _prepare_create(self, data: dict[str, Any]) -> dict[str, Any]:
        self._check_fields(data)
        if not str(data.get("full_name") or "").strip():
            raise ValidationError("full_name is required", field="full_name")

        status = parse_status(data.get("status", RequestStatus.NEW.value))
        if status != RequestStatus.NEW:
            raise ValidationError(
                f"New requests start in '{RequestStatus.NEW.value}', not '{status.value}'",
                field="status",
            )
        data["status"] = status.value
        return self._normalize(data)

    def _describe(self, operation: str, entity: CitizenRequest, changes: dict[str, Any]) -> str:
        if operation == "create":
            return f"Request created by {entity.full_name}"
        return f"Updated request #{entity.id}"

    def _anchor_request(
        self, operation: str, entity: CitizenRequest, changes: dict[str, Any]
    ) -> AnchorRequest | None:
        if operation != "create":
            return None
        return AnchorRequest(
            entity_type=self.entity_type,
            entity_id=entity.id,
            action="create",
            title=f"{self.entity_type} #{entity.id}: create",
            content=entity.description or "",
            metadata={
                "subject": entity.subject,
                "request_type": entity.request_type,
                "full_name": entity.full_name,
                "changed_at": entity.updated_at,
            },
        )

    def _status_anchor(
        self, entity: CitizenRequest, old_status: str, new_status: str
    ) -> AnchorRequest:
        return AnchorRequest(
            entity_type=self.entity_type,
            entity_id=entity.id,
            action=STATUS_CHANGE_ACTION,
            title=f"{self.entity_type} #{entity.id}: {STATUS_CHANGE_ACTION}",
            content=f'Status changed from "{old_status}" to "{new_status}"',
            metadata={
                "old_status": old_status,
                "new_status": new_status,
                "updated_by": self._actor_id,
                "changed_at": entity.updated_at,
            },
        )

    def _count_references(self, entity_id: int) -> dict[str, int]:
        where = {"entity_type": self.entity_type, "entity_id": entity_id}
        return {
            "agent_results": self._store.count("agent_results", where),
            "ledger_records": self._store.count("ledger_records", where),
        }

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def update(self, request_id: int, patch: dict[str, Any]) -> CitizenRequest | None:
        """Apply a partial update, validating any status change.

        A status change is journaled as one ``status_change`` entry carrying
        ``{old_status, new_status}`` and anchored; other edits are journaled
        as ``update``.

        Raises:
            ValidationError: Invalid transition or field, nothing written
            PersistenceError: Store failure
        """
        current = self._load(request_id)
        if current is None:
            return None

        self._check_fields(patch)
        values = self._normalize(dict(patch))

        old_status = current.status
        new_status = old_status
        if "status" in values:
            new_status = validate_transition(old_status, values["status"]).value
            values["status"] = new_status

        row = self._store.update(self.table, request_id, values)
        if row is None:
            self._invalidate(request_id)
            return None
        entity = self._to_entity(row)

        changes: list[str] = []
        if new_status != old_status:
            changes.append(f'Status changed from "{old_status}" to "{new_status}"')
        if "assigned_to" in values and values["assigned_to"] != current.assigned_to:
            changes.append(f"Assigned to: {values['assigned_to'] or 'nobody'}")
        others = sorted(set(values) - {"status", "assigned_to"})
        if others:
            changes.append(f"Updated fields: {', '.join(others)}")
        description = ". ".join(changes) or f"Updated request #{request_id}"

        if new_status != old_status:
            self._dispatch_side_effects(
                request_id,
                [
                    AuditNote(
                        STATUS_CHANGE_ACTION,
                        description,
                        {"old_status": old_status, "new_status": new_status, "fields": sorted(values)},
                    )
                ],
                [self._status_anchor(entity, old_status, new_status)],
            )
        else:
            self._after_write(
                "update", request_id, description, metadata={"fields": sorted(values)}
            )
        return entity

    def update_status(self, request_id: int, status: str) -> CitizenRequest | None:
        """Move a request to a new status through the state machine."""
        return self.update(request_id, {"status": status})

    def assign(self, request_id: int, assignee_id: int | None) -> CitizenRequest | None:
        """Change the assignee. Never changes the status."""
        return self.update(request_id, {"assigned_to": assignee_id})

    def delete(self, request_id: int) -> bool:
        """Delete a request unless AgentResults or LedgerRecords reference it."""
        return self._guarded_delete(request_id)

    def process_with_agent(
        self,
        request_id: int,
        agent_id: int,
        classification: str,
        result: Any,
        response_text: str | None = None,
        priority: str | None = None,
    ) -> CitizenRequest | None:
        """Record an agent's processing of a request.

        Stores the AgentResult, marks the request as AI-processed and moves it
        from ``new`` to ``in_progress``. Requests already past ``new`` keep
        their status.

        Returns:
            The updated request, or None if it does not exist

        Raises:
            ValidationError: Unknown or inactive agent
        """
        if self._agent_results is None:
            raise RuntimeError("process_with_agent requires an AgentResultRepository")

        # The request update and the AgentResult commit together or not at all
        with self._store.atomic():
            current = self._load(request_id)
            if current is None:
                return None

            agent = self._store.get("agents", agent_id)
            if agent is None:
                raise ValidationError(f"Agent #{agent_id} does not exist", field="agent_id")
            if not agent.get("is_active", True):
                raise ValidationError(f"Agent #{agent_id} is inactive", field="agent_id")

            result_values = self._agent_results.prepare_create(
                {
                    "agent_id": agent_id,
                    "entity_type": EntityType.CITIZEN_REQUEST.value,
                    "entity_id": request_id,
                    "action_type": AI_PROCESS_ACTION,
                    "result": result,
                }
            )

            values: dict[str, Any] = {"ai_processed": True, "ai_classification": classification}
            if response_text is not None:
                values["response_text"] = response_text
            if priority is not None:
                values["priority"] = priority

            old_status = current.status
            if old_status == RequestStatus.NEW.value:
                values["status"] = RequestStatus.IN_PROGRESS.value
            new_status = values.get("status", old_status)
            values = self._normalize(values)

            row = self._store.update(self.table, request_id, values)
            result_row = self._agent_results.insert_prepared(result_values)

        entity = self._to_entity(row)
        agent_result = self._agent_results.announce_create(result_row, result_values)

        audits = [
            AuditNote(
                AI_PROCESS_ACTION,
                f'Request processed by agent "{agent["name"]}": {classification}',
                {
                    "agent_id": agent_id,
                    "agent_result_id": agent_result.id,
                    "classification": classification,
                    "old_status": old_status,
                    "new_status": new_status,
                },
            )
        ]
        anchors = [
            AnchorRequest(
                entity_type=self.entity_type,
                entity_id=request_id,
                action=AI_PROCESS_ACTION,
                title=f"{self.entity_type} #{request_id}: {AI_PROCESS_ACTION}",
                content=entity.response_text or classification,
                metadata={
                    "agent_id": agent_id,
                    "agent_result_id": agent_result.id,
                    "classification": classification,
                    "changed_at": entity.updated_at,
                },
            )
        ]
        if new_status != old_status:
            audits.append(
                AuditNote(
                    STATUS_CHANGE_ACTION,
                    f'Status changed from "{old_status}" to "{new_status}"',
                    {"old_status": old_status, "new_status": new_status},
                )
            )
            anchors.append(self._status_anchor(entity, old_status, new_status))

        self._dispatch_side_effects(request_id, audits, anchors)
        return entity

    # -----------------------------------------------------------------------
    # Finders
    # -----------------------------------------------------------------------

    def get_by_status(self, status: str) -> list[CitizenRequest]:
        return self._find({"status": parse_status(status).value})

    def get_by_assignee(self, assignee_id: int) -> list[CitizenRequest]:
        return self._find({"assigned_to": assignee_id})


__all__ = ["CitizenRequestRepository", "AI_PROCESS_ACTION", "STATUS_CHANGE_ACTION"]
