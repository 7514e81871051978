"""Ledger record repository - local view of anchored digests."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..domain.entities import ENTITY_TABLES, LedgerRecord, LedgerStatus
from ..errors import ValidationError
from .base import BaseRepository

if TYPE_CHECKING:
    from ..ledger.anchor import AnchorRequest

logger = logging.getLogger(__name__)

_REQUIRED = ("record_type", "entity_type", "entity_id", "transaction_hash")


def _check_status(status: str) -> str:
    try:
        return LedgerStatus(status).value
    except ValueError:
        allowed = ", ".join(s.value for s in LedgerStatus)
        raise ValidationError(
            f"Unknown ledger status '{status}' (expected one of: {allowed})", field="status"
        ) from None


class LedgerRecordRepository(BaseRepository[LedgerRecord]):
    """LedgerRecords are created by anchoring and only change status afterwards.

    They are never deleted; a failed record stays as history and no longer
    counts as the active anchor of its change.
    """

    entity_cls = LedgerRecord
    table = "ledger_records"

    def _prepare_create(self, data: dict[str, Any]) -> dict[str, Any]:
        self._check_fields(data)
        missing = [name for name in _REQUIRED if data.get(name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required field(s): {', '.join(missing)}", field=missing[0]
            )
        data["status"] = _check_status(data.get("status", LedgerStatus.PENDING.value))
        return data

    def _prepare_update(self, current: LedgerRecord, patch: dict[str, Any]) -> dict[str, Any]:
        self._check_fields(patch)
        if "status" in patch:
            patch["status"] = _check_status(patch["status"])
        return patch

    def _describe(self, operation: str, entity: LedgerRecord, changes: dict[str, Any]) -> str:
        if operation == "create":
            return f'Created ledger record "{entity.title}" with hash {entity.transaction_hash}'
        return f"Updated ledger record #{entity.id}, status: {entity.status}"

    # -----------------------------------------------------------------------
    # Anchoring support
    # -----------------------------------------------------------------------

    def record_anchor(
        self, request: AnchorRequest, transaction_hash: str, digest: str
    ) -> LedgerRecord:
        """Create the pending record for a freshly submitted anchor.

        The record is only written while the anchored entity still exists,
        checked in the same transaction as the insert.

        Raises:
            ValidationError: The anchored entity was deleted, nothing written
        """
        values = self.prepare_create(
            {
                "record_type": request.entity_type,
                "title": request.title,
                "entity_type": request.entity_type,
                "entity_id": request.entity_id,
                "transaction_hash": transaction_hash,
                "status": LedgerStatus.PENDING.value,
                "metadata": {
                    **request.metadata,
                    "action": request.action,
                    "content_digest": digest,
                },
            }
        )
        owner_table = ENTITY_TABLES.get(request.entity_type)
        parents = [("entity_id", owner_table, request.entity_id)] if owner_table else []
        return self.announce_create(self.insert_prepared(values, parents), values)

    def find_active(
        self, entity_type: str, entity_id: int, action: str, digest: str
    ) -> LedgerRecord | None:
        """The pending or confirmed record anchoring this exact change, if any."""
        for record in self.get_by_entity(entity_type, entity_id):
            if record.is_active and record.action == action and record.content_digest == digest:
                return record
        return None

    def update_status(
        self,
        record_id: int,
        status: str,
        confirmed_at: str | None = None,
        block_height: int | None = None,
    ) -> LedgerRecord | None:
        """Move a record to a new status.

        Returns:
            The updated record, or None if it does not exist
        """
        current = self._load(record_id)
        if current is None:
            return None

        patch: dict[str, Any] = {"status": _check_status(status)}
        if confirmed_at is not None:
            patch["confirmed_at"] = confirmed_at
        if block_height is not None:
            patch["metadata"] = {**current.metadata, "block_height": block_height}

        row = self._store.update(self.table, record_id, patch)
        if row is None:
            return None
        record = self._to_entity(row)
        self._after_write(
            "update",
            record_id,
            self._describe("update", record, patch),
            metadata={"old_status": current.status, "new_status": record.status},
        )
        return record

    # -----------------------------------------------------------------------
    # Finders
    # -----------------------------------------------------------------------

    def get_by_entity(self, entity_type: str, entity_id: int) -> list[LedgerRecord]:
        return self._find({"entity_type": entity_type, "entity_id": entity_id})

    def get_by_transaction_hash(self, transaction_hash: str) -> LedgerRecord | None:
        records = self._find({"transaction_hash": transaction_hash}, limit=1)
        return records[0] if records else None

    def get_by_record_type(self, record_type: str) -> list[LedgerRecord]:
        return self._find({"record_type": record_type})

    def get_recent(self, limit: int = 10) -> list[LedgerRecord]:
        """Most recent records first."""
        return self._find({}, descending=True, limit=limit)

    def get_pending(self, limit: int = 50) -> list[LedgerRecord]:
        """Pending records, oldest first."""
        return self._find({"status": LedgerStatus.PENDING.value}, limit=limit)


__all__ = ["LedgerRecordRepository"]
