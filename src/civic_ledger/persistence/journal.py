"""Audit Journal - Append-only record of pipeline operations.

Every successful create/update/delete leaves at least one entry here. The
journal is an observability artifact read by history views; the pipeline
never consults it to make decisions, so a failed append is logged at the
call site and otherwise ignored.

Entries are stored as JSONL, one entry per line, never rewritten.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from ..domain.entities import AuditEntry
from ..errors import AuditWriteFailure

logger = logging.getLogger(__name__)


class AuditJournal:
    """Append-only JSONL audit journal.

    Example:
        journal = AuditJournal("data/audit_journal.jsonl")

        journal.append(
            "create",
            "citizen_request",
            42,
            "Request created by Jane Doe",
            metadata={"subject": "Street lighting"},
        )

        history = journal.get_by_entity("citizen_request", 42)
    """

    def __init__(
        self,
        journal_path: Path | str | None = None,
        auto_flush: bool = True,
        default_actor_id: int | None = None,
    ):
        """Initialize the audit journal.

        Args:
            journal_path: Path to JSONL file. Defaults to data/audit_journal.jsonl
            auto_flush: Whether to flush after each write
            default_actor_id: Actor recorded when the caller passes none
        """
        if journal_path is None:
            journal_path = Path.cwd() / "data" / "audit_journal.jsonl"
        else:
            journal_path = Path(journal_path)

        self._journal_path = journal_path
        self._auto_flush = auto_flush
        self._default_actor_id = default_actor_id
        self._lock = threading.Lock()

        # Ensure directory exists
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def journal_path(self) -> Path:
        """Get the journal file path."""
        return self._journal_path

    def append(
        self,
        operation: str,
        entity_type: str,
        entity_id: int | None = None,
        description: str = "",
        metadata: dict[str, Any] | None = None,
        actor_id: int | None = None,
    ) -> AuditEntry:
        """Append an entry to the journal.

        Args:
            operation: Operation name (create, update, delete, status_change, ...)
            entity_type: Type tag of the affected entity
            entity_id: Identity of the affected entity, if any
            description: Human-readable description
            metadata: Additional structured data
            actor_id: Who performed the operation

        Returns:
            The written AuditEntry

        Raises:
            AuditWriteFailure: If the entry could not be written
        """
        entry = AuditEntry(
            entry_id=f"aud_{uuid.uuid4().hex[:12]}",
            operation=operation,
            entity_type=entity_type,
            entity_id=entity_id,
            description=description
            or f"{operation} {entity_type}" + (f" #{entity_id}" if entity_id else ""),
            actor_id=actor_id if actor_id is not None else self._default_actor_id,
            metadata=metadata or {},
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

        try:
            line = entry.to_json()
            with self._lock:
                with open(self._journal_path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    if self._auto_flush:
                        f.flush()
        except (OSError, TypeError, ValueError) as e:
            raise AuditWriteFailure(
                f"Could not append {operation} for {entity_type}#{entity_id}: {e}"
            ) from e

        logger.debug(f"Audit entry written: {entry.entry_id} ({operation} {entity_type})")
        return entry

    def _iter_raw(self) -> Iterator[dict[str, Any]]:
        """Yield decoded lines in write order, skipping torn lines."""
        if not self._journal_path.exists():
            return

        with open(self._journal_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping unreadable journal line in {self._journal_path}")

    def get_entry(self, entry_id: str) -> AuditEntry | None:
        """Get an entry by entry_id (searches file)."""
        for data in self._iter_raw():
            if data.get("entry_id") == entry_id:
                return AuditEntry.from_dict(data)
        return None

    def get_by_entity(
        self,
        entity_type: str,
        entity_id: int,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Get the history of one entity, oldest first.

        Args:
            entity_type: Entity type tag
            entity_id: Entity identity
            limit: Keep only the most recent N entries
        """
        entries = [
            AuditEntry.from_dict(data)
            for data in self._iter_raw()
            if data.get("entity_type") == entity_type and data.get("entity_id") == entity_id
        ]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def get_recent(self, n: int = 50) -> list[AuditEntry]:
        """Get the N most recent entries, oldest first."""
        if n <= 0:
            return []
        entries = list(self._iter_raw())
        return [AuditEntry.from_dict(d) for d in entries[-n:]]

    def count(self) -> int:
        """Count total entries in journal."""
        return sum(1 for _ in self._iter_raw())

    def stats(self) -> dict[str, Any]:
        """Get journal statistics.

        Returns:
            Dict with total entries and breakdowns by operation and entity type
        """
        operations: Counter[str] = Counter()
        entity_types: Counter[str] = Counter()
        last_timestamp = None

        for data in self._iter_raw():
            operations[data.get("operation", "unknown")] += 1
            entity_types[data.get("entity_type", "unknown")] += 1
            last_timestamp = data.get("timestamp", last_timestamp)

        return {
            "total_entries": sum(operations.values()),
            "operations": dict(operations),
            "entity_types": dict(entity_types),
            "last_entry_at": last_timestamp,
        }


__all__ = ["AuditJournal"]
