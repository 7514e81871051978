"""Base repository - the write pipeline shared by every entity family.

Every mutating call runs the same fixed sequence:

    1. validate the command (ValidationError, nothing written)
    2. write through the persistence port (PersistenceError propagates)
    3. dispatch one side-effect job: audit append, then ledger anchor
    4. invalidate the affected cache keys
    5. return the persisted entity

Failures in step 3 never reach the caller; they are retried and logged by
the dispatcher.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from functools import partial
from typing import Any, Generic, TypeVar

from ..cache import ALL_KEY, CacheBackend
from ..domain.entities import Entity
from ..errors import ValidationError
from ..ledger.anchor import AnchorRequest, LedgerAnchorService
from ..persistence.journal import AuditJournal
from ..persistence.store import PersistencePort
from ..service.dispatcher import Dispatcher, SideEffect
from ..text import TextPolicy, normalize_fields

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

# Columns managed by the store itself
SYSTEM_FIELDS = frozenset({"id", "created_at", "updated_at"})


@dataclass
class AuditNote:
    """An audit entry to append once the write is committed."""

    operation: str
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)


class BaseRepository(Generic[E]):
    """Persistence, audit, anchoring and caching for one entity type.

    Subclasses set ``entity_cls`` and ``table`` and override the hooks
    (``_prepare_create``, ``_prepare_update``, ``_describe``) where the
    entity has its own invariants.
    """

    entity_cls: type[E]
    table: str
    text_fields: tuple[str, ...] = ()
    read_only_fields: frozenset[str] = frozenset()

    def __init__(
        self,
        store: PersistencePort,
        journal: AuditJournal,
        cache: CacheBackend,
        dispatcher: Dispatcher,
        *,
        anchor: LedgerAnchorService | None = None,
        text_policy: TextPolicy = TextPolicy.STRIP,
        actor_id: int | None = None,
    ) -> None:
        self._store = store
        self._journal = journal
        self._cache = cache
        self._dispatcher = dispatcher
        self._anchor = anchor
        self._text_policy = text_policy
        self._actor_id = actor_id

    @property
    def entity_type(self) -> str:
        return self.entity_cls.type_tag

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def _to_entity(self, row: dict[str, Any]) -> E:
        return self.entity_cls.from_row(row)

    def get_all(self) -> list[E]:
        """All entities, oldest first. Cached as one listing per type."""
        entities = self._cache.get_or_load(
            self.entity_type,
            ALL_KEY,
            lambda: [self._to_entity(row) for row in self._store.select(self.table)],
        )
        return list(entities or [])

    def get_by_id(self, entity_id: int) -> E | None:
        """Read-through lookup of one entity."""
        return self._cache.get_or_load(
            self.entity_type,
            entity_id,
            lambda: self._load(entity_id),
        )

    def _load(self, entity_id: int) -> E | None:
        row = self._store.get(self.table, entity_id)
        return self._to_entity(row) if row is not None else None

    def _find(self, where: dict[str, Any], **options: Any) -> list[E]:
        """Uncached filtered read straight from the store."""
        return [self._to_entity(row) for row in self._store.select(self.table, where, **options)]

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def _check_fields(self, data: dict[str, Any], *, allow_read_only: bool = False) -> None:
        writable = {f.name for f in fields(self.entity_cls)} - SYSTEM_FIELDS
        if not allow_read_only:
            writable -= self.read_only_fields
        unknown = set(data) - writable
        if unknown:
            raise ValidationError(
                f"Unknown or read-only field(s) for {self.entity_type}: "
                f"{', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )

    def _normalize(self, data: dict[str, Any]) -> dict[str, Any]:
        return normalize_fields(data, self.text_fields, self._text_policy, self.entity_type)

    def _prepare_create(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate and normalize a create command. Returns the row values."""
        self._check_fields(data)
        return self._normalize(data)

    def _prepare_update(self, current: E, patch: dict[str, Any]) -> dict[str, Any]:
        """Validate and normalize an update patch. Returns the changed values."""
        self._check_fields(patch)
        return self._normalize(patch)

    def _describe(self, operation: str, entity: E, changes: dict[str, Any]) -> str:
        return f"{operation} {self.entity_type} #{entity.id}"

    def _anchor_request(
        self, operation: str, entity: E, changes: dict[str, Any]
    ) -> AnchorRequest | None:
        """The ledger submission for this change, if the entity is anchorable."""
        return None

    def _parents(self, values: dict[str, Any]) -> list[tuple[str, str, int]]:
        """Rows a new entity points at, as ``(field, table, id)``."""
        return []

    def prepare_create(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate a create command without writing anything."""
        return self._prepare_create(dict(data))

    def insert_prepared(
        self,
        values: dict[str, Any],
        parents: list[tuple[str, str, int]] | None = None,
    ) -> dict[str, Any]:
        """Insert validated values once every referenced row is confirmed to exist.

        The existence checks and the insert share one store transaction, so
        a guarded delete of a parent cannot slip in between them.

        Raises:
            ValidationError: A referenced row is gone, nothing written
        """
        if parents is None:
            parents = self._parents(values)
        with self._store.atomic():
            for field_name, table, row_id in parents:
                if self._store.get(table, row_id) is None:
                    raise ValidationError(
                        f"Referenced {table} #{row_id} does not exist", field=field_name
                    )
            return self._store.insert(self.table, values)

    def announce_create(self, row: dict[str, Any], values: dict[str, Any]) -> E:
        """Dispatch the side effects of a committed insert."""
        entity = self._to_entity(row)
        self._after_write(
            "create",
            entity.id,
            self._describe("create", entity, values),
            metadata={"fields": sorted(values)},
            anchor_request=self._anchor_request("create", entity, values),
        )
        return entity

    def create(self, data: dict[str, Any]) -> E:
        """Persist a new entity and dispatch its side effects.

        Raises:
            ValidationError: Invalid input, nothing written
            PersistenceError: Store failure, nothing written
        """
        values = self.prepare_create(data)
        return self.announce_create(self.insert_prepared(values), values)

    def update(self, entity_id: int, patch: dict[str, Any]) -> E | None:
        """Apply a partial update. Returns None if the entity does not exist.

        Raises:
            ValidationError: Invalid patch, nothing written
            PersistenceError: Store failure, nothing written
        """
        current = self._load(entity_id)
        if current is None:
            return None

        values = self._prepare_update(current, dict(patch))
        row = self._store.update(self.table, entity_id, values)
        if row is None:
            # Deleted between read and write
            self._invalidate(entity_id)
            return None

        entity = self._to_entity(row)
        self._after_write(
            "update",
            entity_id,
            self._describe("update", entity, values),
            metadata={"fields": sorted(values)},
            anchor_request=self._anchor_request("update", entity, values),
        )
        return entity

    def _count_references(self, entity_id: int) -> dict[str, int]:
        """Inbound references blocking a delete, by referencing table."""
        return {}

    def _guarded_delete(self, entity_id: int) -> bool:
        """Delete unless other records still reference the entity.

        Returns:
            True if deleted; False if absent or still referenced
        """
        # Count and delete in one transaction: no reference can be added in between
        with self._store.atomic():
            if self._store.get(self.table, entity_id) is None:
                return False

            references = {k: v for k, v in self._count_references(entity_id).items() if v}
            if references:
                summary = ", ".join(f"{count} {table}" for table, count in references.items())
                logger.info(f"Skipping delete of {self.entity_type} #{entity_id}: referenced by {summary}")
                return False

            deleted = self._store.delete(self.table, entity_id)

        if deleted:
            self._after_write(
                "delete",
                entity_id,
                f"Deleted {self.entity_type} #{entity_id}",
            )
        return deleted

    # -----------------------------------------------------------------------
    # Side effects
    # -----------------------------------------------------------------------

    def _after_write(
        self,
        operation: str,
        entity_id: int,
        description: str,
        metadata: dict[str, Any] | None = None,
        anchor_request: AnchorRequest | None = None,
    ) -> None:
        """Dispatch audit then ledger steps, then invalidate the cache."""
        self._dispatch_side_effects(
            entity_id,
            [AuditNote(operation, description, metadata or {})],
            [anchor_request] if anchor_request is not None else [],
        )

    def _dispatch_side_effects(
        self,
        entity_id: int,
        audits: list[AuditNote],
        anchors: list[AnchorRequest],
    ) -> None:
        """Enqueue one job for a write: every audit entry, then every anchor."""
        steps = [
            SideEffect(
                f"audit:{note.operation}",
                partial(
                    self._journal.append,
                    note.operation,
                    self.entity_type,
                    entity_id,
                    note.description,
                    note.metadata,
                    self._actor_id,
                ),
            )
            for note in audits
        ]
        if self._anchor is not None:
            steps.extend(
                SideEffect(f"ledger:{request.action}", partial(self._anchor.anchor, request))
                for request in anchors
            )

        self._dispatcher.dispatch(
            f"{self.entity_type}#{entity_id} {audits[0].operation}",
            steps,
            shard_key=f"{self.entity_type}:{entity_id}",
        )
        self._invalidate(entity_id)

    def _invalidate(self, entity_id: int) -> None:
        self._cache.invalidate(self.entity_type, entity_id)
        self._cache.invalidate(self.entity_type, ALL_KEY)


__all__ = ["AuditNote", "BaseRepository", "SYSTEM_FIELDS"]
