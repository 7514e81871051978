"""Ledger anchoring for anchorable entity changes.

One logical change is identified by ``(entity_type, entity_id, action,
content_digest)``. At most one active (pending or confirmed) LedgerRecord
exists per logical change: a repeated submission, for example a side-effect
retry after the node answered but before the record was written, reuses the
existing transaction instead of anchoring twice. A failed record does not
count, so a change whose anchor failed can be anchored again.

Changes of an entity deleted before its anchor step runs are not submitted,
and no record is written for an entity that no longer exists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..cache import ALL_KEY, CacheBackend
from ..domain.entities import ENTITY_TABLES, EntityType, LedgerRecord
from ..errors import ValidationError
from ..persistence.store import PersistencePort
from ..service.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .client import LedgerClient, content_digest

if TYPE_CHECKING:
    from ..repositories.ledger_records import LedgerRecordRepository

logger = logging.getLogger(__name__)

# Entity types whose rows carry the denormalised ``blockchain_hash`` column
OWNER_TABLES: dict[str, str] = {
    EntityType.CITIZEN_REQUEST.value: "citizen_requests",
}


@dataclass(slots=True)
class AnchorRequest:
    """A change to anchor on the ledger."""

    entity_type: str
    entity_id: int
    action: str
    title: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def digest(self) -> str:
        """Digest identifying this logical change."""
        return content_digest({"content": self.content, "metadata": self.metadata})

    @property
    def label(self) -> str:
        return f"{self.entity_type}#{self.entity_id} {self.action}"


class LedgerAnchorService:
    """Submits digests through the ledger client and records the outcome.

    Example:
        service = LedgerAnchorService(store, cache, client, records)
        record = service.anchor(AnchorRequest(
            entity_type="citizen_request",
            entity_id=42,
            action="create",
            title="citizen_request #42: create",
            content="Broken street light on Main St.",
        ))
    """

    def __init__(
        self,
        store: PersistencePort,
        cache: CacheBackend,
        client: LedgerClient,
        records: LedgerRecordRepository,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._client = client
        self._records = records
        self._breaker = breaker or CircuitBreaker(
            "ledger-node",
            CircuitBreakerConfig(failure_threshold=5, timeout_seconds=30.0),
        )

    @property
    def client(self) -> LedgerClient:
        return self._client

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def anchor(self, request: AnchorRequest) -> LedgerRecord | None:
        """Anchor a change, or return the active record already anchoring it.

        Returns None without contacting the node when the entity was deleted
        before the anchor step ran.

        Raises:
            LedgerSubmissionFailure: If the node rejected or did not answer
            PersistenceError: If the local LedgerRecord could not be written
        """
        owner_table = ENTITY_TABLES.get(request.entity_type)
        if owner_table is not None and self._store.get(owner_table, request.entity_id) is None:
            logger.info(f"Skipping anchor of {request.label}: entity no longer exists")
            return None

        digest = request.digest
        existing = self._records.find_active(
            request.entity_type, request.entity_id, request.action, digest
        )
        if existing is not None:
            logger.info(
                f"Duplicate anchor suppressed for {request.label}, "
                f"reusing {existing.transaction_hash}"
            )
            self._write_back(request, existing.transaction_hash)
            return existing

        receipt = self._breaker.call(
            lambda: self._client.submit(
                request.entity_type,
                request.entity_id,
                request.action,
                request.title,
                request.content,
                request.metadata,
            )
        )

        try:
            record = self._records.record_anchor(request, receipt.transaction_hash, digest)
        except ValidationError:
            logger.warning(
                f"{request.label} was deleted while anchoring; "
                f"transaction {receipt.transaction_hash} has no local record"
            )
            return None
        self._write_back(request, receipt.transaction_hash)

        logger.info(f"Anchored {request.label} as {receipt.transaction_hash}")
        return record

    def _write_back(self, request: AnchorRequest, transaction_hash: str) -> None:
        """Store the hash on the owning entity without auditing it as a user change."""
        table = OWNER_TABLES.get(request.entity_type)
        if table is None:
            return

        try:
            row = self._store.update(
                table, request.entity_id, {"blockchain_hash": transaction_hash}, touch=False
            )
        finally:
            self._cache.invalidate(request.entity_type, request.entity_id)
            self._cache.invalidate(request.entity_type, ALL_KEY)
        if row is None:
            logger.info(f"{request.label}: entity gone before hash write-back")

    def health(self) -> dict[str, Any]:
        return self._breaker.get_stats()


__all__ = ["AnchorRequest", "LedgerAnchorService", "OWNER_TABLES"]
