"""Core pipeline wiring - builds every component from a PipelineConfig."""

from __future__ import annotations

import logging
from typing import Any

from ..cache import CacheBackend, EntityCache
from ..ledger.anchor import LedgerAnchorService
from ..ledger.client import LedgerClient, LedgerNodeClient, SimulatedLedgerClient
from ..ledger.reconciler import LedgerReconciler, ReconcileReport
from ..persistence.journal import AuditJournal
from ..persistence.store import PersistencePort, SQLiteStore
from ..repositories import (
    AgentRepository,
    AgentResultRepository,
    CitizenRequestRepository,
    LedgerRecordRepository,
)
from .circuit_breaker import CircuitBreaker
from .config import PipelineConfig
from .dispatcher import Dispatcher, InlineDispatcher, SideEffectDispatcher
from .retry import RetryConfig

logger = logging.getLogger(__name__)


def build_retry_config(config: PipelineConfig) -> RetryConfig:
    return RetryConfig(
        max_attempts=max(1, config.side_effect_attempts),
        base_delay=config.side_effect_base_delay,
    )


def build_dispatcher(config: PipelineConfig) -> Dispatcher:
    """Threaded dispatcher, or inline when ``dispatch_workers`` is 0."""
    retry_config = build_retry_config(config)
    if config.dispatch_workers <= 0:
        return InlineDispatcher(retry_config=retry_config)
    return SideEffectDispatcher(
        workers=config.dispatch_workers,
        queue_size=config.dispatch_queue_size,
        enqueue_timeout=config.enqueue_timeout,
        retry_config=retry_config,
    )


def build_ledger_client(config: PipelineConfig) -> LedgerClient:
    """HTTP client for the configured node, or the simulated ledger."""
    if not config.ledger_url:
        logger.warning("No ledger node configured; anchoring to the simulated ledger")
        return SimulatedLedgerClient()
    return LedgerNodeClient(
        config.ledger_url,
        api_key=config.ledger_api_key,
        timeout=config.ledger_timeout,
        max_retries=config.ledger_max_retries,
    )


class Pipeline:
    """Container for the store, journal, cache, dispatcher and repositories.

    Every collaborator can be injected; anything not given is built from
    the config.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        store: PersistencePort | None = None,
        journal: AuditJournal | None = None,
        cache: CacheBackend | None = None,
        dispatcher: Dispatcher | None = None,
        ledger_client: LedgerClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.config = config
        self.store = store if store is not None else SQLiteStore(config.db_path)
        self.journal = journal or AuditJournal(
            config.journal_path, default_actor_id=config.system_actor_id
        )
        self.cache = cache if cache is not None else EntityCache(
            max_size=config.cache_max_size, default_ttl=config.cache_ttl_seconds
        )
        self.dispatcher = dispatcher or build_dispatcher(config)
        self.ledger_client = ledger_client or build_ledger_client(config)

        common: dict[str, Any] = {
            "text_policy": config.text_policy,
            "actor_id": config.system_actor_id,
        }
        parts = (self.store, self.journal, self.cache, self.dispatcher)

        self.ledger_records = LedgerRecordRepository(*parts, **common)
        self.anchor = LedgerAnchorService(
            self.store, self.cache, self.ledger_client, self.ledger_records, breaker=breaker
        )
        self.agents = AgentRepository(*parts, **common)
        self.agent_results = AgentResultRepository(*parts, **common)
        self.citizen_requests = CitizenRequestRepository(
            *parts, anchor=self.anchor, agent_results=self.agent_results, **common
        )
        self.reconciler = LedgerReconciler(self.ledger_records, self.ledger_client)

    def start(self) -> None:
        if isinstance(self.dispatcher, SideEffectDispatcher):
            self.dispatcher.start()

    def reconcile(self, limit: int | None = None) -> ReconcileReport:
        return self.reconciler.reconcile_pending(limit or self.config.reconcile_batch)

    def health(self) -> dict[str, Any]:
        """Dependency checks for the health endpoint."""
        checks: dict[str, Any] = {}
        healthy = True

        try:
            ping = getattr(self.store, "ping", None)
            if ping is not None:
                ping()
            checks["database"] = {"status": "healthy"}
        except Exception as e:
            checks["database"] = {"status": "unhealthy", "error": str(e)}
            healthy = False

        journal_dir = self.journal.journal_path.parent
        if journal_dir.is_dir():
            checks["audit_journal"] = {"status": "healthy", "path": str(self.journal.journal_path)}
        else:
            checks["audit_journal"] = {"status": "unhealthy", "error": f"{journal_dir} missing"}
            healthy = False

        checks["dispatcher"] = {"status": "healthy", **self.dispatcher.stats()}

        breaker = self.anchor.health()
        checks["ledger"] = {
            "status": "healthy" if breaker["state"] == "closed" else "degraded",
            "mode": "simulated" if isinstance(self.ledger_client, SimulatedLedgerClient) else "node",
            "breaker": breaker,
        }

        stats = getattr(self.cache, "stats", None)
        if stats is not None:
            checks["cache"] = {"status": "healthy", **stats()}

        return {"healthy": healthy, "checks": checks}

    def shutdown(self, wait: bool = True) -> None:
        """Drain side effects, then release the node client and the store."""
        if isinstance(self.dispatcher, SideEffectDispatcher):
            self.dispatcher.shutdown(wait=wait)
        close_client = getattr(self.ledger_client, "close", None)
        if close_client is not None:
            close_client()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


__all__ = ["Pipeline", "build_dispatcher", "build_ledger_client", "build_retry_config"]
