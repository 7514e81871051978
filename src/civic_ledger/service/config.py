"""Configuration primitives for the pipeline service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from ..text import TextPolicy


@dataclass(slots=True)
class PipelineConfig:
    """Runtime configuration for the pipeline service.

    Configuration Sources (priority order):
    1. Direct constructor arguments
    2. Environment variables (CIVIC_*)
    3. Default values

    Attributes:
        port: Service port (default: 5050)
        db_path: SQLite database path (default: data/civic.db)
        journal_path: Audit journal JSONL path (default: data/audit_journal.jsonl)
        cache_ttl_seconds: Entity cache TTL (default: 300)
        cache_max_size: Entity cache capacity (default: 10000)
        ledger_url: Ledger node base URL; None selects the simulated ledger
        ledger_api_key: Bearer key for the ledger node
        ledger_timeout: Per-request timeout for the ledger node (seconds)
        ledger_max_retries: HTTP attempts per ledger call
        dispatch_workers: Side-effect worker threads (0 = run inline)
        dispatch_queue_size: Capacity of each worker queue
        enqueue_timeout: Longest a write waits for queue space (seconds)
        side_effect_attempts: Attempts per side-effect step
        side_effect_base_delay: First retry delay for side effects (seconds)
        reconcile_interval: Seconds between reconcile passes (0 = disabled)
        reconcile_batch: Pending records checked per pass
        text_policy: What to do with malformed text (strip or reject)
        system_actor_id: Actor recorded for pipeline-initiated entries
    """

    port: int = 5050
    db_path: str = "data/civic.db"
    journal_path: str = "data/audit_journal.jsonl"
    cache_ttl_seconds: float = 300.0
    cache_max_size: int = 10000
    ledger_url: str | None = None
    ledger_api_key: str | None = None
    ledger_timeout: float = 10.0
    ledger_max_retries: int = 3
    dispatch_workers: int = 2
    dispatch_queue_size: int = 1000
    enqueue_timeout: float = 0.05
    side_effect_attempts: int = 3
    side_effect_base_delay: float = 0.5
    reconcile_interval: float = 0.0
    reconcile_batch: int = 50
    text_policy: TextPolicy = TextPolicy.STRIP
    system_actor_id: int = 1
    cors_origins: list[str] = field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """Create configuration from environment variables.

        Optional:
            CIVIC_PORT: Service port (default: 5050)
            CIVIC_DB_PATH: SQLite database path
            CIVIC_JOURNAL_PATH: Audit journal path
            CIVIC_CACHE_TTL: Entity cache TTL in seconds
            CIVIC_CACHE_MAX_SIZE: Entity cache capacity
            CIVIC_LEDGER_URL: Ledger node URL (unset = simulated ledger)
            CIVIC_LEDGER_API_KEY: Ledger node API key
            CIVIC_LEDGER_TIMEOUT: Ledger request timeout in seconds
            CIVIC_LEDGER_MAX_RETRIES: Ledger HTTP attempts
            CIVIC_DISPATCH_WORKERS: Side-effect workers (0 = inline)
            CIVIC_DISPATCH_QUEUE_SIZE: Queue capacity per worker
            CIVIC_ENQUEUE_TIMEOUT: Max wait for queue space in seconds
            CIVIC_SIDE_EFFECT_ATTEMPTS: Attempts per side-effect step
            CIVIC_RECONCILE_INTERVAL: Reconcile period in seconds (0 = off)
            CIVIC_TEXT_POLICY: 'strip' or 'reject'
            CIVIC_SYSTEM_ACTOR_ID: Actor id for pipeline-initiated entries
            CIVIC_CORS_ORIGINS: Comma-separated list of allowed origins
        """
        config = cls(
            port=int(os.environ.get("CIVIC_PORT", "5050")),
            db_path=os.environ.get("CIVIC_DB_PATH", "data/civic.db"),
            journal_path=os.environ.get("CIVIC_JOURNAL_PATH", "data/audit_journal.jsonl"),
            cache_ttl_seconds=float(os.environ.get("CIVIC_CACHE_TTL", "300")),
            cache_max_size=int(os.environ.get("CIVIC_CACHE_MAX_SIZE", "10000")),
            ledger_url=os.environ.get("CIVIC_LEDGER_URL") or None,
            ledger_api_key=os.environ.get("CIVIC_LEDGER_API_KEY") or None,
            ledger_timeout=float(os.environ.get("CIVIC_LEDGER_TIMEOUT", "10")),
            ledger_max_retries=int(os.environ.get("CIVIC_LEDGER_MAX_RETRIES", "3")),
            dispatch_workers=int(os.environ.get("CIVIC_DISPATCH_WORKERS", "2")),
            dispatch_queue_size=int(os.environ.get("CIVIC_DISPATCH_QUEUE_SIZE", "1000")),
            enqueue_timeout=float(os.environ.get("CIVIC_ENQUEUE_TIMEOUT", "0.05")),
            side_effect_attempts=int(os.environ.get("CIVIC_SIDE_EFFECT_ATTEMPTS", "3")),
            reconcile_interval=float(os.environ.get("CIVIC_RECONCILE_INTERVAL", "0")),
            text_policy=TextPolicy(os.environ.get("CIVIC_TEXT_POLICY", "strip").lower()),
            system_actor_id=int(os.environ.get("CIVIC_SYSTEM_ACTOR_ID", "1")),
        )

        origins = os.environ.get("CIVIC_CORS_ORIGINS", "")
        if origins:
            config.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]

        return config


__all__ = ["PipelineConfig"]
