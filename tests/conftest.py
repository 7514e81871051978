"""Test configuration for pytest."""

from collections import Counter

import pytest

from civic_ledger.cache import EntityCache
from civic_ledger.ledger.client import SimulatedLedgerClient
from civic_ledger.persistence.journal import AuditJournal
from civic_ledger.persistence.store import SQLiteStore
from civic_ledger.service.config import PipelineConfig
from civic_ledger.service.core import Pipeline
from civic_ledger.service.dispatcher import InlineDispatcher
from civic_ledger.service.retry import RetryConfig


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "conformance: API contract conformance tests")
    config.addinivalue_line("markers", "slow: Slow running tests")


class CountingStore(SQLiteStore):
    """SQLiteStore that counts calls, to observe cache hits."""

    def __init__(self, *args, **kwargs):
        self.calls: Counter = Counter()
        super().__init__(*args, **kwargs)

    def get(self, table, row_id):
        self.calls[("get", table)] += 1
        return super().get(table, row_id)

    def select(self, table, where=None, **options):
        self.calls[("select", table)] += 1
        return super().select(table, where, **options)


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store per test."""
    store = CountingStore(tmp_path / "civic.db")
    yield store
    store.close()


@pytest.fixture
def journal(tmp_path):
    return AuditJournal(tmp_path / "audit_journal.jsonl", default_actor_id=1)


@pytest.fixture
def cache():
    return EntityCache(max_size=1000, default_ttl=300)


@pytest.fixture
def retry_config():
    """Fast retries: two attempts, no sleeping."""
    return RetryConfig(max_attempts=2, base_delay=0.0, jitter=False)


@pytest.fixture
def dispatcher(retry_config):
    return InlineDispatcher(retry_config=retry_config, sleep=lambda _: None)


@pytest.fixture
def ledger_client():
    return SimulatedLedgerClient()


@pytest.fixture
def config(tmp_path):
    return PipelineConfig(
        db_path=str(tmp_path / "civic.db"),
        journal_path=str(tmp_path / "audit_journal.jsonl"),
        dispatch_workers=0,
        side_effect_attempts=2,
        side_effect_base_delay=0.0,
        cors_origins=["http://testserver"],
    )


@pytest.fixture
def pipeline(config, store, journal, cache, dispatcher, ledger_client):
    """Pipeline with inline side effects and the simulated ledger."""
    return Pipeline(
        config,
        store=store,
        journal=journal,
        cache=cache,
        dispatcher=dispatcher,
        ledger_client=ledger_client,
    )
