"""Entity repositories - one per entity family."""

from .agent_results import AgentResultRepository
from .agents import AgentRepository
from .base import BaseRepository
from .citizen_requests import CitizenRequestRepository
from .ledger_records import LedgerRecordRepository

__all__ = [
    "AgentRepository",
    "AgentResultRepository",
    "BaseRepository",
    "CitizenRequestRepository",
    "LedgerRecordRepository",
]
