"""Ledger layer - Anchor client, anchoring service and reconciliation."""

from .anchor import AnchorRequest, LedgerAnchorService
from .client import (
    LedgerClient,
    LedgerNodeClient,
    SimulatedLedgerClient,
    SubmitReceipt,
    TransactionStatus,
    content_digest,
)
from .reconciler import LedgerReconciler, ReconcileReport

__all__ = [
    "AnchorRequest",
    "LedgerAnchorService",
    "LedgerClient",
    "LedgerNodeClient",
    "LedgerReconciler",
    "ReconcileReport",
    "SimulatedLedgerClient",
    "SubmitReceipt",
    "TransactionStatus",
    "content_digest",
]
