"""Reconciliation of pending ledger anchors.

Polls the ledger node for every pending LedgerRecord and moves it to
``confirmed`` (setting ``confirmed_at``) or ``failed``. Records the node does
not know about are marked failed, which frees the logical change to be
anchored again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..domain.entities import LedgerStatus
from ..persistence.store import utc_now
from .client import LedgerClient, LedgerClientError, LedgerNotFoundError

if TYPE_CHECKING:
    from ..repositories.ledger_records import LedgerRecordRepository

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Summary of one reconciliation pass."""

    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "still_pending": self.still_pending,
            "errors": list(self.errors),
        }


class LedgerReconciler:
    """Moves pending LedgerRecords to their final state."""

    def __init__(self, records: LedgerRecordRepository, client: LedgerClient) -> None:
        self._records = records
        self._client = client

    def reconcile_pending(self, limit: int = 50) -> ReconcileReport:
        """Check up to ``limit`` pending records, oldest first.

        Node errors on one record are recorded in the report and do not stop
        the pass.
        """
        report = ReconcileReport()
        for record in self._records.get_pending(limit):
            report.checked += 1
            try:
                tx = self._client.get_transaction(record.transaction_hash)
            except LedgerNotFoundError:
                logger.warning(
                    f"Ledger node does not know {record.transaction_hash} "
                    f"(record #{record.id}), marking failed"
                )
                self._records.update_status(record.id, LedgerStatus.FAILED.value)
                report.failed += 1
                continue
            except LedgerClientError as e:
                logger.warning(f"Could not check ledger record #{record.id}: {e}")
                report.errors.append(f"#{record.id}: {e}")
                report.still_pending += 1
                continue

            if tx.status == LedgerStatus.CONFIRMED.value:
                self._records.update_status(
                    record.id,
                    LedgerStatus.CONFIRMED.value,
                    confirmed_at=tx.confirmed_at or utc_now(),
                    block_height=tx.block_height,
                )
                report.confirmed += 1
            elif tx.status == LedgerStatus.FAILED.value:
                self._records.update_status(record.id, LedgerStatus.FAILED.value)
                report.failed += 1
            else:
                report.still_pending += 1

        if report.checked:
            logger.info(
                f"Reconciled {report.checked} ledger record(s): "
                f"{report.confirmed} confirmed, {report.failed} failed, "
                f"{report.still_pending} pending"
            )
        return report


__all__ = ["LedgerReconciler", "ReconcileReport"]
