"""
Orphan Reconciliation

An orphan is a ledger receipt whose store insert never committed: the
ledger accepted the operation, then the record store failed past its retry
budget. The ledger write cannot be undone, so the orphan is logged and a
later reconciliation pass inserts the missing record.

The log is JSON lines, one OrphanEntry per line. Without a path it is kept
in memory (development and tests).
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Optional, TYPE_CHECKING

from pydantic import BaseModel, Field

from ..observability import get_logger
from ..schemas import NewEvidence, Receipt
from .errors import LedgerError, StoreError
from .ledger import LedgerClient

if TYPE_CHECKING:
    from ..db.store import RecordStore

logger = get_logger(__name__)


class OrphanEntry(BaseModel):
    """A receipt with no matching store record."""
    receipt: Receipt
    intended_record: NewEvidence
    cause: str
    logged_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OrphanLog:
    """Append-only log of orphaned receipts."""

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else None
        self._memory: list[OrphanEntry] = []
        self._lock = Lock()

    @classmethod
    def from_env(cls) -> "OrphanLog":
        """EVIDENCECHAIN_RECONCILIATION_LOG: path of the JSON lines file (unset: in memory)."""
        path = os.getenv("EVIDENCECHAIN_RECONCILIATION_LOG", "")
        return cls(Path(path) if path else None)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def append(self, receipt: Receipt, intended_record: NewEvidence, cause: Exception) -> OrphanEntry:
        entry = OrphanEntry(receipt=receipt, intended_record=intended_record, cause=str(cause))
        with self._lock:
            if self._path is None:
                self._memory.append(entry)
            else:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(entry.model_dump_json() + "\n")

        logger.error(
            "Orphaned ledger receipt logged",
            transaction_id=receipt.transaction_id,
            request_id=receipt.request_id,
            cause=str(cause),
        )
        return entry

    def entries(self) -> list[OrphanEntry]:
        with self._lock:
            if self._path is None:
                return list(self._memory)
            if not self._path.exists():
                return []
            with self._path.open("r", encoding="utf-8") as f:
                return [OrphanEntry.model_validate_json(line) for line in f if line.strip()]

    def remove(self, transaction_ids: set[str]) -> None:
        """Drop resolved orphans, keeping anything appended meanwhile."""
        with self._lock:
            if self._path is None:
                self._memory = [e for e in self._memory if e.receipt.transaction_id not in transaction_ids]
                return
            if not self._path.exists():
                return
            with self._path.open("r", encoding="utf-8") as f:
                entries = [OrphanEntry.model_validate_json(line) for line in f if line.strip()]
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                for entry in entries:
                    if entry.receipt.transaction_id not in transaction_ids:
                        f.write(entry.model_dump_json() + "\n")
            tmp.replace(self._path)

    def __len__(self) -> int:
        return len(self.entries())


class ReconciliationReport(BaseModel):
    inserted: list[str] = Field(default_factory=list)
    already_present: list[str] = Field(default_factory=list)
    unconfirmed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)

    @property
    def remaining(self) -> int:
        return len(self.unconfirmed) + len(self.failed)


def reconcile(log: OrphanLog, ledger: LedgerClient, store: "RecordStore") -> ReconciliationReport:
    """
    Insert the missing record for every orphan the ledger confirms.

    Orphans the ledger cannot confirm yet, or whose insert fails again,
    stay in the log for the next pass. Re-running is safe: an orphan whose
    receipt is already referenced by a record is dropped without inserting.
    """
    report = ReconciliationReport()

    for entry in log.entries():
        transaction_id = entry.receipt.transaction_id

        if store.find_evidence_by_receipt(transaction_id) is not None:
            report.already_present.append(transaction_id)
            continue

        try:
            confirmed = ledger.get_receipt(transaction_id)
        except LedgerError as e:
            logger.warning("Ledger unavailable during reconciliation",
                           transaction_id=transaction_id, error=str(e))
            confirmed = None

        if confirmed is None:
            report.unconfirmed.append(transaction_id)
            continue

        try:
            record = store.insert_evidence(entry.intended_record)
        except StoreError as e:
            logger.error("Reconciliation insert failed", transaction_id=transaction_id, error=str(e))
            report.failed.append(transaction_id)
            continue

        report.inserted.append(transaction_id)
        logger.info("Orphan reconciled", transaction_id=transaction_id, record_id=str(record.id))

    log.remove(set(report.inserted) | set(report.already_present))
    return report
