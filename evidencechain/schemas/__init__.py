# Canonical Schemas for the Evidence Pipeline
# These define the contract between callers, the ledger and the store.

from .records import (
    CaseRecord,
    EvidenceRecord,
    Metadata,
    NewCase,
    NewEvidence,
    CASE_NUMBER_FIELD,
    NAME_FIELD,
    DESCRIPTION_FIELD,
)
from .ledger import (
    LedgerEntry,
    OperationPayload,
    OperationType,
    Receipt,
    ReceiptStatus,
)
from .events import ChangeEvent, ChangeKind, RecordType

__all__ = [
    # Records
    "CaseRecord",
    "EvidenceRecord",
    "Metadata",
    "NewCase",
    "NewEvidence",
    "CASE_NUMBER_FIELD",
    "NAME_FIELD",
    "DESCRIPTION_FIELD",
    # Ledger
    "LedgerEntry",
    "OperationPayload",
    "OperationType",
    "Receipt",
    "ReceiptStatus",
    # Change feed
    "ChangeEvent",
    "ChangeKind",
    "RecordType",
]
