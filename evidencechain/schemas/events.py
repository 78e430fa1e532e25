"""
Change Feed Events

The pipeline never mutates or deletes, so the only event is an insert.
"""

from enum import Enum
from typing import Union

from pydantic import BaseModel, Field

from .records import CaseRecord, EvidenceRecord


class RecordType(str, Enum):
    EVIDENCE = "evidence"
    CASE = "case"


class ChangeKind(str, Enum):
    INSERTED = "inserted"


class ChangeEvent(BaseModel):
    """A committed insert, delivered to subscribers in commit order."""
    kind: ChangeKind = Field(default=ChangeKind.INSERTED)
    record_type: RecordType
    record: Union[EvidenceRecord, CaseRecord]

    @property
    def record_id(self):
        return self.record.id
