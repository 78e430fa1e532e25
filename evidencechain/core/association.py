"""
Evidence/Case Association

Evidence is never foreign-keyed to a case. The link is computed at read
time from the evidence metadata:

1. metadata["case_number"] equals the case number (exact match), or
2. the case number appears, case-sensitively, inside metadata["name"]
   or metadata["description"].

The second rule is loose on purpose: older submissions only mention the
case number in free text. It can over-match (CR-1 matches CR-10).
"""

from typing import TYPE_CHECKING

from ..schemas import CASE_NUMBER_FIELD, DESCRIPTION_FIELD, NAME_FIELD, EvidenceRecord

if TYPE_CHECKING:
    from ..db.store import RecordStore


def is_related(evidence: EvidenceRecord, case_number: str) -> bool:
    if not case_number:
        return False

    if evidence.metadata.get(CASE_NUMBER_FIELD) == case_number:
        return True

    for field_name in (NAME_FIELD, DESCRIPTION_FIELD):
        text = evidence.metadata.get(field_name)
        if isinstance(text, str) and case_number in text:
            return True

    return False


def related_evidence(store: "RecordStore", case_number: str) -> list[EvidenceRecord]:
    """
    Evidence associated with a case, in listing order.

    Raises:
        NotFoundError: no case with this number
    """
    store.get_case_by_number(case_number)
    return [record for record in store.list_evidence() if is_related(record, case_number)]
