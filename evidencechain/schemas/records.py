"""
Canonical Record Schemas

Records are inserted once and never edited.
The store assigns id and created_at; everything else comes from the caller.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, JsonValue


# Metadata is an open document: evidence types evolve without schema churn.
Metadata = dict[str, JsonValue]

# Metadata keys consulted by the association lookup
CASE_NUMBER_FIELD = "case_number"
NAME_FIELD = "name"
DESCRIPTION_FIELD = "description"


class NewEvidence(BaseModel):
    """Evidence about to be persisted, already backed by a ledger receipt."""
    model_config = ConfigDict(frozen=True)

    content_hash: str = Field(
        ...,
        min_length=1,
        description="Content-addressed pointer to the payload (e.g. an IPFS CID)"
    )
    metadata: Metadata = Field(
        default_factory=dict,
        description="Open key/value document describing the evidence"
    )
    submitter_identity: str = Field(
        ...,
        description="Address recovered from the submitter's signature"
    )
    ledger_receipt: str = Field(
        ...,
        min_length=1,
        description="Transaction identifier of the accepted ledger operation"
    )


class EvidenceRecord(NewEvidence):
    """
    A persisted evidence record.

    Rules:
    - ledger_receipt references an operation accepted BEFORE this row existed
    - No UPDATE, no DELETE
    """
    id: UUID = Field(
        ...,
        description="Store-assigned unique identifier"
    )
    created_at: datetime = Field(
        ...,
        description="Store-assigned commit time, non-decreasing per insert"
    )

    @property
    def case_number(self) -> Optional[str]:
        value = self.metadata.get(CASE_NUMBER_FIELD)
        return value if isinstance(value, str) else None


class NewCase(BaseModel):
    """A case about to be created."""
    model_config = ConfigDict(frozen=True)

    case_number: str = Field(
        ...,
        min_length=1,
        description="Externally chosen case number, unique across the store"
    )
    title: str = Field(
        ...,
        min_length=1,
        description="Short case title"
    )
    description: Optional[str] = Field(
        default=None,
        description="Free-form case description"
    )


class CaseRecord(NewCase):
    """A persisted case record."""
    id: UUID = Field(
        ...,
        description="Store-assigned unique identifier"
    )
    created_at: datetime = Field(
        ...,
        description="Store-assigned creation time"
    )
