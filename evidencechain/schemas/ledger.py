"""
Ledger Operation Schemas

What we send to the ledger, what it hands back, and (for the in-memory
ledger) what an accepted entry looks like.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .records import Metadata


class OperationType(str, Enum):
    """Ledger operations. You can add more later, never remove."""
    SUBMIT_EVIDENCE = "submitEvidence"


class ReceiptStatus(str, Enum):
    ACCEPTED = "accepted"


class OperationPayload(BaseModel):
    """
    A signed-off operation bound for the ledger.

    request_id is the idempotency key: resubmitting the same request id
    must never create a second ledger entry.
    """
    model_config = ConfigDict(frozen=True)

    operation: OperationType = Field(
        default=OperationType.SUBMIT_EVIDENCE,
        description="Ledger operation to perform"
    )
    request_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Caller-supplied idempotency key"
    )
    content_hash: str = Field(
        ...,
        description="Content-addressed pointer being recorded"
    )
    metadata: Metadata = Field(
        default_factory=dict,
        description="Metadata recorded alongside the content hash"
    )


class Receipt(BaseModel):
    """Confirmation that the ledger accepted an operation."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(
        ...,
        description="Opaque ledger transaction identifier"
    )
    status: ReceiptStatus = Field(
        default=ReceiptStatus.ACCEPTED,
        description="Acceptance status"
    )
    request_id: str = Field(
        ...,
        description="Idempotency key of the originating operation"
    )
    accepted_at: datetime = Field(
        ...,
        description="When acceptance was observed"
    )
    block_number: Optional[int] = Field(
        default=None,
        description="Block containing the transaction, when the ledger has blocks"
    )

    @property
    def is_accepted(self) -> bool:
        return self.status == ReceiptStatus.ACCEPTED


class LedgerEntry(BaseModel):
    """
    An accepted entry in the in-memory ledger.

    Chain rules:
    - sequence_number increases by one per entry (0 for genesis)
    - previous_entry_hash is None ONLY for genesis
    - entry_hash is verifiable from payload + previous_entry_hash
    - seal is the node's Ed25519 signature over entry_hash
    """
    sequence_number: int = Field(..., ge=0)
    request_id: str
    authorizer: str
    payload: dict[str, Any]
    previous_entry_hash: Optional[str] = None
    entry_hash: str
    seal: str
    accepted_at: datetime

    @property
    def transaction_id(self) -> str:
        return f"0x{self.entry_hash}"
