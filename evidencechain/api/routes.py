"""
API Routes for EvidenceChain

Command endpoints (append-only, no PATCH/PUT/DELETE):
- POST /evidence                    - Submit signed evidence
- POST /cases                       - Register a case

Query endpoints:
- GET /evidence                     - List evidence (optionally ?submitter=)
- GET /evidence/message             - Message a submitter must sign
- GET /evidence/{id}                - Get one evidence record
- GET /cases                        - List cases
- GET /cases/{case_number}          - Get a case
- GET /cases/{case_number}/evidence - Evidence associated with a case

Change feed:
- GET /feed/{record_type}           - Server-sent events: snapshot, then live inserts

Blocking handlers are plain `def`, so FastAPI runs them in its threadpool.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from ..core.association import related_evidence
from ..core.coordinator import IdentityProof
from ..core.errors import (
    DuplicateCaseNumberError,
    EvidenceChainError,
    IdentityMismatchError,
    LedgerRejectedError,
    LedgerStateUnknownError,
    LedgerUnavailableError,
    NotFoundError,
    OrphanedReceiptError,
    ReplayConflictError,
    StoreTransactionError,
    SubmissionCancelledError,
    SubscriptionLostError,
    VerificationError,
)
from ..core.verifier import CURRENT_TEMPLATE_VERSION, submission_message
from ..runtime import Runtime
from ..schemas import CaseRecord, ChangeEvent, EvidenceRecord, Metadata, NewCase, RecordType


router = APIRouter()


# ============================================================
# Dependency Injection
# ============================================================

def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# ============================================================
# Error Mapping
# ============================================================

_STATUS_BY_ERROR = [
    (IdentityMismatchError, status.HTTP_401_UNAUTHORIZED),
    (VerificationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateCaseNumberError, status.HTTP_409_CONFLICT),
    (SubmissionCancelledError, status.HTTP_409_CONFLICT),
    (ReplayConflictError, status.HTTP_409_CONFLICT),
    (LedgerRejectedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (OrphanedReceiptError, status.HTTP_502_BAD_GATEWAY),
    (LedgerStateUnknownError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (LedgerUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StoreTransactionError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_error(error: EvidenceChainError) -> HTTPException:
    """Map a pipeline error to an HTTP error (first matching class wins)."""
    status_code = next(
        (code for cls, code in _STATUS_BY_ERROR if isinstance(error, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(
        status_code=status_code,
        detail={
            "error": type(error).__name__,
            "message": error.message,
            "retryable": error.retryable,
            "details": error.details,
        },
    )


# ============================================================
# Request/Response Models
# ============================================================

class SubmitEvidenceRequest(BaseModel):
    """Evidence plus the submitter's signature over the submission message."""
    content_hash: str = Field(..., min_length=1, description="e.g. an IPFS CID")
    metadata: Metadata = Field(default_factory=dict)
    signature: str = Field(..., description="65-byte personal_sign signature, hex")
    submitter: Optional[str] = Field(
        default=None, description="Declared submitter address; must match the signer"
    )
    template_version: int = CURRENT_TEMPLATE_VERSION
    request_id: Optional[str] = Field(
        default=None, description="Idempotency key; reuse it when retrying"
    )


class SubmitEvidenceResponse(BaseModel):
    id: UUID
    ledger_receipt: str
    submitter_identity: str
    created_at: datetime


class SigningMessageResponse(BaseModel):
    message: str
    template_version: int


# ============================================================
# Evidence
# ============================================================

@router.post(
    "/evidence",
    response_model=SubmitEvidenceResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Evidence"],
    summary="Submit signed evidence",
)
def submit_evidence(
    request: SubmitEvidenceRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """
    Verify the signature, record the operation on the ledger, then store it.

    The record exists only once the ledger has accepted the operation.
    """
    proof = IdentityProof(
        signature=request.signature,
        submitter=request.submitter,
        template_version=request.template_version,
    )
    try:
        record = runtime.coordinator.submit_evidence(
            content_hash=request.content_hash,
            metadata=request.metadata,
            proof=proof,
            request_id=request.request_id,
        )
    except EvidenceChainError as e:
        raise to_http_error(e) from e

    return SubmitEvidenceResponse(
        id=record.id,
        ledger_receipt=record.ledger_receipt,
        submitter_identity=record.submitter_identity,
        created_at=record.created_at,
    )


@router.get("/evidence", response_model=list[EvidenceRecord], tags=["Evidence"])
def list_evidence(
    submitter: Optional[str] = Query(default=None, description="Filter by submitter address"),
    runtime: Runtime = Depends(get_runtime),
):
    """All evidence, newest first."""
    try:
        if submitter:
            return runtime.store.list_evidence_by_submitter(submitter)
        return runtime.store.list_evidence()
    except EvidenceChainError as e:
        raise to_http_error(e) from e


@router.get("/evidence/message", response_model=SigningMessageResponse, tags=["Evidence"])
def get_signing_message(
    content_hash: str = Query(..., min_length=1),
    template_version: int = Query(default=CURRENT_TEMPLATE_VERSION),
):
    """The exact message a submitter must personal_sign for content_hash."""
    try:
        message = submission_message(content_hash, template_version)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return SigningMessageResponse(message=message, template_version=template_version)


@router.get("/evidence/{record_id}", response_model=EvidenceRecord, tags=["Evidence"])
def get_evidence(record_id: UUID, runtime: Runtime = Depends(get_runtime)):
    try:
        return runtime.store.get_evidence_by_id(record_id)
    except EvidenceChainError as e:
        raise to_http_error(e) from e


# ============================================================
# Cases
# ============================================================

@router.post(
    "/cases",
    response_model=CaseRecord,
    status_code=status.HTTP_201_CREATED,
    tags=["Cases"],
    summary="Register a case",
)
def create_case(request: NewCase, runtime: Runtime = Depends(get_runtime)):
    try:
        return runtime.coordinator.register_case(request)
    except EvidenceChainError as e:
        raise to_http_error(e) from e


@router.get("/cases", response_model=list[CaseRecord], tags=["Cases"])
def list_cases(runtime: Runtime = Depends(get_runtime)):
    try:
        return runtime.store.list_cases()
    except EvidenceChainError as e:
        raise to_http_error(e) from e


@router.get("/cases/{case_number}", response_model=CaseRecord, tags=["Cases"])
def get_case(case_number: str, runtime: Runtime = Depends(get_runtime)):
    try:
        return runtime.store.get_case_by_number(case_number)
    except EvidenceChainError as e:
        raise to_http_error(e) from e


@router.get("/cases/{case_number}/evidence", response_model=list[EvidenceRecord], tags=["Cases"])
def get_case_evidence(case_number: str, runtime: Runtime = Depends(get_runtime)):
    """
    Evidence associated with a case.

    Matches metadata.case_number exactly, or the case number appearing in
    metadata.name / metadata.description.
    """
    try:
        return related_evidence(runtime.store, case_number)
    except EvidenceChainError as e:
        raise to_http_error(e) from e


# ============================================================
# Change Feed
# ============================================================

KEEPALIVE_SECONDS = 15.0


def format_sse(event: ChangeEvent) -> str:
    """One server-sent event frame for a change event."""
    return (
        f"event: {event.kind.value}\n"
        f"id: {event.record_id}\n"
        f"data: {event.record.model_dump_json()}\n\n"
    )


@router.get("/feed/{record_type}", tags=["Change Feed"])
async def change_feed(
    record_type: RecordType,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """
    Server-sent events: the current records, then each new insert.

    Frames may repeat across the snapshot/live boundary; dedupe by `id`.
    A `lost` event means this stream fell behind: reconnect for a fresh snapshot.
    """
    subscription = await run_in_threadpool(runtime.notifier.subscribe, record_type)

    async def event_stream():
        try:
            while not await request.is_disconnected():
                event = await run_in_threadpool(subscription.get, KEEPALIVE_SECONDS)
                if event is not None:
                    yield format_sse(event)
                elif subscription.closed:
                    break
                else:
                    yield ": keepalive\n\n"
        except SubscriptionLostError:
            yield "event: lost\ndata: {}\n\n"
        finally:
            subscription.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
