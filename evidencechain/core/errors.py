"""
Error Taxonomy

Every failure the submission pipeline can surface.

Verification errors happen before anything is written, so they are always
safe to retry from scratch. Ledger errors split into retryable
(unavailable, timeout) and terminal (rejected). Once the ledger has accepted
an operation, a store failure can no longer be undone: it becomes an
orphaned receipt that must be reconciled out of band.
"""

from typing import Any, Optional


class EvidenceChainError(Exception):
    """Base exception for all pipeline errors."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ============================================================
# VERIFICATION (local, no side effects)
# ============================================================

class VerificationError(EvidenceChainError):
    """The identity proof could not be accepted."""
    retryable = True


class MalformedSignatureError(VerificationError):
    """Signature cannot be decoded into recovery parameters."""
    pass


class RecoveryError(VerificationError):
    """Elliptic-curve public key recovery failed."""
    pass


class IdentityMismatchError(VerificationError):
    """Recovered signer differs from the declared submitter."""

    def __init__(self, recovered: str, expected: str):
        super().__init__(
            f"Recovered signer {recovered} does not match declared submitter {expected}",
            details={"recovered": recovered, "expected": expected},
        )
        self.recovered = recovered
        self.expected = expected


# ============================================================
# LEDGER
# ============================================================

class LedgerError(EvidenceChainError):
    """Base exception for ledger client errors."""
    pass


class LedgerUnavailableError(LedgerError):
    """Ledger node unreachable."""
    retryable = True


class LedgerTimeoutError(LedgerError):
    """
    Acceptance was not observed within the confirmation wait.

    The operation may still land. Re-query the ledger before assuming
    failure.
    """
    retryable = True

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message, details={"transaction_id": transaction_id})
        self.transaction_id = transaction_id


class LedgerRejectedError(LedgerError):
    """Operation is invalid per ledger rules. Never retried."""
    pass


# ============================================================
# RECORD STORE
# ============================================================

class StoreError(EvidenceChainError):
    """Base exception for record store errors."""
    pass


class StoreTransactionError(StoreError):
    """Transaction failed and was rolled back."""
    retryable = True


class DuplicateCaseNumberError(StoreError):
    """A case with this case number already exists."""

    def __init__(self, case_number: str):
        super().__init__(
            f"Case number {case_number!r} already exists",
            details={"case_number": case_number},
        )
        self.case_number = case_number


class NotFoundError(StoreError):
    """Requested record does not exist."""
    pass


# ============================================================
# SUBMISSION
# ============================================================

class SubmissionError(EvidenceChainError):
    """Base exception for submission lifecycle errors."""
    pass


class LedgerStateUnknownError(SubmissionError):
    """
    Ledger retries exhausted without a confirmed receipt.

    The operation may or may not have been recorded. Nothing was written
    to the store.
    """

    def __init__(self, request_id: str, attempts: int, last_error: Exception):
        super().__init__(
            f"Ledger state unknown for request {request_id} after {attempts} attempts: "
            f"{last_error}",
            details={
                "request_id": request_id,
                "attempts": attempts,
                "last_error": str(last_error),
            },
        )
        self.request_id = request_id
        self.attempts = attempts
        self.last_error = last_error


class OrphanedReceiptError(SubmissionError):
    """
    The ledger accepted the operation but the store write failed.

    Carries the receipt and the intended record so a reconciliation pass
    can insert the missing row later.
    """

    def __init__(self, receipt: Any, intended_record: Any, cause: Exception):
        super().__init__(
            f"Ledger receipt {receipt.transaction_id} has no store record: {cause}",
            details={
                "transaction_id": receipt.transaction_id,
                "request_id": receipt.request_id,
                "cause": str(cause),
            },
        )
        self.receipt = receipt
        self.intended_record = intended_record
        self.cause = cause


class ReplayConflictError(SubmissionError):
    """
    A replayed request id resolved to a stored record that differs from
    this submission (content, submitter or metadata).

    Nothing new is written; the stored record stays as the ledger authorized it.
    """

    def __init__(self, receipt: Any, record: Any, attempted: Any):
        super().__init__(
            f"Request {receipt.request_id} already committed as record {record.id} "
            "with different evidence",
            details={
                "request_id": receipt.request_id,
                "transaction_id": receipt.transaction_id,
                "record_id": str(record.id),
            },
        )
        self.receipt = receipt
        self.record = record
        self.attempted = attempted


class CancellationNotAllowedError(SubmissionError):
    """Submission already left the verifying state."""
    pass


class SubmissionCancelledError(SubmissionError):
    """Submission was cancelled before reaching the ledger."""
    pass


# ============================================================
# CHANGE FEED
# ============================================================

class SubscriptionLostError(EvidenceChainError):
    """
    The subscriber fell behind and events were dropped.

    Resubscribe to receive a fresh snapshot.
    """
    retryable = True
