"""
Submission Coordinator - Verify, Then Ledger, Then Store

Every evidence submission walks one state machine:

    VERIFYING -> SUBMITTING -> PERSISTING -> COMMITTED

Exits:
- REJECTED: bad proof, identity mismatch, ledger rejection (nothing written),
  or a replayed request id whose stored record differs from this submission
- ABORTED: ledger state unknown after retries, or store failure after the
  ledger accepted (an orphaned receipt, logged for reconciliation)
- CANCELLED: caller cancelled while still VERIFYING

ORDERING GUARANTEE:
A record reaches the store only after the ledger returned a receipt for it.
The ledger write is never rolled back.

RETRIES (tenacity):
- Ledger: unavailable / timeout, exponential backoff. After a timeout the
  ledger is re-queried by request id before submitting again. Submission is
  idempotent per request id, so a retry never creates a second entry.
- Store: StoreTransactionError, short exponential backoff.
"""

import os
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Any, Optional
from uuid import uuid4

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..observability import MetricsCollector, get_logger, get_metrics, submitter_var
from ..schemas import CaseRecord, EvidenceRecord, NewCase, NewEvidence, OperationPayload, Receipt
from .errors import (
    CancellationNotAllowedError,
    IdentityMismatchError,
    LedgerError,
    LedgerRejectedError,
    LedgerStateUnknownError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    MalformedSignatureError,
    OrphanedReceiptError,
    ReplayConflictError,
    StoreTransactionError,
    SubmissionCancelledError,
    SubmissionError,
    VerificationError,
)
from .ledger import LedgerClient
from .reconciliation import OrphanLog
from .verifier import CURRENT_TEMPLATE_VERSION, Identity, SignatureVerifier

if TYPE_CHECKING:
    from ..db.store import RecordStore

logger = get_logger(__name__)


class SubmissionState(str, Enum):
    VERIFYING = "verifying"
    SUBMITTING = "submitting"
    PERSISTING = "persisting"
    COMMITTED = "committed"
    REJECTED = "rejected"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    SubmissionState.COMMITTED,
    SubmissionState.REJECTED,
    SubmissionState.ABORTED,
    SubmissionState.CANCELLED,
})

_TRANSITIONS = {
    SubmissionState.VERIFYING: {
        SubmissionState.SUBMITTING, SubmissionState.REJECTED, SubmissionState.CANCELLED,
    },
    SubmissionState.SUBMITTING: {
        SubmissionState.PERSISTING, SubmissionState.REJECTED, SubmissionState.ABORTED,
    },
    SubmissionState.PERSISTING: {
        SubmissionState.COMMITTED, SubmissionState.REJECTED, SubmissionState.ABORTED,
    },
}


@dataclass(frozen=True)
class IdentityProof:
    """What the submitter hands over alongside the evidence."""
    signature: str
    submitter: Optional[str] = None  # declared address; checked against the recovered one
    template_version: int = CURRENT_TEMPLATE_VERSION


@dataclass
class RetryPolicy:
    """Retry budgets for the ledger and store phases."""
    ledger_max_attempts: int = 5
    ledger_backoff_multiplier: float = 0.5
    ledger_backoff_min: float = 0.5
    ledger_backoff_max: float = 8.0

    store_max_attempts: int = 3
    store_backoff_multiplier: float = 0.1
    store_backoff_max: float = 2.0

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        """
        Load configuration from environment variables.

        - EVIDENCECHAIN_LEDGER_MAX_ATTEMPTS
        - EVIDENCECHAIN_LEDGER_BACKOFF_MULTIPLIER
        - EVIDENCECHAIN_LEDGER_BACKOFF_MIN
        - EVIDENCECHAIN_LEDGER_BACKOFF_MAX
        - EVIDENCECHAIN_STORE_MAX_ATTEMPTS
        """
        return cls(
            ledger_max_attempts=int(os.getenv("EVIDENCECHAIN_LEDGER_MAX_ATTEMPTS", "5")),
            ledger_backoff_multiplier=float(os.getenv("EVIDENCECHAIN_LEDGER_BACKOFF_MULTIPLIER", "0.5")),
            ledger_backoff_min=float(os.getenv("EVIDENCECHAIN_LEDGER_BACKOFF_MIN", "0.5")),
            ledger_backoff_max=float(os.getenv("EVIDENCECHAIN_LEDGER_BACKOFF_MAX", "8.0")),
            store_max_attempts=int(os.getenv("EVIDENCECHAIN_STORE_MAX_ATTEMPTS", "3")),
        )

    @classmethod
    def immediate(cls, ledger_max_attempts: int = 5, store_max_attempts: int = 3) -> "RetryPolicy":
        """No backoff between attempts (tests, CLI)."""
        return cls(
            ledger_max_attempts=ledger_max_attempts,
            ledger_backoff_multiplier=0,
            ledger_backoff_min=0,
            ledger_backoff_max=0,
            store_max_attempts=store_max_attempts,
            store_backoff_multiplier=0,
            store_backoff_max=0,
        )

    def ledger_retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.ledger_max_attempts),
            wait=wait_exponential(
                multiplier=self.ledger_backoff_multiplier,
                min=self.ledger_backoff_min,
                max=self.ledger_backoff_max,
            ),
            retry=retry_if_exception_type((LedgerUnavailableError, LedgerTimeoutError)),
            reraise=True,
        )

    def store_retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.store_max_attempts),
            wait=wait_exponential(multiplier=self.store_backoff_multiplier, max=self.store_backoff_max),
            retry=retry_if_exception_type(StoreTransactionError),
            reraise=True,
        )


class Submission:
    """
    One evidence submission and its lifecycle.

    State changes are serialized by a per-submission lock, so cancel() and
    the coordinator's move to SUBMITTING cannot both win.
    """

    def __init__(self, operation: OperationPayload, proof: IdentityProof):
        self.operation = operation
        self.proof = proof
        self.state = SubmissionState.VERIFYING
        self.history: list[SubmissionState] = [SubmissionState.VERIFYING]
        self.identity: Optional[Identity] = None
        self.receipt: Optional[Receipt] = None
        self.record: Optional[EvidenceRecord] = None
        self.error: Optional[Exception] = None
        self._lock = Lock()

    @property
    def request_id(self) -> str:
        return self.operation.request_id

    @property
    def content_hash(self) -> str:
        return self.operation.content_hash

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, new_state: SubmissionState) -> None:
        with self._lock:
            if self.state == SubmissionState.CANCELLED:
                raise SubmissionCancelledError(
                    f"Submission {self.request_id} was cancelled",
                    details={"request_id": self.request_id},
                )
            if new_state not in _TRANSITIONS.get(self.state, ()):
                raise SubmissionError(
                    f"Illegal transition {self.state.value} -> {new_state.value}",
                    details={"request_id": self.request_id},
                )
            self.state = new_state
            self.history.append(new_state)

    def cancel(self) -> None:
        """
        Cancel before the ledger is contacted.

        Raises:
            CancellationNotAllowedError: already past VERIFYING
        """
        with self._lock:
            if self.state != SubmissionState.VERIFYING:
                raise CancellationNotAllowedError(
                    f"Cannot cancel submission in state {self.state.value}",
                    details={"request_id": self.request_id, "state": self.state.value},
                )
            self.state = SubmissionState.CANCELLED
            self.history.append(SubmissionState.CANCELLED)
        logger.info("Submission cancelled", request_id=self.request_id)


class SubmissionCoordinator:
    """
    The only writer of evidence records.

    Thread-safe: each submission's state lives on its Submission object;
    the coordinator holds shared collaborators only.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: "RecordStore",
        verifier: Optional[SignatureVerifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        orphan_log: Optional[OrphanLog] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._ledger = ledger
        self._store = store
        self._verifier = verifier or SignatureVerifier()
        self._retry_policy = retry_policy or RetryPolicy()
        self._orphan_log = orphan_log if orphan_log is not None else OrphanLog()
        self._metrics = metrics or get_metrics()

    @property
    def orphan_log(self) -> OrphanLog:
        return self._orphan_log

    def begin(
        self,
        content_hash: str,
        metadata: Optional[dict[str, Any]],
        proof: IdentityProof,
        request_id: Optional[str] = None,
    ) -> Submission:
        """
        Create a submission in VERIFYING.

        Raises:
            pydantic.ValidationError: metadata is not a JSON document
        """
        operation = OperationPayload(
            request_id=request_id or str(uuid4()),
            content_hash=content_hash,
            metadata=metadata or {},
        )
        return Submission(operation, proof)

    def submit_evidence(
        self,
        content_hash: str,
        metadata: Optional[dict[str, Any]],
        proof: IdentityProof,
        request_id: Optional[str] = None,
    ) -> EvidenceRecord:
        """Run a submission start to finish."""
        return self.execute(self.begin(content_hash, metadata, proof, request_id))

    def execute(self, submission: Submission) -> EvidenceRecord:
        """
        Drive a submission to a terminal state.

        Returns:
            The committed EvidenceRecord

        Raises:
            VerificationError: REJECTED before the ledger was contacted
            LedgerRejectedError: REJECTED by the ledger
            LedgerStateUnknownError: ABORTED, ledger outcome unknown
            OrphanedReceiptError: ABORTED after the ledger accepted
            ReplayConflictError: REJECTED, reused request id holds different evidence
            SubmissionCancelledError: cancelled before SUBMITTING
        """
        start = time.perf_counter()
        token = submitter_var.set("")
        try:
            self._verify(submission)
            submitter_var.set(submission.identity.address)
            receipt = self._submit(submission)
            record = self._persist(submission, receipt)
        except SubmissionCancelledError:
            raise
        except Exception:
            outcome = "rejected" if submission.state == SubmissionState.REJECTED else "aborted"
            self._metrics.record_submission(outcome, (time.perf_counter() - start) * 1000)
            raise
        finally:
            submitter_var.reset(token)

        submission._transition(SubmissionState.COMMITTED)
        self._metrics.record_submission("committed", (time.perf_counter() - start) * 1000)
        logger.info(
            "Evidence committed",
            request_id=submission.request_id,
            record_id=str(record.id),
            transaction_id=receipt.transaction_id,
        )
        return record

    def register_case(self, new_case: NewCase) -> CaseRecord:
        """
        Create a case.

        Raises:
            DuplicateCaseNumberError: case number already exists
        """
        return self._store.insert_case(new_case)

    # ----------------------------------------------------------------
    # Phases
    # ----------------------------------------------------------------

    def _fail(self, submission: Submission, state: SubmissionState, error: Exception) -> None:
        submission.error = error
        submission._transition(state)

    def _verify(self, submission: Submission) -> None:
        proof = submission.proof
        try:
            identity = self._verifier.recover_submission(
                submission.content_hash, proof.signature, proof.template_version
            )
            if proof.submitter is not None and not identity.matches(proof.submitter):
                raise IdentityMismatchError(recovered=identity.address, expected=proof.submitter)
        except ValueError as e:
            error = MalformedSignatureError(str(e))
            self._fail(submission, SubmissionState.REJECTED, error)
            raise error from e
        except VerificationError as e:
            logger.warning("Submission rejected at verification",
                           request_id=submission.request_id, reason=e.message)
            self._fail(submission, SubmissionState.REJECTED, e)
            raise

        submission.identity = identity

    def _submit(self, submission: Submission) -> Receipt:
        submission._transition(SubmissionState.SUBMITTING)
        operation = submission.operation
        attempts = 0
        timed_out = False

        try:
            for attempt in self._retry_policy.ledger_retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        self._metrics.record_ledger_retry()
                        logger.info("Retrying ledger submission",
                                    request_id=operation.request_id, attempt=attempts)
                    try:
                        receipt = self._attempt_ledger(submission, timed_out)
                    except LedgerTimeoutError:
                        timed_out = True
                        raise
        except LedgerRejectedError as e:
            logger.warning("Ledger rejected submission",
                           request_id=operation.request_id, reason=e.message)
            self._fail(submission, SubmissionState.REJECTED, e)
            raise
        except (LedgerUnavailableError, LedgerTimeoutError) as e:
            receipt = self._final_lookup(operation.request_id)
            if receipt is None:
                error = LedgerStateUnknownError(operation.request_id, attempts, e)
                logger.error("Ledger state unknown, submission aborted",
                             request_id=operation.request_id, attempts=attempts)
                self._fail(submission, SubmissionState.ABORTED, error)
                raise error from e

        submission.receipt = receipt
        return receipt

    def _attempt_ledger(self, submission: Submission, after_timeout: bool) -> Receipt:
        """One ledger attempt. After a timeout, look before submitting again."""
        if after_timeout:
            receipt = self._ledger.lookup(submission.request_id)
            if receipt is not None:
                logger.info("Operation landed after timeout", request_id=submission.request_id,
                            transaction_id=receipt.transaction_id)
                return receipt
        return self._ledger.submit(submission.operation, submission.identity)

    def _final_lookup(self, request_id: str) -> Optional[Receipt]:
        try:
            return self._ledger.lookup(request_id)
        except LedgerError as e:
            logger.warning("Final ledger lookup failed", request_id=request_id, error=str(e))
            return None

    def _persist(self, submission: Submission, receipt: Receipt) -> EvidenceRecord:
        submission._transition(SubmissionState.PERSISTING)
        new_evidence = NewEvidence(
            content_hash=submission.content_hash,
            metadata=submission.operation.metadata,
            submitter_identity=submission.identity.address,
            ledger_receipt=receipt.transaction_id,
        )

        try:
            for attempt in self._retry_policy.store_retrying():
                with attempt:
                    # A replayed request id comes back with the original receipt
                    record = self._store.find_evidence_by_receipt(receipt.transaction_id)
                    if record is None:
                        record = self._store.insert_evidence(new_evidence)
        except Exception as e:
            # The ledger accepted; whatever failed here leaves an orphan.
            error = OrphanedReceiptError(receipt, new_evidence, e)
            try:
                self._orphan_log.append(receipt, new_evidence, e)
            except Exception as log_error:
                logger.error(
                    "Orphan log write failed, receipt only in this error",
                    transaction_id=receipt.transaction_id,
                    request_id=receipt.request_id,
                    error=str(log_error),
                )
                error.details["orphan_log_error"] = str(log_error)
            self._metrics.record_orphan()
            self._fail(submission, SubmissionState.ABORTED, error)
            raise error from e

        if not _same_evidence(record, new_evidence):
            error = ReplayConflictError(receipt, record, new_evidence)
            logger.warning("Replayed request does not match the stored record",
                           request_id=receipt.request_id, record_id=str(record.id))
            self._fail(submission, SubmissionState.REJECTED, error)
            raise error

        submission.record = record
        return record


def _same_evidence(record: EvidenceRecord, new: NewEvidence) -> bool:
    return (
        record.content_hash == new.content_hash
        and Identity(record.submitter_identity).matches(new.submitter_identity)
        and record.metadata == new.metadata
    )
