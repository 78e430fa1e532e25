# Core pipeline services
from .errors import (
    EvidenceChainError,
    VerificationError,
    MalformedSignatureError,
    RecoveryError,
    IdentityMismatchError,
    LedgerError,
    LedgerUnavailableError,
    LedgerTimeoutError,
    LedgerRejectedError,
    StoreError,
    StoreTransactionError,
    DuplicateCaseNumberError,
    NotFoundError,
    SubmissionError,
    LedgerStateUnknownError,
    OrphanedReceiptError,
    ReplayConflictError,
    CancellationNotAllowedError,
    SubmissionCancelledError,
    SubscriptionLostError,
)
from .hasher import Hasher, CanonicalSerializationError
from .verifier import (
    Identity,
    SignatureVerifier,
    submission_message,
    sign_message,
    generate_keypair,
)
from .signer import Signer
from .signing_service import SigningService
from .ledger import (
    LedgerClient,
    LedgerConfig,
    LedgerDriver,
    InMemoryLedger,
    JsonRpcLedgerClient,
    create_ledger_client,
)
from .reconciliation import OrphanLog, OrphanEntry, ReconciliationReport, reconcile
from .coordinator import (
    IdentityProof,
    RetryPolicy,
    Submission,
    SubmissionCoordinator,
    SubmissionState,
)
from .notifier import ChangeNotifier, Subscription, DeduplicatedView
from .association import is_related, related_evidence

__all__ = [
    # Errors
    "EvidenceChainError",
    "VerificationError",
    "MalformedSignatureError",
    "RecoveryError",
    "IdentityMismatchError",
    "LedgerError",
    "LedgerUnavailableError",
    "LedgerTimeoutError",
    "LedgerRejectedError",
    "StoreError",
    "StoreTransactionError",
    "DuplicateCaseNumberError",
    "NotFoundError",
    "SubmissionError",
    "LedgerStateUnknownError",
    "OrphanedReceiptError",
    "ReplayConflictError",
    "CancellationNotAllowedError",
    "SubmissionCancelledError",
    "SubscriptionLostError",
    # Crypto
    "Hasher",
    "CanonicalSerializationError",
    "Identity",
    "SignatureVerifier",
    "submission_message",
    "sign_message",
    "generate_keypair",
    "Signer",
    "SigningService",
    # Ledger
    "LedgerClient",
    "LedgerConfig",
    "LedgerDriver",
    "InMemoryLedger",
    "JsonRpcLedgerClient",
    "create_ledger_client",
    # Submission
    "IdentityProof",
    "RetryPolicy",
    "Submission",
    "SubmissionCoordinator",
    "SubmissionState",
    # Reconciliation
    "OrphanLog",
    "OrphanEntry",
    "ReconciliationReport",
    "reconcile",
    # Change feed
    "ChangeNotifier",
    "Subscription",
    "DeduplicatedView",
    # Association
    "is_related",
    "related_evidence",
]
