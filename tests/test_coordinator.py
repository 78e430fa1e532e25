"""
Tests for the submission pipeline: verify, then ledger, then store.

Failure injection uses small doubles around the in-memory ledger and
store, so each test controls exactly which call fails and how often.
"""

import threading

import pytest

from evidencechain.core import (
    CancellationNotAllowedError,
    IdentityMismatchError,
    IdentityProof,
    InMemoryLedger,
    LedgerRejectedError,
    LedgerStateUnknownError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    MalformedSignatureError,
    OrphanLog,
    OrphanedReceiptError,
    ReplayConflictError,
    RetryPolicy,
    SigningService,
    StoreTransactionError,
    SubmissionCancelledError,
    SubmissionCoordinator,
    SubmissionState,
    reconcile,
)
from evidencechain.core.verifier import generate_keypair
from evidencechain.db import InMemoryRecordStore
from evidencechain.observability import MetricsCollector
from evidencechain.schemas import NewCase


class FlakyLedger(InMemoryLedger):
    """
    In-memory ledger with scripted failures.

    timeouts: submits that raise LedgerTimeoutError without recording
    landed_timeouts: submits that record the entry, then raise LedgerTimeoutError
    unavailable: submits that raise LedgerUnavailableError
    """

    def __init__(self, timeouts=0, landed_timeouts=0, unavailable=0):
        super().__init__(SigningService.ephemeral())
        self.timeouts = timeouts
        self.landed_timeouts = landed_timeouts
        self.unavailable = unavailable
        self.submit_calls = 0
        self.lookup_calls = 0

    def submit(self, operation, authorizing_identity):
        self.submit_calls += 1
        if self.unavailable:
            self.unavailable -= 1
            raise LedgerUnavailableError("node down")
        if self.timeouts:
            self.timeouts -= 1
            raise LedgerTimeoutError("not mined in time")
        if self.landed_timeouts:
            self.landed_timeouts -= 1
            receipt = super().submit(operation, authorizing_identity)
            raise LedgerTimeoutError("not mined in time", transaction_id=receipt.transaction_id)
        return super().submit(operation, authorizing_identity)

    def lookup(self, request_id):
        self.lookup_calls += 1
        return super().lookup(request_id)


class FailingStore(InMemoryRecordStore):
    """In-memory store whose evidence inserts fail a set number of times."""

    def __init__(self, failures=0, error=None):
        super().__init__()
        self.failures = failures
        self.error = error or StoreTransactionError("connection reset")
        self.insert_calls = 0

    def insert_evidence(self, new):
        self.insert_calls += 1
        if self.failures:
            self.failures -= 1
            raise self.error
        return super().insert_evidence(new)


class ReplayingLedger(InMemoryLedger):
    """In-memory ledger that answers any reused request id with its first receipt."""

    def __init__(self):
        super().__init__(SigningService.ephemeral())

    def submit(self, operation, authorizing_identity):
        existing = self.lookup(operation.request_id)
        if existing is not None:
            return existing
        return super().submit(operation, authorizing_identity)


class BrokenOrphanLog(OrphanLog):
    """Orphan log whose writes always fail."""

    def append(self, receipt, intended_record, cause):
        raise PermissionError("reconciliation log is read-only")


def build(ledger=None, store=None, metrics=None, orphan_log=None, **policy):
    ledger = ledger or InMemoryLedger(SigningService.ephemeral())
    store = store or InMemoryRecordStore()
    coordinator = SubmissionCoordinator(
        ledger=ledger,
        store=store,
        retry_policy=RetryPolicy.immediate(**policy),
        orphan_log=orphan_log if orphan_log is not None else OrphanLog(),
        metrics=metrics or MetricsCollector(),
    )
    return coordinator, ledger, store


class TestHappyPath:

    def test_submission_commits(self, coordinator, ledger, store, make_proof, submitter_keys):
        _, address = submitter_keys
        record = coordinator.submit_evidence("QmXyz", {"name": "photo"}, make_proof("QmXyz"))

        assert record.content_hash == "QmXyz"
        assert record.submitter_identity == address
        assert record.metadata == {"name": "photo"}
        assert ledger.get_receipt(record.ledger_receipt) is not None
        assert store.list_evidence() == [record]

    def test_state_history(self, coordinator, make_proof):
        submission = coordinator.begin("QmXyz", {}, make_proof("QmXyz"))
        coordinator.execute(submission)

        assert submission.state == SubmissionState.COMMITTED
        assert submission.history == [
            SubmissionState.VERIFYING,
            SubmissionState.SUBMITTING,
            SubmissionState.PERSISTING,
            SubmissionState.COMMITTED,
        ]
        assert submission.is_terminal
        assert submission.receipt.transaction_id == submission.record.ledger_receipt

    def test_undeclared_submitter_uses_recovered_identity(self, coordinator, make_proof, submitter_keys):
        _, address = submitter_keys
        record = coordinator.submit_evidence("QmXyz", None, make_proof("QmXyz", submitter=None))
        assert record.submitter_identity == address

    def test_declared_submitter_case_insensitive(self, coordinator, make_proof, submitter_keys):
        _, address = submitter_keys
        record = coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz", submitter=address.lower()))
        assert record.submitter_identity == address

    def test_metrics(self, coordinator, metrics, make_proof):
        coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"))
        summary = metrics.get_summary()
        assert summary["submissions_committed"] == 1
        assert summary["ledger_retries"] == 0

    def test_replayed_request_id_returns_same_record(self, coordinator, ledger, store, make_proof):
        first = coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"), request_id="req-1")
        second = coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"), request_id="req-1")

        assert second == first
        assert ledger.entry_count == 1
        assert store.count_evidence() == 1

    def test_replayed_request_id_with_other_metadata_rejected(self, coordinator, ledger, store, make_proof):
        first = coordinator.submit_evidence("QmXyz", {"name": "photo"}, make_proof("QmXyz"), request_id="req-1")

        with pytest.raises(LedgerRejectedError):
            coordinator.submit_evidence("QmXyz", {"name": "forged"}, make_proof("QmXyz"), request_id="req-1")

        assert ledger.entry_count == 1
        assert store.list_evidence() == [first]

    def test_replayed_request_id_by_other_signer_rejected(self, coordinator, ledger, store, make_proof):
        coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"), request_id="req-1")
        other_key, other_address = generate_keypair()

        with pytest.raises(LedgerRejectedError):
            coordinator.submit_evidence(
                "QmXyz", {},
                make_proof("QmXyz", submitter=other_address, signing_key=other_key),
                request_id="req-1",
            )

        [record] = store.list_evidence()
        assert record.submitter_identity != other_address
        assert ledger.entry_count == 1



class TestVerification:

    def test_identity_mismatch_touches_nothing(self, make_proof):
        ledger = FlakyLedger()
        coordinator, _, store = build(ledger=ledger)
        _, someone_else = generate_keypair()

        submission = coordinator.begin("QmXyz", {}, make_proof("QmXyz", submitter=someone_else))
        with pytest.raises(IdentityMismatchError) as exc_info:
            coordinator.execute(submission)

        assert exc_info.value.expected == someone_else
        assert submission.state == SubmissionState.REJECTED
        assert ledger.submit_calls == 0
        assert store.count_evidence() == 0

    def test_signature_over_other_content_rejected(self, coordinator, ledger, make_proof, submitter_keys):
        _, address = submitter_keys
        proof = make_proof("QmOther")
        with pytest.raises(IdentityMismatchError):
            coordinator.submit_evidence("QmXyz", {}, IdentityProof(proof.signature, submitter=address))
        assert ledger.entry_count == 0

    def test_malformed_signature_rejected(self, coordinator, ledger, submitter_keys):
        _, address = submitter_keys
        submission = coordinator.begin("QmXyz", {}, IdentityProof("0x1234", submitter=address))

        with pytest.raises(MalformedSignatureError):
            coordinator.execute(submission)
        assert submission.state == SubmissionState.REJECTED
        assert ledger.entry_count == 0

    def test_unknown_template_version_rejected(self, coordinator, make_proof):
        proof = make_proof("QmXyz")
        submission = coordinator.begin(
            "QmXyz", {}, IdentityProof(proof.signature, proof.submitter, template_version=7)
        )
        with pytest.raises(MalformedSignatureError, match="template version"):
            coordinator.execute(submission)
        assert submission.state == SubmissionState.REJECTED

    def test_rejections_are_counted(self, coordinator, metrics, submitter_keys):
        _, address = submitter_keys
        with pytest.raises(MalformedSignatureError):
            coordinator.submit_evidence("QmXyz", {}, IdentityProof("nope", submitter=address))
        assert metrics.get_summary()["submissions_rejected"] == 1


class TestLedgerPhase:

    def test_three_timeouts_then_success(self, make_proof):
        ledger = FlakyLedger(timeouts=3)
        coordinator, _, store = build(ledger=ledger)
        metrics = coordinator._metrics

        record = coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"))

        assert ledger.submit_calls == 4
        assert ledger.entry_count == 1
        assert store.list_evidence() == [record]
        assert metrics.get_summary()["ledger_retries"] == 3

    def test_landed_after_timeout_is_not_resubmitted(self, make_proof):
        ledger = FlakyLedger(landed_timeouts=1)
        coordinator, _, store = build(ledger=ledger)

        record = coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"))

        assert ledger.submit_calls == 1
        assert ledger.lookup_calls >= 1
        assert ledger.entry_count == 1
        assert ledger.get_receipt(record.ledger_receipt) is not None

    def test_unavailable_then_success(self, make_proof):
        ledger = FlakyLedger(unavailable=2)
        coordinator, _, store = build(ledger=ledger)

        coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"))
        assert ledger.submit_calls == 3
        assert store.count_evidence() == 1

    def test_exhausted_retries_abort_with_unknown_state(self, make_proof):
        ledger = FlakyLedger(timeouts=100)
        coordinator, _, store = build(ledger=ledger, ledger_max_attempts=4)

        submission = coordinator.begin("QmXyz", {}, make_proof("QmXyz"))
        with pytest.raises(LedgerStateUnknownError) as exc_info:
            coordinator.execute(submission)

        assert exc_info.value.attempts == 4
        assert ledger.submit_calls == 4
        assert submission.state == SubmissionState.ABORTED
        assert store.count_evidence() == 0

    def test_final_lookup_rescues_exhausted_retries(self, make_proof):
        """The last attempt timed out but the entry landed: no abort."""
        ledger = FlakyLedger(timeouts=2, landed_timeouts=1)
        coordinator, _, store = build(ledger=ledger, ledger_max_attempts=3)

        record = coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"))
        assert ledger.entry_count == 1
        assert store.list_evidence() == [record]

    def test_ledger_rejection_is_not_retried(self, coordinator, ledger, store, make_proof):
        coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"))

        submission = coordinator.begin("QmXyz", {}, make_proof("QmXyz"))
        with pytest.raises(LedgerRejectedError, match="already recorded"):
            coordinator.execute(submission)

        assert submission.state == SubmissionState.REJECTED
        assert ledger.entry_count == 1
        assert store.count_evidence() == 1

    def test_store_never_ahead_of_ledger(self, make_proof):
        """Every committed record's receipt is already on the ledger."""
        ledger = FlakyLedger(timeouts=1, landed_timeouts=1)
        coordinator, _, store = build(ledger=ledger)
        observed = []
        store.add_commit_listener(
            lambda event: observed.append(ledger.get_receipt(event.record.ledger_receipt) is not None)
        )

        for i in range(3):
            coordinator.submit_evidence(f"Qm{i}", {}, make_proof(f"Qm{i}"))

        assert observed == [True, True, True]


class TestPersistPhase:

    def test_transient_store_failure_is_retried(self, make_proof):
        store = FailingStore(failures=2)
        coordinator, ledger, _ = build(store=store)

        record = coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"))
        assert store.insert_calls == 3
        assert store.list_evidence() == [record]
        assert ledger.entry_count == 1

    def test_store_failure_leaves_logged_orphan(self, make_proof):
        store = FailingStore(failures=100)
        orphan_log = OrphanLog()
        coordinator, ledger, _ = build(store=store, orphan_log=orphan_log)

        submission = coordinator.begin("QmXyz", {"name": "photo"}, make_proof("QmXyz"))
        with pytest.raises(OrphanedReceiptError) as exc_info:
            coordinator.execute(submission)

        error = exc_info.value
        assert submission.state == SubmissionState.ABORTED
        assert ledger.get_receipt(error.receipt.transaction_id) is not None
        assert error.intended_record.content_hash == "QmXyz"
        assert store.count_evidence() == 0

        [orphan] = orphan_log.entries()
        assert orphan.receipt == error.receipt
        assert orphan.intended_record.metadata == {"name": "photo"}
        assert "connection reset" in orphan.cause
        assert coordinator._metrics.get_summary()["orphaned_receipts"] == 1

    def test_non_retryable_store_error_orphans_immediately(self, make_proof):
        store = FailingStore(failures=1, error=RuntimeError("disk full"))
        coordinator, _, _ = build(store=store)

        with pytest.raises(OrphanedReceiptError):
            coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"))
        assert store.insert_calls == 1
        assert len(coordinator.orphan_log) == 1

    def test_reconcile_inserts_orphan(self, make_proof):
        store = FailingStore(failures=3)
        coordinator, ledger, _ = build(store=store, store_max_attempts=3)

        with pytest.raises(OrphanedReceiptError):
            coordinator.submit_evidence("QmXyz", {}, make_proof("QmXyz"))

        report = reconcile(coordinator.orphan_log, ledger, store)

        assert len(report.inserted) == 1
        assert report.remaining == 0
        assert len(coordinator.orphan_log) == 0
        [record] = store.list_evidence()
        assert ledger.get_receipt(record.ledger_receipt) is not None

        # Running again finds nothing left to do
        again = reconcile(coordinator.orphan_log, ledger, store)
        assert again.inserted == [] and again.already_present == []

    def test_replay_resolving_to_different_record_conflicts(self, make_proof):
        coordinator, ledger, store = build(ledger=ReplayingLedger())
        first = coordinator.submit_evidence("QmXyz", {"name": "photo"}, make_proof("QmXyz"), request_id="req-1")

        submission = coordinator.begin("QmXyz", {"name": "forged"}, make_proof("QmXyz"), request_id="req-1")
        with pytest.raises(ReplayConflictError) as exc_info:
            coordinator.execute(submission)

        assert exc_info.value.record == first
        assert submission.state == SubmissionState.REJECTED
        assert store.list_evidence() == [first]
        assert len(coordinator.orphan_log) == 0

    def test_replay_after_orphan_cannot_rewrite_metadata(self, make_proof):
        store = FailingStore(failures=1, error=RuntimeError("disk full"))
        coordinator, ledger, _ = build(store=store)

        with pytest.raises(OrphanedReceiptError):
            coordinator.submit_evidence("QmXyz", {"name": "photo"}, make_proof("QmXyz"), request_id="req-1")
        with pytest.raises(LedgerRejectedError):
            coordinator.submit_evidence("QmXyz", {"name": "forged"}, make_proof("QmXyz"), request_id="req-1")
        assert store.count_evidence() == 0

        report = reconcile(coordinator.orphan_log, ledger, store)
        assert len(report.inserted) == 1
        [record] = store.list_evidence()
        assert record.metadata == {"name": "photo"}

    def test_orphan_log_failure_still_raises_orphan(self, make_proof):
        store = FailingStore(failures=1, error=RuntimeError("disk full"))
        metrics = MetricsCollector()
        coordinator, ledger, _ = build(store=store, orphan_log=BrokenOrphanLog(), metrics=metrics)

        submission = coordinator.begin("QmXyz", {}, make_proof("QmXyz"))
        with pytest.raises(OrphanedReceiptError) as exc_info:
            coordinator.execute(submission)

        error = exc_info.value
        assert submission.state == SubmissionState.ABORTED
        assert "read-only" in error.details["orphan_log_error"]
        assert ledger.get_receipt(error.receipt.transaction_id) is not None
        assert metrics.get_summary()["orphaned_receipts"] == 1


class TestCancellation:

    def test_cancel_before_ledger(self, coordinator, ledger, make_proof):
        submission = coordinator.begin("QmXyz", {}, make_proof("QmXyz"))
        submission.cancel()

        with pytest.raises(SubmissionCancelledError):
            coordinator.execute(submission)

        assert submission.state == SubmissionState.CANCELLED
        assert ledger.entry_count == 0

    def test_cannot_cancel_after_commit(self, coordinator, make_proof):
        submission = coordinator.begin("QmXyz", {}, make_proof("QmXyz"))
        coordinator.execute(submission)

        with pytest.raises(CancellationNotAllowedError):
            submission.cancel()
        assert submission.state == SubmissionState.COMMITTED


class TestCases:

    def test_register_case(self, coordinator, store):
        case = coordinator.register_case(NewCase(case_number="CR-1", title="Burglary"))
        assert store.get_case_by_number("CR-1") == case


class TestConcurrency:

    def test_parallel_submissions(self, make_proof):
        coordinator, ledger, store = build()
        proofs = {f"Qm{i}": make_proof(f"Qm{i}") for i in range(20)}
        errors = []

        def submit(content_hash):
            try:
                coordinator.submit_evidence(content_hash, {}, proofs[content_hash])
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit, args=(h,)) for h in proofs]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert ledger.entry_count == 20
        assert store.count_evidence() == 20
        assert ledger.verify_chain()
        assert {r.content_hash for r in store.list_evidence()} == set(proofs)
