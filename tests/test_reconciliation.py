"""
Tests for the orphan log and reconciliation pass.
"""

from datetime import datetime, timezone

import pytest

from evidencechain.core import (
    Identity,
    InMemoryLedger,
    LedgerUnavailableError,
    OrphanLog,
    SigningService,
    StoreTransactionError,
    reconcile,
)
from evidencechain.db import InMemoryRecordStore
from evidencechain.schemas import NewEvidence, OperationPayload, Receipt


AUTHORIZER = Identity("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed")


def orphan_on(ledger, n):
    """Record operation n on the ledger and return (receipt, intended record)."""
    receipt = ledger.submit(
        OperationPayload(request_id=f"req-{n}", content_hash=f"Qm{n}"), AUTHORIZER
    )
    return receipt, NewEvidence(
        content_hash=f"Qm{n}",
        submitter_identity=AUTHORIZER.address,
        ledger_receipt=receipt.transaction_id,
    )


def unconfirmed_receipt(n):
    receipt = Receipt(
        transaction_id=f"0x{n:064x}",
        request_id=f"lost-{n}",
        accepted_at=datetime.now(timezone.utc),
    )
    return receipt, NewEvidence(
        content_hash=f"QmLost{n}",
        submitter_identity=AUTHORIZER.address,
        ledger_receipt=receipt.transaction_id,
    )


class DownLedger(InMemoryLedger):
    def get_receipt(self, transaction_id):
        raise LedgerUnavailableError("node down")


class BrokenStore(InMemoryRecordStore):
    def insert_evidence(self, new):
        raise StoreTransactionError("still broken")


class TestOrphanLog:

    def test_in_memory(self, ledger):
        log = OrphanLog()
        receipt, record = orphan_on(ledger, 0)
        log.append(receipt, record, RuntimeError("boom"))

        assert log.path is None
        [entry] = log.entries()
        assert entry.receipt == receipt
        assert entry.intended_record == record
        assert entry.cause == "boom"

    def test_file_backed_survives_reopen(self, ledger, tmp_path):
        path = tmp_path / "orphans" / "log.jsonl"
        receipt, record = orphan_on(ledger, 0)
        OrphanLog(path).append(receipt, record, RuntimeError("boom"))

        reopened = OrphanLog(path)
        assert len(reopened) == 1
        assert reopened.entries()[0].intended_record == record
        assert len(path.read_text().splitlines()) == 1

    def test_missing_file_is_empty(self, tmp_path):
        assert OrphanLog(tmp_path / "nothing.jsonl").entries() == []

    def test_remove_keeps_others(self, ledger, tmp_path):
        log = OrphanLog(tmp_path / "log.jsonl")
        first, first_record = orphan_on(ledger, 0)
        second, second_record = orphan_on(ledger, 1)
        log.append(first, first_record, RuntimeError("a"))
        log.append(second, second_record, RuntimeError("b"))

        log.remove({first.transaction_id})

        assert [e.receipt for e in log.entries()] == [second]

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EVIDENCECHAIN_RECONCILIATION_LOG", str(tmp_path / "x.jsonl"))
        assert OrphanLog.from_env().path == tmp_path / "x.jsonl"

        monkeypatch.delenv("EVIDENCECHAIN_RECONCILIATION_LOG")
        assert OrphanLog.from_env().path is None


class TestReconcile:

    def test_inserts_confirmed_orphans(self, ledger, store):
        log = OrphanLog()
        receipt, record = orphan_on(ledger, 0)
        log.append(receipt, record, RuntimeError("boom"))

        report = reconcile(log, ledger, store)

        assert report.inserted == [receipt.transaction_id]
        assert store.find_evidence_by_receipt(receipt.transaction_id).content_hash == "Qm0"
        assert len(log) == 0

    def test_already_present_is_dropped(self, ledger, store):
        log = OrphanLog()
        receipt, record = orphan_on(ledger, 0)
        store.insert_evidence(record)
        log.append(receipt, record, RuntimeError("boom"))

        report = reconcile(log, ledger, store)

        assert report.already_present == [receipt.transaction_id]
        assert report.inserted == []
        assert store.count_evidence() == 1
        assert len(log) == 0

    def test_unconfirmed_stays_logged(self, ledger, store):
        log = OrphanLog()
        receipt, record = unconfirmed_receipt(1)
        log.append(receipt, record, RuntimeError("boom"))

        report = reconcile(log, ledger, store)

        assert report.unconfirmed == [receipt.transaction_id]
        assert report.remaining == 1
        assert store.count_evidence() == 0
        assert len(log) == 1

    def test_ledger_down_leaves_orphans(self, store):
        ledger = DownLedger(SigningService.ephemeral())
        log = OrphanLog()
        receipt, record = orphan_on(ledger, 0)
        log.append(receipt, record, RuntimeError("boom"))

        report = reconcile(log, ledger, store)
        assert report.unconfirmed == [receipt.transaction_id]
        assert len(log) == 1

    def test_failed_insert_stays_logged(self, ledger):
        log = OrphanLog()
        receipt, record = orphan_on(ledger, 0)
        log.append(receipt, record, RuntimeError("boom"))

        report = reconcile(log, ledger, BrokenStore())
        assert report.failed == [receipt.transaction_id]
        assert len(log) == 1

    @pytest.mark.parametrize("backed_by_file", [False, True])
    def test_mixed_pass(self, ledger, store, tmp_path, backed_by_file):
        log = OrphanLog(tmp_path / "log.jsonl" if backed_by_file else None)
        confirmed, confirmed_record = orphan_on(ledger, 0)
        lost, lost_record = unconfirmed_receipt(9)
        log.append(confirmed, confirmed_record, RuntimeError("a"))
        log.append(lost, lost_record, RuntimeError("b"))

        report = reconcile(log, ledger, store)

        assert report.inserted == [confirmed.transaction_id]
        assert report.unconfirmed == [lost.transaction_id]
        assert [e.receipt for e in log.entries()] == [lost]
