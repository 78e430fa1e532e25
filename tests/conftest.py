import pytest

from evidencechain.core import (
    IdentityProof,
    InMemoryLedger,
    OrphanLog,
    RetryPolicy,
    SigningService,
    SubmissionCoordinator,
)
from evidencechain.core.verifier import generate_keypair, sign_message, submission_message
from evidencechain.db import InMemoryRecordStore
from evidencechain.observability import MetricsCollector


@pytest.fixture
def submitter_keys():
    """(private_key_hex, checksum_address) of a fresh submitter."""
    return generate_keypair()


@pytest.fixture
def make_proof(submitter_keys):
    """Build an IdentityProof signed by submitter_keys for a content hash."""
    private_key, address = submitter_keys

    def _make(content_hash, submitter=address, template_version=1, signing_key=None):
        message = submission_message(content_hash, template_version)
        signature = sign_message(message, signing_key or private_key)
        return IdentityProof(
            signature=signature, submitter=submitter, template_version=template_version
        )

    return _make


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def ledger():
    return InMemoryLedger(SigningService.ephemeral())


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def coordinator(ledger, store, metrics):
    return SubmissionCoordinator(
        ledger=ledger,
        store=store,
        retry_policy=RetryPolicy.immediate(),
        orphan_log=OrphanLog(),
        metrics=metrics,
    )
