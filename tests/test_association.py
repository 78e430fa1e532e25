"""
Tests for read-time evidence/case association.
"""

import pytest

from evidencechain.core import NotFoundError, is_related, related_evidence
from evidencechain.schemas import NewCase, NewEvidence


def add_evidence(store, n, **metadata):
    return store.insert_evidence(NewEvidence(
        content_hash=f"QmEvidence{n}",
        metadata=metadata,
        submitter_identity="0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed",
        ledger_receipt=f"0x{n:064x}",
    ))


class TestIsRelated:

    def test_exact_case_number(self, store):
        record = add_evidence(store, 0, case_number="CR-7")
        assert is_related(record, "CR-7")
        assert not is_related(record, "CR-70")

    def test_case_number_in_name(self, store):
        record = add_evidence(store, 0, name="Photo for CR-7 scene")
        assert is_related(record, "CR-7")

    def test_case_number_in_description(self, store):
        record = add_evidence(store, 0, description="Collected under CR-7")
        assert is_related(record, "CR-7")

    def test_substring_is_case_sensitive(self, store):
        record = add_evidence(store, 0, name="photo for cr-7")
        assert not is_related(record, "CR-7")

    def test_loose_match_over_matches_prefixes(self, store):
        """Free-text matching is a substring test: CR-1 also matches CR-10."""
        record = add_evidence(store, 0, name="Evidence for CR-10")
        assert is_related(record, "CR-1")

    def test_other_fields_ignored(self, store):
        record = add_evidence(store, 0, notes="CR-7", tags=["CR-7"])
        assert not is_related(record, "CR-7")

    def test_non_string_fields_ignored(self, store):
        record = add_evidence(store, 0, name=7, description=None, case_number=["CR-7"])
        assert not is_related(record, "7")
        assert not is_related(record, "CR-7")

    def test_empty_case_number_never_matches(self, store):
        record = add_evidence(store, 0, name="anything")
        assert not is_related(record, "")


class TestRelatedEvidence:

    def test_lists_matches_newest_first(self, store):
        store.insert_case(NewCase(case_number="CR-7", title="Case"))
        first = add_evidence(store, 0, case_number="CR-7")
        add_evidence(store, 1, case_number="CR-8")
        second = add_evidence(store, 2, description="see CR-7")

        assert related_evidence(store, "CR-7") == [second, first]

    def test_case_without_evidence(self, store):
        store.insert_case(NewCase(case_number="CR-7", title="Case"))
        assert related_evidence(store, "CR-7") == []

    def test_unknown_case(self, store):
        add_evidence(store, 0, case_number="CR-404")
        with pytest.raises(NotFoundError):
            related_evidence(store, "CR-404")
