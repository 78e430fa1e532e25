"""
Tests for canonical hashing of ledger entries.
"""

import json
from datetime import date, datetime, timedelta, timezone
from uuid import UUID

import pytest

from evidencechain.core import CanonicalSerializationError, Hasher, Signer, SigningService
from evidencechain.schemas import OperationType


class TestHasher:
    """Test canonical hashing - the in-memory chain depends on it."""

    def test_deterministic_hash(self):
        """Same input always produces same hash."""
        data = {"content_hash": "QmTest", "size": 42}
        assert Hasher.hash_data(data) == Hasher.hash_data(data)

    def test_sorted_keys(self):
        """Key order doesn't affect hash."""
        assert Hasher.hash_data({"b": 2, "a": 1}) == Hasher.hash_data({"a": 1, "b": 2})

    def test_recursively_sorted_keys(self):
        data1 = {"outer": {"z": 1, "a": 2}, "inner": {"b": 3, "a": 4}}
        data2 = {"inner": {"a": 4, "b": 3}, "outer": {"a": 2, "z": 1}}
        assert Hasher.hash_data(data1) == Hasher.hash_data(data2)

    def test_null_handling(self):
        """Nulls are omitted from objects."""
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})

    def test_null_kept_in_lists(self):
        """Position inside a list matters, so nulls stay."""
        assert Hasher.canonicalize({"a": [1, None]}) != Hasher.canonicalize({"a": [1]})

    def test_empty_values_preserved(self):
        assert Hasher.canonicalize({"a": ""}) != Hasher.canonicalize({"a": None})
        assert Hasher.canonicalize({"a": []}) != Hasher.canonicalize({})

    def test_datetime_requires_timezone(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonicalize({"timestamp": datetime(2024, 1, 1, 12, 0, 0)})

    def test_datetime_normalized_to_utc(self):
        """Same moment in different timezones hashes the same."""
        utc_time = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        other_time = datetime(2024, 1, 1, 17, 0, 0, tzinfo=timezone(timedelta(hours=5)))
        assert Hasher.hash_data({"t": utc_time}) == Hasher.hash_data({"t": other_time})

    def test_uuid_lowercase(self):
        canonical = Hasher.canonicalize({"id": UUID("550E8400-E29B-41D4-A716-446655440000")})
        assert "550e8400" in canonical
        assert "550E8400" not in canonical

    def test_enum_uses_value(self):
        canonical = Hasher.canonicalize({"operation": OperationType.SUBMIT_EVIDENCE})
        assert '"submitEvidence"' in canonical
        assert "SUBMIT_EVIDENCE" not in canonical

    def test_finite_floats_allowed(self):
        """Metadata is caller data; finite floats hash deterministically."""
        assert '"ratio":0.25' in Hasher.canonicalize({"ratio": 0.25})

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_floats_rejected(self, value):
        with pytest.raises(CanonicalSerializationError, match="non-finite"):
            Hasher.canonicalize({"value": value})

    def test_sets_not_allowed(self):
        with pytest.raises(CanonicalSerializationError, match="set"):
            Hasher.canonicalize({"items": {1, 2, 3}})

    def test_top_level_must_be_dict(self):
        for value in ([1, 2, 3], "hello", 42):
            with pytest.raises(CanonicalSerializationError, match="must be a dict"):
                Hasher.canonicalize(value)

    def test_no_whitespace_in_output(self):
        canonical = Hasher.canonicalize({"a": 1, "b": {"c": 2}})
        assert " " not in canonical
        assert "\n" not in canonical

    def test_version_injection(self):
        canonical = Hasher.canonicalize({"foo": "bar"})
        assert canonical.startswith('{"__canon_v":1,')
        assert json.loads(canonical)["__canon_v"] == 1

    def test_date_format(self):
        assert '"d":"2024-01-15"' in Hasher.canonicalize({"d": date(2024, 1, 15)})

    def test_chain_hash(self):
        """Entry hash includes the previous hash."""
        payload = {"content_hash": "QmTest"}
        assert Hasher.hash_entry(payload, "a" * 64) != Hasher.hash_entry(payload, None)

    def test_chain_hash_validates_previous_hash_format(self):
        payload = {"content_hash": "QmTest"}
        with pytest.raises(CanonicalSerializationError, match="Invalid previous_hash"):
            Hasher.hash_entry(payload, "abc123")
        with pytest.raises(CanonicalSerializationError, match="Invalid previous_hash"):
            Hasher.hash_entry(payload, "g" * 64)

    def test_verify_entry(self):
        payload = {"content_hash": "QmTest", "metadata": {"name": "photo"}}
        previous = "b" * 64
        entry_hash = Hasher.hash_entry(payload, previous)

        assert Hasher.verify_entry(payload, entry_hash, previous)
        assert Hasher.verify_entry(payload, entry_hash.upper(), previous)
        assert not Hasher.verify_entry(payload, entry_hash, None)
        assert not Hasher.verify_entry({"content_hash": "QmOther"}, entry_hash, previous)


class TestSigner:
    """Ed25519 seals over ledger entry hashes."""

    def test_seal_and_verify(self):
        private_key, public_key = Signer.generate_keypair()
        seal = Signer.seal("a" * 64, private_key)
        assert Signer.verify_seal("a" * 64, seal, public_key)

    def test_wrong_key_fails(self):
        private_key, _ = Signer.generate_keypair()
        _, other_public = Signer.generate_keypair()
        seal = Signer.seal("a" * 64, private_key)
        assert not Signer.verify_seal("a" * 64, seal, other_public)

    def test_tampered_hash_fails(self):
        private_key, public_key = Signer.generate_keypair()
        seal = Signer.seal("a" * 64, private_key)
        assert not Signer.verify_seal("b" * 64, seal, public_key)

    def test_garbage_seal_fails(self):
        _, public_key = Signer.generate_keypair()
        assert not Signer.verify_seal("a" * 64, "not-base64!!", public_key)


class TestSigningService:

    def test_ephemeral_roundtrip(self):
        service = SigningService.ephemeral()
        assert service.is_ephemeral
        assert service.verify("c" * 64, service.seal("c" * 64))

    def test_from_env_loads_configured_key(self, monkeypatch):
        private_key, public_key = Signer.generate_keypair()
        monkeypatch.setenv("EVIDENCECHAIN_NODE_PRIVATE_KEY", private_key)
        monkeypatch.setenv("EVIDENCECHAIN_NODE_PUBLIC_KEY", public_key)

        service = SigningService.from_env()
        assert not service.is_ephemeral
        assert service.public_key == public_key

    def test_mismatched_keypair_rejected(self, monkeypatch):
        private_key, _ = Signer.generate_keypair()
        _, other_public = Signer.generate_keypair()
        monkeypatch.setenv("EVIDENCECHAIN_NODE_PRIVATE_KEY", private_key)
        monkeypatch.setenv("EVIDENCECHAIN_NODE_PUBLIC_KEY", other_public)

        with pytest.raises(RuntimeError, match="validation failed"):
            SigningService.from_env()

    def test_production_requires_key(self, monkeypatch):
        monkeypatch.delenv("EVIDENCECHAIN_NODE_PRIVATE_KEY", raising=False)
        monkeypatch.delenv("EVIDENCECHAIN_NODE_PUBLIC_KEY", raising=False)
        monkeypatch.setenv("EVIDENCECHAIN_PRODUCTION", "true")

        with pytest.raises(RuntimeError, match="must be set in production"):
            SigningService.from_env()
