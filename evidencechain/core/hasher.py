"""
Canonical Hashing

Deterministic serialization and SHA-256 hashing of ledger entries.
Same input → same hash.

Existing entry hashes are recomputed by verify_chain(), so a rule change
without a version bump turns every stored entry invalid.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output
2. Dictionary keys: sorted recursively, must be strings
3. Nulls: omitted from objects, kept inside lists (position matters)
4. Empty strings, lists, dicts: preserved
5. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
6. UUIDs: lowercase; Enums: value
7. Floats: finite only, shortest round-trip repr (metadata is caller data)
8. JSON output: no whitespace, ASCII only
9. Top-level: must be dict/object
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID


class CanonicalSerializationError(Exception):
    """Input has no single canonical JSON form."""
    pass


class Hasher:
    """
    Canonical JSON and SHA-256 for ledger entry payloads.

    Rule changes require a SERIALIZATION_VERSION bump.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, UUID):
            return str(value).lower()

        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, (bool, int, str)):
            return value

        if isinstance(value, float):
            if value != value or value in (float("inf"), float("-inf")):
                raise CanonicalSerializationError(
                    f"Cannot serialize non-finite float at {path}"
                )
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        if isinstance(value, (bytes, set)):
            raise CanonicalSerializationError(
                f"Cannot serialize {type(value).__name__} at {path}. "
                "Convert bytes to hex and sets to sorted lists first."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Metadata must be plain JSON."
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """Format: YYYY-MM-DDTHH:MM:SS.ffffffZ"""
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "All datetimes must be timezone-aware."
            )
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys(), key=str):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: Any) -> str:
        """
        Canonical JSON for a payload dict (or pydantic model).

        Raises:
            CanonicalSerializationError: non-JSON types, naive datetimes, non-finite floats
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Entry payload must be a dict, "
                f"got {type(data).__name__}"
            )

        canonical_dict = {"__canon_v": cls.SERIALIZATION_VERSION, **cls._to_canonical_dict(data)}
        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: Any) -> str:
        """Hex-encoded SHA-256 of the canonical form."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @classmethod
    def hash_entry(cls, payload: dict[str, Any], previous_hash: Optional[str] = None) -> str:
        """
        Hash a ledger entry with chain linkage.

        FORMAT:
        - Genesis: SHA256(canonical_payload)
        - Chained: SHA256(previous_hash + ":" + canonical_payload)
        """
        canonical_payload = cls.canonicalize(payload)

        if previous_hash is None:
            chain_input = canonical_payload
        else:
            if len(previous_hash) != 64 or not all(
                c in "0123456789abcdef" for c in previous_hash.lower()
            ):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash}. "
                    "Must be 64 hex characters."
                )
            chain_input = f"{previous_hash.lower()}:{canonical_payload}"

        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def verify_entry(
        cls,
        payload: dict[str, Any],
        expected_hash: str,
        previous_hash: Optional[str] = None,
    ) -> bool:
        """True if payload (chained to previous_hash) hashes to expected_hash."""
        try:
            computed = cls.hash_entry(payload, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())
