"""
Ledger Entry Sealing

Uses Ed25519 to seal accepted ledger entries.
The in-memory ledger node signs every entry hash it accepts, so a
receipt can later be checked against the node's public key.
"""

import base64
from typing import Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey


class Signer:
    """Ed25519 seals over ledger entry hashes."""

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")
        return private_b64, public_b64

    @staticmethod
    def seal(entry_hash: str, private_key_b64: str) -> str:
        """
        Seal an entry hash.

        Returns:
            Base64-encoded signature
        """
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        signed = signing_key.sign(entry_hash.encode("utf-8"))
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify_seal(entry_hash: str, seal_b64: str, public_key_b64: str) -> bool:
        """True if seal_b64 is the node's signature over entry_hash."""
        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64))
            verify_key.verify(entry_hash.encode("utf-8"), base64.b64decode(seal_b64))
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False
