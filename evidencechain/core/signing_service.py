"""
Signing Service - Ledger Node Key Management

Holds the Ed25519 key the in-memory ledger node uses to seal entries.

PRODUCTION REQUIREMENTS:
- Set EVIDENCECHAIN_NODE_PRIVATE_KEY to a base64-encoded Ed25519 private key
- Set EVIDENCECHAIN_NODE_PUBLIC_KEY to the matching public key
- Generate with: python -m tools.manage generate-node-key

DEVELOPMENT MODE:
- If keys are not set, an ephemeral keypair is generated (warning logged)
- Seals then change on each restart - fine for dev, NOT for prod
"""

import os
import warnings
from dataclasses import dataclass
from typing import Optional

from ..observability import get_logger, is_production
from .signer import Signer

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 keypair."""
    private_key: str  # Base64-encoded
    public_key: str   # Base64-encoded


class SigningService:
    """
    Seals ledger entries with the node key.

    SECURITY NOTES:
    - The private key is never logged or exposed
    - Keypairs are validated on load
    """

    def __init__(self, keypair: KeyPair, ephemeral: bool = False):
        if not self._validate_keypair(keypair):
            raise RuntimeError(
                "Node keypair validation failed. Private and public keys do not match."
            )
        self._keypair = keypair
        self._is_ephemeral = ephemeral

    @classmethod
    def from_env(cls) -> "SigningService":
        """Load the node key from the environment, or generate one in development."""
        private_key = os.environ.get("EVIDENCECHAIN_NODE_PRIVATE_KEY", "")
        public_key = os.environ.get("EVIDENCECHAIN_NODE_PUBLIC_KEY", "")

        if private_key and public_key:
            logger.info("Node key loaded from environment")
            return cls(KeyPair(private_key=private_key, public_key=public_key))

        if is_production():
            raise RuntimeError(
                "EVIDENCECHAIN_NODE_PRIVATE_KEY and EVIDENCECHAIN_NODE_PUBLIC_KEY "
                "must be set in production. Generate with: "
                "python -m tools.manage generate-node-key"
            )

        warnings.warn(
            "Node signing key not configured. Generating ephemeral key for development. "
            "This key changes on each restart - NOT suitable for production!",
            stacklevel=2,
        )
        logger.warning("Generated ephemeral node key (development mode)")
        return cls.ephemeral()

    @classmethod
    def ephemeral(cls) -> "SigningService":
        private_key, public_key = Signer.generate_keypair()
        return cls(KeyPair(private_key=private_key, public_key=public_key), ephemeral=True)

    @staticmethod
    def _validate_keypair(keypair: KeyPair) -> bool:
        try:
            seal = Signer.seal("keypair-validation-test", keypair.private_key)
        except (ValueError, TypeError):
            return False
        return Signer.verify_seal("keypair-validation-test", seal, keypair.public_key)

    @property
    def public_key(self) -> str:
        """The node public key (safe to expose)."""
        return self._keypair.public_key

    @property
    def is_ephemeral(self) -> bool:
        return self._is_ephemeral

    def seal(self, entry_hash: str) -> str:
        """Seal an entry hash with the node key."""
        return Signer.seal(entry_hash, self._keypair.private_key)

    def verify(self, entry_hash: str, seal: str, public_key: Optional[str] = None) -> bool:
        """Verify a seal against the node key (or another public key)."""
        return Signer.verify_seal(entry_hash, seal, public_key or self._keypair.public_key)
