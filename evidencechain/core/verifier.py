"""
Signature Verification - Signer Identity Recovery

Recovers the Ethereum-style address that produced a `personal_sign`
signature. Pure functions: no I/O, no state.

MESSAGE TEMPLATE (versioned):
    v1: "Submit evidence: <content_hash>"

The signer-side tool and this verifier MUST build the message from the same
template. A divergence does not raise: it silently recovers a different
address, which then fails the submitter comparison.

SIGNATURE FORMAT:
    65 bytes r || s || v, hex encoded (0x prefix optional).
    v is the recovery id, either raw (0, 1) or Ethereum-offset (27, 28).
"""

import hmac
from dataclasses import dataclass
from typing import Tuple, Union

from coincurve import PrivateKey, PublicKey
from Crypto.Hash import keccak

from .errors import MalformedSignatureError, RecoveryError


SIGNATURE_LENGTH = 65
ADDRESS_LENGTH = 20

MESSAGE_TEMPLATES = {
    1: "Submit evidence: {content_hash}",
}
CURRENT_TEMPLATE_VERSION = 1

_PERSONAL_SIGN_PREFIX = "\x19Ethereum Signed Message:\n"


def keccak256(data: bytes) -> bytes:
    return keccak.new(digest_bits=256, data=data).digest()


def submission_message(content_hash: str, version: int = CURRENT_TEMPLATE_VERSION) -> str:
    """Build the message a submitter signs for a content hash."""
    try:
        template = MESSAGE_TEMPLATES[version]
    except KeyError:
        raise ValueError(f"Unknown message template version: {version}") from None
    return template.format(content_hash=content_hash)


def personal_sign_digest(message: str) -> bytes:
    """EIP-191 digest: keccak256(prefix + len(message) + message)."""
    body = message.encode("utf-8")
    prefix = f"{_PERSONAL_SIGN_PREFIX}{len(body)}".encode("utf-8")
    return keccak256(prefix + body)


def to_checksum_address(address: str) -> str:
    """EIP-55 mixed-case checksum encoding."""
    hex_addr = address.lower().removeprefix("0x")
    if len(hex_addr) != ADDRESS_LENGTH * 2 or any(c not in "0123456789abcdef" for c in hex_addr):
        raise ValueError(f"Not an address: {address!r}")
    digest = keccak256(hex_addr.encode("ascii")).hex()
    return "0x" + "".join(
        c.upper() if c.isalpha() and int(digest[i], 16) >= 8 else c
        for i, c in enumerate(hex_addr)
    )


def _address_from_public_key(public_key: PublicKey) -> str:
    uncompressed = public_key.format(compressed=False)
    return to_checksum_address(keccak256(uncompressed[1:])[-ADDRESS_LENGTH:].hex())


@dataclass(frozen=True)
class Identity:
    """
    A recovered signer address.

    Only ever used as a comparison key. Equality and hashing are
    case-insensitive.
    """
    address: str

    def __post_init__(self):
        object.__setattr__(self, "address", to_checksum_address(self.address))

    def matches(self, other: Union["Identity", str]) -> bool:
        """Constant-time, case-insensitive address comparison."""
        other_address = other.address if isinstance(other, Identity) else str(other)
        return hmac.compare_digest(
            self.address.lower().encode("ascii"),
            other_address.strip().lower().encode("ascii", errors="replace"),
        )

    def __eq__(self, other):
        if not isinstance(other, Identity):
            return NotImplemented
        return self.matches(other)

    def __hash__(self):
        return hash(self.address.lower())

    def __str__(self):
        return self.address


def decode_signature(signature: Union[bytes, str]) -> bytes:
    """
    Normalize a signature to 65 bytes with a raw recovery id (0 or 1).

    Raises:
        MalformedSignatureError: wrong encoding, wrong length, bad recovery id
    """
    if isinstance(signature, str):
        text = signature.strip()
        if text[:2].lower() == "0x":
            text = text[2:]
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise MalformedSignatureError("Signature is not valid hex") from None
    elif isinstance(signature, (bytes, bytearray)):
        raw = bytes(signature)
    else:
        raise MalformedSignatureError(
            f"Signature must be bytes or hex string, got {type(signature).__name__}"
        )

    if len(raw) != SIGNATURE_LENGTH:
        raise MalformedSignatureError(
            f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}",
            details={"length": len(raw)},
        )

    v = raw[64]
    if v in (27, 28):
        v -= 27
    if v not in (0, 1):
        raise MalformedSignatureError(
            f"Invalid recovery id: {raw[64]}",
            details={"recovery_id": raw[64]},
        )
    return raw[:64] + bytes([v])


class SignatureVerifier:
    """
    Recovers signer identities from personal_sign signatures.

    Never decides whether the identity is the expected one: callers
    compare with Identity.matches().
    """

    @staticmethod
    def recover(message: str, signature: Union[bytes, str]) -> Identity:
        """
        Recover the address that signed message.

        Raises:
            MalformedSignatureError: signature cannot be decoded
            RecoveryError: elliptic-curve recovery failed
        """
        normalized = decode_signature(signature)
        digest = personal_sign_digest(message)
        try:
            public_key = PublicKey.from_signature_and_message(normalized, digest, hasher=None)
        except ValueError as e:
            raise RecoveryError(f"Public key recovery failed: {e}") from e
        return Identity(_address_from_public_key(public_key))

    @staticmethod
    def recover_submission(
        content_hash: str,
        signature: Union[bytes, str],
        version: int = CURRENT_TEMPLATE_VERSION,
    ) -> Identity:
        """Recover the signer of the submission message for content_hash."""
        return SignatureVerifier.recover(submission_message(content_hash, version), signature)


# ============================================================
# SIGNER SIDE (operator tools and tests)
# ============================================================

def generate_keypair() -> Tuple[str, str]:
    """
    Generate a secp256k1 keypair.

    Returns:
        Tuple of (private_key_hex, checksum_address)
    """
    private_key = PrivateKey()
    return private_key.secret.hex(), _address_from_public_key(private_key.public_key)


def address_for_private_key(private_key_hex: str) -> str:
    private_key = PrivateKey(bytes.fromhex(private_key_hex.removeprefix("0x")))
    return _address_from_public_key(private_key.public_key)


def sign_message(message: str, private_key_hex: str) -> str:
    """
    personal_sign a message.

    Returns:
        0x-prefixed hex signature with v in {27, 28}
    """
    private_key = PrivateKey(bytes.fromhex(private_key_hex.removeprefix("0x")))
    raw = private_key.sign_recoverable(personal_sign_digest(message), hasher=None)
    return "0x" + (raw[:64] + bytes([raw[64] + 27])).hex()
