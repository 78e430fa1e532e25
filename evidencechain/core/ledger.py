"""
Ledger Clients - The Write Gate

The ledger is the source of truth for authorization and timing.
A record may only be stored after the ledger has accepted its operation.

The core does not implement consensus. It depends on a narrow contract:

    submit(operation, authorizing_identity) -> Receipt

Implementations:
- InMemoryLedger: hash-chained, node-sealed, append-only. Development and tests.
- JsonRpcLedgerClient: Ethereum JSON-RPC node running the EvidenceChain
  contract (Ganache in development).

IDEMPOTENCY CONTRACT:
Every operation carries a caller-supplied request_id. Submitting the same
request_id again returns the original receipt and never creates a second
ledger entry. This is what makes coordinator retries safe.

ERRORS:
- LedgerUnavailableError: node unreachable (retry)
- LedgerTimeoutError: not observed in time, may still land (re-query, then retry)
- LedgerRejectedError: invalid per ledger rules (terminal)
"""

import itertools
import json
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Callable, Optional

import httpx

from ..observability import get_logger
from ..schemas import LedgerEntry, OperationPayload, Receipt
from .errors import (
    LedgerRejectedError,
    LedgerTimeoutError,
    LedgerUnavailableError,
)
from .hasher import CanonicalSerializationError, Hasher
from .signing_service import SigningService
from .verifier import Identity, keccak256

logger = get_logger(__name__)


# ============================================================
# CONFIGURATION
# ============================================================

class LedgerDriver(str, Enum):
    """Supported ledger backends."""
    MEMORY = "memory"
    JSONRPC = "jsonrpc"


@dataclass
class LedgerConfig:
    """Ledger connection configuration."""
    driver: LedgerDriver = LedgerDriver.MEMORY
    rpc_url: str = "http://127.0.0.1:7545"
    contract_address: str = ""

    # Bounded wait for a mined receipt
    confirmation_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 1.0
    request_timeout_seconds: float = 10.0

    gas: int = 6721975

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """
        Load configuration from environment variables.

        - EVIDENCECHAIN_LEDGER_DRIVER (memory, jsonrpc)
        - EVIDENCECHAIN_RPC_URL
        - EVIDENCECHAIN_CONTRACT_ADDRESS
        - EVIDENCECHAIN_CONFIRMATION_TIMEOUT
        - EVIDENCECHAIN_POLL_INTERVAL
        - EVIDENCECHAIN_RPC_TIMEOUT
        - EVIDENCECHAIN_GAS
        """
        driver = os.getenv("EVIDENCECHAIN_LEDGER_DRIVER", "memory").lower()
        try:
            ledger_driver = LedgerDriver(driver)
        except ValueError:
            raise ValueError(
                f"Unknown EVIDENCECHAIN_LEDGER_DRIVER: {driver}. Valid values: memory, jsonrpc"
            ) from None

        return cls(
            driver=ledger_driver,
            rpc_url=os.getenv("EVIDENCECHAIN_RPC_URL", "http://127.0.0.1:7545"),
            contract_address=os.getenv("EVIDENCECHAIN_CONTRACT_ADDRESS", ""),
            confirmation_timeout_seconds=float(os.getenv("EVIDENCECHAIN_CONFIRMATION_TIMEOUT", "30.0")),
            poll_interval_seconds=float(os.getenv("EVIDENCECHAIN_POLL_INTERVAL", "1.0")),
            request_timeout_seconds=float(os.getenv("EVIDENCECHAIN_RPC_TIMEOUT", "10.0")),
            gas=int(os.getenv("EVIDENCECHAIN_GAS", "6721975")),
        )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerClient(ABC):
    """Client contract to an append-only, externally-consensused ledger."""

    @abstractmethod
    def submit(self, operation: OperationPayload, authorizing_identity: Identity) -> Receipt:
        """
        Submit an operation and wait for acceptance.

        Returns:
            Receipt for the accepted operation

        Raises:
            LedgerUnavailableError, LedgerTimeoutError, LedgerRejectedError
        """
        pass

    @abstractmethod
    def lookup(self, request_id: str) -> Optional[Receipt]:
        """
        Re-query the ledger for an operation by its request id.

        Returns None if the ledger has no accepted operation for it (yet).
        """
        pass

    @abstractmethod
    def get_receipt(self, transaction_id: str) -> Optional[Receipt]:
        """Fetch the receipt for a transaction id, or None if unknown."""
        pass

    def ping(self) -> bool:
        """Check the ledger is reachable."""
        return True

    def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedger(LedgerClient):
    """
    In-process append-only ledger.

    Rules (enforced in code):
    - content_hash must be non-empty
    - a content hash can be recorded only once
    - a request_id maps to at most one entry

    CHAIN INTEGRITY GUARANTEES:
    - Sequence numbers are monotonically increasing (0, 1, 2, ...)
    - previous_entry_hash is None ONLY for the genesis entry
    - Every entry hash is sealed with the node key

    NOT suitable for production (no durability, no shared state).
    """

    def __init__(self, signing_service: Optional[SigningService] = None):
        self._signing = signing_service or SigningService.ephemeral()
        self._entries: list[LedgerEntry] = []
        self._by_request: dict[str, LedgerEntry] = {}
        self._by_transaction: dict[str, LedgerEntry] = {}
        self._content_hashes: set[str] = set()
        self._lock = Lock()

    @property
    def node_public_key(self) -> str:
        return self._signing.public_key

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def submit(self, operation: OperationPayload, authorizing_identity: Identity) -> Receipt:
        payload = self._payload_for(operation, authorizing_identity)
        with self._lock:
            existing = self._by_request.get(operation.request_id)
            if existing is not None:
                if existing.payload != payload:
                    raise LedgerRejectedError(
                        f"Request {operation.request_id} already used for a different operation",
                        details={"request_id": operation.request_id},
                    )
                logger.debug("Duplicate request id, returning original receipt",
                             request_id=operation.request_id)
                return self._receipt_for(existing)

            self._validate_operation(operation)
            entry = self._append(operation, payload)

        logger.info(
            "Ledger entry accepted",
            sequence=entry.sequence_number,
            transaction_id=entry.transaction_id,
            request_id=entry.request_id,
        )
        return self._receipt_for(entry)

    def _validate_operation(self, operation: OperationPayload) -> None:
        if not operation.content_hash.strip():
            raise LedgerRejectedError("content_hash must not be empty")
        if operation.content_hash in self._content_hashes:
            raise LedgerRejectedError(
                f"Content hash {operation.content_hash} is already recorded",
                details={"content_hash": operation.content_hash},
            )

    @staticmethod
    def _payload_for(operation: OperationPayload, authorizer: Identity) -> dict[str, Any]:
        """What an entry records. A replayed request id must match it exactly."""
        return {
            "operation": operation.operation,
            "request_id": operation.request_id,
            "content_hash": operation.content_hash,
            "metadata": operation.metadata,
            "authorizer": authorizer.address,
        }

    def _append(self, operation: OperationPayload, payload: dict[str, Any]) -> LedgerEntry:
        """Append under self._lock. Append only: no updates, no deletes."""
        sequence_number = len(self._entries)
        previous_hash = self._entries[-1].entry_hash if self._entries else None
        try:
            entry_hash = Hasher.hash_entry(payload, previous_hash)
        except CanonicalSerializationError as e:
            raise LedgerRejectedError(f"Operation cannot be canonicalized: {e}") from e

        entry = LedgerEntry(
            sequence_number=sequence_number,
            request_id=operation.request_id,
            authorizer=payload["authorizer"],
            payload=payload,
            previous_entry_hash=previous_hash,
            entry_hash=entry_hash,
            seal=self._signing.seal(entry_hash),
            accepted_at=datetime.now(timezone.utc),
        )

        self._entries.append(entry)
        self._by_request[entry.request_id] = entry
        self._by_transaction[entry.transaction_id] = entry
        self._content_hashes.add(operation.content_hash)
        return entry

    @staticmethod
    def _receipt_for(entry: LedgerEntry) -> Receipt:
        return Receipt(
            transaction_id=entry.transaction_id,
            request_id=entry.request_id,
            accepted_at=entry.accepted_at,
            block_number=entry.sequence_number,
        )

    def lookup(self, request_id: str) -> Optional[Receipt]:
        entry = self._by_request.get(request_id)
        return self._receipt_for(entry) if entry else None

    def get_receipt(self, transaction_id: str) -> Optional[Receipt]:
        entry = self._by_transaction.get(transaction_id.lower())
        return self._receipt_for(entry) if entry else None

    def get_entries(self) -> list[LedgerEntry]:
        """All entries, in sequence order."""
        return list(self._entries)

    def verify_chain(self) -> bool:
        """Re-check sequence, linkage, hashes and seals for every entry."""
        previous_hash = None
        for expected_sequence, entry in enumerate(self.get_entries()):
            if entry.sequence_number != expected_sequence:
                return False
            if entry.previous_entry_hash != previous_hash:
                return False
            if not Hasher.verify_entry(entry.payload, entry.entry_hash, previous_hash):
                return False
            if not self._signing.verify(entry.entry_hash, entry.seal):
                return False
            previous_hash = entry.entry_hash
        return True


# ============================================================
# ETHEREUM JSON-RPC IMPLEMENTATION
# ============================================================

SUBMIT_EVIDENCE_SIGNATURE = "submitEvidence(string,string)"


def _abi_encode_strings(*values: str) -> bytes:
    """ABI-encode a tuple of dynamic strings (head offsets, then tails)."""
    head, tail = b"", b""
    offset = 32 * len(values)
    for value in values:
        data = value.encode("utf-8")
        chunk = len(data).to_bytes(32, "big") + data + b"\x00" * (-len(data) % 32)
        head += offset.to_bytes(32, "big")
        tail += chunk
        offset += len(chunk)
    return head + tail


def encode_submit_evidence(content_hash: str, metadata: dict[str, Any]) -> str:
    """Calldata for EvidenceChain.submitEvidence(ipfsHash, metadata)."""
    selector = keccak256(SUBMIT_EVIDENCE_SIGNATURE.encode("ascii"))[:4]
    metadata_json = json.dumps(metadata, sort_keys=True, separators=(",", ":"))
    return "0x" + (selector + _abi_encode_strings(content_hash, metadata_json)).hex()


# Transport failures that happen before the request leaves the client
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


@dataclass
class _PendingSend:
    """One request_id's transaction: sender, pinned nonce, hash once known."""
    fingerprint: str
    sender: str
    nonce: int
    tx_hash: Optional[str] = None


class JsonRpcLedgerClient(LedgerClient):
    """
    Ledger client for an Ethereum node exposing JSON-RPC.

    The authorizing identity is the transaction sender, so the node must
    manage (unlock) that account, as Ganache does in development.

    Idempotency is per process: each request_id gets one pinned nonce and,
    once the node answers, one transaction hash. A retry re-polls the known
    hash. When a send got no answer the hash is unknown; the sender's
    pending nonce then tells whether the node took it. Taken means the
    outcome stays unknown (LedgerTimeoutError), never a second send; not
    taken means the same nonce is sent again. Nonces are assigned here, so
    one process should own each sending account.
    """

    def __init__(
        self,
        config: LedgerConfig,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not config.contract_address:
            raise ValueError("EVIDENCECHAIN_CONTRACT_ADDRESS must be set for the jsonrpc ledger")
        self._config = config
        self._client = httpx.Client(timeout=config.request_timeout_seconds, transport=transport)
        self._clock = clock
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._sends: dict[str, _PendingSend] = {}  # request_id -> send
        self._lock = Lock()
        self._send_lock = Lock()  # nonce assignment through send

    def close(self) -> None:
        self._client.close()

    def _rpc(self, method: str, params: list, may_have_landed: bool = False) -> Any:
        """
        One JSON-RPC call.

        With may_have_landed, a missing or unreadable answer raises
        LedgerTimeoutError instead of LedgerUnavailableError: the node may
        have acted on the request.
        """
        def no_answer(message: str, **details: Any) -> Exception:
            if may_have_landed:
                return LedgerTimeoutError(f"{message}; it may have reached the node")
            return LedgerUnavailableError(message, details=details or None)

        request = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._client.post(self._config.rpc_url, json=request)
        except _NOT_SENT as e:
            raise LedgerUnavailableError(f"Ledger node unreachable ({method}): {e}") from e
        except httpx.TransportError as e:
            raise no_answer(f"No answer from ledger node ({method}): {e}") from e

        if response.status_code >= 500:
            raise no_answer(f"Ledger node error {response.status_code} ({method})",
                            status_code=response.status_code)
        if response.status_code >= 400:
            raise LedgerRejectedError(
                f"Ledger node refused {method}: HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise no_answer(f"Malformed JSON-RPC response ({method})") from e
        if not isinstance(body, dict):
            raise no_answer(f"Malformed JSON-RPC response ({method}): expected an object")

        error = body.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise LedgerRejectedError(
                f"Ledger rejected {method}: {error.get('message', error)}",
                details={"code": error.get("code"), "data": error.get("data")},
            )
        return body.get("result")

    def _pending_nonce(self, sender: str) -> int:
        return int(self._rpc("eth_getTransactionCount", [sender, "pending"]), 16)

    def submit(self, operation: OperationPayload, authorizing_identity: Identity) -> Receipt:
        sender = authorizing_identity.address
        data = encode_submit_evidence(operation.content_hash, operation.metadata)
        fingerprint = f"{sender.lower()}:{data}"

        with self._send_lock:
            with self._lock:
                pending = self._sends.get(operation.request_id)
            if pending is not None and pending.fingerprint != fingerprint:
                raise LedgerRejectedError(
                    f"Request {operation.request_id} already used for a different operation",
                    details={"request_id": operation.request_id},
                )
            if pending is None or pending.tx_hash is None:
                pending = self._send(operation.request_id, pending, sender, data, fingerprint)

        return self._await_receipt(pending.tx_hash, operation.request_id)

    def _send(
        self,
        request_id: str,
        pending: Optional[_PendingSend],
        sender: str,
        data: str,
        fingerprint: str,
    ) -> _PendingSend:
        if pending is None:
            pending = _PendingSend(fingerprint=fingerprint, sender=sender,
                                   nonce=self._pending_nonce(sender))
            with self._lock:
                self._sends[request_id] = pending
        elif self._pending_nonce(sender) > pending.nonce:
            raise LedgerTimeoutError(
                f"Nonce {pending.nonce} for request {request_id} is already used "
                "and its transaction hash is unknown"
            )

        try:
            tx_hash = self._rpc("eth_sendTransaction", [{
                "from": sender,
                "to": self._config.contract_address,
                "gas": hex(self._config.gas),
                "nonce": hex(pending.nonce),
                "data": data,
            }], may_have_landed=True)
        except LedgerRejectedError:
            with self._lock:
                self._sends.pop(request_id, None)
            raise

        pending.tx_hash = tx_hash
        logger.info("Ledger transaction sent", transaction_id=tx_hash,
                    request_id=request_id, nonce=pending.nonce)
        return pending

    def _await_receipt(self, tx_hash: str, request_id: str) -> Receipt:
        deadline = self._clock() + self._config.confirmation_timeout_seconds
        while True:
            raw = self._rpc("eth_getTransactionReceipt", [tx_hash])
            if raw:
                return self._to_receipt(raw, request_id)
            if self._clock() >= deadline:
                raise LedgerTimeoutError(
                    f"Transaction {tx_hash} not mined within "
                    f"{self._config.confirmation_timeout_seconds}s",
                    transaction_id=tx_hash,
                )
            self._sleep(self._config.poll_interval_seconds)

    @staticmethod
    def _to_receipt(raw: dict[str, Any], request_id: str) -> Receipt:
        status = raw.get("status")
        if status is not None and int(status, 16) == 0:
            raise LedgerRejectedError(
                f"Transaction {raw.get('transactionHash')} reverted",
                details={"transaction_id": raw.get("transactionHash")},
            )
        block_number = raw.get("blockNumber")
        return Receipt(
            transaction_id=raw["transactionHash"],
            request_id=request_id,
            accepted_at=datetime.now(timezone.utc),
            block_number=int(block_number, 16) if block_number else None,
        )

    def lookup(self, request_id: str) -> Optional[Receipt]:
        with self._lock:
            pending = self._sends.get(request_id)
        if pending is None or pending.tx_hash is None:
            return None
        raw = self._rpc("eth_getTransactionReceipt", [pending.tx_hash])
        return self._to_receipt(raw, request_id) if raw else None

    def get_receipt(self, transaction_id: str) -> Optional[Receipt]:
        raw = self._rpc("eth_getTransactionReceipt", [transaction_id])
        if not raw:
            return None
        with self._lock:
            request_id = next(
                (rid for rid, send in self._sends.items() if send.tx_hash == transaction_id),
                transaction_id,
            )
        return self._to_receipt(raw, request_id)

    def ping(self) -> bool:
        try:
            self._rpc("net_version", [])
        except LedgerUnavailableError:
            return False
        return True


def create_ledger_client(
    config: Optional[LedgerConfig] = None,
    signing_service: Optional[SigningService] = None,
) -> LedgerClient:
    """Create the ledger client selected by configuration."""
    config = config or LedgerConfig.from_env()

    if config.driver == LedgerDriver.JSONRPC:
        logger.info("Using JSON-RPC ledger", rpc_url=config.rpc_url,
                    contract=config.contract_address)
        return JsonRpcLedgerClient(config)

    logger.info("Using in-memory ledger (no persistence)")
    return InMemoryLedger(signing_service or SigningService.from_env())
