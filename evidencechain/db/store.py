"""
Record Store Abstraction

This module defines the RecordStore interface and provides two implementations:
- InMemoryRecordStore: For development and testing
- PostgresRecordStore: For production with full durability and concurrency safety

The RecordStore is responsible for:
- Assigning id and created_at to every record
- All-or-nothing inserts (no UPDATE, no DELETE, ever)
- Case number uniqueness
- Notifying commit listeners in commit order

The SubmissionCoordinator retains responsibility for:
- Verifying the submitter
- Obtaining the ledger receipt BEFORE anything is written here

TRANSACTION CONTRACT:
All writes go through the begin_write() context manager:

    with store.begin_write() as ctx:
        record = ctx.insert_evidence(new_evidence)
        ctx.commit()

Leaving the block without commit() rolls everything back.

ORDERING:
created_at never decreases from one insert to the next, even if the wall
clock steps backwards: each stamp is max(now, last stamp). Ties are broken
by an insert sequence, so listings are created_at DESC, later insert first.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Any, Callable, Generator, Optional, Union
from uuid import UUID, uuid4

import psycopg2
from psycopg2.extras import Json

from ..core.errors import (
    DuplicateCaseNumberError,
    NotFoundError,
    StoreError,
    StoreTransactionError,
)
from ..observability import get_logger
from ..schemas import (
    CaseRecord,
    ChangeEvent,
    EvidenceRecord,
    NewCase,
    NewEvidence,
    RecordType,
)
from .config import DatabaseConfig, RecordStoreDriver, get_recordstore_driver

logger = get_logger(__name__)

CommitListener = Callable[[ChangeEvent], None]
StoredRecord = Union[EvidenceRecord, CaseRecord]


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class RecordClock:
    """
    Store-wide insert clock.

    This is what gets locked during a write.
    """
    last_sequence: int  # -1 means empty store
    last_created_at: Optional[datetime]

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    def stamp(self, now: datetime) -> datetime:
        """Next created_at: wall clock, but never before the previous stamp."""
        if self.last_created_at is None or now > self.last_created_at:
            return now
        return self.last_created_at

    def advance(self, now: datetime) -> tuple[int, datetime]:
        """Reserve the next (sequence, created_at) pair."""
        sequence, created_at = self.next_sequence, self.stamp(now)
        self.last_sequence, self.last_created_at = sequence, created_at
        return sequence, created_at


@dataclass
class WriteContext:
    """
    Transaction context for atomic writes.

    Holds the connection, transaction state and the locked clock, so
    staging and commit always happen on the same connection.

    THREAD SAFETY: All transaction state lives HERE, not on the store.
    """
    clock: RecordClock
    _store: "RecordStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _staged: list[ChangeEvent] = field(default_factory=list)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def _check_open(self) -> None:
        if self._committed:
            raise StoreError("Transaction already committed")
        if self._rolled_back:
            raise StoreError("Transaction already rolled back")

    def insert_evidence(self, new: NewEvidence) -> EvidenceRecord:
        """Stage an evidence insert. Visible to readers only after commit()."""
        self._check_open()
        sequence, created_at = self.clock.advance(datetime.now(timezone.utc))
        record = EvidenceRecord(**new.model_dump(), id=uuid4(), created_at=created_at)
        self._store._stage(self, RecordType.EVIDENCE, sequence, record)
        self._staged.append(ChangeEvent(record_type=RecordType.EVIDENCE, record=record))
        return record

    def insert_case(self, new: NewCase) -> CaseRecord:
        """
        Stage a case insert.

        Raises:
            DuplicateCaseNumberError: case number already taken
        """
        self._check_open()
        sequence, created_at = self.clock.advance(datetime.now(timezone.utc))
        record = CaseRecord(**new.model_dump(), id=uuid4(), created_at=created_at)
        self._store._stage(self, RecordType.CASE, sequence, record)
        self._staged.append(ChangeEvent(record_type=RecordType.CASE, record=record))
        return record

    def commit(self) -> None:
        """Commit staged inserts, then notify listeners in commit order."""
        self._check_open()
        self._store._do_commit(self)
        self._committed = True
        self._store._notify(self._staged)

    def rollback(self) -> None:
        """Explicitly roll back this transaction."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class RecordStore(ABC):
    """
    Abstract base class for record storage.

    Implementations must ensure:
    1. Atomic writes: begin_write() commits everything or nothing
    2. created_at is non-decreasing in insert order
    3. Case numbers are unique
    4. Commit listeners run once per record, in commit order
    """

    def __init__(self):
        self._listeners: list[CommitListener] = []
        self._listeners_lock = Lock()

    # ----------------------------------------------------------------
    # Writes
    # ----------------------------------------------------------------

    @contextmanager
    @abstractmethod
    def begin_write(self) -> Generator[WriteContext, None, None]:
        """
        Begin an atomic write.

        1. Locks the store clock
        2. Yields a WriteContext
        3. Rolls back if the block exits without commit()
        """
        pass

    @abstractmethod
    def _stage(self, ctx: WriteContext, record_type: RecordType, sequence: int,
               record: StoredRecord) -> None:
        """Internal: stage one insert. Use ctx.insert_*() instead."""
        pass

    @abstractmethod
    def _do_commit(self, ctx: WriteContext) -> None:
        """Internal: commit current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: WriteContext) -> None:
        """Internal: roll back current transaction. Use ctx.rollback() instead."""
        pass

    def insert_evidence(self, new: NewEvidence) -> EvidenceRecord:
        """Insert one evidence record in its own transaction."""
        with self.begin_write() as ctx:
            record = ctx.insert_evidence(new)
            ctx.commit()
        logger.info("Evidence record committed", record_id=str(record.id),
                    ledger_receipt=record.ledger_receipt)
        return record

    def insert_case(self, new: NewCase) -> CaseRecord:
        """Insert one case record in its own transaction."""
        with self.begin_write() as ctx:
            record = ctx.insert_case(new)
            ctx.commit()
        logger.info("Case record committed", record_id=str(record.id),
                    case_number=record.case_number)
        return record

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    @abstractmethod
    def list_evidence(self) -> list[EvidenceRecord]:
        """All evidence, created_at descending (ties: later insert first)."""
        pass

    @abstractmethod
    def get_evidence_by_id(self, record_id: UUID) -> EvidenceRecord:
        """Raises NotFoundError if absent."""
        pass

    @abstractmethod
    def find_evidence_by_receipt(self, transaction_id: str) -> Optional[EvidenceRecord]:
        """The record backed by a ledger transaction, or None."""
        pass

    @abstractmethod
    def list_evidence_by_submitter(self, address: str) -> list[EvidenceRecord]:
        """Evidence for a submitter address (case-insensitive), listing order."""
        pass

    @abstractmethod
    def list_cases(self) -> list[CaseRecord]:
        pass

    @abstractmethod
    def get_case_by_id(self, record_id: UUID) -> CaseRecord:
        pass

    @abstractmethod
    def get_case_by_number(self, case_number: str) -> CaseRecord:
        pass

    @abstractmethod
    def count_evidence(self) -> int:
        pass

    def ensure_schema(self) -> None:
        """Create tables if the backend needs them."""
        pass

    def close(self) -> None:
        pass

    # ----------------------------------------------------------------
    # Commit listeners
    # ----------------------------------------------------------------

    def add_commit_listener(self, listener: CommitListener) -> Callable[[], None]:
        """
        Register a callback invoked once per committed record, in commit order.

        Returns a function that unregisters the listener.
        """
        with self._listeners_lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _notify(self, events: list[ChangeEvent]) -> None:
        """Called while the write lock is still held, so order is commit order."""
        with self._listeners_lock:
            listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                try:
                    listener(event)
                except Exception:
                    # The write is committed; a listener cannot undo it.
                    logger.exception("Commit listener failed", record_id=str(event.record_id))


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryRecordStore(RecordStore):
    """
    In-memory implementation of RecordStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        super().__init__()
        self._evidence: list[EvidenceRecord] = []
        self._cases: list[CaseRecord] = []
        self._case_numbers: dict[str, CaseRecord] = {}
        self._by_receipt: dict[str, EvidenceRecord] = {}
        self._clock = RecordClock(last_sequence=-1, last_created_at=None)
        # Reentrant: listeners may read the store while a commit is notifying
        self._lock = RLock()

    @contextmanager
    def begin_write(self) -> Generator[WriteContext, None, None]:
        """Begin atomic write with thread lock."""
        with self._lock:
            clock = RecordClock(self._clock.last_sequence, self._clock.last_created_at)
            ctx = WriteContext(clock=clock, _store=self, _conn="in_memory_lock")
            try:
                yield ctx
            finally:
                if not ctx._committed and not ctx._rolled_back:
                    self._do_rollback(ctx)

    def _stage(self, ctx: WriteContext, record_type: RecordType, sequence: int,
               record: StoredRecord) -> None:
        if ctx._conn != "in_memory_lock":
            raise StoreError("_stage called outside transaction")
        if record_type == RecordType.EVIDENCE:
            staged_receipts = {
                e.record.ledger_receipt for e in ctx._staged if e.record_type == RecordType.EVIDENCE
            }
            if record.ledger_receipt in self._by_receipt or record.ledger_receipt in staged_receipts:
                raise StoreTransactionError(
                    f"Receipt {record.ledger_receipt} already has a record",
                    details={"ledger_receipt": record.ledger_receipt},
                )
        if record_type == RecordType.CASE:
            staged_numbers = {
                e.record.case_number for e in ctx._staged if e.record_type == RecordType.CASE
            }
            if record.case_number in self._case_numbers or record.case_number in staged_numbers:
                raise DuplicateCaseNumberError(record.case_number)

    def _do_commit(self, ctx: WriteContext) -> None:
        if ctx._conn != "in_memory_lock":
            raise StoreError("_do_commit called outside transaction")
        for event in ctx._staged:
            if event.record_type == RecordType.EVIDENCE:
                self._evidence.append(event.record)
                self._by_receipt[event.record.ledger_receipt] = event.record
            else:
                self._cases.append(event.record)
                self._case_numbers[event.record.case_number] = event.record
        self._clock = RecordClock(ctx.clock.last_sequence, ctx.clock.last_created_at)

    def _do_rollback(self, ctx: WriteContext) -> None:
        ctx._staged.clear()
        ctx._conn = None

    def list_evidence(self) -> list[EvidenceRecord]:
        with self._lock:
            return list(reversed(self._evidence))

    def get_evidence_by_id(self, record_id: UUID) -> EvidenceRecord:
        with self._lock:
            for record in self._evidence:
                if record.id == record_id:
                    return record
        raise NotFoundError(f"Evidence {record_id} not found")

    def find_evidence_by_receipt(self, transaction_id: str) -> Optional[EvidenceRecord]:
        with self._lock:
            return self._by_receipt.get(transaction_id)

    def list_evidence_by_submitter(self, address: str) -> list[EvidenceRecord]:
        wanted = address.strip().lower()
        return [r for r in self.list_evidence() if r.submitter_identity.lower() == wanted]

    def list_cases(self) -> list[CaseRecord]:
        with self._lock:
            return list(reversed(self._cases))

    def get_case_by_id(self, record_id: UUID) -> CaseRecord:
        with self._lock:
            for record in self._cases:
                if record.id == record_id:
                    return record
        raise NotFoundError(f"Case {record_id} not found")

    def get_case_by_number(self, case_number: str) -> CaseRecord:
        with self._lock:
            record = self._case_numbers.get(case_number)
        if record is None:
            raise NotFoundError(f"Case {case_number!r} not found")
        return record

    def count_evidence(self) -> int:
        with self._lock:
            return len(self._evidence)

    def clear(self) -> None:
        """Clear all records (for testing only)."""
        with self._lock:
            self._evidence.clear()
            self._cases.clear()
            self._case_numbers.clear()
            self._by_receipt.clear()
            self._clock = RecordClock(last_sequence=-1, last_created_at=None)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS record_clock (
    id BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (id),
    last_sequence BIGINT NOT NULL DEFAULT -1,
    last_created_at TIMESTAMPTZ
);

INSERT INTO record_clock (id, last_sequence, last_created_at)
VALUES (TRUE, -1, NULL)
ON CONFLICT (id) DO NOTHING;

CREATE TABLE IF NOT EXISTS evidence_records (
    id UUID PRIMARY KEY,
    insert_sequence BIGINT NOT NULL UNIQUE,
    content_hash TEXT NOT NULL CHECK (content_hash <> ''),
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    submitter_identity TEXT NOT NULL,
    ledger_receipt TEXT NOT NULL UNIQUE CHECK (ledger_receipt <> ''),
    created_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_evidence_records_listing
    ON evidence_records (created_at DESC, insert_sequence DESC);
CREATE INDEX IF NOT EXISTS idx_evidence_records_submitter
    ON evidence_records (lower(submitter_identity));

CREATE TABLE IF NOT EXISTS case_records (
    id UUID PRIMARY KEY,
    insert_sequence BIGINT NOT NULL UNIQUE,
    case_number TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

-- Append-only: records are never edited or removed
CREATE OR REPLACE FUNCTION reject_record_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS evidence_records_append_only ON evidence_records;
CREATE TRIGGER evidence_records_append_only
    BEFORE UPDATE OR DELETE ON evidence_records
    FOR EACH ROW EXECUTE FUNCTION reject_record_mutation();

DROP TRIGGER IF EXISTS case_records_append_only ON case_records;
CREATE TRIGGER case_records_append_only
    BEFORE UPDATE OR DELETE ON case_records
    FOR EACH ROW EXECUTE FUNCTION reject_record_mutation();
"""

_EVIDENCE_COLUMNS = "id, content_hash, metadata, submitter_identity, ledger_receipt, created_at"
_CASE_COLUMNS = "id, case_number, title, description, created_at"


class PostgresRecordStore(RecordStore):
    """
    PostgreSQL implementation of RecordStore.

    Provides:
    - Full ACID guarantees
    - Monotonic created_at via a FOR UPDATE lock on the record_clock row
    - Case number uniqueness via a UNIQUE constraint
    - Lock/statement timeouts to prevent hanging

    Commit listeners only see commits made through this store instance.
    """

    LOCK_TIMEOUT_MS = 5000
    STATEMENT_TIMEOUT_MS = 30000

    PGCODE_UNIQUE_VIOLATION = "23505"
    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the clock row lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        super().__init__()
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms
        # Serializes in-process commits so listeners fire in commit order
        self._write_lock = Lock()

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "PostgresRecordStore":
        dsn = config.to_dsn()
        return cls(
            lambda: psycopg2.connect(dsn),
            lock_timeout_ms=config.lock_timeout_ms,
            statement_timeout_ms=config.statement_timeout_ms,
        )

    def ensure_schema(self) -> None:
        conn = self._connection_factory()
        try:
            with conn:
                with conn.cursor() as cursor:
                    cursor.execute(SCHEMA_SQL)
        finally:
            conn.close()
        logger.info("Record store schema ensured")

    @contextmanager
    def begin_write(self) -> Generator[WriteContext, None, None]:
        """
        Begin atomic write with FOR UPDATE lock on the clock row.

        psycopg2 errors roll back and surface as StoreTransactionError,
        except unique case numbers (DuplicateCaseNumberError).
        """
        with self._write_lock:
            conn = self._connection_factory()
            conn.autocommit = False
            cursor = conn.cursor()
            ctx = None

            try:
                try:
                    # SET LOCAL keeps timeouts transaction-scoped
                    cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                    cursor.execute(
                        f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'"
                    )
                    cursor.execute("""
                        SELECT last_sequence, last_created_at
                        FROM record_clock
                        WHERE id = TRUE
                        FOR UPDATE
                    """)
                    row = cursor.fetchone()
                except psycopg2.Error as e:
                    raise self._classify(e) from e

                if row is None:
                    raise StoreError("record_clock row missing. Run: python -m tools.manage init-db")

                ctx = WriteContext(
                    clock=RecordClock(last_sequence=row[0], last_created_at=row[1]),
                    _store=self,
                    _conn=conn,
                    _cursor=cursor,
                )
                try:
                    yield ctx
                except psycopg2.Error as e:
                    raise self._classify(e) from e

            finally:
                if ctx is None or not ctx._committed:
                    try:
                        conn.rollback()
                    except psycopg2.Error:
                        logger.warning("Rollback failed, connection discarded")
                try:
                    cursor.close()
                finally:
                    conn.close()

    def _classify(self, e: "psycopg2.Error") -> StoreError:
        """Map a psycopg2 error to a store error."""
        pgcode = getattr(e, "pgcode", None)
        message = (getattr(e, "pgerror", None) or str(e)).strip()

        if pgcode in (self.PGCODE_LOCK_NOT_AVAILABLE, self.PGCODE_QUERY_CANCELED):
            return StoreTransactionError(
                "Record store busy or statement timed out. Try again.",
                details={"pgcode": pgcode},
            )
        return StoreTransactionError(
            f"Record store transaction failed: {message}",
            details={"pgcode": pgcode},
        )

    def _stage(self, ctx: WriteContext, record_type: RecordType, sequence: int,
               record: StoredRecord) -> None:
        if ctx._cursor is None:
            raise StoreError("_stage called outside begin_write context")
        cursor = ctx._cursor

        if record_type == RecordType.EVIDENCE:
            cursor.execute(f"""
                INSERT INTO evidence_records ({_EVIDENCE_COLUMNS}, insert_sequence)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
            """, (
                str(record.id),
                record.content_hash,
                Json(record.metadata),
                record.submitter_identity,
                record.ledger_receipt,
                record.created_at,
                sequence,
            ))
            return

        cursor.execute("SAVEPOINT insert_case")
        try:
            cursor.execute(f"""
                INSERT INTO case_records ({_CASE_COLUMNS}, insert_sequence)
                VALUES (%s, %s, %s, %s, %s, %s)
            """, (
                str(record.id),
                record.case_number,
                record.title,
                record.description,
                record.created_at,
                sequence,
            ))
        except psycopg2.Error as e:
            if getattr(e, "pgcode", None) == self.PGCODE_UNIQUE_VIOLATION:
                cursor.execute("ROLLBACK TO SAVEPOINT insert_case")
                raise DuplicateCaseNumberError(record.case_number) from e
            raise
        cursor.execute("RELEASE SAVEPOINT insert_case")

    def _do_commit(self, ctx: WriteContext) -> None:
        if ctx._cursor is None or ctx._conn is None:
            raise StoreError("_do_commit called outside begin_write context")
        try:
            ctx._cursor.execute("""
                UPDATE record_clock
                SET last_sequence = %s, last_created_at = %s
                WHERE id = TRUE
            """, (ctx.clock.last_sequence, ctx.clock.last_created_at))
            ctx._conn.commit()
        except psycopg2.Error as e:
            raise self._classify(e) from e

    def _do_rollback(self, ctx: WriteContext) -> None:
        if ctx._conn is not None:
            ctx._conn.rollback()
        ctx._staged.clear()

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute(sql, params)
            return cursor.fetchall()
        except psycopg2.Error as e:
            raise self._classify(e) from e
        finally:
            cursor.close()
            conn.close()

    def list_evidence(self) -> list[EvidenceRecord]:
        rows = self._query(f"""
            SELECT {_EVIDENCE_COLUMNS} FROM evidence_records
            ORDER BY created_at DESC, insert_sequence DESC
        """)
        return [self._row_to_evidence(row) for row in rows]

    def get_evidence_by_id(self, record_id: UUID) -> EvidenceRecord:
        rows = self._query(
            f"SELECT {_EVIDENCE_COLUMNS} FROM evidence_records WHERE id = %s",
            (str(record_id),),
        )
        if not rows:
            raise NotFoundError(f"Evidence {record_id} not found")
        return self._row_to_evidence(rows[0])

    def find_evidence_by_receipt(self, transaction_id: str) -> Optional[EvidenceRecord]:
        rows = self._query(
            f"SELECT {_EVIDENCE_COLUMNS} FROM evidence_records WHERE ledger_receipt = %s",
            (transaction_id,),
        )
        return self._row_to_evidence(rows[0]) if rows else None

    def list_evidence_by_submitter(self, address: str) -> list[EvidenceRecord]:
        rows = self._query(f"""
            SELECT {_EVIDENCE_COLUMNS} FROM evidence_records
            WHERE lower(submitter_identity) = lower(%s)
            ORDER BY created_at DESC, insert_sequence DESC
        """, (address.strip(),))
        return [self._row_to_evidence(row) for row in rows]

    def list_cases(self) -> list[CaseRecord]:
        rows = self._query(f"""
            SELECT {_CASE_COLUMNS} FROM case_records
            ORDER BY created_at DESC, insert_sequence DESC
        """)
        return [self._row_to_case(row) for row in rows]

    def get_case_by_id(self, record_id: UUID) -> CaseRecord:
        rows = self._query(
            f"SELECT {_CASE_COLUMNS} FROM case_records WHERE id = %s",
            (str(record_id),),
        )
        if not rows:
            raise NotFoundError(f"Case {record_id} not found")
        return self._row_to_case(rows[0])

    def get_case_by_number(self, case_number: str) -> CaseRecord:
        rows = self._query(
            f"SELECT {_CASE_COLUMNS} FROM case_records WHERE case_number = %s",
            (case_number,),
        )
        if not rows:
            raise NotFoundError(f"Case {case_number!r} not found")
        return self._row_to_case(rows[0])

    def count_evidence(self) -> int:
        return self._query("SELECT COUNT(*) FROM evidence_records")[0][0]

    @staticmethod
    def _row_to_evidence(row: tuple) -> EvidenceRecord:
        # JSONB may come back as str or dict depending on driver setup
        metadata = row[2]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return EvidenceRecord(
            id=UUID(row[0]) if isinstance(row[0], str) else row[0],
            content_hash=row[1],
            metadata=metadata,
            submitter_identity=row[3],
            ledger_receipt=row[4],
            created_at=row[5],
        )

    @staticmethod
    def _row_to_case(row: tuple) -> CaseRecord:
        return CaseRecord(
            id=UUID(row[0]) if isinstance(row[0], str) else row[0],
            case_number=row[1],
            title=row[2],
            description=row[3],
            created_at=row[4],
        )


def create_record_store(
    config: Optional[DatabaseConfig] = None,
    driver: Optional[RecordStoreDriver] = None,
) -> RecordStore:
    """Create the record store selected by configuration."""
    driver = driver or get_recordstore_driver()

    if driver == RecordStoreDriver.PSYCOPG2:
        config = config or DatabaseConfig.from_env()
        logger.info("Using PostgreSQL record store", url=config.to_url(include_password=False))
        return PostgresRecordStore.from_config(config)

    logger.info("Using in-memory record store (no persistence)")
    return InMemoryRecordStore()
