"""
Runtime Wiring

Builds the store, ledger client, notifier, orphan log and coordinator,
and hands them out together. No module-level singletons: the FastAPI
lifespan owns one Runtime, tools and tests build their own.

Backends are selected by environment variables:
- RECORDSTORE_DRIVER / DATABASE_URL / DATABASE_HOST: record store
  (in-memory when no database is configured)
- EVIDENCECHAIN_LEDGER_DRIVER: memory (default) or jsonrpc
- EVIDENCECHAIN_RECONCILIATION_LOG: orphan log file (in-memory if unset)
"""

from dataclasses import dataclass
from typing import Optional

from .core.coordinator import RetryPolicy, SubmissionCoordinator
from .core.ledger import LedgerClient, LedgerConfig, create_ledger_client
from .core.notifier import ChangeNotifier
from .core.reconciliation import OrphanLog
from .db.store import RecordStore, create_record_store
from .observability import MetricsCollector, get_logger

logger = get_logger(__name__)


@dataclass
class Runtime:
    store: RecordStore
    ledger: LedgerClient
    notifier: ChangeNotifier
    orphan_log: OrphanLog
    coordinator: SubmissionCoordinator

    @classmethod
    def build(
        cls,
        store: RecordStore,
        ledger: LedgerClient,
        retry_policy: Optional[RetryPolicy] = None,
        orphan_log: Optional[OrphanLog] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> "Runtime":
        if orphan_log is None:
            orphan_log = OrphanLog()
        coordinator = SubmissionCoordinator(
            ledger=ledger,
            store=store,
            retry_policy=retry_policy,
            orphan_log=orphan_log,
            metrics=metrics,
        )
        return cls(
            store=store,
            ledger=ledger,
            notifier=ChangeNotifier(store),
            orphan_log=orphan_log,
            coordinator=coordinator,
        )

    @classmethod
    def from_env(cls) -> "Runtime":
        store = create_record_store()
        ledger = create_ledger_client(LedgerConfig.from_env())
        runtime = cls.build(
            store=store,
            ledger=ledger,
            retry_policy=RetryPolicy.from_env(),
            orphan_log=OrphanLog.from_env(),
        )
        logger.info(
            "Runtime ready",
            store_type=type(store).__name__,
            ledger_type=type(ledger).__name__,
            orphan_log=str(runtime.orphan_log.path) if runtime.orphan_log.path else "memory",
        )
        return runtime

    def close(self) -> None:
        self.notifier.close()
        self.ledger.close()
        self.store.close()
