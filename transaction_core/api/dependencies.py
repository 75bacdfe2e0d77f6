"""
Service wiring and FastAPI dependencies
"""

from typing import Optional

from ..storage import InMemoryStorage, SQLiteStorage, StorageInterface
from ..accounts import AccountLedger, AccountStateClient
from ..account_client import HttpAccountStateClient
from ..balance_guard import BalanceGuard
from ..ledger import LedgerStore
from ..events import EventDispatcher, ReconciliationAlerter
from ..cache import TransactionCache
from ..orchestrator import TransactionOrchestrator
from ..config import TransactionCoreConfig, get_config


class TransactionSystem:
    """Transaction core with all components initialized"""

    def __init__(
        self,
        config: Optional[TransactionCoreConfig] = None,
        storage: Optional[StorageInterface] = None,
        account_client: Optional[AccountStateClient] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        if storage is not None:
            self.storage = storage
        elif self.config.storage_backend == "sqlite":
            self.storage = SQLiteStorage(self.config.sqlite_path)
        else:
            self.storage = InMemoryStorage()

        # Account ledger, remote unless configured to run in-process
        self.account_ledger: Optional[AccountLedger] = None
        if account_client is not None:
            self.account_client = account_client
        elif self.config.account_service_mode == "local":
            self.account_ledger = AccountLedger(self.storage)
            self.account_client = self.account_ledger
        else:
            self.account_client = self._create_account_client()

        self.event_dispatcher = EventDispatcher()
        self.alerter = ReconciliationAlerter(self.event_dispatcher)
        self.ledger = LedgerStore(self.storage)

        self.cache = None
        if self.config.cache_enabled:
            self.cache = TransactionCache(
                self.ledger,
                self.event_dispatcher,
                ttl_seconds=self.config.cache_ttl_seconds,
                max_entries=self.config.cache_max_entries
            )

        self.balance_guard = BalanceGuard(
            self.account_client,
            max_attempts=self.config.balance_guard_max_attempts,
            backoff_seconds=self.config.balance_guard_backoff_seconds,
            backoff_max_seconds=self.config.balance_guard_backoff_max_seconds
        )
        self.orchestrator = TransactionOrchestrator(
            self.ledger,
            self.account_client,
            balance_guard=self.balance_guard,
            event_dispatcher=self.event_dispatcher,
            cache=self.cache
        )

    def _create_account_client(self) -> HttpAccountStateClient:
        config = self.config
        return HttpAccountStateClient(
            base_url=config.account_service_url,
            timeout=config.account_service_timeout,
            max_attempts=config.account_service_max_attempts,
            backoff_seconds=config.account_service_backoff_seconds,
            backoff_max_seconds=config.account_service_backoff_max_seconds,
            api_key=config.account_service_api_key if config.account_service_api_key else None
        )

    def close(self) -> None:
        self.account_client.close()
        self.storage.close()


# Global transaction system instance, created on first use
_transaction_system: Optional[TransactionSystem] = None


def get_transaction_system() -> TransactionSystem:
    global _transaction_system
    if _transaction_system is None:
        _transaction_system = TransactionSystem()
    return _transaction_system
