"""
Read-through cache for transaction lookups.

Only read paths go through here. Idempotency and balance decisions always
read the ledger directly.
"""

import logging
import threading
from typing import Dict, Hashable, Optional

from cachetools import TTLCache

from .events import DomainEvent, EventDispatcher, EventPayload
from .ledger import LedgerStore, Page, Transaction

logger = logging.getLogger("transaction_core.cache")

INVALIDATING_EVENTS = (
    DomainEvent.TRANSACTION_CREATED,
    DomainEvent.TRANSACTION_COMPLETED,
    DomainEvent.TRANSACTION_FAILED,
)


class TransactionCache:
    """TTL cache in front of LedgerStore.get and LedgerStore.find_by_account"""

    def __init__(
        self,
        ledger: LedgerStore,
        dispatcher: Optional[EventDispatcher] = None,
        ttl_seconds: int = 300,
        max_entries: int = 1024
    ):
        self.ledger = ledger
        self.transaction_cache = TTLCache(maxsize=max_entries, ttl=ttl_seconds)
        self.page_cache = TTLCache(maxsize=max_entries, ttl=ttl_seconds)
        # Bumped on every write touching an account; a page loaded under an
        # older generation is not stored
        self._generations: Dict[str, int] = {}
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

        if dispatcher is not None:
            for event_type in INVALIDATING_EVENTS:
                dispatcher.subscribe(event_type, self.on_transaction_event)

    def get(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            cached = self.transaction_cache.get(transaction_id)
            if cached is not None:
                self.hits += 1
                return cached
            self.misses += 1

        transaction = self.ledger.get(transaction_id)
        # PENDING records still change; only settled ones are cached
        if transaction is not None and not transaction.is_pending:
            with self._lock:
                self.transaction_cache[transaction_id] = transaction
        return transaction

    def find_by_account(self, account_id: str, page: int = 0, size: int = 20) -> Page[Transaction]:
        key: Hashable = (account_id, page, size)
        with self._lock:
            cached = self.page_cache.get(key)
            if cached is not None:
                self.hits += 1
                return cached
            self.misses += 1
            generation = self._generations.get(account_id, 0)

        result = self.ledger.find_by_account(account_id, page=page, size=size)
        with self._lock:
            if self._generations.get(account_id, 0) == generation:
                self.page_cache[key] = result
        return result

    def on_transaction_event(self, event: EventPayload) -> None:
        self.invalidate(event.entity_id, event.data.get('account_ids', []))

    def invalidate(self, transaction_id: str, account_ids=()) -> None:
        """Evict a transaction and every cached page of its accounts"""
        with self._lock:
            self.transaction_cache.pop(transaction_id, None)
            for account_id in account_ids:
                self._generations[account_id] = self._generations.get(account_id, 0) + 1
                for key in [k for k in self.page_cache.keys() if k[0] == account_id]:
                    self.page_cache.pop(key, None)
        logger.debug(f"Invalidated cache entries for transaction {transaction_id}")

    def stats(self) -> Dict[str, int]:
        """Hit and miss counters with current entry counts"""
        with self._lock:
            return {
                "hits": self.hits,
                "misses": self.misses,
                "transactions": len(self.transaction_cache),
                "pages": len(self.page_cache),
            }

    def clear(self) -> None:
        with self._lock:
            self.transaction_cache.clear()
            self.page_cache.clear()
