"""
Transaction Ledger Module

Append-only store of Transaction records plus an idempotency-key index.
A record is written once as PENDING when the orchestrator admits a request
and settled exactly once to COMPLETED or FAILED; settled records never
change and no record is ever deleted.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar
from enum import Enum
import math
import threading

from .currency import Money, Currency
from .exceptions import ConcurrencyExhausted, InvalidStateTransition
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger

T = TypeVar("T")


class TransactionType(Enum):
    """Types of money movement"""
    DEPOSIT = "DEPOSIT"        # External money into an account
    WITHDRAWAL = "WITHDRAWAL"  # Money out of an account
    TRANSFER = "TRANSFER"      # Between two accounts


class TransactionStatus(Enum):
    """States of a transaction"""
    PENDING = "PENDING"      # Admitted, balance effects in flight
    COMPLETED = "COMPLETED"  # All balance effects applied
    FAILED = "FAILED"        # Rejected, compensated, or awaiting reconciliation


class ReconciliationState(Enum):
    """What a FAILED transaction did to balances"""
    NONE = "NONE"                # No balance effect remains
    COMPENSATED = "COMPENSATED"  # Debit applied, then reversed
    REQUIRED = "REQUIRED"        # Balances may be inconsistent; an operator must act


@dataclass
class Transaction(StorageRecord):
    """
    Money movement record
    """
    transaction_type: TransactionType
    from_account_id: Optional[str]  # Source account (None for deposits)
    to_account_id: Optional[str]    # Destination account (None for withdrawals)
    amount: Money
    currency: Currency
    idempotency_key: str
    status: TransactionStatus = TransactionStatus.PENDING
    description: Optional[str] = None
    settled_at: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    reconciliation: ReconciliationState = ReconciliationState.NONE
    debit_version: Optional[int] = None   # Source account version after the debit
    credit_version: Optional[int] = None  # Destination account version after the credit
    correlation_id: Optional[str] = None

    def __post_init__(self):
        if self.transaction_type == TransactionType.DEPOSIT:
            if not self.to_account_id or self.from_account_id:
                raise ValueError("Deposit must have only a destination account")
        elif self.transaction_type == TransactionType.WITHDRAWAL:
            if not self.from_account_id or self.to_account_id:
                raise ValueError("Withdrawal must have only a source account")
        elif not self.from_account_id or not self.to_account_id:
            raise ValueError("Transfer must have a source and a destination account")

        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")

        if self.amount.currency != self.currency:
            raise ValueError("Transaction amount currency must match transaction currency")

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == TransactionStatus.FAILED

    @property
    def requires_reconciliation(self) -> bool:
        return self.reconciliation == ReconciliationState.REQUIRED

    @property
    def account_ids(self) -> List[str]:
        return [a for a in (self.from_account_id, self.to_account_id) if a]

    def mark_completed(self) -> None:
        """Settle as COMPLETED"""
        self._ensure_pending()
        now = datetime.now(timezone.utc)
        self.status = TransactionStatus.COMPLETED
        self.settled_at = now
        self.updated_at = now

    def mark_failed(
        self,
        failure_code: str,
        failure_reason: str,
        reconciliation: ReconciliationState = ReconciliationState.NONE
    ) -> None:
        """Settle as FAILED; settled_at stays empty because no money settled"""
        self._ensure_pending()
        self.status = TransactionStatus.FAILED
        self.failure_code = failure_code
        self.failure_reason = failure_reason
        self.reconciliation = reconciliation
        self.updated_at = datetime.now(timezone.utc)

    def _ensure_pending(self) -> None:
        if not self.is_pending:
            raise InvalidStateTransition(
                f"Transaction {self.id} is already {self.status.value}",
                transaction_id=self.id, status=self.status.value
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert Transaction to dictionary for storage"""
        result = super().to_dict()
        result['amount'] = str(self.amount.amount)
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        """Convert dictionary to Transaction"""
        currency = Currency[data['currency']]
        settled_at = None
        if data.get('settled_at'):
            settled_at = datetime.fromisoformat(data['settled_at'])

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_type=TransactionType(data['transaction_type']),
            from_account_id=data.get('from_account_id'),
            to_account_id=data.get('to_account_id'),
            amount=Money(Decimal(data['amount']), currency),
            currency=currency,
            idempotency_key=data['idempotency_key'],
            status=TransactionStatus(data['status']),
            description=data.get('description'),
            settled_at=settled_at,
            failure_code=data.get('failure_code'),
            failure_reason=data.get('failure_reason'),
            reconciliation=ReconciliationState(data.get('reconciliation', 'NONE')),
            debit_version=data.get('debit_version'),
            credit_version=data.get('credit_version'),
            correlation_id=data.get('correlation_id')
        )


@dataclass
class Page(Generic[T]):
    """One page of a result list"""
    items: List[T]
    page: int
    size: int
    total_elements: int

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return math.ceil(self.total_elements / self.size)


class LedgerStore:
    """Append-only transaction ledger with idempotency-key lookup"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"
        self.index_table = "idempotency_keys"
        self._open_lock = threading.Lock()
        self.logger = get_logger("transaction_core.ledger")

    def open(self, transaction: Transaction) -> Transaction:
        """
        Write a PENDING transaction and claim its idempotency key.

        Returns:
            The given transaction if this call claimed the key, otherwise the
            transaction that already holds it

        Raises:
            ConcurrencyExhausted: If the key is held by a record another process
                has not finished writing yet
        """
        if not transaction.is_pending:
            raise InvalidStateTransition(
                "Only PENDING transactions can be opened", transaction_id=transaction.id
            )

        with self._open_lock:
            claimed = self.storage.insert(
                self.index_table, transaction.idempotency_key,
                {"transaction_id": transaction.id}
            )
            if claimed:
                try:
                    self.storage.save(self.table_name, transaction.id, transaction.to_dict())
                except Exception:
                    # An index entry must never point at a record that was not written
                    self.storage.delete(self.index_table, transaction.idempotency_key)
                    self.logger.error(
                        f"Failed to write transaction {transaction.id}, "
                        f"released idempotency key {transaction.idempotency_key}"
                    )
                    raise
                return transaction

        self.logger.debug(f"Idempotency key {transaction.idempotency_key} already claimed")
        existing = self.find_by_idempotency_key(transaction.idempotency_key)
        if existing is None:
            raise ConcurrencyExhausted(
                "Idempotency key is being claimed by another request",
                idempotency_key=transaction.idempotency_key
            )
        return existing

    def record_outcome(self, transaction: Transaction) -> None:
        """Persist the settlement of a PENDING transaction"""
        if transaction.is_pending:
            raise InvalidStateTransition(
                "Cannot record an unsettled transaction", transaction_id=transaction.id
            )

        stored = self.get(transaction.id)
        if stored is None:
            raise InvalidStateTransition(
                f"Transaction {transaction.id} was never opened", transaction_id=transaction.id
            )
        if not stored.is_pending:
            raise InvalidStateTransition(
                f"Transaction {transaction.id} is already {stored.status.value}",
                transaction_id=transaction.id, status=stored.status.value
            )

        self.storage.save(self.table_name, transaction.id, transaction.to_dict())

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        entry = self.storage.load(self.index_table, idempotency_key)
        if not entry:
            return None
        return self.get(entry["transaction_id"])

    def release_idempotency_key(self, idempotency_key: str, transaction_id: str) -> bool:
        """Free a key held by transaction_id so the caller can retry with it"""
        with self._open_lock:
            entry = self.storage.load(self.index_table, idempotency_key)
            if not entry or entry["transaction_id"] != transaction_id:
                return False
            released = self.storage.delete(self.index_table, idempotency_key)
        self.logger.info(
            f"Released idempotency key {idempotency_key} held by failed transaction {transaction_id}"
        )
        return released

    def find_by_account(self, account_id: str, page: int = 0, size: int = 20) -> Page[Transaction]:
        """Transactions touching an account, most recent first"""
        records = {
            data['id']: data
            for filters in ({"from_account_id": account_id}, {"to_account_id": account_id})
            for data in self.storage.find(self.table_name, filters)
        }
        transactions = sorted(
            (Transaction.from_dict(data) for data in records.values()),
            key=lambda t: t.created_at, reverse=True
        )
        start = page * size
        return Page(
            items=transactions[start:start + size],
            page=page,
            size=size,
            total_elements=len(transactions),
        )

    def find_requiring_reconciliation(self) -> List[Transaction]:
        records = self.storage.find(
            self.table_name, {"reconciliation": ReconciliationState.REQUIRED.value}
        )
        return sorted(
            (Transaction.from_dict(data) for data in records), key=lambda t: t.created_at
        )
