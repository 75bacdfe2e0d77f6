"""
Account State Module

The account ledger owns balances and statuses; the transaction core only reads
an account and asks for version-conditional balance updates through the
AccountStateClient interface. AccountLedger is the in-process, storage-backed
implementation of that interface used for local wiring, the collaborator REST
endpoints, and tests.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from enum import Enum
import threading
import uuid

from .currency import Currency, quantize
from .exceptions import AccountNotFound, ValidationError
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"      # Normal operation
    INACTIVE = "INACTIVE"  # Closed or dormant
    BLOCKED = "BLOCKED"    # Frozen by the bank


@dataclass(frozen=True)
class AccountSnapshot:
    """Point-in-time view of an account as returned by the account ledger"""
    account_id: str
    balance: Decimal
    currency: str
    status: AccountStatus
    version: int

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "balance": str(self.balance),
            "currency": self.currency,
            "status": self.status.value,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountSnapshot':
        """Parse the account ledger's JSON representation"""
        return cls(
            account_id=data["accountId"],
            balance=Decimal(str(data["balance"])),
            currency=data["currency"],
            status=AccountStatus(data["status"]),
            version=int(data["version"]),
        )


class AccountStateClient(ABC):
    """Synchronous read/update of a single account, owned by the account ledger"""

    @abstractmethod
    def get(self, account_id: str) -> AccountSnapshot:
        """
        Read an account.

        Raises:
            AccountNotFound: If the account does not exist
            AccountServiceUnavailable: If the account ledger cannot be reached
        """
        pass

    @abstractmethod
    def conditional_update_balance(
        self, account_id: str, expected_version: int, new_balance: Decimal
    ) -> Tuple[bool, int]:
        """
        Store new_balance only if the account's version still equals expected_version.

        Returns:
            (True, new_version) if applied, (False, current_version) on a version conflict
        """
        pass

    def health_check(self) -> bool:
        """Whether the account ledger can currently be reached"""
        return True

    def close(self) -> None:
        pass


@dataclass
class Account(StorageRecord):
    """Account as persisted by the account ledger"""
    balance: Decimal
    currency: Currency
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = 0

    def __post_init__(self):
        if self.balance < Decimal('0'):
            raise ValueError("Account balance cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            balance=Decimal(data['balance']),
            currency=Currency[data['currency']],
            status=AccountStatus(data['status']),
            version=data['version'],
        )

    def snapshot(self) -> AccountSnapshot:
        return AccountSnapshot(
            account_id=self.id,
            balance=self.balance,
            currency=self.currency.code,
            status=self.status,
            version=self.version,
        )


class AccountLedger(AccountStateClient):
    """
    Storage-backed account ledger.

    Conditional updates run read-compare-write under one lock, which makes them
    a true compare-and-swap on the version for every caller in this process.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "accounts"
        self._lock = threading.Lock()
        self.logger = get_logger("transaction_core.accounts")

    def open_account(
        self,
        currency: Currency,
        initial_balance: Decimal = Decimal('0'),
        account_id: Optional[str] = None,
        status: AccountStatus = AccountStatus.ACTIVE
    ) -> AccountSnapshot:
        """Open a new account (seeding helper; account CRUD belongs to the account service)"""
        now = datetime.now(timezone.utc)
        account = Account(
            id=account_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            balance=quantize(Decimal(str(initial_balance)), currency),
            currency=currency,
            status=status,
        )
        if not self.storage.insert(self.table_name, account.id, account.to_dict()):
            raise ValidationError(f"Account {account.id} already exists", account_id=account.id)
        return account.snapshot()

    def set_status(self, account_id: str, status: AccountStatus) -> AccountSnapshot:
        """Change an account's status; does not bump the balance version"""
        with self._lock:
            account = self._load(account_id)
            account.status = status
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, account.id, account.to_dict())
        log_action(
            self.logger, "info", f"Account status set to {status.value}",
            action="set_account_status", resource=f"account:{account_id}"
        )
        return account.snapshot()

    def get(self, account_id: str) -> AccountSnapshot:
        return self._load(account_id).snapshot()

    def conditional_update_balance(
        self, account_id: str, expected_version: int, new_balance: Decimal
    ) -> Tuple[bool, int]:
        applied, snapshot = self.compare_and_set_balance(account_id, expected_version, new_balance)
        return applied, snapshot.version

    def compare_and_set_balance(
        self, account_id: str, expected_version: int, new_balance: Decimal
    ) -> Tuple[bool, AccountSnapshot]:
        """Conditional update returning the account as it stands right after the attempt"""
        if new_balance < Decimal('0'):
            raise ValidationError(
                "Account balance cannot be negative",
                account_id=account_id, balance=str(new_balance)
            )

        with self._lock:
            account = self._load(account_id)
            if account.version != expected_version:
                return False, account.snapshot()

            account.balance = quantize(new_balance, account.currency)
            account.version += 1
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, account.id, account.to_dict())

        self.logger.debug(
            f"Account {account_id} balance set to {account.balance} at version {account.version}"
        )
        return True, account.snapshot()

    def _load(self, account_id: str) -> Account:
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise AccountNotFound(account_id)
        return Account.from_dict(data)
