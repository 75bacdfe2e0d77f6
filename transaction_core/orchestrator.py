"""
Transaction Orchestration Module

Runs deposits, withdrawals and transfers across the account ledger (balances)
and the transaction ledger (records). The two stores share no transaction
boundary, so the orchestrator:

- admits a request by writing a PENDING record that claims its idempotency key
- applies balance effects through BalanceGuard, debit before credit
- compensates a transfer's debit when its credit fails
- settles the record exactly once, as COMPLETED or FAILED

When an effect may have been applied but cannot be confirmed or undone, the
record is marked for manual reconciliation, an alert is published and
ReconciliationRequired is raised.
"""

from decimal import Decimal, DecimalException
from datetime import datetime, timezone
from typing import List, Optional, Union
import uuid

from .accounts import AccountSnapshot, AccountStateClient
from .balance_guard import BalanceChange, BalanceGuard
from .cache import TransactionCache
from .currency import Currency, Money
from .events import DomainEvent, EventDispatcher, EventPayload
from .exceptions import (
    AccountInactive, BalanceOutcomeUnknown, CurrencyMismatch, InvalidOperation,
    ReconciliationRequired, TransactionNotFound, ValidationError
)
from .ledger import (
    LedgerStore, Page, ReconciliationState, Transaction, TransactionType
)
from .logging_config import get_correlation_id, get_logger, log_action

AmountLike = Union[Decimal, str, int]

# Largest accepted amount is just under 10**MAX_AMOUNT_DIGITS
MAX_AMOUNT_DIGITS = 18


class TransactionOrchestrator:
    """
    Entry point for money movement.

    Each call is an independent unit of work and may run concurrently with
    any other, including against the same account. No lock is held across
    calls to the account ledger.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        account_client: AccountStateClient,
        balance_guard: Optional[BalanceGuard] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        cache: Optional[TransactionCache] = None
    ):
        self.ledger = ledger
        self.account_client = account_client
        self.balance_guard = balance_guard or BalanceGuard(account_client)
        self._event_dispatcher = event_dispatcher
        self.cache = cache
        self.logger = get_logger("transaction_core.orchestrator")

    # ------------------------------------------------------------------
    # Money movement
    # ------------------------------------------------------------------

    def deposit(
        self,
        account_id: str,
        amount: AmountLike,
        currency: Union[str, Currency],
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None
    ) -> Transaction:
        """Credit an account with external money"""
        return self._execute(
            TransactionType.DEPOSIT, None, account_id,
            amount, currency, idempotency_key, description
        )

    def withdraw(
        self,
        account_id: str,
        amount: AmountLike,
        currency: Union[str, Currency],
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None
    ) -> Transaction:
        """Debit an account; never leaves a negative balance"""
        return self._execute(
            TransactionType.WITHDRAWAL, account_id, None,
            amount, currency, idempotency_key, description
        )

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        currency: Union[str, Currency],
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Move money between two accounts.

        The source is debited first. If the destination credit then fails the
        debit is reversed and the transaction is recorded FAILED with
        reconciliation COMPENSATED; the credit's error is re-raised.

        Raises:
            InvalidOperation: If both accounts are the same (no account call is made)
            ReconciliationRequired: If the debit could not be reversed
        """
        return self._execute(
            TransactionType.TRANSFER, from_account_id, to_account_id,
            amount, currency, idempotency_key, description
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Transaction:
        if self.cache is not None:
            transaction = self.cache.get(transaction_id)
        else:
            transaction = self.ledger.get(transaction_id)
        if transaction is None:
            raise TransactionNotFound(transaction_id)
        return transaction

    def get_account_transactions(
        self, account_id: str, page: int = 0, size: int = 20
    ) -> Page[Transaction]:
        """Transactions touching an account, newest first"""
        if page < 0 or size < 1:
            raise ValidationError("page must be >= 0 and size >= 1", page=page, size=size)
        if self.cache is not None:
            return self.cache.find_by_account(account_id, page=page, size=size)
        return self.ledger.find_by_account(account_id, page=page, size=size)

    def get_transactions_requiring_reconciliation(self) -> List[Transaction]:
        return self.ledger.find_requiring_reconciliation()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(
        self,
        transaction_type: TransactionType,
        from_account_id: Optional[str],
        to_account_id: Optional[str],
        amount: AmountLike,
        currency: Union[str, Currency],
        idempotency_key: Optional[str],
        description: Optional[str]
    ) -> Transaction:
        if idempotency_key:
            existing = self.ledger.find_by_idempotency_key(idempotency_key)
            if existing:
                self._log_replay(existing)
                return existing

        required = []
        if transaction_type != TransactionType.DEPOSIT:
            required.append(from_account_id)
        if transaction_type != TransactionType.WITHDRAWAL:
            required.append(to_account_id)
        if not all(account_id and str(account_id).strip() for account_id in required):
            raise ValidationError("Account id is required")

        money = self._validate_money(amount, currency)
        if transaction_type == TransactionType.TRANSFER and from_account_id == to_account_id:
            raise InvalidOperation(
                "Cannot transfer to the same account", account_id=from_account_id
            )

        now = datetime.now(timezone.utc)
        transaction_id = str(uuid.uuid4())
        transaction = Transaction(
            id=transaction_id,
            created_at=now,
            updated_at=now,
            transaction_type=transaction_type,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=money,
            currency=money.currency,
            idempotency_key=idempotency_key or transaction_id,
            description=description,
            correlation_id=get_correlation_id(),
        )

        winner = self.ledger.open(transaction)
        if winner.id != transaction.id:
            # Lost the race for this key to a concurrent duplicate
            self._log_replay(winner)
            return winner

        log_action(
            self.logger, "info", f"Transaction created: {transaction_type.value}",
            action="create_transaction", resource=f"transaction:{transaction.id}",
            extra={
                "transaction_type": transaction_type.value,
                "amount": money.to_string(),
                "from_account": from_account_id,
                "to_account": to_account_id,
                "idempotency_key": transaction.idempotency_key
            }
        )
        self._publish_event(DomainEvent.TRANSACTION_CREATED, transaction)

        try:
            self._check_accounts(transaction)
        except Exception as e:
            self._fail(transaction, e)
            raise

        if transaction_type == TransactionType.DEPOSIT:
            credit = self._apply_single(transaction, transaction.to_account_id, money.amount)
            transaction.credit_version = credit.new_version
        elif transaction_type == TransactionType.WITHDRAWAL:
            debit = self._apply_single(transaction, transaction.from_account_id, -money.amount)
            transaction.debit_version = debit.new_version
        else:
            self._apply_transfer(transaction)

        transaction.mark_completed()
        self._record(transaction, effects_applied=True)

        log_action(
            self.logger, "info", f"Transaction completed: {transaction_type.value}",
            action="complete_transaction", resource=f"transaction:{transaction.id}",
            extra={
                "debit_version": transaction.debit_version,
                "credit_version": transaction.credit_version
            }
        )
        self._publish_event(DomainEvent.TRANSACTION_COMPLETED, transaction)
        return transaction

    def _validate_money(self, amount: AmountLike, currency: Union[str, Currency]) -> Money:
        if currency is None or (isinstance(currency, str) and not currency.strip()):
            raise ValidationError("Currency is required")
        try:
            resolved = currency if isinstance(currency, Currency) else Currency.from_code(currency)
        except ValueError as e:
            raise ValidationError(str(e), currency=str(currency)) from e

        if amount is None or isinstance(amount, (bool, float)):
            raise ValidationError("Amount must be a decimal number", amount=str(amount))
        try:
            value = Decimal(str(amount))
        except DecimalException as e:
            raise ValidationError(f"Invalid amount: {amount}", amount=str(amount)) from e
        if not value.is_finite() or value <= 0:
            raise ValidationError("Amount must be positive", amount=str(amount))
        if value.adjusted() >= MAX_AMOUNT_DIGITS:
            raise ValidationError(
                f"Amount exceeds {MAX_AMOUNT_DIGITS} integer digits", amount=str(amount)
            )
        try:
            money = Money(value, resolved)
        except DecimalException as e:
            raise ValidationError(f"Invalid amount: {amount}", amount=str(amount)) from e
        if not money.is_positive():
            raise ValidationError(
                f"Amount rounds to zero in {resolved.code}", amount=str(amount)
            )
        return money

    def _check_accounts(self, transaction: Transaction) -> None:
        """Existence, ACTIVE status and currency of every involved account"""
        for account_id in transaction.account_ids:
            snapshot = self.account_client.get(account_id)
            self._check_account(snapshot, transaction.currency)

    @staticmethod
    def _check_account(snapshot: AccountSnapshot, currency: Currency) -> None:
        if not snapshot.is_active:
            raise AccountInactive(snapshot.account_id, snapshot.status.value)
        if snapshot.currency != currency.code:
            raise CurrencyMismatch(
                f"Account {snapshot.account_id} holds {snapshot.currency}, "
                f"transaction is in {currency.code}",
                account_id=snapshot.account_id,
                account_currency=snapshot.currency,
                transaction_currency=currency.code
            )

    def _apply_single(
        self, transaction: Transaction, account_id: str, signed_amount: Decimal
    ) -> BalanceChange:
        """The only balance effect of a deposit or withdrawal"""
        try:
            return self.balance_guard.apply_delta(account_id, signed_amount)
        except BalanceOutcomeUnknown as e:
            self._require_reconciliation(transaction, e, f"Balance effect on {account_id} unconfirmed")
        except Exception as e:
            self._fail(transaction, e)
            raise

    def _apply_transfer(self, transaction: Transaction) -> None:
        source = transaction.from_account_id
        destination = transaction.to_account_id
        amount = transaction.amount.amount

        try:
            debit = self.balance_guard.apply_delta(source, -amount)
        except BalanceOutcomeUnknown as e:
            self._require_reconciliation(transaction, e, f"Debit of {source} unconfirmed")
        except Exception as e:
            self._fail(transaction, e)
            raise
        transaction.debit_version = debit.new_version

        try:
            credit = self.balance_guard.apply_delta(destination, amount)
        except BalanceOutcomeUnknown as e:
            # The credit may have landed; reversing the debit could create money
            self._require_reconciliation(
                transaction, e, f"Debit of {source} applied, credit of {destination} unconfirmed"
            )
        except Exception as e:
            self._compensate(transaction, e)
            raise
        transaction.credit_version = credit.new_version

    def _compensate(self, transaction: Transaction, cause: Exception) -> None:
        """Credit the transfer source back after its destination credit failed"""
        source = transaction.from_account_id
        log_action(
            self.logger, "warning", f"Credit failed, reversing debit: {cause}",
            action="compensate_transaction", resource=f"transaction:{transaction.id}",
            extra={"account_id": source, "debit_version": transaction.debit_version}
        )
        try:
            self.balance_guard.apply_delta(
                source, transaction.amount.amount, require_active=False
            )
        except Exception as e:
            self._require_reconciliation(
                transaction, e,
                f"Debit of {source} applied but could not be reversed after credit failure: {cause}"
            )

        self._fail(transaction, cause, reconciliation=ReconciliationState.COMPENSATED)
        self._publish_event(DomainEvent.TRANSACTION_COMPENSATED, transaction)

    def _fail(
        self,
        transaction: Transaction,
        error: Exception,
        reconciliation: ReconciliationState = ReconciliationState.NONE
    ) -> None:
        """Settle as FAILED; a retryable failure frees the key for a retry"""
        code = getattr(error, 'code', type(error).__name__)
        transaction.mark_failed(code, str(error), reconciliation=reconciliation)
        self._record(transaction, effects_applied=reconciliation != ReconciliationState.NONE)

        log_action(
            self.logger, "warning", f"Transaction failed: {code}",
            action="fail_transaction", resource=f"transaction:{transaction.id}",
            extra={"reason": str(error), "reconciliation": reconciliation.value}
        )
        self._publish_event(DomainEvent.TRANSACTION_FAILED, transaction)

        if getattr(error, 'retryable', False):
            self.ledger.release_idempotency_key(transaction.idempotency_key, transaction.id)

    def _require_reconciliation(self, transaction: Transaction, error: Exception, reason: str):
        """Record a manual-reconciliation failure, alert, and raise"""
        transaction.mark_failed(
            ReconciliationRequired.code, reason, reconciliation=ReconciliationState.REQUIRED
        )
        self._record(transaction, effects_applied=True)

        log_action(
            self.logger, "critical", f"Manual reconciliation required: {reason}",
            action="require_reconciliation", resource=f"transaction:{transaction.id}",
            extra=self._alert_data(transaction, reason)
        )
        self._publish_event(DomainEvent.TRANSACTION_FAILED, transaction)
        self._publish_alert(DomainEvent.RECONCILIATION_REQUIRED, transaction, reason)

        raise ReconciliationRequired(
            reason, transaction_id=transaction.id, cause=str(error)
        ) from error

    def _record(self, transaction: Transaction, effects_applied: bool) -> None:
        try:
            self.ledger.record_outcome(transaction)
        except Exception as e:
            if not effects_applied:
                raise
            reason = (
                f"Balance effects applied but {transaction.status.value} outcome "
                f"could not be written: {e}"
            )
            log_action(
                self.logger, "critical", reason,
                action="record_outcome", resource=f"transaction:{transaction.id}",
                extra=self._alert_data(transaction, reason)
            )
            self._publish_alert(DomainEvent.LEDGER_WRITE_FAILED, transaction, reason)
            raise ReconciliationRequired(
                reason, transaction_id=transaction.id, cause=str(e)
            ) from e

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _publish_event(self, event_type: DomainEvent, transaction: Transaction) -> None:
        """Publish a domain event if an event dispatcher is available"""
        if not self._event_dispatcher:
            return
        self._event_dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type="transaction",
            entity_id=transaction.id,
            data={
                "transaction_type": transaction.transaction_type.value,
                "status": transaction.status.value,
                "amount": str(transaction.amount.amount),
                "currency": transaction.currency.code,
                "account_ids": transaction.account_ids,
                "reconciliation": transaction.reconciliation.value,
                "failure_code": transaction.failure_code,
            }
        ))

    def _publish_alert(self, event_type: DomainEvent, transaction: Transaction, reason: str) -> None:
        if not self._event_dispatcher:
            return
        self._event_dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type="transaction",
            entity_id=transaction.id,
            data=self._alert_data(transaction, reason)
        ))

    @staticmethod
    def _alert_data(transaction: Transaction, reason: str) -> dict:
        return {
            "reason": reason,
            "transaction_type": transaction.transaction_type.value,
            "from_account": transaction.from_account_id,
            "to_account": transaction.to_account_id,
            "account_ids": transaction.account_ids,
            "amount": str(transaction.amount.amount),
            "currency": transaction.currency.code,
            "debit_version": transaction.debit_version,
            "credit_version": transaction.credit_version,
        }

    def _log_replay(self, transaction: Transaction) -> None:
        log_action(
            self.logger, "info", "Idempotent replay, returning existing transaction",
            action="replay_transaction", resource=f"transaction:{transaction.id}",
            extra={"idempotency_key": transaction.idempotency_key,
                   "status": transaction.status.value}
        )
