"""
Test suite for the transaction orchestrator

Covers deposits, withdrawals and transfers end to end against the in-process
account ledger: idempotency (sequential and concurrent), debit-before-credit
with compensation, reconciliation alerts and the no-overdraft guarantee
under concurrent withdrawals.
"""

import pytest
import threading
from decimal import Decimal
from unittest.mock import Mock
import httpx
import json

from transaction_core.account_client import HttpAccountStateClient
from transaction_core.accounts import AccountLedger, AccountStatus
from transaction_core.api.dependencies import TransactionSystem
from transaction_core.balance_guard import BalanceGuard
from transaction_core.cache import TransactionCache
from transaction_core.config import TransactionCoreConfig
from transaction_core.currency import Currency
from transaction_core.events import DomainEvent, EventDispatcher, ReconciliationAlerter
from transaction_core.exceptions import (
    AccountInactive, AccountNotFound, AccountServiceUnavailable, BalanceOutcomeUnknown,
    ConcurrencyExhausted, CurrencyMismatch, InsufficientFunds, InvalidOperation,
    ReconciliationRequired, TransactionNotFound, ValidationError
)
from transaction_core.ledger import (
    LedgerStore, ReconciliationState, TransactionStatus, TransactionType
)
from transaction_core.logging_config import reset_correlation_id, set_correlation_id
from transaction_core.orchestrator import TransactionOrchestrator
from transaction_core.storage import InMemoryStorage


class OrchestratorTestBase:
    """Wires an orchestrator over in-memory stores"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.accounts = AccountLedger(self.storage)
        self.ledger = LedgerStore(self.storage)
        self.dispatcher = EventDispatcher()
        self.alerter = ReconciliationAlerter(self.dispatcher)
        self.cache = TransactionCache(self.ledger, self.dispatcher, ttl_seconds=60)
        self.guard = BalanceGuard(
            self.accounts, max_attempts=20, backoff_seconds=0.001, backoff_max_seconds=0.01
        )
        self.orchestrator = TransactionOrchestrator(
            self.ledger, self.accounts,
            balance_guard=self.guard,
            event_dispatcher=self.dispatcher,
            cache=self.cache
        )
        self.events = []
        self.dispatcher.subscribe_all(self.events.append)

    def open_account(self, account_id, balance="0", currency=Currency.USD):
        return self.accounts.open_account(currency, Decimal(balance), account_id=account_id)

    def balance(self, account_id):
        return self.accounts.get(account_id).balance

    def event_types(self):
        return [e.event_type for e in self.events]

    def script_guard(self, scripted):
        """Route BalanceGuard.apply_delta through scripted(real, account_id, amount, **kw)"""
        real = self.guard.apply_delta

        def apply_delta(account_id, signed_amount, **kwargs):
            return scripted(real, account_id, signed_amount, **kwargs)

        self.guard.apply_delta = apply_delta


class TestDepositAndWithdraw(OrchestratorTestBase):
    """Single-account operations"""

    def setup_method(self):
        super().setup_method()
        self.open_account("acc-1", "100.00")

    def test_deposit(self):
        transaction = self.orchestrator.deposit("acc-1", Decimal('50.25'), "USD",
                                                description="Paycheck")

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.to_account_id == "acc-1"
        assert transaction.from_account_id is None
        assert transaction.settled_at is not None
        assert transaction.credit_version == 1
        assert transaction.description == "Paycheck"
        assert transaction.idempotency_key == transaction.id
        assert self.balance("acc-1") == Decimal('150.25')

        stored = self.ledger.get(transaction.id)
        assert stored.is_completed
        assert self.event_types() == [
            DomainEvent.TRANSACTION_CREATED, DomainEvent.TRANSACTION_COMPLETED
        ]

    def test_withdraw(self):
        transaction = self.orchestrator.withdraw("acc-1", "40", "usd")

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.debit_version == 1
        assert transaction.amount.amount == Decimal('40.00')
        assert self.balance("acc-1") == Decimal('60.00')

    def test_deposit_then_withdraw_round_trip(self):
        self.open_account("acc-0")

        self.orchestrator.deposit("acc-0", "100", "USD")
        self.orchestrator.withdraw("acc-0", "40", "USD")

        account = self.accounts.get("acc-0")
        assert account.balance == Decimal('60.00')
        assert account.version == 2

    def test_withdraw_insufficient_funds(self):
        with pytest.raises(InsufficientFunds):
            self.orchestrator.withdraw("acc-1", "100.01", "USD", idempotency_key="w-1")

        assert self.balance("acc-1") == Decimal('100.00')
        record = self.ledger.find_by_idempotency_key("w-1")
        assert record.status == TransactionStatus.FAILED
        assert record.failure_code == "INSUFFICIENT_FUNDS"
        assert record.settled_at is None
        assert record.reconciliation == ReconciliationState.NONE

    def test_withdraw_entire_balance(self):
        self.orchestrator.withdraw("acc-1", "100.00", "USD")
        assert self.balance("acc-1") == Decimal('0.00')

    def test_amount_rounded_to_currency_precision(self):
        transaction = self.orchestrator.deposit("acc-1", "10.005", "USD")
        assert transaction.amount.amount == Decimal('10.01')
        assert self.balance("acc-1") == Decimal('110.01')

    @pytest.mark.parametrize("amount", [
        "0", "-5", "0.001", "abc", None, float("1.5"), "NaN", "1e30", "1000000000000000000"
    ])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            self.orchestrator.deposit("acc-1", amount, "USD")
        assert self.storage.count("transactions") == 0

    def test_largest_amount_accepted(self):
        transaction = self.orchestrator.deposit("acc-1", "999999999999999999.99", "USD")
        assert transaction.amount.amount == Decimal('999999999999999999.99')

    @pytest.mark.parametrize("currency", [None, "", "XYZ"])
    def test_invalid_currency(self, currency):
        with pytest.raises(ValidationError):
            self.orchestrator.withdraw("acc-1", "10", currency)
        assert self.storage.count("transactions") == 0

    def test_missing_account_id(self):
        with pytest.raises(ValidationError):
            self.orchestrator.deposit("", "10", "USD")
        assert self.storage.count("transactions") == 0

    def test_currency_mismatch(self):
        with pytest.raises(CurrencyMismatch):
            self.orchestrator.deposit("acc-1", "10", "EUR", idempotency_key="d-eur")

        record = self.ledger.find_by_idempotency_key("d-eur")
        assert record.status == TransactionStatus.FAILED
        assert record.failure_code == "CURRENCY_MISMATCH"
        assert self.balance("acc-1") == Decimal('100.00')

    def test_account_not_found(self):
        with pytest.raises(AccountNotFound):
            self.orchestrator.deposit("missing", "10", "USD", idempotency_key="d-missing")

        record = self.ledger.find_by_idempotency_key("d-missing")
        assert record.failure_code == "ACCOUNT_NOT_FOUND"
        # Retrying with the same key observes the recorded failure
        assert self.orchestrator.deposit("missing", "10", "USD", idempotency_key="d-missing").id == record.id

    @pytest.mark.parametrize("status", [AccountStatus.INACTIVE, AccountStatus.BLOCKED])
    def test_account_not_active(self, status):
        self.accounts.set_status("acc-1", status)

        with pytest.raises(AccountInactive):
            self.orchestrator.withdraw("acc-1", "10", "USD")
        assert self.balance("acc-1") == Decimal('100.00')
        assert DomainEvent.TRANSACTION_FAILED in self.event_types()

    def test_correlation_id_recorded(self):
        token = set_correlation_id("corr-42")
        try:
            transaction = self.orchestrator.deposit("acc-1", "1", "USD")
        finally:
            reset_correlation_id(token)
        assert self.ledger.get(transaction.id).correlation_id == "corr-42"


class TestIdempotency(OrchestratorTestBase):
    """Same key, same effect"""

    def setup_method(self):
        super().setup_method()
        self.open_account("acc-1", "100.00")

    def test_replay_returns_existing(self):
        first = self.orchestrator.deposit("acc-1", "25", "USD", idempotency_key="k-1")
        second = self.orchestrator.deposit("acc-1", "25", "USD", idempotency_key="k-1")

        assert second.id == first.id
        assert self.balance("acc-1") == Decimal('125.00')
        assert self.storage.count("transactions") == 1

    def test_replay_of_failure_returns_failed_record(self):
        with pytest.raises(InsufficientFunds):
            self.orchestrator.withdraw("acc-1", "500", "USD", idempotency_key="k-2")

        replay = self.orchestrator.withdraw("acc-1", "500", "USD", idempotency_key="k-2")
        assert replay.status == TransactionStatus.FAILED
        assert self.storage.count("transactions") == 1

    def test_concurrent_duplicates_apply_once(self):
        results = []
        errors = []
        barrier = threading.Barrier(10)

        def submit():
            barrier.wait()
            try:
                results.append(
                    self.orchestrator.withdraw("acc-1", "30", "USD", idempotency_key="k-3")
                )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({t.id for t in results}) == 1
        assert self.balance("acc-1") == Decimal('70.00')
        assert self.accounts.get("acc-1").version == 1
        assert self.storage.count("transactions") == 1
        assert self.ledger.find_by_idempotency_key("k-3").is_completed

    def test_retryable_failure_releases_key(self):
        attempts = []

        def scripted(real, account_id, amount, **kwargs):
            attempts.append(account_id)
            if len(attempts) == 1:
                raise ConcurrencyExhausted("busy")
            return real(account_id, amount, **kwargs)

        self.script_guard(scripted)

        with pytest.raises(ConcurrencyExhausted):
            self.orchestrator.withdraw("acc-1", "10", "USD", idempotency_key="k-4")
        failed = self.ledger.find_by_idempotency_key("k-4")
        assert failed is None

        retry = self.orchestrator.withdraw("acc-1", "10", "USD", idempotency_key="k-4")
        assert retry.is_completed
        assert self.balance("acc-1") == Decimal('90.00')
        # The failed attempt stays on record
        assert self.storage.count("transactions") == 2

    def test_account_service_unavailable_releases_key(self):
        self.orchestrator.account_client = Mock(wraps=self.accounts)
        self.orchestrator.account_client.get.side_effect = AccountServiceUnavailable("down")

        with pytest.raises(AccountServiceUnavailable):
            self.orchestrator.deposit("acc-1", "10", "USD", idempotency_key="k-5")
        assert self.ledger.find_by_idempotency_key("k-5") is None

        self.orchestrator.account_client = self.accounts
        assert self.orchestrator.deposit("acc-1", "10", "USD", idempotency_key="k-5").is_completed


class TestTransfer(OrchestratorTestBase):
    """Two-account operations"""

    def setup_method(self):
        super().setup_method()
        self.open_account("A", "100.00")
        self.open_account("B", "50.00")

    def test_transfer(self):
        transaction = self.orchestrator.transfer("A", "B", "30", "USD")

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.debit_version == 1
        assert transaction.credit_version == 1
        a, b = self.accounts.get("A"), self.accounts.get("B")
        assert (a.balance, a.version) == (Decimal('70.00'), 1)
        assert (b.balance, b.version) == (Decimal('80.00'), 1)

    def test_debit_before_credit(self):
        order = []

        def scripted(real, account_id, amount, **kwargs):
            order.append((account_id, amount))
            return real(account_id, amount, **kwargs)

        self.script_guard(scripted)
        self.orchestrator.transfer("A", "B", "30", "USD")

        assert order == [("A", Decimal('-30.00')), ("B", Decimal('30.00'))]

    def test_same_account_rejected_before_any_call(self):
        client = Mock(wraps=self.accounts)
        self.orchestrator.account_client = client
        self.guard.account_client = client

        with pytest.raises(InvalidOperation):
            self.orchestrator.transfer("A", "A", "10", "USD")

        client.get.assert_not_called()
        client.conditional_update_balance.assert_not_called()
        assert self.storage.count("transactions") == 0

    def test_insufficient_funds_moves_nothing(self):
        with pytest.raises(InsufficientFunds):
            self.orchestrator.transfer("A", "B", "100.01", "USD")

        assert self.balance("A") == Decimal('100.00')
        assert self.balance("B") == Decimal('50.00')

    def test_destination_missing(self):
        with pytest.raises(AccountNotFound):
            self.orchestrator.transfer("A", "nope", "10", "USD")
        assert self.balance("A") == Decimal('100.00')
        assert self.accounts.get("A").version == 0

    def test_destination_currency_mismatch(self):
        self.open_account("E", "0", currency=Currency.EUR)
        with pytest.raises(CurrencyMismatch):
            self.orchestrator.transfer("A", "E", "10", "USD")
        assert self.balance("A") == Decimal('100.00')

    def test_failed_credit_is_compensated(self):
        def scripted(real, account_id, amount, **kwargs):
            if account_id == "B":
                # Destination blocked after the pre-check; source blocked too
                self.accounts.set_status("A", AccountStatus.BLOCKED)
                self.accounts.set_status("B", AccountStatus.BLOCKED)
            return real(account_id, amount, **kwargs)

        self.script_guard(scripted)

        with pytest.raises(AccountInactive):
            self.orchestrator.transfer("A", "B", "30", "USD", idempotency_key="t-1")

        # Debit reversed even though the source is no longer active
        a = self.accounts.get("A")
        assert a.balance == Decimal('100.00')
        assert a.version == 2
        assert self.balance("B") == Decimal('50.00')

        record = self.ledger.find_by_idempotency_key("t-1")
        assert record.status == TransactionStatus.FAILED
        assert record.reconciliation == ReconciliationState.COMPENSATED
        assert record.failure_code == "ACCOUNT_INACTIVE"
        assert record.debit_version == 1
        assert record.credit_version is None
        assert DomainEvent.TRANSACTION_COMPENSATED in self.event_types()
        assert self.alerter.open_alerts() == []

    def test_retryable_credit_failure_compensated_and_key_released(self):
        def scripted(real, account_id, amount, **kwargs):
            if account_id == "B":
                raise AccountServiceUnavailable("down")
            return real(account_id, amount, **kwargs)

        self.script_guard(scripted)

        with pytest.raises(AccountServiceUnavailable):
            self.orchestrator.transfer("A", "B", "30", "USD", idempotency_key="t-2")

        assert self.balance("A") == Decimal('100.00')
        assert self.ledger.find_by_idempotency_key("t-2") is None
        compensated = self.ledger.find_by_account("A").items[0]
        assert compensated.reconciliation == ReconciliationState.COMPENSATED

    def test_failed_compensation_requires_reconciliation(self):
        def scripted(real, account_id, amount, **kwargs):
            if account_id == "B" or amount > 0:
                raise AccountServiceUnavailable("down")
            return real(account_id, amount, **kwargs)

        self.script_guard(scripted)

        with pytest.raises(ReconciliationRequired) as exc_info:
            self.orchestrator.transfer("A", "B", "30", "USD", idempotency_key="t-3")

        record = self.ledger.find_by_idempotency_key("t-3")
        assert exc_info.value.transaction_id == record.id
        assert record.status == TransactionStatus.FAILED
        assert record.reconciliation == ReconciliationState.REQUIRED
        assert record.debit_version == 1
        # Source stays debited until an operator acts
        assert self.balance("A") == Decimal('70.00')
        assert self.balance("B") == Decimal('50.00')

        assert [a.entity_id for a in self.alerter.open_alerts()] == [record.id]
        assert DomainEvent.RECONCILIATION_REQUIRED in self.event_types()
        assert [t.id for t in self.orchestrator.get_transactions_requiring_reconciliation()] == [record.id]

    def test_unknown_credit_outcome_is_not_compensated(self):
        def scripted(real, account_id, amount, **kwargs):
            if account_id == "B":
                raise BalanceOutcomeUnknown("timeout")
            return real(account_id, amount, **kwargs)

        self.script_guard(scripted)

        with pytest.raises(ReconciliationRequired):
            self.orchestrator.transfer("A", "B", "30", "USD", idempotency_key="t-4")

        record = self.ledger.find_by_idempotency_key("t-4")
        assert record.reconciliation == ReconciliationState.REQUIRED
        assert self.balance("A") == Decimal('70.00')
        assert self.accounts.get("A").version == 1

    def test_unknown_debit_outcome(self):
        def scripted(real, account_id, amount, **kwargs):
            raise BalanceOutcomeUnknown("timeout")

        self.script_guard(scripted)

        with pytest.raises(ReconciliationRequired):
            self.orchestrator.withdraw("A", "10", "USD", idempotency_key="w-unknown")

        record = self.ledger.find_by_idempotency_key("w-unknown")
        assert record.reconciliation == ReconciliationState.REQUIRED
        assert record.debit_version is None

    def test_ledger_write_failure_after_effects(self):
        self.ledger.record_outcome = Mock(side_effect=RuntimeError("disk full"))

        with pytest.raises(ReconciliationRequired):
            self.orchestrator.transfer("A", "B", "30", "USD")

        # Money moved; the record could not be settled
        assert self.balance("A") == Decimal('70.00')
        assert self.balance("B") == Decimal('80.00')
        assert DomainEvent.LEDGER_WRITE_FAILED in self.event_types()
        assert len(self.alerter.open_alerts()) == 1

    def test_ledger_write_failure_without_effects_propagates(self):
        self.ledger.record_outcome = Mock(side_effect=RuntimeError("disk full"))

        with pytest.raises(RuntimeError):
            self.orchestrator.transfer("A", "missing", "30", "USD")
        assert self.alerter.open_alerts() == []


class TestConcurrentWithdrawals(OrchestratorTestBase):
    """No negative balance under concurrent debits"""

    def _run_withdrawals(self, account_id, count, amount):
        completed = []
        insufficient = []
        unexpected = []
        barrier = threading.Barrier(count)

        def withdraw():
            barrier.wait()
            try:
                completed.append(self.orchestrator.withdraw(account_id, amount, "USD"))
            except InsufficientFunds as e:
                insufficient.append(e)
            except Exception as e:
                unexpected.append(e)

        threads = [threading.Thread(target=withdraw) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return completed, insufficient, unexpected

    def test_ten_withdrawals_of_ten_from_fifty_five(self):
        self.open_account("acc-1", "55.00")

        completed, insufficient, unexpected = self._run_withdrawals("acc-1", 10, "10")

        assert unexpected == []
        assert len(completed) == 5
        assert len(insufficient) == 5
        account = self.accounts.get("acc-1")
        assert account.balance == Decimal('5.00')
        assert account.version == 5

        records = self.ledger.find_by_account("acc-1", size=100).items
        assert sum(1 for t in records if t.is_completed) == 5
        assert sum(1 for t in records if t.is_failed) == 5

    def test_ten_withdrawals_of_ten_with_default_configuration(self):
        system = TransactionSystem(config=TransactionCoreConfig(
            storage_backend="memory", account_service_mode="local"
        ))
        system.account_ledger.open_account(Currency.USD, Decimal('55.00'), account_id="acc-9")
        self.orchestrator = system.orchestrator

        completed, insufficient, unexpected = self._run_withdrawals("acc-9", 10, "10")

        assert system.balance_guard.max_attempts == 5
        assert unexpected == []
        assert len(completed) == 5
        assert len(insufficient) == 5
        assert system.account_ledger.get("acc-9").balance == Decimal('5.00')
        system.close()

    def test_balance_never_negative(self):
        self.open_account("acc-1", "100.00")

        completed, insufficient, unexpected = self._run_withdrawals("acc-1", 16, "7.50")

        assert unexpected == []
        assert len(completed) == 13
        assert self.balance("acc-1") == Decimal('2.50')

    def test_concurrent_transfers_conserve_money(self):
        self.open_account("A", "100.00")
        self.open_account("B", "100.00")
        errors = []
        barrier = threading.Barrier(10)

        def move(source, destination):
            barrier.wait()
            try:
                self.orchestrator.transfer(source, destination, "15", "USD")
            except InsufficientFunds:
                pass
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=move, args=(("A", "B") if i % 2 else ("B", "A")))
            for i in range(10)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert self.balance("A") + self.balance("B") == Decimal('200.00')
        assert self.balance("A") >= 0 and self.balance("B") >= 0


class TestQueries(OrchestratorTestBase):
    """Lookups through the cache"""

    def setup_method(self):
        super().setup_method()
        self.open_account("acc-1", "100.00")

    def test_get_transaction(self):
        transaction = self.orchestrator.deposit("acc-1", "5", "USD")
        assert self.orchestrator.get_transaction(transaction.id).id == transaction.id

    def test_get_transaction_not_found(self):
        with pytest.raises(TransactionNotFound):
            self.orchestrator.get_transaction("nope")

    def test_account_history_reflects_new_writes(self):
        self.orchestrator.deposit("acc-1", "5", "USD")
        assert self.orchestrator.get_account_transactions("acc-1").total_elements == 1

        latest = self.orchestrator.withdraw("acc-1", "1", "USD")
        page = self.orchestrator.get_account_transactions("acc-1")

        assert page.total_elements == 2
        assert page.items[0].id == latest.id

    def test_account_history_paging_validation(self):
        with pytest.raises(ValidationError):
            self.orchestrator.get_account_transactions("acc-1", page=-1)
        with pytest.raises(ValidationError):
            self.orchestrator.get_account_transactions("acc-1", size=0)

    def test_without_cache(self):
        orchestrator = TransactionOrchestrator(self.ledger, self.accounts)
        transaction = orchestrator.deposit("acc-1", "5", "USD")

        assert orchestrator.get_transaction(transaction.id).is_completed
        assert orchestrator.get_account_transactions("acc-1").items[0].id == transaction.id


class AccountServiceStub:
    """
    MockTransport handler serving an AccountLedger over the account REST API.

    faults maps an account id to how its balance updates misbehave:
    "late" times out the first update and delivers it just before the next
    request, "error_after_commit" applies every update then answers 500,
    "error_after_first_commit" does that for the first update only.
    """

    def __init__(self, ledger, faults):
        self.ledger = ledger
        self.faults = dict(faults)
        self.in_flight = None

    def __call__(self, request):
        if self.in_flight is not None:
            delivered, self.in_flight = self.in_flight, None
            self._update(*delivered)

        account_id = request.url.path.split("/")[4]
        if request.method == "GET":
            try:
                return httpx.Response(200, json=self.ledger.get(account_id).to_dict())
            except AccountNotFound:
                return httpx.Response(404, json={"message": "not found"})

        body = json.loads(request.content)
        fault = self.faults.get(account_id)
        if fault == "late":
            del self.faults[account_id]
            self.in_flight = (account_id, body)
            raise httpx.ReadTimeout("timed out", request=request)

        status, account = self._update(account_id, body)
        if fault == "error_after_first_commit":
            del self.faults[account_id]
            return httpx.Response(500, text="internal error")
        if fault == "error_after_commit":
            return httpx.Response(500, text="internal error")
        return httpx.Response(status, json=account)

    def _update(self, account_id, body):
        applied, snapshot = self.ledger.compare_and_set_balance(
            account_id, body["expectedVersion"], Decimal(body["balance"])
        )
        return (200 if applied else 409), snapshot.to_dict()


class TestAmbiguousAccountService(OrchestratorTestBase):
    """Balance updates whose outcome the account service leaves unclear"""

    def setup_method(self):
        super().setup_method()
        self.open_account("A", "100.00")
        self.open_account("B", "0.00")

    def use_account_service(self, **faults):
        http = httpx.Client(
            transport=httpx.MockTransport(AccountServiceStub(self.accounts, faults)),
            base_url="http://accounts/api/v1"
        )
        client = HttpAccountStateClient(
            base_url="http://accounts/api/v1", client=http,
            backoff_seconds=0, backoff_max_seconds=0
        )
        self.orchestrator = TransactionOrchestrator(
            self.ledger, client,
            balance_guard=BalanceGuard(client, max_attempts=3, backoff_seconds=0),
            event_dispatcher=self.dispatcher
        )

    def test_late_delivered_debit_applied_once(self):
        self.use_account_service(A="late")

        transaction = self.orchestrator.withdraw("A", "30", "USD")

        assert transaction.status == TransactionStatus.COMPLETED
        account = self.accounts.get("A")
        assert account.balance == Decimal('70.00')
        assert account.version == 1

    def test_server_error_after_committed_credit_is_not_compensated(self):
        self.use_account_service(B="error_after_commit")

        with pytest.raises(ReconciliationRequired):
            self.orchestrator.transfer("A", "B", "30", "USD", idempotency_key="t-500")

        # No money created: the debit stands and the credit landed
        assert self.balance("A") == Decimal('70.00')
        assert self.balance("B") == Decimal('30.00')
        record = self.ledger.find_by_idempotency_key("t-500")
        assert record.reconciliation == ReconciliationState.REQUIRED
        assert len(self.alerter.open_alerts()) == 1

    def test_server_error_after_committed_credit_confirmed_on_resend(self):
        self.use_account_service(B="error_after_first_commit")

        transaction = self.orchestrator.transfer("A", "B", "30", "USD")

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.credit_version == 1
        assert self.balance("A") == Decimal('70.00')
        assert self.balance("B") == Decimal('30.00')

    def test_server_error_on_withdrawal_keeps_key(self):
        self.use_account_service(A="error_after_commit")

        with pytest.raises(ReconciliationRequired):
            self.orchestrator.withdraw("A", "30", "USD", idempotency_key="w-500")

        # The key stays claimed, so a retry cannot debit again
        replay = self.orchestrator.withdraw("A", "30", "USD", idempotency_key="w-500")
        assert replay.reconciliation == ReconciliationState.REQUIRED
        assert self.balance("A") == Decimal('70.00')


class TestLedgerWriteOnAdmission(OrchestratorTestBase):
    """A PENDING record that cannot be written leaves its key reusable"""

    def setup_method(self):
        super().setup_method()
        self.open_account("acc-1", "100.00")

    def test_key_usable_after_failed_admission(self):
        real_save = self.storage.save
        failures = [OSError("disk full")]

        def save(table, record_id, data):
            if table == "transactions" and failures:
                raise failures.pop()
            real_save(table, record_id, data)

        self.storage.save = save

        with pytest.raises(OSError):
            self.orchestrator.withdraw("acc-1", "10", "USD", idempotency_key="k")

        first = self.orchestrator.withdraw("acc-1", "10", "USD", idempotency_key="k")
        second = self.orchestrator.withdraw("acc-1", "10", "USD", idempotency_key="k")

        assert first.status == TransactionStatus.COMPLETED
        assert second.id == first.id
        assert self.balance("acc-1") == Decimal('90.00')
