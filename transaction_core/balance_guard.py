"""
Balance Guard Module

Applies a signed balance change to one account as a version-stamped
compare-and-swap against the account ledger. Reading the balance, deciding
whether a debit is safe, and writing the new balance are two network calls;
the conditional update on the version read makes the pair behave atomically,
so two concurrent debits can never both spend the same funds.
"""

from decimal import Decimal
from dataclasses import dataclass

from tenacity import (
    RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential
)

from .accounts import AccountSnapshot, AccountStateClient
from .exceptions import (
    AccountInactive, AccountServiceUnavailable, BalanceOutcomeUnknown,
    ConcurrencyExhausted, InsufficientFunds, VersionConflict
)
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class BalanceChange:
    """Result of an applied balance change"""
    account_id: str
    previous_balance: Decimal
    new_balance: Decimal
    previous_version: int
    new_version: int


class BalanceGuard:
    """Optimistic-concurrency balance updates with bounded retry on conflicts"""

    def __init__(
        self,
        account_client: AccountStateClient,
        max_attempts: int = 5,
        backoff_seconds: float = 0.01,
        backoff_max_seconds: float = 0.25
    ):
        self.account_client = account_client
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.logger = get_logger("transaction_core.balance_guard")

    def apply_delta(
        self,
        account_id: str,
        signed_amount: Decimal,
        expected_min_resulting_balance: Decimal = Decimal('0'),
        require_active: bool = True
    ) -> BalanceChange:
        """
        Atomically add signed_amount to an account's balance.

        Args:
            account_id: Account to change
            signed_amount: Negative for a debit, positive for a credit
            expected_min_resulting_balance: Floor a debit may not cross (never below zero)
            require_active: Reject accounts that are not ACTIVE; compensation
                credits pass False so a refund still lands on a blocked account

        Returns:
            BalanceChange with the new version and balance

        Raises:
            InsufficientFunds: If a debit would leave the balance under the floor
            AccountInactive: If require_active and the account is not ACTIVE
            ConcurrencyExhausted: If every attempt lost the race to another update
            BalanceOutcomeUnknown: If an update may have been applied but read-back
                could not confirm it
        """
        floor = max(expected_min_resulting_balance, Decimal('0'))
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(
                multiplier=self.backoff_seconds, max=self.backoff_max_seconds
            ),
            retry=retry_if_exception_type(VersionConflict)
        )
        try:
            return retrying(self._attempt, account_id, signed_amount, floor, require_active)
        except RetryError as e:
            log_action(
                self.logger, "warning",
                f"Balance update abandoned after {self.max_attempts} conflicting attempts",
                action="apply_delta", resource=f"account:{account_id}",
                extra={"signed_amount": str(signed_amount)}
            )
            raise ConcurrencyExhausted(
                f"Account {account_id} is under contention, retry the operation",
                account_id=account_id, attempts=self.max_attempts
            ) from e

    def _attempt(
        self, account_id: str, signed_amount: Decimal, floor: Decimal, require_active: bool
    ) -> BalanceChange:
        snapshot = self.account_client.get(account_id)
        if require_active and not snapshot.is_active:
            raise AccountInactive(account_id, snapshot.status.value)

        new_balance = snapshot.balance + signed_amount
        if signed_amount < 0 and new_balance < floor:
            raise InsufficientFunds(
                f"Insufficient funds: available {snapshot.balance}, requested {-signed_amount}",
                account_id=account_id, available=str(snapshot.balance),
                requested=str(-signed_amount)
            )

        try:
            applied, version = self.account_client.conditional_update_balance(
                account_id, snapshot.version, new_balance
            )
        except BalanceOutcomeUnknown:
            return self._resolve_unknown_outcome(snapshot, new_balance)

        if not applied:
            self.logger.debug(
                f"Version conflict on account {account_id}: read {snapshot.version}, now {version}"
            )
            raise VersionConflict(
                f"Account {account_id} changed concurrently",
                account_id=account_id, expected_version=snapshot.version, current_version=version
            )

        return self._change(snapshot, new_balance, version)

    def _resolve_unknown_outcome(
        self, snapshot: AccountSnapshot, new_balance: Decimal
    ) -> BalanceChange:
        """
        Settle an update that may or may not have landed.

        The identical conditional update (same expected version, same new
        balance) is re-sent rather than recomputed from a fresh read: the lost
        request can still arrive late, and only one of the two can match the
        expected version. A conflict counts as applied only when the account
        sits exactly one version on with the balance we sent.
        """
        account_id = snapshot.account_id
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(
                multiplier=self.backoff_seconds, max=self.backoff_max_seconds
            ),
            # BalanceOutcomeUnknown is an AccountServiceUnavailable
            retry=retry_if_exception_type(AccountServiceUnavailable),
            reraise=True
        )
        try:
            applied, version = retrying(
                self.account_client.conditional_update_balance,
                account_id, snapshot.version, new_balance
            )
            current = None if applied else self.account_client.get(account_id)
        except AccountServiceUnavailable as e:
            raise BalanceOutcomeUnknown(
                "Balance update outcome unknown and could not be confirmed",
                account_id=account_id, expected_version=snapshot.version,
                new_balance=str(new_balance)
            ) from e

        if applied:
            self.logger.info(
                f"Ambiguous balance update on account {account_id} applied on re-send"
            )
            return self._change(snapshot, new_balance, version)

        if current.version == snapshot.version + 1 and current.balance == new_balance:
            self.logger.info(
                f"Ambiguous balance update on account {account_id} confirmed applied"
            )
            return self._change(snapshot, current.balance, current.version)

        raise BalanceOutcomeUnknown(
            "Balance update outcome unknown: account moved on since the update was sent",
            account_id=account_id, expected_version=snapshot.version,
            current_version=current.version, new_balance=str(new_balance)
        )

    @staticmethod
    def _change(snapshot: AccountSnapshot, new_balance: Decimal, new_version: int) -> BalanceChange:
        return BalanceChange(
            account_id=snapshot.account_id,
            previous_balance=snapshot.balance,
            new_balance=new_balance,
            previous_version=snapshot.version,
            new_version=new_version,
        )
