"""
Account Service Client Module

REST client for the account ledger service. Reads are retried on transient
transport failures with exponential backoff. Conditional balance updates are
retried only when the request provably never reached the service; any other
transport failure or unexpected status leaves the update's outcome unknown and is
reported as such.
"""

import httpx
import logging
from decimal import Decimal
from typing import Optional, Tuple

from tenacity import (
    Retrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential
)

from .accounts import AccountSnapshot, AccountStateClient
from .exceptions import (
    AccountNotFound, AccountServiceUnavailable, BalanceOutcomeUnknown, ValidationError
)
from .logging_config import get_correlation_id

logger = logging.getLogger("transaction_core.account_client")

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Gateway/service statuses worth retrying on a read
TRANSIENT_STATUSES = {502, 503, 504}

# Failures raised before the request bytes left this process
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class TransientStatusError(Exception):
    """Account service answered with a status that is worth retrying"""

    def __init__(self, response: httpx.Response):
        super().__init__(f"Account service returned {response.status_code}")
        self.response = response


class ServiceUnavailableError(TransientStatusError):
    """503: the account service refused the request without processing it"""


class HttpAccountStateClient(AccountStateClient):
    """AccountStateClient backed by the account ledger's REST API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8081/api/v1",
        timeout: float = 2.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.1,
        backoff_max_seconds: float = 2.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.api_key = api_key
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def get(self, account_id: str) -> AccountSnapshot:
        try:
            response = self._send(
                "GET", f"/accounts/{account_id}",
                retry_on=(httpx.TransportError, TransientStatusError)
            )
        except (httpx.TransportError, TransientStatusError) as e:
            logger.error(f"Account service unavailable reading account {account_id}: {e}")
            raise AccountServiceUnavailable(
                "Account service is unavailable", account_id=account_id
            ) from e

        if response.status_code == 404:
            raise AccountNotFound(account_id)
        self._raise_for_unexpected(response, account_id)
        return AccountSnapshot.from_dict(response.json())

    def conditional_update_balance(
        self, account_id: str, expected_version: int, new_balance: Decimal
    ) -> Tuple[bool, int]:
        body = {"expectedVersion": expected_version, "balance": str(new_balance)}
        try:
            response = self._send(
                "PUT", f"/accounts/{account_id}/balance", json=body,
                retry_on=NOT_SENT_ERRORS + (ServiceUnavailableError,)
            )
        except NOT_SENT_ERRORS + (ServiceUnavailableError,) as e:
            logger.error(f"Account service unavailable updating account {account_id}: {e}")
            raise AccountServiceUnavailable(
                "Account service is unavailable", account_id=account_id
            ) from e
        except (httpx.TransportError, TransientStatusError) as e:
            logger.warning(
                f"Balance update for account {account_id} at version {expected_version} "
                f"has unknown outcome: {e}"
            )
            raise BalanceOutcomeUnknown(
                "Balance update outcome unknown",
                account_id=account_id, expected_version=expected_version,
                new_balance=str(new_balance)
            ) from e

        if response.status_code == 409:
            current_version = response.json().get("version", expected_version)
            return False, int(current_version)
        if response.status_code == 404:
            raise AccountNotFound(account_id)
        if response.status_code in (400, 422):
            raise ValidationError(
                f"Account service rejected balance update: {response.text}",
                account_id=account_id
            )
        if response.status_code != 200:
            # The service may have committed before failing
            logger.error(
                f"Account service returned {response.status_code} to balance update for "
                f"account {account_id} at version {expected_version}: {response.text}"
            )
            raise BalanceOutcomeUnknown(
                f"Account service returned {response.status_code}, balance update outcome unknown",
                account_id=account_id, expected_version=expected_version,
                new_balance=str(new_balance)
            )
        return True, int(response.json()["version"])

    def health_check(self) -> bool:
        try:
            return self._client.get("/health").status_code == 200
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()

    def _send(self, method: str, path: str, retry_on: tuple, **kwargs) -> httpx.Response:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception_type(retry_on),
            before_sleep=self._log_retry,
            reraise=True
        )
        return retrying(self._request, method, path, **kwargs)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = self._client.request(method, path, headers=self._headers(), **kwargs)
        if response.status_code == 503:
            raise ServiceUnavailableError(response)
        if response.status_code in TRANSIENT_STATUSES:
            raise TransientStatusError(response)
        return response

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        correlation_id = get_correlation_id()
        if correlation_id:
            headers[CORRELATION_ID_HEADER] = correlation_id
        return headers

    def _raise_for_unexpected(self, response: httpx.Response, account_id: str) -> None:
        if response.status_code != 200:
            logger.error(
                f"Account service returned {response.status_code} for account "
                f"{account_id}: {response.text}"
            )
            raise AccountServiceUnavailable(
                f"Account service returned {response.status_code}", account_id=account_id
            )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            f"Retrying account service call (attempt {retry_state.attempt_number}): "
            f"{retry_state.outcome.exception()}"
        )
