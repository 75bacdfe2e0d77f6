"""
Pydantic schemas for API requests and responses

JSON field names are camelCase; snake_case is accepted on input as well.
Amounts travel as decimal strings.
"""

from decimal import Decimal
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..accounts import AccountSnapshot
from ..ledger import Page, Transaction


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DepositRequest(CamelModel):
    account_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., description="Positive decimal amount")
    currency: str = Field(..., min_length=1, description="Currency code (USD, EUR, etc.)")
    idempotency_key: Optional[str] = None
    description: Optional[str] = None


class WithdrawRequest(DepositRequest):
    pass


class TransferRequest(CamelModel):
    from_account_id: str = Field(..., min_length=1)
    to_account_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., description="Positive decimal amount")
    currency: str = Field(..., min_length=1, description="Currency code (USD, EUR, etc.)")
    idempotency_key: Optional[str] = None
    description: Optional[str] = None


class TransactionResponse(CamelModel):
    transaction_id: str
    idempotency_key: str
    type: str
    status: str
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    amount: str
    currency: str
    description: Optional[str] = None
    created_at: datetime
    settled_at: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    reconciliation: str
    debit_version: Optional[int] = None
    credit_version: Optional[int] = None
    correlation_id: Optional[str] = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> 'TransactionResponse':
        return cls(
            transaction_id=transaction.id,
            idempotency_key=transaction.idempotency_key,
            type=transaction.transaction_type.value,
            status=transaction.status.value,
            from_account_id=transaction.from_account_id,
            to_account_id=transaction.to_account_id,
            amount=str(transaction.amount.amount),
            currency=transaction.currency.code,
            description=transaction.description,
            created_at=transaction.created_at,
            settled_at=transaction.settled_at,
            failure_code=transaction.failure_code,
            failure_reason=transaction.failure_reason,
            reconciliation=transaction.reconciliation.value,
            debit_version=transaction.debit_version,
            credit_version=transaction.credit_version,
            correlation_id=transaction.correlation_id,
        )


class TransactionPageResponse(CamelModel):
    content: List[TransactionResponse]
    page: int
    size: int
    total_elements: int
    total_pages: int

    @classmethod
    def from_page(cls, page: Page[Transaction]) -> 'TransactionPageResponse':
        return cls(
            content=[TransactionResponse.from_transaction(t) for t in page.items],
            page=page.page,
            size=page.size,
            total_elements=page.total_elements,
            total_pages=page.total_pages,
        )


class ErrorResponse(CamelModel):
    message: str
    error: str
    status: int
    path: str
    timestamp: datetime


# Account ledger schemas
class AccountResponse(CamelModel):
    account_id: str
    balance: str
    currency: str
    status: str
    version: int

    @classmethod
    def from_snapshot(cls, snapshot: AccountSnapshot) -> 'AccountResponse':
        return cls(**snapshot.to_dict())


class BalanceUpdateRequest(CamelModel):
    expected_version: int = Field(..., ge=0)
    balance: Decimal
