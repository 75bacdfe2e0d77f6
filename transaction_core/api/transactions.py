"""
Transaction endpoints

Handlers are plain functions: FastAPI runs them in its threadpool, so
concurrent requests become concurrent orchestrator calls.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from .dependencies import TransactionSystem, get_transaction_system
from .schemas import (
    DepositRequest, WithdrawRequest, TransferRequest,
    TransactionResponse, TransactionPageResponse
)


router = APIRouter()


@router.post("/deposit", response_model=TransactionResponse, status_code=201)
def deposit(
    request: DepositRequest,
    system: TransactionSystem = Depends(get_transaction_system)
):
    """Make a deposit"""
    transaction = system.orchestrator.deposit(
        account_id=request.account_id,
        amount=request.amount,
        currency=request.currency,
        idempotency_key=request.idempotency_key,
        description=request.description
    )
    return TransactionResponse.from_transaction(transaction)


@router.post("/withdraw", response_model=TransactionResponse, status_code=201)
def withdraw(
    request: WithdrawRequest,
    system: TransactionSystem = Depends(get_transaction_system)
):
    """Make a withdrawal"""
    transaction = system.orchestrator.withdraw(
        account_id=request.account_id,
        amount=request.amount,
        currency=request.currency,
        idempotency_key=request.idempotency_key,
        description=request.description
    )
    return TransactionResponse.from_transaction(transaction)


@router.post("/transfer", response_model=TransactionResponse, status_code=201)
def transfer(
    request: TransferRequest,
    system: TransactionSystem = Depends(get_transaction_system)
):
    """Make a transfer between accounts"""
    transaction = system.orchestrator.transfer(
        from_account_id=request.from_account_id,
        to_account_id=request.to_account_id,
        amount=request.amount,
        currency=request.currency,
        idempotency_key=request.idempotency_key,
        description=request.description
    )
    return TransactionResponse.from_transaction(transaction)


# Registered before /{transaction_id} so the literal path wins
@router.get("/reconciliation", response_model=List[TransactionResponse])
def list_reconciliation_required(
    system: TransactionSystem = Depends(get_transaction_system)
):
    """Transactions awaiting manual reconciliation"""
    return [
        TransactionResponse.from_transaction(t)
        for t in system.orchestrator.get_transactions_requiring_reconciliation()
    ]


@router.get("/account/{account_id}", response_model=TransactionPageResponse)
def get_account_transactions(
    account_id: str,
    page: int = Query(0, ge=0),
    size: Optional[int] = Query(None, ge=1),
    system: TransactionSystem = Depends(get_transaction_system)
):
    """List an account's transactions, newest first"""
    size = min(size or system.config.default_page_size, system.config.max_page_size)
    result = system.orchestrator.get_account_transactions(account_id, page=page, size=size)
    return TransactionPageResponse.from_page(result)


@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str,
    system: TransactionSystem = Depends(get_transaction_system)
):
    """Get a transaction by id"""
    return TransactionResponse.from_transaction(
        system.orchestrator.get_transaction(transaction_id)
    )
