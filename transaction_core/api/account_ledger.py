"""
Account ledger endpoints

The account-service side of the contract the HTTP account client speaks:
read one account, and update its balance only at an expected version.
Serves an AccountLedger for local deployments and tests.
"""

from fastapi import APIRouter, Depends, FastAPI
from fastapi.responses import JSONResponse

from ..accounts import AccountLedger
from .schemas import AccountResponse, BalanceUpdateRequest


router = APIRouter()


def get_account_ledger() -> AccountLedger:
    """Overridden by create_account_ledger_app with the ledger being served"""
    raise RuntimeError("No account ledger configured")


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(account_id: str, ledger: AccountLedger = Depends(get_account_ledger)):
    return AccountResponse.from_snapshot(ledger.get(account_id))


@router.put("/{account_id}/balance", response_model=AccountResponse)
def update_balance(
    account_id: str,
    request: BalanceUpdateRequest,
    ledger: AccountLedger = Depends(get_account_ledger)
):
    """Conditional balance update; 409 carries the current account when versions differ"""
    applied, snapshot = ledger.compare_and_set_balance(
        account_id, request.expected_version, request.balance
    )
    account = AccountResponse.from_snapshot(snapshot)
    if not applied:
        return JSONResponse(status_code=409, content=account.model_dump(by_alias=True))
    return account


def create_account_ledger_app(ledger: AccountLedger) -> FastAPI:
    """Create a FastAPI app serving the given account ledger under /api/v1/accounts"""
    from . import install_error_handlers

    app = FastAPI(
        title="Account Ledger API",
        description="Account balances with version-conditional updates",
        version="1.0.0"
    )
    install_error_handlers(app)
    app.include_router(router, prefix="/api/v1/accounts", tags=["Accounts"])
    app.dependency_overrides[get_account_ledger] = lambda: ledger

    # Same base URL as the accounts API
    @app.get("/api/v1/health")
    def health_check():
        return {"status": "healthy", "service": "account_ledger"}

    return app
