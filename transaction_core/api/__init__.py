"""
Transaction Core API Application Factory
"""

from datetime import datetime, timezone
from typing import Optional
import uuid

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..account_client import CORRELATION_ID_HEADER
from ..exceptions import TransactionServiceError
from ..logging_config import get_logger, log_action, reset_correlation_id, set_correlation_id
from .dependencies import TransactionSystem, get_transaction_system
from .schemas import ErrorResponse
from .transactions import router as transactions_router

logger = get_logger("transaction_core.api")


def _error_response(request: Request, status: int, error: str, message: str) -> JSONResponse:
    body = ErrorResponse(
        message=message,
        error=error,
        status=status,
        path=request.url.path,
        timestamp=datetime.now(timezone.utc)
    )
    return JSONResponse(status_code=status, content=body.model_dump(mode="json", by_alias=True))


def install_error_handlers(app: FastAPI) -> None:
    """Translate domain and validation errors into the error body"""

    @app.exception_handler(TransactionServiceError)
    async def handle_service_error(request: Request, exc: TransactionServiceError):
        level = "error" if exc.http_status >= 500 else "warning"
        log_action(
            logger, level, f"{exc.code}: {exc.message}",
            action="http_error", resource=request.url.path, extra=exc.to_dict()
        )
        error = exc.code.replace("_", " ").title()
        return _error_response(request, exc.http_status, error, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        message = ", ".join(
            f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
            for err in exc.errors()
        )
        logger.warning(f"Validation error on {request.url.path}: {message}")
        return _error_response(request, 400, "Validation Failed", message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unexpected error on {request.url.path}: {exc}")
        return _error_response(
            request, 500, "Internal Server Error", "An unexpected error occurred"
        )


def create_app(system: Optional[TransactionSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        system: Pre-built components to serve; built from configuration on
            first request when omitted
    """
    app = FastAPI(
        title="Transaction Core API",
        description="Deposits, withdrawals and transfers with idempotency and compensation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response

    install_error_handlers(app)
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])

    if system is not None:
        app.dependency_overrides[get_transaction_system] = lambda: system

    # Health check endpoint
    @app.get("/health")
    def health_check(system: TransactionSystem = Depends(get_transaction_system)):
        """Service health, account service reachability and cache statistics"""
        account_service_up = system.account_client.health_check()
        return {
            "status": "healthy" if account_service_up else "degraded",
            "service": "transaction_core_api",
            "version": __version__,
            "account_service": "up" if account_service_up else "down",
            "cache": system.cache.stats() if system.cache is not None else None
        }

    # Root endpoint
    @app.get("/")
    def get_api_info():
        """Get API information"""
        return {
            "name": "Transaction Core API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "transactions": "/transactions",
                "reconciliation": "/transactions/reconciliation",
            }
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8082, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "transaction_core.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


app = create_app()
