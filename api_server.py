"""
FastAPI server for the treasury deposit and balance service
Wires the services together and maps treasury errors to HTTP responses
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from config import Config
from database import AsyncSessionLocal, async_engine, check_connection, create_tables
from handlers.api_routes import router as treasury_router
from services.balance_ledger_service import BalanceLedgerService
from services.deposit_verification_service import DepositVerificationService
from services.identity_resolver import IdentityResolverService
from services.ledger_oracle_service import LedgerOracleService
from services.notification_service import NotificationService
from services.order_ledger_service import OrderLedgerService
from services.purchase_orchestrator import PurchaseOrchestrator
from utils.exceptions import (
    AmountMismatchError,
    BelowMinimumError,
    DuplicateError,
    IdentityConflictError,
    InsufficientBalanceError,
    InvalidTransitionError,
    NoMatchingTransferError,
    NotFoundError,
    OracleUnavailableError,
    StaleTransactionError,
    TransactionFailedError,
    TreasuryError,
    ValidationError,
)
from utils.logging_setup import configure_logging

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    DuplicateError: 409,
    IdentityConflictError: 409,
    InvalidTransitionError: 409,
    TransactionFailedError: 422,
    NoMatchingTransferError: 422,
    BelowMinimumError: 422,
    AmountMismatchError: 422,
    StaleTransactionError: 422,
    InsufficientBalanceError: 422,
    OracleUnavailableError: 503,
}


def status_code_for(error: TreasuryError) -> int:
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[error_type]
    return 500


@dataclass
class ServiceContainer:
    identity_resolver: IdentityResolverService
    balance_ledger: BalanceLedgerService
    deposit_verifier: DepositVerificationService
    order_ledger: OrderLedgerService
    purchase_orchestrator: PurchaseOrchestrator
    notifier: NotificationService

    @classmethod
    def build(
        cls,
        session_factory: Optional[async_sessionmaker] = None,
        oracle: Optional[LedgerOracleService] = None,
        notifier: Optional[NotificationService] = None,
        **verifier_options,
    ) -> "ServiceContainer":
        notifier = notifier or NotificationService()
        identity_resolver = IdentityResolverService(session_factory)
        balance_ledger = BalanceLedgerService(session_factory)
        deposit_verifier = DepositVerificationService(
            oracle=oracle or LedgerOracleService(),
            identity_resolver=identity_resolver,
            balance_ledger=balance_ledger,
            session_factory=session_factory,
            **verifier_options,
        )
        order_ledger = OrderLedgerService(balance_ledger, session_factory, notifier=notifier)
        return cls(
            identity_resolver=identity_resolver,
            balance_ledger=balance_ledger,
            deposit_verifier=deposit_verifier,
            order_ledger=order_ledger,
            purchase_orchestrator=PurchaseOrchestrator(identity_resolver, deposit_verifier, order_ledger, notifier),
            notifier=notifier,
        )


def create_app(
    services: Optional[ServiceContainer] = None,
    engine: Optional[AsyncEngine] = None,
) -> FastAPI:
    """Build the FastAPI app; tests pass their own services and engine"""
    target_engine = engine or async_engine

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        Config.log_environment_config()
        Config.validate()
        await create_tables(target_engine)
        logger.info("✅ Treasury API ready")
        yield
        logger.info("🔄 Treasury API shutting down...")
        await target_engine.dispose()

    app = FastAPI(
        title="Treasury Deposit & Balance API",
        description="Deposit verification, custodial balances and orders",
        lifespan=lifespan,
    )
    app.state.services = services or ServiceContainer.build(AsyncSessionLocal)

    @app.exception_handler(TreasuryError)
    async def treasury_error_handler(request: Request, exc: TreasuryError):
        status_code = status_code_for(exc)
        log = logger.warning if status_code < 500 else logger.error
        log(f"API_ERROR: {request.method} {request.url.path} -> {status_code} {exc.code}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/health")
    async def health_check():
        """Health check endpoint for deployment probes"""
        database_ok = await check_connection(target_engine)
        body = {
            "status": "ok" if database_ok else "degraded",
            "service": "treasury-ledger",
            "network": Config.LEDGER_NETWORK,
            "database": "ok" if database_ok else "unavailable",
        }
        return JSONResponse(status_code=200 if database_ok else 503, content=body)

    app.include_router(treasury_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_server:app", host=Config.API_HOST, port=Config.API_PORT)
