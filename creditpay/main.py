"""
CreditPay API - crypto-funded prepaid credits.

Provides REST endpoints for:
- Pricing and payment initiation (GET /v1/payment/pricing, POST /v1/payment)
- Payment status and credit claims (GET /v1/payment/status/{token}, POST /v1/payment/claim/{token})
- Escrow holds (POST /v1/escrow/hold, /v1/escrow/release, /v1/escrow/void)
- Account balance and history (GET /v1/account/balance, /v1/account/transactions)
- Partner service metering (POST /v1/services/verify, /v1/services/usage)
- Health checks (GET /health)
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .auth import get_credential, get_services, require_account, verify_service_secret
from .config import Settings, get_settings
from .errors import CreditPayError
from .ledger import Account
from .models import (
    BalanceResponse,
    ClaimRequest,
    ClaimResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    HealthResponse,
    HoldRequest,
    HoldResponse,
    PaymentAmount,
    PaymentStatusResponse,
    PricingResponse,
    ReleaseRequest,
    ReleaseResponse,
    TransactionItem,
    TransactionsResponse,
    UsageRequest,
    UsageResponse,
    UsageResult,
    VerifyRequest,
    VerifyResponse,
    VoidRequest,
    VoidResponse,
)
from .pricing import CREDITS_PER_USD
from .services import Services, build_services
from .usage import UsageRecord

# Configure logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the API app.

    Services are built from settings at startup unless passed in ready-made.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.services = services or build_services(settings)

        logger.info(
            "api_started",
            version=__version__,
            host=settings.host,
            port=settings.port,
            chains=app.state.services.adapters.chains(),
        )

        yield

        await app.state.services.close()
        logger.info("api_stopped")

    app = FastAPI(
        title="CreditPay API",
        description="Crypto-funded prepaid credits with escrow",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CreditPayError)
    async def creditpay_error_handler(request: Request, exc: CreditPayError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.warning("request_failed", path=request.url.path, error=exc.code, message=exc.message)
        return JSONResponse(status_code=exc.http_status, content=jsonable_encoder(exc.to_dict()))

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    # ========================================================================
    # Health / Pricing
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(services: Services = Depends(get_services)) -> HealthResponse:
        return HealthResponse(status="ok", version=__version__, chains=services.adapters.chains())

    @app.get("/v1/payment/pricing", response_model=PricingResponse)
    async def pricing(
        chain: Optional[str] = Query(None),
        services: Services = Depends(get_services),
    ) -> PricingResponse:
        return PricingResponse(chains=services.settlement.pricing(chain))

    # ========================================================================
    # Payments
    # ========================================================================

    @app.post("/v1/payment", response_model=CreatePaymentResponse)
    async def create_payment(
        body: CreatePaymentRequest,
        credential: Optional[str] = Depends(get_credential),
        services: Services = Depends(get_services),
    ) -> CreatePaymentResponse:
        """
        Create a payment request for a credit tier.

        Returns a deposit address unique to the payment token. A Bearer
        credential, if valid, links the request to that account.
        """
        initiation = await services.settlement.initiate(body.credits, body.chain, credential)
        quote = initiation.quote
        token = quote.payment_token
        status_url = f"/v1/payment/status/{token}"
        claim_url = f"/v1/payment/claim/{token}"

        return CreatePaymentResponse(
            payment_token=token,
            chain=quote.chain,
            deposit_address=quote.deposit_address,
            amount=PaymentAmount(
                credits=quote.credits,
                usd=quote.usd_amount,
                native=quote.native_amount,
                smallest_unit=quote.smallest_unit_amount,
                token_symbol=quote.token_symbol,
                decimals=quote.decimals,
            ),
            required_confirmations=quote.required_confirmations,
            est_confirmation_time=quote.est_confirmation_time,
            est_fee=quote.est_fee,
            explorer_url=quote.explorer_url,
            contracts=quote.contracts,
            instructions=[
                f"Send {quote.native_amount} {quote.token_symbol} on {quote.chain} to {quote.deposit_address}",
                f"Wait for {quote.required_confirmations}+ confirmations (typically {quote.est_confirmation_time})",
                f"Check status at {status_url}",
                f"Once confirmed, claim credits at {claim_url}",
            ],
            status_url=status_url,
            claim_url=claim_url,
        )

    @app.get("/v1/payment/status/{payment_token}", response_model=PaymentStatusResponse)
    async def payment_status(
        payment_token: str,
        refresh: bool = Query(False, description="Re-check the chain even if already confirmed"),
        services: Services = Depends(get_services),
    ) -> PaymentStatusResponse:
        report = await services.settlement.poll_status(payment_token, refresh=refresh)
        return PaymentStatusResponse(
            payment_token=report.payment_token,
            chain=report.chain,
            status=report.status,
            credits=report.credits,
            deposit_address=report.deposit_address,
            token_symbol=report.token_symbol,
            required_amount=report.required_amount,
            total_received=report.total_received,
            confirmed_received=report.confirmed_received,
            confirmations=report.confirmations,
            required_confirmations=report.required_confirmations,
            percent_paid=report.percent_paid,
            verification_unavailable=report.verification_unavailable,
            last_checked_at=report.last_checked_at,
            message=report.message,
        )

    @app.post("/v1/payment/claim/{payment_token}", response_model=ClaimResponse)
    async def claim_payment(
        payment_token: str,
        body: Optional[ClaimRequest] = None,
        credential: Optional[str] = Depends(get_credential),
        services: Services = Depends(get_services),
    ) -> ClaimResponse:
        """
        Claim the credits of a confirmed payment.

        With a Bearer credential the credits go to that account; otherwise a
        new agent account is created and its API key returned once.
        """
        result = await services.settlement.claim(
            payment_token,
            credential=credential,
            label=body.label if body else None,
        )
        message = f"Successfully claimed {result.credits} credits"
        if result.new_account:
            return ClaimResponse(
                success=True,
                credits=result.credits,
                balance=result.balance,
                chain=result.chain,
                account_id=result.account_id,
                api_key=result.credential,
                message=message + ". New agent account created.",
                note="Store your API key securely - it cannot be retrieved later",
            )
        return ClaimResponse(
            success=True,
            credits=result.credits,
            balance=result.balance,
            chain=result.chain,
            account_id=result.account_id,
            message=message,
        )

    # ========================================================================
    # Escrow
    # ========================================================================

    @app.post("/v1/escrow/hold", response_model=HoldResponse)
    async def escrow_hold(
        body: HoldRequest,
        account: Account = Depends(require_account),
        services: Services = Depends(get_services),
    ) -> HoldResponse:
        hold = services.escrow.hold(account.id, body.amount_usd, body.reference, body.service)
        return HoldResponse(
            hold_id=hold.id,
            status=hold.status,
            amount_usd=hold.amount_usd,
            credits_held=hold.credits_held,
        )

    @app.post("/v1/escrow/release", response_model=ReleaseResponse)
    async def escrow_release(
        body: ReleaseRequest,
        account: Account = Depends(require_account),
        services: Services = Depends(get_services),
    ) -> ReleaseResponse:
        hold = services.escrow.release(body.hold_id, account.id)
        return ReleaseResponse(
            hold_id=hold.id,
            status=hold.status,
            amount_usd=hold.amount_usd,
            credits_released=hold.credits_held,
        )

    @app.post("/v1/escrow/void", response_model=VoidResponse)
    async def escrow_void(
        body: VoidRequest,
        account: Account = Depends(require_account),
        services: Services = Depends(get_services),
    ) -> VoidResponse:
        hold = services.escrow.void(body.hold_id, account.id, body.refund_percent)
        return VoidResponse(
            hold_id=hold.id,
            status=hold.status,
            refund_percent=hold.refund_percent,
            refunded_credits=hold.refunded_credits,
            amount_usd=hold.amount_usd,
        )

    # ========================================================================
    # Account
    # ========================================================================

    @app.get("/v1/account/balance", response_model=BalanceResponse)
    async def account_balance(
        account: Account = Depends(require_account),
        services: Services = Depends(get_services),
    ) -> BalanceResponse:
        credits = services.ledger.balance(account.id)
        return BalanceResponse(
            account_id=account.id,
            credits=credits,
            usd_value=credits / CREDITS_PER_USD,
            status=account.status,
        )

    @app.get("/v1/account/transactions", response_model=TransactionsResponse)
    async def account_transactions(
        limit: int = Query(50, ge=1, le=500),
        before_id: Optional[int] = Query(None),
        account: Account = Depends(require_account),
        services: Services = Depends(get_services),
    ) -> TransactionsResponse:
        entries = services.ledger.transactions(account.id, limit=limit, before_id=before_id)
        return TransactionsResponse(
            account_id=account.id,
            transactions=[
                TransactionItem(
                    id=e.id,
                    transaction_type=e.transaction_type,
                    amount=e.amount,
                    balance_after=e.balance_after,
                    description=e.description,
                    related_payment_id=e.related_payment_id,
                    related_hold_id=e.related_hold_id,
                    created_at=e.created_at,
                )
                for e in entries
            ],
        )

    # ========================================================================
    # Service metering
    # ========================================================================

    @app.post(
        "/v1/services/verify",
        response_model=VerifyResponse,
        dependencies=[Depends(verify_service_secret)],
    )
    async def services_verify(
        body: VerifyRequest,
        services: Services = Depends(get_services),
    ) -> VerifyResponse:
        result = services.usage.verify(body.token, body.service, body.operation, body.quantity)
        return VerifyResponse(
            valid=result.valid,
            agent_id=result.account_id,
            account_type=result.account_type,
            balance=result.balance,
            cost_per_unit=result.cost_per_unit,
            total_cost=result.total_cost,
            can_afford=result.can_afford,
            estimated_operations=result.estimated_operations,
        )

    @app.post(
        "/v1/services/usage",
        response_model=UsageResponse,
        dependencies=[Depends(verify_service_secret)],
    )
    async def services_usage(
        body: UsageRequest,
        services: Services = Depends(get_services),
    ) -> UsageResponse:
        records = [
            UsageRecord(
                account_id=r.account_id,
                operation=r.operation,
                quantity=r.quantity,
                timestamp=r.timestamp,
                metadata=r.metadata,
            )
            for r in body.records
        ]
        report = services.usage.report(body.service, records, body.region)
        return UsageResponse(
            processed=report.processed,
            total_credits_deducted=report.total_credits_deducted,
            results=[
                UsageResult(
                    agent_id=r.account_id,
                    credits_deducted=r.credits_deducted,
                    shortfall=r.shortfall,
                    new_balance=r.new_balance,
                    operations_count=r.operations_count,
                    error=r.error,
                )
                for r in report.results
            ],
        )


app = create_app()


# ============================================================================
# Entry Point
# ============================================================================


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    uvicorn.run(
        "creditpay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
