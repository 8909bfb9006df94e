"""
FastAPI routes for the AgentPay settlement engine.
Exposes access checks, payment submission, cron entry points and the earn program.
"""

import json
import time
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.gzip import GZipMiddleware

from .auth import require_cron_secret
from .rate_limit import get_wallet_key, limiter, rate_limit_handler
from ..config import get_settings
from ..db.models import Entitlement, ensure_utc
from ..services.engine import PaymentEngine, build_engine
from ..services.errors import (
    ConflictError,
    InputRejectedError,
    ItemNotFoundError,
    PaymentError,
    PriceMismatchError,
    QuoteExpiredError,
    SettlementUnavailableError,
)
from ..services.quote import Quote, TransferAuthorization
from ..utils.logging import get_logger, log_context

router = APIRouter(prefix="/api/v1", tags=["Payments"])
settings = get_settings()

logger = get_logger(__name__)


# ===================
# Pydantic Models
# ===================

class SubmitPaymentRequest(BaseModel):
    """Signed payment for a quoted item."""
    item_id: str
    buyer_address: str
    quote: Quote
    authorization: TransferAuthorization


class EntitlementInfo(BaseModel):
    """Entitlement details handed to the buyer."""
    token: str
    expires_at: Optional[str]
    status: str


class SubmitPaymentResponse(BaseModel):
    """Successful settlement."""
    granted: bool = True
    status: str
    entitlement: EntitlementInfo
    tx_hash: str
    platform_fee: str
    seller_amount: str


# ===================
# Helpers
# ===================

def get_engine(request: Request) -> PaymentEngine:
    """Engine attached to the running app."""
    return request.app.state.engine


def entitlement_info(entitlement: Entitlement) -> EntitlementInfo:
    return EntitlementInfo(
        token=entitlement.token,
        expires_at=ensure_utc(entitlement.expires_at).isoformat() if entitlement.expires_at else None,
        status=entitlement.confirmation_status.value,
    )


def payment_required_response(quote: Quote, error: str = "Payment Required", code: str = "PAYMENT_REQUIRED") -> JSONResponse:
    """402 carrying a fresh quote in the body and the X-Payment-Required header."""
    payment = quote.model_dump(mode="json")
    return JSONResponse(
        status_code=402,
        content={
            "error": error,
            "code": code,
            "paymentRequired": True,
            "payment": payment,
        },
        headers={"X-Payment-Required": json.dumps(payment)},
    )


def payment_error_response(exc: PaymentError) -> JSONResponse:
    """Map engine errors onto HTTP responses."""
    if isinstance(exc, ItemNotFoundError):
        return JSONResponse(status_code=404, content={"error": exc.message, "code": exc.code})
    if isinstance(exc, InputRejectedError):
        return JSONResponse(
            status_code=400,
            content={"rejected": True, "reason": exc.message, "code": exc.code},
        )
    if isinstance(exc, ConflictError):
        return JSONResponse(
            status_code=409,
            content={"conflict": True, "error": exc.message, "code": exc.code},
        )
    if isinstance(exc, SettlementUnavailableError):
        return JSONResponse(status_code=503, content={"error": exc.message, "code": exc.code})

    # Relay refused, relay settle failed, relay or chain transport
    return JSONResponse(
        status_code=502,
        content={"rejected": True, "reason": exc.message, "code": exc.code},
    )


# ===================
# Access
# ===================

@router.get("/items/{item_id}/access")
async def get_item_access(
    item_id: str,
    engine: PaymentEngine = Depends(get_engine),
    x_wallet_address: Optional[str] = Header(default=None),
):
    """
    Check a wallet's access to an item.

    Returns 200 when access is granted (free item or active entitlement),
    otherwise 402 with a payment quote.
    """
    result = await engine.settlement.check_access(item_id, x_wallet_address)

    if not result.granted:
        return payment_required_response(result.quote)

    return {
        "access": "granted",
        "item_id": result.item.id,
        "slug": result.item.slug,
        "entitlement": entitlement_info(result.entitlement).model_dump() if result.entitlement else None,
    }


# ===================
# Payments
# ===================

@router.post("/payments/submit", response_model=SubmitPaymentResponse)
@limiter.limit(settings.rate_limit_settle, key_func=get_wallet_key)
async def submit_payment(
    request: Request,
    body: SubmitPaymentRequest,
    engine: PaymentEngine = Depends(get_engine),
):
    """Settle a signed authorization and grant an entitlement."""
    with log_context(item_id=body.item_id, buyer=body.buyer_address.lower()):
        try:
            result = await engine.settlement.settle(
                body.item_id,
                body.buyer_address,
                body.quote,
                body.authorization,
            )
        except (QuoteExpiredError, PriceMismatchError) as e:
            item = await engine.settlement.get_item(body.item_id)
            return payment_required_response(
                engine.settlement.quote_for(item),
                error=e.message,
                code=e.code,
            )

    return SubmitPaymentResponse(
        status=result.status.value,
        entitlement=entitlement_info(result.entitlement),
        tx_hash=result.transaction.tx_hash,
        platform_fee=str(result.split.platform_amount),
        seller_amount=str(result.split.seller_amount),
    )


# ===================
# Cron
# ===================

@router.api_route(
    "/cron/verify-payments",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_secret)],
)
@limiter.exempt
async def cron_verify_payments(request: Request, engine: PaymentEngine = Depends(get_engine)):
    """Finalize preconfirmed settlements past their verification deadline."""
    summary = await engine.reconciliation.finalize_settlements()
    return {"message": "Verification complete", **asdict(summary)}


@router.api_route(
    "/cron/earn-distribution",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_secret)],
)
@limiter.exempt
async def cron_earn_distribution(request: Request, engine: PaymentEngine = Depends(get_engine)):
    """Reconcile earn payouts, then compute last month's distribution if new."""
    payouts = await engine.reconciliation.reconcile_payouts()
    result = await engine.earn.run()
    return {**result.to_dict(), "payout_check": asdict(payouts)}


# ===================
# Earn Program
# ===================

@router.get("/earn-program")
async def get_earn_program(engine: PaymentEngine = Depends(get_engine)):
    """Live leaderboard and the last computed distribution."""
    return await engine.earn.leaderboard()


def create_api_app(engine: Optional[PaymentEngine] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        engine: Pre-built engine; when omitted one is built from settings on
            startup and the reconciliation scheduler runs in-process
    """
    import traceback
    from slowapi.errors import RateLimitExceeded
    from slowapi.middleware import SlowAPIMiddleware

    app = FastAPI(
        title="AgentPay API",
        description="Payment settlement and entitlement engine",
        version="1.0.0",
    )
    app.state.engine = engine

    # GZip compression for responses >1KB
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Rate limiter: middleware applies global default; decorators override per-route
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    # Timing middleware: logs duration and adds X-Response-Time header
    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(elapsed_ms, 1),
        )
        return response

    @app.exception_handler(PaymentError)
    async def payment_exception_handler(request: Request, exc: PaymentError):
        logger.info(
            "payment_rejected",
            path=str(request.url.path),
            code=exc.code,
            error=exc.message,
        )
        return payment_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        reason = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"rejected": True, "reason": reason, "code": "invalid_request"},
        )

    # Global exception handler: catches unhandled errors, returns clean JSON
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        if isinstance(exc, HTTPException):
            raise exc
        logger.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "detail": "An unexpected error occurred. Please try again.",
            },
        )

    app.include_router(router)

    owns_engine = engine is None

    @app.on_event("startup")
    async def startup_engine():
        """Build the engine and start reconciliation when the app owns it."""
        if not owns_engine:
            return
        app.state.engine = build_engine(get_settings())
        await app.state.engine.scheduler.start()
        logger.info("Payment engine started")

    @app.on_event("shutdown")
    async def shutdown_engine():
        if owns_engine and app.state.engine is not None:
            await app.state.engine.close()
            logger.info("Payment engine stopped")

    # Health check (exempt from rate limiting)
    @app.get("/health")
    @limiter.exempt
    async def health_check(request: Request):
        current = request.app.state.engine
        return {
            "status": "healthy",
            "service": "agentpay-api",
            "settlement_configured": bool(current and current.relay is not None),
            "scheduler": current.scheduler.last_results if current else None,
        }

    return app
