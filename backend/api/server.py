# api/server.py
# ============================================================================
# MCNATION STORE BACKEND — FASTAPI SERVER
# ============================================================================
# Storefront checkout, Stripe webhook intake, post-checkout return path,
# payment status and admin endpoints.
#
# Run: uvicorn api.server:app   (from backend/)
# ============================================================================

import time
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from api.dependencies import current_user, get_pipeline, require_admin, require_user
from pipeline.container import PaymentPipeline
from pipeline.exceptions import PaymentFlowError
from pipeline.logging_config import configure_logging
from pipeline.settings import Settings
from schemas.payment_definitions import AuthenticatedUser, CartItem, PaymentSnapshot

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CheckoutRequest(BaseModel):
    """Storefront checkout request"""
    model_config = ConfigDict(populate_by_name=True)

    cart_items: List[CartItem] = Field(default_factory=list, alias="cartItems")
    minecraft_username: Optional[str] = Field(default=None, alias="minecraftUsername")
    return_url: Optional[str] = Field(default=None, alias="returnUrl")


class CheckoutResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    checkout_url: str = Field(alias="checkoutUrl")


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    store_backend: str
    webhooks_in_flight: int


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(pipeline: PaymentPipeline = Depends(get_pipeline)):
    return HealthResponse(
        status="healthy",
        version=VERSION,
        environment=pipeline.settings.environment,
        store_backend=pipeline.store.backend_name,
        webhooks_in_flight=pipeline.gateway.in_flight,
    )


@router.post("/api/stripe/checkout")
async def create_checkout(
    body: CheckoutRequest,
    user: AuthenticatedUser = Depends(require_user),
    pipeline: PaymentPipeline = Depends(get_pipeline),
):
    result = await pipeline.checkout.create_checkout(
        user,
        body.cart_items,
        body.minecraft_username,
        return_url=body.return_url,
    )
    return CheckoutResponse(checkout_url=result.checkout_url).model_dump(by_alias=True)


@router.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request, pipeline: PaymentPipeline = Depends(get_pipeline)):
    """
    Stripe webhook handler. Acknowledges as soon as the event is verified and
    scheduled; processing happens in a detached task.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    ack = await pipeline.gateway.process_webhook(payload, signature)
    return ack.model_dump()


@router.get("/store/checkout/success")
async def checkout_success(
    session_id: Optional[str] = Query(default=None),
    user: Optional[AuthenticatedUser] = Depends(current_user),
    pipeline: PaymentPipeline = Depends(get_pipeline),
):
    """Eager sync on return from Stripe, so the buyer never sees pre-payment state."""
    settings = pipeline.settings
    if user is None:
        return RedirectResponse(settings.build_url("/login"), status_code=303)

    customer_id = await pipeline.cache.get_customer_id(user.user_id)
    if not customer_id:
        return RedirectResponse(settings.build_url("/"), status_code=303)

    try:
        await pipeline.synchronizer.sync_customer(customer_id)
    except PaymentFlowError as e:
        logger.error("checkout_return_sync_failed",
                     session_id=session_id,
                     customer_id=customer_id,
                     error=str(e))
        return RedirectResponse(settings.build_url("/store/thank-you?sync=failed"), status_code=303)

    return RedirectResponse(settings.build_url("/store/thank-you"), status_code=303)


@router.get("/api/stripe/payment")
async def current_payment(
    user: AuthenticatedUser = Depends(require_user),
    pipeline: PaymentPipeline = Depends(get_pipeline),
):
    customer_id = await pipeline.cache.get_customer_id(user.user_id)
    if not customer_id:
        return PaymentSnapshot.none().to_cache()

    snapshot = await pipeline.cache.get_payment_snapshot(customer_id)
    if snapshot is None:
        snapshot = await pipeline.synchronizer.sync_customer(customer_id)
    return snapshot.to_cache()


@router.get("/api/admin/payments")
async def list_payments(
    limit: int = Query(default=10),
    status: Optional[str] = Query(default=None),
    admin: AuthenticatedUser = Depends(require_admin),
    pipeline: PaymentPipeline = Depends(get_pipeline),
):
    payments = await pipeline.provider.list_recent_payments(min(max(limit, 1), 100), status)
    return [payment.model_dump(by_alias=True, mode="json") for payment in payments]


@router.post("/api/admin/deliveries/{session_id}")
async def redeliver_session(
    session_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    pipeline: PaymentPipeline = Depends(get_pipeline),
):
    """Re-run delivery for a session. Items with a receipt are skipped."""
    logger.info("manual_redelivery_requested", session_id=session_id, admin_id=admin.user_id)
    report = await pipeline.delivery.deliver_session(session_id)
    return {**report.model_dump(mode="json"), "complete": report.complete}


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(pipeline: Optional[PaymentPipeline] = None) -> FastAPI:
    """Build the ASGI app. Services are wired here so the app is usable without lifespan."""
    pipeline = pipeline or PaymentPipeline.create(Settings.from_env())
    settings = pipeline.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, json_output=settings.is_production)
        logger.info("server_starting", version=VERSION, env=settings.environment)
        settings.check_stripe_keys()

        yield

        logger.info("server_shutting_down", webhooks_in_flight=pipeline.gateway.in_flight)
        await pipeline.close()

    app = FastAPI(
        title="McNation Store Payments",
        description="Stripe checkout, webhook reconciliation and in-game delivery",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(PaymentFlowError)
    async def payment_flow_error_handler(request: Request, exc: PaymentFlowError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("request_failed", path=request.url.path, code=exc.code, error=str(exc))
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        logger.warning("request_invalid", path=request.url.path, fields=fields)
        return JSONResponse(status_code=400, content={"error": "Invalid request", "fields": fields})

    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    _settings = app.state.pipeline.settings
    uvicorn.run(
        "api.server:app",
        host=_settings.host,
        port=_settings.port,
        reload=not _settings.is_production,
        log_level="info",
    )
