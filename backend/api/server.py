# api/server.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — FASTAPI SERVER
# ============================================================================
# Orders, payments and processor webhooks over HTTP. The app factory takes an
# optional pre-built service container so tests can run without Postgres.
# ============================================================================

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.dependencies import AdminOnly, Services
from config import CommerceConfig
from errors import CommerceError
from schemas.api_models import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CreateIntentRequest,
    CreateIntentResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    DiscrepancyListResponse,
    ErrorResponse,
    OrderListResponse,
    OrderResponse,
    PaymentConfigResponse,
    RefundRequest,
    RefundResponse,
    UpdatePaymentRequest,
    UpdateStatusRequest,
    WebhookAck,
)
from schemas.orders import OrderStatus, PaymentMethod, PaymentStatus, RefundStatus
from services.container import CommerceServices, build_services
from services.reconciliation import Action
from tasks.payment_sweeper import payment_sweeper_loop

VERSION = "1.0.0"


def configure_logging(config: CommerceConfig) -> None:
    """Configure structured logging once per process."""
    renderer = structlog.dev.ConsoleRenderer(colors=True) if config.debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger().bind(component="server")


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    storage_backend: str
    database_connected: bool
    sweeper_running: bool


def _error_body(message: str, details: Optional[List[dict]] = None) -> dict:
    body = ErrorResponse(message=message, details=details or None)
    return body.model_dump(mode="json", by_alias=True, exclude_none=True)


def create_app(
    services: Optional[CommerceServices] = None,
    config: Optional[CommerceConfig] = None,
) -> FastAPI:
    config = config or (services.config if services else CommerceConfig.from_env())
    start_time = datetime.now(timezone.utc)

    # =========================================================================
    # LIFESPAN MANAGEMENT
    # =========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=config.env, storage=config.storage_backend)

        owned = app.state.services is None
        if owned:
            app.state.services = await build_services(config)

        sweeper = None
        if config.sweep_enabled:
            sweeper = asyncio.create_task(payment_sweeper_loop(app.state.services))
        app.state.sweeper = sweeper

        yield

        # Cleanup
        logger.info("server_shutting_down")
        if sweeper:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        if owned:
            await app.state.services.aclose()

    app = FastAPI(
        title="Storefront Order & Payment Reconciliation",
        description="Orders, payments and processor reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.sweeper = None

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Bind a correlation id for the request and add timing headers"""
        correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000

        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(CommerceError)
    async def commerce_error_handler(request: Request, exc: CommerceError):
        log_method = logger.error if exc.status_code >= 500 else logger.warning
        log_method(
            "request_failed",
            path=request.url.path,
            error_type=type(exc).__name__,
            status_code=exc.status_code,
            error=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.details))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error["loc"] if part != "body"),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        logger.warning("request_invalid", path=request.url.path, fields=[d["field"] for d in details])
        return JSONResponse(status_code=400, content=_error_body("Invalid request", details))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=_error_body(str(exc.detail)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content=_error_body("Internal server error"))

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(services: Services):
        """Health check endpoint"""
        uptime = (datetime.now(timezone.utc) - start_time).total_seconds()
        sweeper = app.state.sweeper
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            storage_backend=config.storage_backend,
            database_connected=bool(services.database and services.database.is_connected),
            sweeper_running=bool(sweeper and not sweeper.done()),
        )

    # =========================================================================
    # ORDERS
    # =========================================================================

    @app.post("/orders", response_model=CreateOrderResponse, status_code=201)
    async def create_order(body: CreateOrderRequest, services: Services):
        created = await services.orders.create_order(body)
        return CreateOrderResponse(
            order_id=created.order_id,
            order_number=created.order_number,
            totals=created.totals,
        )

    @app.get("/orders", response_model=OrderListResponse, dependencies=[AdminOnly])
    async def list_orders(
        services: Services,
        status: Optional[OrderStatus] = None,
        email: Optional[str] = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
    ):
        orders, pagination = await services.orders.list_orders(status=status, email=email, page=page, limit=limit)
        return OrderListResponse(orders=orders, pagination=pagination)

    @app.get("/orders/{order_id}", response_model=OrderResponse)
    async def get_order(order_id: str, services: Services):
        return OrderResponse(order=await services.orders.get_order(order_id))

    @app.patch("/orders/{order_id}/status", response_model=OrderResponse, dependencies=[AdminOnly])
    async def update_order_status(order_id: str, body: UpdateStatusRequest, services: Services):
        order = await services.orders.update_fulfillment(
            order_id,
            body.status,
            tracking_number=body.tracking_number,
            carrier_name=body.carrier_name,
        )
        return OrderResponse(order=order, message=f"Order status updated to {order.status.value}")

    @app.patch("/orders/{order_id}/payment", response_model=OrderResponse, dependencies=[AdminOnly])
    async def update_payment_status(order_id: str, body: UpdatePaymentRequest, services: Services):
        order = await services.orders.override_payment_status(
            order_id,
            body.payment_status,
            payment_intent_id=body.payment_intent_id,
        )
        return OrderResponse(order=order, message=f"Payment status updated to {order.payment_status.value}")

    @app.delete("/orders/{order_id}", response_model=OrderResponse)
    async def cancel_order(order_id: str, services: Services):
        order = await services.orders.cancel_order(order_id)
        return OrderResponse(order=order, message="Order cancelled successfully")

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    @app.post("/payments/create-intent", response_model=CreateIntentResponse)
    async def create_payment_intent(body: CreateIntentRequest, services: Services):
        handle = await services.reconciliation.create_payment_intent(body)
        return CreateIntentResponse(
            client_secret=handle.client_secret,
            intent_id=handle.intent_id,
            amount=handle.amount,
        )

    @app.post("/payments/confirm", response_model=ConfirmPaymentResponse)
    async def confirm_payment(body: ConfirmPaymentRequest, services: Services):
        result = await services.reconciliation.confirm(body.intent_id, body.order_id)
        paid = result.action in (Action.APPLIED, Action.DUPLICATE) and result.payment_status == PaymentStatus.PAID
        return ConfirmPaymentResponse(
            success=paid,
            status=result.payment_status.value if result.payment_status else "pending",
            message="Payment confirmed" if paid else (result.detail or "Payment not completed"),
            order_id=result.order_id,
        )

    @app.post("/payments/refund", response_model=RefundResponse, dependencies=[AdminOnly])
    async def refund_payment(body: RefundRequest, services: Services):
        result, _ = await services.reconciliation.refund(body.intent_id, body.amount, body.reason)
        return RefundResponse(
            success=result.status not in (RefundStatus.FAILED, RefundStatus.CANCELED),
            refund_id=result.refund_id,
            status=result.status.value,
            amount=result.amount,
        )

    @app.post("/payments/webhook", response_model=WebhookAck)
    async def card_webhook(request: Request, services: Services):
        payload = await request.body()
        await services.reconciliation.handle_webhook(PaymentMethod.CARD, payload, request.headers)
        return WebhookAck()

    @app.post("/payments/wallet/webhook", response_model=WebhookAck)
    async def wallet_webhook(request: Request, services: Services):
        payload = await request.body()
        await services.reconciliation.handle_webhook(PaymentMethod.WALLET, payload, request.headers)
        return WebhookAck()

    @app.get("/payments/config", response_model=PaymentConfigResponse)
    async def payment_config():
        return PaymentConfigResponse(
            publishable_key=config.stripe_publishable_key or None,
            wallet_client_id=config.paypal_client_id or None,
            currency=config.currency,
        )

    @app.get("/payments/discrepancies", response_model=DiscrepancyListResponse, dependencies=[AdminOnly])
    async def list_discrepancies(services: Services, limit: int = Query(default=50, ge=1, le=500)):
        return DiscrepancyListResponse(discrepancies=await services.reconciliation.list_discrepancies(limit))

    return app


# =============================================================================
# MAIN
# =============================================================================

def main():
    config = CommerceConfig.from_env()
    configure_logging(config)
    uvicorn.run(
        create_app(config=config),
        host=config.host,
        port=config.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
