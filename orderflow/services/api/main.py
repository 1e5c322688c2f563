"""HTTP surface for checkout, payment intents, payment webhooks and order timelines.

`create_app` wires every component around one session factory and one
`Observability`; the module-level `app` is the production instance.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from orderflow.common.config import Settings, settings
from orderflow.common.db import SessionLocal, engine
from orderflow.common.errors import CheckoutError
from orderflow.common.events import KafkaBus
from orderflow.common.logging import logger, trace_id_ctx
from orderflow.common.observability import Observability
from orderflow.common.outbox import OutboxRelay
from orderflow.common.ratelimit import TokenBucket
from orderflow.common.startup import log_startup_config
from orderflow.common.tracing import instrument_app
from orderflow.schema import create_schema
from orderflow.services.inventory.service import InventoryLedger
from orderflow.services.orders.event_log import OrderEventLog
from orderflow.services.orders.lifecycle import OrderLifecycle
from orderflow.services.orders.models import OutboxEvent
from orderflow.services.orders.schemas import CheckoutRequest, OrderEventOut, OrderOut, QuoteRequest
from orderflow.services.orders.service import OrderBuilder
from orderflow.services.payments.provider import build_provider
from orderflow.services.payments.schemas import PaymentIntentRequest, PaymentIntentResponse, PaymentRetryResponse
from orderflow.services.payments.service import PaymentIntentManager
from orderflow.services.payments.webhooks import WebhookReconciler
from orderflow.services.rates.service import RateCalculator


@dataclass
class CheckoutCore:
    """The wired component graph; tests build one against their own database."""

    orders: OrderBuilder
    payments: PaymentIntentManager
    webhooks: WebhookReconciler
    event_log: OrderEventLog


def build_core(session_factory, observability: Observability, provider, app_settings: Settings) -> CheckoutCore:
    inventory = InventoryLedger()
    event_log = OrderEventLog(relay_enabled=app_settings.event_relay_enabled)
    lifecycle = OrderLifecycle(inventory, event_log)
    rates = RateCalculator(
        free_shipping_threshold_cents=app_settings.free_shipping_threshold_cents,
        inclusive_currencies=app_settings.inclusive_currencies(),
    )
    return CheckoutCore(
        orders=OrderBuilder(session_factory, inventory, rates, event_log, lifecycle, observability),
        payments=PaymentIntentManager(
            session_factory, provider, event_log, observability, max_retries=app_settings.max_payment_retries
        ),
        webhooks=WebhookReconciler(
            session_factory,
            provider,
            lifecycle,
            event_log,
            observability,
            simulated_mode=app_settings.webhook_simulated_mode,
        ),
        event_log=event_log,
    )


def create_app(
    session_factory=None,
    observability: Observability | None = None,
    provider=None,
    app_settings: Settings | None = None,
    rate_limiter: TokenBucket | None = None,
    db_engine=None,
) -> FastAPI:
    app_settings = app_settings or settings
    session_factory = session_factory or SessionLocal
    db_engine = db_engine or engine
    obs = observability or Observability(
        service_name=app_settings.service_name,
        otlp_endpoint=app_settings.otel_exporter_otlp_endpoint,
        log_level=app_settings.log_level,
    )
    provider = provider or build_provider(app_settings)
    if rate_limiter is None and app_settings.checkout_rate_limit_per_minute > 0:
        rate_limiter = TokenBucket.from_url(app_settings.redis_url, app_settings.checkout_rate_limit_per_minute)
    core = build_core(session_factory, obs, provider, app_settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Start observability, create local schema and run the optional outbox relay."""

        obs.start()
        log_startup_config(
            app_settings.service_name,
            [
                "SERVICE_NAME",
                "DATABASE_URL",
                "REDIS_URL",
                "PAYMENT_PROVIDER",
                "STRIPE_SECRET_KEY",
                "WEBHOOK_SIMULATED_MODE",
                "EVENT_RELAY_ENABLED",
                "KAFKA_BOOTSTRAP_SERVERS",
            ],
        )
        if db_engine.dialect.name == "sqlite":
            create_schema(db_engine)
        relay_task = None
        bus = None
        if app_settings.event_relay_enabled:
            bus = KafkaBus(app_settings.kafka_bootstrap_servers)
            relay = OutboxRelay(session_factory, OutboxEvent, bus, obs)
            relay_task = asyncio.create_task(relay.run())
        yield
        if relay_task is not None:
            relay_task.cancel()
            with suppress(asyncio.CancelledError):
                await relay_task
            await bus.close()
        obs.shutdown()

    app = FastAPI(title="Orderflow Checkout", lifespan=lifespan)
    app.state.core = core
    app.state.observability = obs
    if obs.tracer_provider is not None:
        instrument_app(app, obs.tracer_provider)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency; bind the correlation id for logs."""

        trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            obs.metrics.http_request_duration_seconds.labels(
                service=obs.service_name, route=route, method=method
            ).observe(elapsed)
            obs.metrics.http_requests_total.labels(
                service=obs.service_name, route=route, method=method, status_code=str(status_code)
            ).inc()

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(_: Request, exc: CheckoutError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def enforce_api_key(x_api_key: str | None) -> JSONResponse | None:
        if app_settings.api_key and x_api_key != app_settings.api_key:
            return JSONResponse(status_code=401, content={"error": "UNAUTHORIZED", "message": "invalid API key"})
        return None

    @app.post("/checkout")
    def checkout(
        req: CheckoutRequest,
        request: Request,
        x_api_key: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
        x_session_id: str | None = Header(default=None),
    ):
        """Create a PENDING order from the submitted cart snapshot."""

        if denied := enforce_api_key(x_api_key):
            return denied
        if rate_limiter is not None:
            rate_limiter.take(request.client.host if request.client else "unknown")
        result = core.orders.create_order(
            req.cart(),
            req.shipping_address,
            email=req.email,
            user_id=x_user_id,
            session_id=x_session_id,
            discount_code=req.discount_code,
            idempotency_key=req.idempotency_key,
            currency=req.currency,
            billing_address=req.billing_address,
        )
        order = result.order
        return {
            "orderId": order.id,
            "status": order.status,
            "totalCents": order.total_cents,
            "currency": order.currency,
            "idempotent": result.idempotent,
        }

    @app.post("/payments/intent")
    def payment_intent(req: PaymentIntentRequest, x_api_key: str | None = Header(default=None)):
        """Return the order's live payment intent, creating it when needed."""

        if denied := enforce_api_key(x_api_key):
            return denied
        result = core.payments.get_or_create_intent(req.order_id)
        return PaymentIntentResponse(
            client_secret=result.client_secret,
            payment_intent_id=result.payment_intent_id,
            outcome=result.outcome,
        ).model_dump(by_alias=True)

    @app.post("/payments/retry")
    def payment_retry(req: PaymentIntentRequest, x_api_key: str | None = Header(default=None)):
        if denied := enforce_api_key(x_api_key):
            return denied
        result = core.payments.retry_payment(req.order_id)
        return PaymentRetryResponse(
            client_secret=result.client_secret,
            payment_intent_id=result.payment_intent_id,
            outcome=result.outcome,
            attempt=result.attempt,
            retries_remaining=result.retries_remaining,
            backoff_seconds=result.backoff_seconds,
            next_retry_at=result.next_retry_at,
        ).model_dump(by_alias=True, mode="json")

    @app.get("/payments/retry-status")
    def payment_retry_status(order_id: str):
        return core.payments.retry_status(order_id)

    @app.post("/webhooks/payments")
    async def payment_webhook(
        request: Request,
        stripe_signature: str | None = Header(default=None),
        x_webhook_signature: str | None = Header(default=None),
    ):
        """Provider webhook; always 200 once the event is verified and understood."""

        raw = await request.body()
        result = await run_in_threadpool(
            core.webhooks.handle_event, raw, stripe_signature or x_webhook_signature
        )
        body = {"ok": True}
        if result.idempotent:
            body["idempotent"] = True
        if not result.applied:
            body["applied"] = False
            body["reason"] = result.reason
        return body

    @app.post("/rates/quote")
    def rates_quote(req: QuoteRequest):
        return core.orders.quote(req.lines, req.destination, req.currency)

    @app.get("/orders/{order_id}", response_model=OrderOut)
    def get_order(order_id: str):
        return core.orders.get_order(order_id)

    @app.get("/orders/{order_id}/events", response_model=list[OrderEventOut])
    def get_order_events(order_id: str):
        return core.orders.list_events(order_id)

    @app.post("/orders/{order_id}/cancel", response_model=OrderOut)
    def cancel_order(
        order_id: str,
        x_api_key: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ):
        if denied := enforce_api_key(x_api_key):
            return denied
        return core.orders.cancel_order(order_id, user_id=x_user_id)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return obs.metrics.response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    logger.debug("app created provider=%s", getattr(provider, "name", "?"))
    return app


def _production_app() -> FastAPI:
    observability = Observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        log_level=settings.log_level,
    )
    # Started before the app is built so request spans use this provider.
    observability.start()
    return create_app(observability=observability)


app = _production_app()
