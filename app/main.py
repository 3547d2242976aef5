import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import get_settings
from app.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from app.core.logging import bind_request_id, configure_logging, get_logger
from app.db.init import init_db
from app.routers import admin, orders, payments

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="Storefront Payments API",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


QUIET_PATHS = frozenset({"/health"})


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    log_fn = log.debug if request.url.path in QUIET_PATHS else log.info
    log_fn(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(payments.router, prefix="/payment", tags=["payment"])
app.include_router(orders.router, prefix="/orders", tags=["orders"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


def _warn_missing_payment_config() -> None:
    missing = [
        name
        for name, value in (
            ("RAZORPAY_KEY_ID", settings.razorpay_key_id),
            ("RAZORPAY_KEY_SECRET", settings.razorpay_key_secret),
            ("ADMIN_EMAIL", settings.admin_email),
        )
        if not value
    ]
    if missing:
        log.warning("startup_config_missing", missing=missing)
    if not settings.razorpay_webhook_secret and settings.razorpay_key_secret:
        log.warning("startup_webhook_secret_fallback", msg="RAZORPAY_WEBHOOK_SECRET unset; verifying webhooks with the key secret")


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    _warn_missing_payment_config()
    await init_db()
    log.info("startup", msg="DB connected", db=settings.mongodb_db_name, seller_state=settings.seller_state)


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}
