import logging
import sys
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from rentdesk.api.v1 import subscriptions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logging.getLogger("rentdesk").setLevel(logging.DEBUG)
from rentdesk.config import settings
from rentdesk.core.rate_limit import limiter
from rentdesk.db.session import close_engine, get_session_maker, init_db, init_engine
from rentdesk.services.http_client import close_http_client, init_http_client
from rentdesk.services.mercadopago_client import MercadoPagoGateway
from prometheus_client import make_asgi_app

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_webhook_redrive():
    """Re-process provider notifications that failed or got stuck."""
    from rentdesk.services.webhook_reconciler import redrive_failed_webhooks

    await redrive_failed_webhooks(app.state.gateway)


async def scheduled_orphan_sweep():
    """Report provider agreements that have no local subscription."""
    from rentdesk.services.webhook_reconciler import find_orphaned_agreements

    async with get_session_maker()() as session:
        orphans = await find_orphaned_agreements(session, app.state.gateway)
    if orphans:
        logger.error("Orphan sweep found %s provider agreements without local subscription", len(orphans))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_jwt_config()
    settings.validate_billing_config()
    init_engine(settings.database_url, echo=settings.debug)
    await init_db()
    init_http_client(timeout=30.0)
    app.state.gateway = MercadoPagoGateway()

    scheduler.add_job(
        scheduled_webhook_redrive, "interval", minutes=settings.webhook_redrive_interval_minutes
    )
    if settings.mp_access_token:
        scheduler.add_job(scheduled_orphan_sweep, "interval", hours=settings.orphan_sweep_interval_hours)

    scheduler.start()
    yield
    scheduler.shutdown()
    await close_http_client()
    await close_engine()


app = FastAPI(
    title="RentDesk API",
    description="Rental back office: subscription billing and payment provider webhooks",
    version=settings.app_version,
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if getattr(settings, "enable_hsts", False):
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] if settings.cors_origins else ["*"]
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(subscriptions.router, prefix="/api/v1")

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    return {"status": "ok"}
