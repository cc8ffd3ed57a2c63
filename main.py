#main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.payouts.errors import PayoutError
from db import close_pool
from middleware import RequestContextMiddleware
from routes.health import router as health_router
from routes.metrics import router as metrics_router
from routes.payouts import router as payouts_router
from routes.webhooks import router as webhooks_router
from services.http_errors import payout_error_handler, unhandled_error_handler
from services.observability import configure_logging
from settings import validate_env_settings

logger = logging.getLogger("payouts.http")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    close_pool()


def create_app() -> FastAPI:
    validate_env_settings()
    configure_logging()

    app = FastAPI(title="Seller Payouts API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(payouts_router)
    app.include_router(webhooks_router)

    app.add_exception_handler(PayoutError, payout_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    return app


app = create_app()
