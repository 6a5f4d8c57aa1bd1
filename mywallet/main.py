import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from mywallet/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from mywallet.api import health, metrics, subscription, subscriptions, webhooks  # noqa: E402
from mywallet.core.config import settings, validate_config  # noqa: E402
from mywallet.core.database import create_all_tables  # noqa: E402
from mywallet.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from mywallet.core.logging import configure_logging  # noqa: E402
from mywallet.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from mywallet.features.billing.service import build_billing_services  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("mywallet")
    logger.info("Starting MyWallet backend...")
    create_all_tables()
    services = build_billing_services(settings)
    app.state.billing = services
    if services.provider is not None:
        services.plan_registry.setup_plans()
    else:
        logger.warning("Billing disabled: MP_ACCESS_TOKEN not configured")
    try:
        yield
    finally:
        services.close()
        logger.info("Stopping MyWallet backend...")


app = FastAPI(title="MyWallet - Billing Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(subscription.router)
app.include_router(subscriptions.router)
app.include_router(webhooks.router)
