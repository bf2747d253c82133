import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from backend/.env
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

from backend.api import admin_billing, billing, health, subscription  # noqa: E402
from backend.core.config import Settings, settings as default_settings, validate_config  # noqa: E402
from backend.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from backend.core.logging import configure_logging  # noqa: E402
from backend.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from backend.core.validation import validate_env  # noqa: E402
from backend.features.billing.provider import BillingProvider  # noqa: E402
from backend.features.billing.service import BillingService, build_provider  # noqa: E402
from backend.features.plans.service import DEFAULT_CATALOG, PlanCatalog  # noqa: E402
from backend.features.subscriptions.persistence import SubscriptionStore  # noqa: E402
from backend.features.subscriptions.service import SubscriptionService  # noqa: E402
from backend.features.usage.service import UsageService  # noqa: E402

logger = logging.getLogger("inclusiva")


def _wire_services(app: FastAPI, store: SubscriptionStore, provider: Optional[BillingProvider]) -> None:
    cfg: Settings = app.state.settings
    catalog: PlanCatalog = app.state.catalog
    app.state.store = store
    app.state.subscriptions = SubscriptionService(store, catalog)
    app.state.usage = UsageService(store, catalog)
    app.state.billing = BillingService(
        store,
        provider,
        catalog,
        currency=cfg.BILLING_CURRENCY,
        product_prefix=cfg.CHECKOUT_PRODUCT_PREFIX,
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SubscriptionStore] = None,
    provider: Optional[BillingProvider] = None,
    catalog: PlanCatalog = DEFAULT_CATALOG,
) -> FastAPI:
    """
    Build the application.

    The entry point owns the store: pass one in (tests), or the lifespan
    builds it from DATABASE_URL and disposes it on shutdown. Without an
    explicit provider, Stripe is used when STRIPE_SECRET_KEY is set and
    billing endpoints answer 503 billing_disabled otherwise.
    """
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Inclusiva subscription backend...")
        owned_store = None
        if getattr(app.state, "store", None) is None:
            owned_store = SubscriptionStore.from_url(cfg.TEST_DATABASE_URL or cfg.DATABASE_URL)
            owned_store.create_schema()
            _wire_services(app, owned_store, provider if provider is not None else build_provider(cfg))
        try:
            yield
        finally:
            if owned_store is not None:
                owned_store.dispose()
            logger.info("Stopping Inclusiva subscription backend...")

    app = FastAPI(title="Inclusiva - Subscription Backend", lifespan=lifespan)
    app.state.settings = cfg
    app.state.catalog = catalog
    app.state.store = None
    if store is not None:
        _wire_services(app, store, provider if provider is not None else build_provider(cfg))

    # Middlewares
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(subscription.router, prefix="/api")
    app.include_router(billing.router, prefix="/api")
    app.include_router(admin_billing.router, prefix="/api")
    app.include_router(health.root_router)
    return app


def _startup_checks() -> None:
    configure_logging(default_settings.ENV)
    validate_env()
    validate_config(strict=getattr(default_settings, "CONFIG_STRICT", False))


_startup_checks()
app = create_app()
