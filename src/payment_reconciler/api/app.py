"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciler.api.routes import health_router, webhooks_router
from payment_reconciler.config import Settings, configure_logging, get_settings
from payment_reconciler.database import dispose_db, init_db
from payment_reconciler.gateway import PaymentGateway, PayPalGateway
from payment_reconciler.services import NotificationDispatcher, ReconciliationService

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    gateway: PaymentGateway | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators not passed in are built from ``settings``. Everything is
    wired here, once; request handlers never read the environment.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    owns_engine = session_factory is None
    if session_factory is None:
        _, session_factory = init_db(settings.database_url)

    gateway_config = settings.gateway_config()
    if gateway is None:
        gateway = PayPalGateway(gateway_config)
    if dispatcher is None:
        dispatcher = NotificationDispatcher(settings.notification_config(), session_factory)

    if not gateway.is_configured:
        logger.warning("PayPal credentials missing; deposit actions will be rejected")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        yield
        # Shutdown
        if owns_engine:
            await dispose_db()

    app = FastAPI(
        title="Payment Reconciler API",
        description="Payment-event reconciliation for checkout and wallet deposits",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.reconciler = ReconciliationService(
        session_factory,
        gateway,
        dispatcher,
        currency=gateway_config.currency,
        site_url=gateway_config.site_url,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )

    # Exception handlers
    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Internal error"},
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(webhooks_router, prefix="/api/v1")

    return app
