"""
FastAPI application entry point.

This is the main application that ties together all components:
- API routes for billing rules, number sequences, batch actions and SEPA exports
- Database lifecycle management
- Notification worker and optional rule scheduler
- Error handling and logging
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from windbill import __version__
from windbill.api.routes import batch, billing_rules, health, invoice_sequences, sepa
from windbill.config import get_settings
from windbill.exceptions import WindbillError
from windbill.infrastructure.database import close_db, get_session_factory, init_db
from windbill.services.billing import BillingRuleEngine
from windbill.services.notifications import NotificationQueue
from windbill.services.scheduler import run_scheduler_loop

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown tasks:
    - Initialize database tables
    - Start the notification worker and, if configured, the scheduler
    - Drain notifications and close connections on shutdown
    """
    settings = get_settings()

    logger.info(f"Starting windbill v{__version__}")
    logger.info(f"Debug mode: {settings.debug}")

    await init_db()

    notifications = NotificationQueue()
    notifications.start()
    app.state.notifications = notifications

    scheduler_task = None
    if settings.scheduler_interval_seconds > 0:
        session_factory = get_session_factory()
        engine = BillingRuleEngine(session_factory, notifications=notifications)
        scheduler_task = asyncio.create_task(
            run_scheduler_loop(engine, session_factory, settings.scheduler_interval_seconds),
            name="rule-scheduler",
        )

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down windbill")
    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
    await notifications.stop()
    await close_db()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance ready to serve requests.
    """
    settings = get_settings()

    app = FastAPI(
        title="windbill API",
        description=(
            "Billing backend for wind park operators.\n\n"
            "Runs billing rules that create invoices and credit notes, "
            "manages invoice number sequences and exports SEPA payment batches."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Sepa-Message-Id", "X-Sepa-Skipped"],
    )

    # Register routers
    app.include_router(health.router)
    app.include_router(billing_rules.router, prefix="/api/v1")
    app.include_router(invoice_sequences.router, prefix="/api/v1")
    app.include_router(batch.router, prefix="/api/v1")
    app.include_router(sepa.router, prefix="/api/v1")

    @app.exception_handler(WindbillError)
    async def windbill_exception_handler(request: Request, exc: WindbillError):
        """Application errors that escaped a router."""
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "detail": exc.message},
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler for unhandled errors."""
        logger.exception(f"Unhandled error: {exc}")

        # Don't expose internal errors in production
        if settings.debug:
            detail = str(exc)
        else:
            detail = "An internal error occurred"

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "detail": detail,
            },
        )

    return app


# Create the application instance
app = create_app()


# Development server entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "windbill.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
