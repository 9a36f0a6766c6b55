"""Voucher Escrow - FastAPI Application.

Escrow reconciliation service for the voucher marketplace.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from voucher_escrow import __version__
from voucher_escrow.api import auto_release
from voucher_escrow.api.auto_release import envelope
from voucher_escrow.core.config import Settings, get_settings
from voucher_escrow.core.logging import configure_logging
from voucher_escrow.services.controller import ServiceController

logger = logging.getLogger(__name__)


async def auto_start(controller: ServiceController) -> None:
    """Bring the service up in the background so /health answers during the catch-up scan."""
    try:
        result = await controller.start()
    except Exception:
        logger.exception("[SERVICE] Auto-release service crashed during start")
        return
    if result.success:
        logger.info(f"[SERVICE] {result.message}")
    else:
        logger.error(f"[SERVICE] Auto-release service failed to start: {result.message}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    controller: ServiceController = app.state.controller
    configure_logging(settings.LOG_LEVEL)

    app.state.startup_task = None
    if not settings.AUTO_START:
        logger.info("[SERVICE] AUTO_START disabled; waiting for operator start")
    else:
        missing = settings.missing_required()
        if missing:
            logger.warning(
                f"[SERVICE] Auto-release service disabled: {', '.join(missing)} not set. "
                "The API stays up; configure the environment and POST action=start."
            )
        else:
            app.state.startup_task = asyncio.create_task(auto_start(controller), name="auto-release-start")

    yield

    startup_task: Optional[asyncio.Task] = app.state.startup_task
    if startup_task is not None and not startup_task.done():
        startup_task.cancel()
        try:
            await startup_task
        except asyncio.CancelledError:
            logger.info("[SERVICE] Auto-start cancelled by shutdown")
    await controller.stop()


def create_app(
    settings: Optional[Settings] = None,
    controller: Optional[ServiceController] = None,
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Voucher Escrow - confirmed purchases are released exactly once",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.controller = controller or ServiceController(settings)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
        )
        return envelope(400, False, f"Invalid request: {errors}")

    app.include_router(auto_release.router)

    @app.get("/")
    async def root():
        """Service banner."""
        return {
            "service": settings.APP_NAME,
            "version": __version__,
            "status": "operational",
        }

    @app.get("/health")
    async def health():
        """Reconciliation service health."""
        status = app.state.controller.status()
        return {
            "status": "healthy" if status.running else "degraded",
            "state": status.state.value,
            "admin_identity": status.admin_identity,
            "ledger_endpoint": status.ledger_endpoint,
            "last_error": status.last_error,
        }

    return app


app = create_app()
