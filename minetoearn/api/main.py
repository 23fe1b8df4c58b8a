"""
FastAPI application factory.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from minetoearn.admin.admin_routes import admin_router
from minetoearn.api.middleware import add_middleware
from minetoearn.api.routes import cashout, game, purchases
from minetoearn.api.schemas.common import HealthCheckResponse
from minetoearn.cache.redis_client import close_redis_client
from minetoearn.core.config import settings
from minetoearn.core.database import DatabaseManager, init_database, close_database
from minetoearn.core.logging import setup_logging, get_logger
from minetoearn.scheduler.sweep_scheduler import start_sweep_scheduler, stop_sweep_scheduler
from minetoearn.services.cashout.payment_rail import shutdown_payment_rail
from minetoearn.services.purchases import shutdown_payment_verifier


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Mine To Earn Backend", version=settings.app_version)

    try:
        await init_database()
        if settings.scheduler_enabled:
            await start_sweep_scheduler()
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        raise

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    try:
        await stop_sweep_scheduler()
        await shutdown_payment_rail()
        await shutdown_payment_verifier()
        await close_redis_client()
        await close_database()
    except Exception as e:
        logger.error("Shutdown error", error=str(e))

    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Build the API application with routers, middleware and handlers."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Idle mining game backend: accrual, actions, purchases and cashout rounds.",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    add_middleware(app)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check API server health and database connectivity"
    )
    async def health_check():
        if await DatabaseManager.health_check():
            return HealthCheckResponse(
                version=settings.app_version,
                services={"database": "healthy", "api": "healthy"},
            )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "version": settings.app_version,
                "services": {"database": "unhealthy", "api": "healthy"},
            }
        )

    app.include_router(game.router, prefix=f"{settings.api_v1_prefix}/game", tags=["Game"])
    app.include_router(cashout.router, prefix=f"{settings.api_v1_prefix}/cashout", tags=["Cashout"])
    app.include_router(purchases.router, prefix=f"{settings.api_v1_prefix}/purchases", tags=["Purchases"])
    app.include_router(admin_router, prefix=f"{settings.api_v1_prefix}/admin", tags=["Admin"])

    return app


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "minetoearn.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
