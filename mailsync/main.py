from fastapi import FastAPI
from contextlib import asynccontextmanager
from typing import Optional
from mailsync.config import settings
from mailsync.utils.logging import setup_logging
from mailsync.api.middleware import LoggingMiddleware
from mailsync.api.routes import api_router, health_router, webhook_router
from mailsync.utils.logging import get_logger
from mailsync.db.database import check_database_health, create_tables, dispose_engine
from mailsync.services.container import EmailServices, build_email_services
from mailsync.services.email_models import ProviderKind

# Setup logging
setup_logging()
logger = get_logger("main")


async def start_imap_monitors(services: EmailServices) -> int:
    """Resume monitoring for every connected IMAP account."""
    started = 0
    for account in await services.account_store.list_active(ProviderKind.POLL):
        try:
            await services.idle_monitor.start(account)
            started += 1
        except Exception as e:
            logger.error(f"Could not start IMAP monitor for account {account.id}: {e}")
    return started


def create_app(services: Optional[EmailServices] = None, check_database: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built service graph (tests pass in-memory collaborators)
        check_database: Fail startup when PostgreSQL is unreachable
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")

        if check_database:
            logger.info("Checking database connectivity...")
            if not await check_database_health():
                logger.error("Database health check failed")
                raise RuntimeError("Database connection failed")
            if settings.database_create_tables:
                await create_tables()

        app.state.services = services or build_email_services()
        try:
            await app.state.services.start()
            monitors = await start_imap_monitors(app.state.services)
            logger.info(f"Application startup complete ({monitors} IMAP monitor(s) running)")
            yield
        finally:
            logger.info("Shutting down application...")
            try:
                await app.state.services.stop()
                if check_database:
                    await dispose_engine()
                    logger.info("Database connections disposed")
            except Exception as e:
                logger.error(f"Error during shutdown: {e}")
            logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Multi-provider email connection and synchronization service",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )

    app.add_middleware(LoggingMiddleware)

    app.include_router(health_router)
    app.include_router(api_router)
    app.include_router(webhook_router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "app_name": settings.app_name,
            "version": settings.app_version,
            "status": "running",
            "docs_url": "/docs" if settings.debug else None
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mailsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
