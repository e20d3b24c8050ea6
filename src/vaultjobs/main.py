from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import logging

from .api.jobs import router as jobs_router
from .runtime import Runtime, build_runtime
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def configure_logging(app_settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, app_settings.log_level.upper()),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )


def create_app(runtime: Optional[Runtime] = None, app_settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The lifespan arms all scheduled jobs and starts the dispatch loop; a
    prebuilt ``runtime`` (tests, embedding applications) is used as is.
    """
    app_settings = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        # Startup
        logger.info("Starting job scheduler...")
        app.state.runtime = runtime or build_runtime(app_settings)
        app.state.runtime.start()
        logger.info(f"Scheduled jobs loaded: {app.state.runtime.scheduler.stats()['armed_jobs']} armed")
        yield
        # Shutdown
        logger.info("Shutting down job scheduler...")
        app.state.runtime.stop()

    app = FastAPI(
        title="Vault Jobs",
        description="Recurring background job scheduler for the file-storage platform",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = app_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=app_settings.cors_allow_credentials,
        allow_methods=app_settings.cors_allow_methods,
        allow_headers=app_settings.cors_allow_headers,
    )

    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Vault Jobs API",
            "version": "1.0.0",
            "docs": "/docs",
            "redoc": "/redoc"
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "scheduler",
            "scheduler_running": app.state.runtime.scheduler.stats()["running"],
        }

    return app


configure_logging(default_settings)
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "vaultjobs.main:app",
        host=default_settings.api_host,
        port=default_settings.api_port,
        reload=default_settings.environment == "development"
    )
