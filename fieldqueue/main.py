from contextlib import asynccontextmanager

from fastapi import FastAPI

from fieldqueue.config.logging import setup_logging
from fieldqueue.config.settings import Settings, get_settings
from fieldqueue.v1.core.exceptions import install_error_handling
from fieldqueue.v1.healthz import router as health_router
from fieldqueue.v1.infra.jobs.routes import router as jobs_router
from fieldqueue.v1.infra.jobs.runtime import JobRuntime, build_runtime


def create_app(
    app_settings: Settings | None = None, runtime: JobRuntime | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    When no runtime is given, one is built from settings on startup and closed
    on shutdown.
    """
    app_settings = app_settings or get_settings()

    # Initialize structured logging
    setup_logging(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is not None:
            yield
            return

        app.state.runtime = build_runtime(app_settings)
        try:
            yield
        finally:
            await app.state.runtime.close()

    app = FastAPI(
        title=app_settings.app_name,
        description="Background job queue and executor",
        version=app_settings.version,
        debug=app_settings.debug,
        openapi_url="/v1/openapi.json" if app_settings.debug else None,
        docs_url="/v1/docs" if app_settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # Request ids and the error envelope
    install_error_handling(app)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "fieldqueue.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
