"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from bugnotify.config import Settings, settings as default_settings
from bugnotify.container import AppContainer, build_container
from bugnotify.notifications import routes as notification_routes


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[AppContainer] = None,
) -> FastAPI:
    """Build the application. Tests pass their own settings or container."""
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.container = container or build_container(settings)
        await app.state.container.start()
        try:
            yield
        finally:
            await app.state.container.aclose()

    app = FastAPI(
        title="Bug Notify API",
        description="Notification decision and multi-channel dispatch for the issue tracker",
        version="0.4.0",
        lifespan=lifespan,
    )

    # Include routers
    app.include_router(notification_routes.router, prefix=settings.API_V1_PREFIX)
    app.include_router(notification_routes.cron_router, prefix=settings.API_V1_PREFIX)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Bug Notify API",
            "version": "0.4.0",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bugnotify.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
