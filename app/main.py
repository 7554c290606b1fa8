from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from app.api.routes.checkout import router as checkout_router
from app.api.routes.health import router as health_router
from app.api.routes.internal_affiliates import router as internal_affiliates_router
from app.api.routes.internal_lms_sync import router as internal_lms_sync_router
from app.api.routes.stripe_webhook import router as stripe_webhook_router
from app.core.config import get_settings
from app.core.logging import configure_logging
from app.db.session import dispose_engine


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await dispose_engine()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Course Checkout API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(checkout_router)
    app.include_router(stripe_webhook_router)
    app.include_router(internal_lms_sync_router)
    app.include_router(internal_affiliates_router)
    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_env == "dev",
    )


if __name__ == "__main__":
    run()
