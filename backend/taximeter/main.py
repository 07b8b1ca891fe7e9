"""FastAPI application for the taximeter fare engine."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taximeter.api.endpoints import router
from taximeter.config import settings
from taximeter.exceptions import EnhancementProviderError
from taximeter.logging_setup import setup_logging
from taximeter.services.maps import get_mapping_provider
from taximeter.services.trip_controller import reset_trip_controller

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    provider = get_mapping_provider()
    if provider is not None:
        try:
            await provider.initialize()
        except EnhancementProviderError as e:
            logger.warning("Mapping provider unavailable, continuing without it: %s", e)

    yield

    # Session end: no timer or watch may outlive the app
    reset_trip_controller()
    if provider is not None:
        await provider.aclose()


def create_app() -> FastAPI:
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    app = FastAPI(
        title=settings.API_TITLE,
        version=settings.API_VERSION,
        description=settings.API_DESCRIPTION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/")
    async def root():
        return {
            "message": settings.API_TITLE,
            "version": settings.API_VERSION,
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("taximeter.main:app", host="0.0.0.0", port=8000, reload=True)
