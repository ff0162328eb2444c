"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from insight_engine.api import router as api_router
from insight_engine.core.config import get_settings
from insight_engine.core.embeddings import create_openai_client
from insight_engine.core.errors import (
    DimensionMismatchError,
    EmptyInputError,
    InsufficientTrainingDataError,
    NotFoundError,
)
from insight_engine.core.llm import get_llm
from insight_engine.core.logging import get_logger
from insight_engine.db.supabase_client import create_supabase_client

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared clients once and expose them on app.state."""
    settings = get_settings()

    app.state.settings = settings
    app.state.supabase = create_supabase_client(settings)
    app.state.openai = create_openai_client(settings)
    app.state.llm = get_llm(settings)

    logger.info(f"Insight Engine started (env={settings.INSIGHT_ENGINE_ENV})")
    yield
    logger.info("Insight Engine shutting down")


app = FastAPI(
    title="Insight Engine",
    description="Embedding, clustering, concept tagging and topic generation for medical insights",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(EmptyInputError)
@app.exception_handler(DimensionMismatchError)
@app.exception_handler(InsufficientTrainingDataError)
async def invalid_input_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the failure and return a generic 500."""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": f"Internal server error: {exc}"})


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Liveness plus the settings that change clustering behaviour."""
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.INSIGHT_ENGINE_ENV,
            "embedding_model": settings.EMBEDDING_MODEL,
            "unique_search_mode": settings.UNIQUE_INSIGHT_SEARCH_MODE,
        },
        status_code=200,
    )


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
