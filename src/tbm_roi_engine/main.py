"""TBM allocation and ROI engine service entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from tbm_roi_engine.api.router import engine_error_handler, router
from tbm_roi_engine.core.errors import EngineError
from tbm_roi_engine.database import dispose_database, init_database
from tbm_roi_engine.observability import configure_logging, get_logger
from tbm_roi_engine.settings import Settings

logger = get_logger(__name__)
settings = Settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    logger.info(
        "tbm-roi-engine starting",
        service=settings.service_name,
        weight_validation_mode=settings.weight_validation_mode,
        unmatched_spend_policy=settings.unmatched_spend_policy,
    )
    init_database(settings.database_url, echo=settings.database_echo)
    yield
    await dispose_database()
    logger.info("tbm-roi-engine shutting down")


app = FastAPI(title="tbm-roi-engine", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(EngineError, engine_error_handler)  # type: ignore[arg-type]
app.include_router(router, prefix="/api/v1")


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok", "service": settings.service_name}
