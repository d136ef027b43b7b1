import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from glucoscope import __version__
from glucoscope.api import api_router
from glucoscope.core.errors import ConfigurationError, UpstreamFetchError
from glucoscope.core.logging import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Glucoscope", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "HEAD", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.warning("Rejected request with invalid configuration", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(UpstreamFetchError)
async def upstream_error_handler(request: Request, exc: UpstreamFetchError) -> JSONResponse:
    logger.error("Upstream store failed", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.on_event("startup")
async def startup_event() -> None:
    from glucoscope.core.db import create_tables, init_db
    from glucoscope.core.settings import get_settings

    settings = get_settings()
    init_db(settings.database.url)
    await create_tables()
    logger.info("Glucoscope started", extra={"periods": list(settings.analytics.period_days)})


@app.on_event("shutdown")
async def shutdown_event() -> None:
    from glucoscope.core.db import get_engine

    engine = get_engine()
    if engine is not None:
        await engine.dispose()
