import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

from queryrouter.config import Settings, get_settings, settings
from queryrouter.connection import ConnectionCache, ConnectionManager
from queryrouter.errors import SuggestionError, SuggestionParseError
from queryrouter.models import (
    AvailabilityResponse,
    HealthResponse,
    QueryRequest,
    SuggestionRequest,
)
from queryrouter.orchestrator import FAILURE_MESSAGE, BatchOrchestrator
from queryrouter.suggestion import SuggestionService, is_ai_available

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    cache = ConnectionCache() if settings.CONNECTION_CACHE_ENABLED else None
    app.state.connection_manager = ConnectionManager(cache=cache)
    yield
    await app.state.connection_manager.close()


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

app = FastAPI(title="Edge Query Router", lifespan=lifespan)
start_time = time.time()


# Every OPTIONS request is answered here, preflight or not
@app.middleware("http")
async def add_cors_headers(request: Request, call_next):
    if request.method == "OPTIONS":
        response = Response(status_code=204)
    else:
        response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


settings_dep = Annotated[Settings, Depends(get_settings)]


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connection_manager


def get_orchestrator(
    manager: Annotated[ConnectionManager, Depends(get_connection_manager)],
) -> BatchOrchestrator:
    return BatchOrchestrator(manager)


def get_suggestion_service(current_settings: settings_dep) -> SuggestionService:
    return SuggestionService(current_settings)


@app.get("/health")
async def health(request: Request) -> HealthResponse:
    manager = getattr(request.app.state, "connection_manager", None)
    connection_count = len(manager.cache) if manager and manager.cache is not None else 0
    return HealthResponse(
        status="healthy",
        uptime_seconds=time.time() - start_time,
        connection_count=connection_count,
    )


@app.post("/api/execute_pg")
async def execute_pg(
    request: QueryRequest,
    orchestrator: Annotated[BatchOrchestrator, Depends(get_orchestrator)],
    current_settings: settings_dep,
) -> JSONResponse:
    if not current_settings.DATABASE_URL:
        logger.error("Error executing queries: DATABASE_URL is not configured")
        return JSONResponse(
            status_code=500,
            content={"message": FAILURE_MESSAGE, "error": "DATABASE_URL is not configured"},
        )

    response = await orchestrator.run(current_settings.DATABASE_URL, request.queries)
    status_code = 500 if response.error is not None else 200
    return JSONResponse(status_code=status_code, content=jsonable_encoder(response, exclude_none=True))


@app.post("/api/get_ai_suggestion")
async def get_ai_suggestion(
    request: SuggestionRequest,
    service: Annotated[SuggestionService, Depends(get_suggestion_service)],
) -> JSONResponse:
    missing = request.missing_parameters()
    if missing:
        return JSONResponse(
            status_code=400,
            content={"message": f"Missing required parameters: {', '.join(missing)}"},
        )

    try:
        suggestion = await service.suggest(request.systemInstructions, request.query, request.error)
    except SuggestionParseError as e:
        return JSONResponse(
            status_code=500,
            content={"message": "Error parsing response", "error": str(e)},
        )
    except SuggestionError as e:
        return JSONResponse(
            status_code=500,
            content={"message": "Error getting AI suggestion", "error": str(e)},
        )

    return JSONResponse(content=suggestion.model_dump())


@app.api_route("/api/is_ai_available", methods=["GET", "POST"])
async def ai_available(current_settings: settings_dep) -> AvailabilityResponse:
    return AvailabilityResponse(status=is_ai_available(current_settings))


# Entry point for manual testing
if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
