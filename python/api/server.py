"""
FastAPI Identity Screening API Server

REST surface of the screening engine: screen a subject, re-fetch a stored
report by its retrieval token, export it, and check service health.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Depends, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.exc import OperationalError

from api.models import (
    ScreeningRequest,
    ScreeningResponse,
    ScreeningSummary,
    MatchResponse,
    ScreenedListResponse,
    ReportResponse,
    HealthResponse,
    SourceInfo,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
    client_ip,
)
from config_manager import get_config, ConfigManager, ConfigurationError
from connectors import HttpClient, ConnectorRegistry, build_default_registry
from database.connection import DatabaseSessionProvider, init_db, close_db
from lookup_cache import create_cache
from orchestrator import ScreeningOrchestrator
from report_assembler import ReportAssembler
from screening_models import InvalidRequest, RequestMetadata, ScreeningOutcome, validate_screening_request
from security_logger import SecurityLogger, get_security_logger

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH")
API_KEY = os.getenv("API_KEY", "")  # Required for the screen endpoint when set
LOG_DIR = os.getenv("LOG_DIR", "logs")

DISCONNECT_POLL_SECONDS = 0.25

# Global state
_config: Optional[ConfigManager] = None
_db_provider: Optional[DatabaseSessionProvider] = None
_registry: Optional[ConnectorRegistry] = None
_http: Optional[HttpClient] = None
_orchestrator: Optional[ScreeningOrchestrator] = None
_assembler: Optional[ReportAssembler] = None
_security_logger: Optional[SecurityLogger] = None
_startup_time: Optional[datetime] = None
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="screen-request")

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for the screen endpoint.

    If API_KEY environment variable is not set, authentication is disabled.
    Report reads need only the retrieval token.
    """
    if not API_KEY:
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_orchestrator() -> ScreeningOrchestrator:
    """Dependency to get the orchestrator instance."""
    if _orchestrator is None:
        raise HTTPException(
            status_code=503, detail="Screening engine not initialized. Service is starting up."
        )
    return _orchestrator


def get_assembler() -> ReportAssembler:
    """Dependency to get the report assembler instance."""
    if _assembler is None:
        raise HTTPException(
            status_code=503, detail="Report store not initialized. Service is starting up."
        )
    return _assembler


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def setup_logging(config: ConfigManager) -> None:
    """Configure root logging from the `logging` config section."""
    settings = config.logging
    handlers = []
    if settings.console:
        handlers.append(logging.StreamHandler())
    if settings.file:
        Path(settings.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.file, encoding='utf-8'))
    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format=settings.format,
        handlers=handlers or None,
        force=True,
    )


# Create FastAPI application
app = FastAPI(
    title="Identity Screening API",
    description="Screen individuals and organizations against national registries and sanctions lists",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration, open the database and wire the engine."""
    global _config, _db_provider, _registry, _http, _orchestrator, _assembler
    global _security_logger, _startup_time

    start_time = time.time()

    try:
        _config = get_config(CONFIG_PATH)
        setup_logging(_config)
        logger.info("Starting Identity Screening API...")

        _security_logger = get_security_logger(log_dir=LOG_DIR)
        _db_provider = init_db(create_tables=True)

        _http = HttpClient(
            user_agent=_config.connectors.user_agent,
            timeout=_config.connectors.timeout_seconds,
            pool_size=_config.performance.max_threads,
        )
        _registry = build_default_registry(_config, _http)
        cache = create_cache(_config.cache.backend, db_provider=_db_provider)

        _assembler = ReportAssembler(
            _db_provider,
            algorithm_version=_config.algorithm.version,
            security_logger=_security_logger,
        )
        _orchestrator = ScreeningOrchestrator.from_config(
            _config, _registry, cache, _assembler, security_logger=_security_logger
        )

        _startup_time = datetime.now(timezone.utc)
        logger.info(
            "API ready: %d sources registered, cache=%s, in %.2f seconds",
            len(_registry), _config.cache.backend, time.time() - start_time,
        )

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Release worker threads, HTTP pools and database connections."""
    logger.info("Shutting down Identity Screening API...")
    if _orchestrator is not None:
        _orchestrator.close()
    if _http is not None:
        _http.close()
    close_db()


def _metadata(request: Request) -> RequestMetadata:
    return RequestMetadata(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def _to_response(outcome: ScreeningOutcome) -> ScreeningResponse:
    return ScreeningResponse(
        report_id=outcome.report_id,
        report_token=outcome.report_token,
        summary=ScreeningSummary(**outcome.summary()),
        matches=[
            MatchResponse(rank=rank, **match.to_dict())
            for rank, match in enumerate(outcome.matches, start=1)
        ],
        screened_lists=[ScreenedListResponse(**s.to_dict()) for s in outcome.screened_sources],
        elapsed_ms=outcome.elapsed_ms,
    )


async def _watch_disconnect(request: Request, cancel_event: threading.Event) -> None:
    """Set cancel_event once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling screening")
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@app.post(
    "/api/v1/screen",
    response_model=ScreeningResponse,
    responses={
        200: {"model": ScreeningResponse, "description": "Screening completed and stored"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
        422: {"model": ErrorResponse, "description": "Invalid request"},
        500: {"model": ErrorResponse, "description": "Report could not be stored"},
        503: {"model": ErrorResponse, "description": "No source could be consulted"},
    },
    summary="Screen a subject",
    description="Screen an individual or organization and store the report",
)
async def screen_subject(
    body: ScreeningRequest,
    request: Request,
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
    config: ConfigManager = Depends(get_config_instance),
    api_key: str = Depends(verify_api_key),
):
    """Validate, screen and persist; returns the summary, matches and retrieval token."""
    metadata = _metadata(request)
    rules = config.input_validation

    try:
        screening_request = validate_screening_request(
            subject_name=body.subject_name,
            entity_kind=body.entity_kind,
            subject_name_local=body.subject_name_local,
            national_id=body.national_id,
            date_of_birth=body.date_of_birth,
            country=body.country,
            gender=body.gender,
            organization_name=body.organization_name,
            organization_registration=body.organization_registration,
            categories=body.screening_types,
            jurisdictions=body.jurisdictions,
            threshold=body.match_rate_threshold,
            default_threshold=config.matching.default_threshold,
            name_min_length=rules.name_min_length,
            name_max_length=rules.name_max_length,
            document_max_length=rules.document_max_length,
            blocked_characters=rules.blocked_characters,
        )
    except InvalidRequest as e:
        if _security_logger is not None:
            raw = getattr(body, e.field, None) if e.field else None
            _security_logger.log_validation_failure(
                field=e.field,
                error_code=e.code,
                input_value=str(raw) if raw is not None else "",
                source="api.screen",
                source_ip=metadata.ip_address or "",
                request_id=getattr(request.state, "request_id", ""),
            )
        raise

    cancel_event = threading.Event()
    loop = asyncio.get_running_loop()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        outcome = await loop.run_in_executor(
            _executor,
            partial(orchestrator.screen, screening_request, metadata, cancel_event),
        )
    finally:
        watcher.cancel()

    return _to_response(outcome)


@app.get(
    "/api/v1/reports/{token}",
    response_model=ReportResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown token"},
        500: {"model": ErrorResponse, "description": "Report store error"},
    },
    summary="Fetch a report",
    description="Full stored report; the retrieval token is the only credential needed",
)
def get_report(
    token: str,
    request: Request,
    assembler: ReportAssembler = Depends(get_assembler),
):
    return ReportResponse(**assembler.get_report(token, _metadata(request)))


@app.post(
    "/api/v1/reports/{token}/export",
    response_model=ReportResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown token"},
        500: {"model": ErrorResponse, "description": "Report store error"},
    },
    summary="Export a report",
    description="Report payload for export; records an export entry in the report history",
)
def export_report(
    token: str,
    request: Request,
    assembler: ReportAssembler = Depends(get_assembler),
):
    return ReportResponse(**assembler.export_report(token, _metadata(request)))


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Service status, database reachability and registered sources",
)
def health_check(config: ConfigManager = Depends(get_config_instance)):
    """Always returns HTTP 200; problems are reported in the body."""
    database = "unknown"
    if _db_provider is not None:
        try:
            database = "ok" if _db_provider.health_check() else "unavailable"
        except OperationalError as e:
            logger.error(f"Database health check failed: {e}")
            database = "unavailable"

    sources = [
        SourceInfo(
            source_id=c.source_id,
            name=c.descriptor.name,
            family=c.family.value,
            jurisdictions=sorted(c.jurisdictions),
        )
        for c in (_registry or [])
    ]

    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    ready = _orchestrator is not None and database != "unavailable"
    return HealthResponse(
        status="healthy" if ready else "degraded",
        database=database,
        sources=sources,
        cache_backend=config.cache.backend,
        algorithm_version=config.algorithm.version,
        uptime_seconds=uptime_seconds,
    )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
