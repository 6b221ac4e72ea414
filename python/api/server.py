"""
FastAPI Batch Screening API Server

REST endpoints for submitting batch screening jobs, polling their progress,
cancelling them and reading job history.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Security
from fastapi.responses import PlainTextResponse
from fastapi.security import APIKeyHeader

from api.models import (
    BatchSubmitRequest,
    BatchSubmitResponse,
    BatchStatusResponse,
    BatchJobResponse,
    EntityResultResponse,
    CancelResponse,
    BatchHistoryResponse,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from batch import (
    BatchJobManager,
    BatchOptions,
    BatchValidationError,
    EntityProcessor,
    MatchingProfile,
    RateLimiter,
    generate_template,
    parse_entities,
)
from config_manager import get_config, ConfigManager, ConfigurationError
from database import BatchJobStore, DatabaseSessionProvider, DatabaseSettings
from log_utils import setup_logging
from risk_scoring import RiskProfileLoader
from screening_client import ScreeningAPIClient

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints
DATABASE_ENABLED = os.getenv("DATABASE_ENABLED", "true").lower() == "true"

# Global state
_config: Optional[ConfigManager] = None
_manager: Optional[BatchJobManager] = None
_rate_limiter: Optional[RateLimiter] = None
_client: Optional[ScreeningAPIClient] = None
_db_provider: Optional[DatabaseSessionProvider] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
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


def get_manager() -> BatchJobManager:
    """Dependency to get the batch job manager."""
    if _manager is None:
        raise HTTPException(
            status_code=503, detail="Batch engine not initialized. Service is starting up."
        )
    return _manager


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def _resolve_profiles_dir(config: ConfigManager) -> Path:
    directory = Path(config.risk_profiles.directory)
    if directory.is_absolute() or directory.exists():
        return directory
    return config.config_path.parent / directory


# Create FastAPI application
app = FastAPI(
    title="Batch Entity Screening API",
    description="Batch screening of entities against a knowledge-graph screening API",
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
    """Build the batch engine: client, rate limiter, processor, store, manager."""
    global _config, _manager, _rate_limiter, _client, _db_provider, _startup_time

    try:
        _config = get_config(CONFIG_PATH)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        raise

    setup_logging(_config.logging)
    logger.info("Starting Batch Screening API (config=%s)", _config.config_path)

    _client = ScreeningAPIClient(_config.screening_api)
    _rate_limiter = RateLimiter.from_config(_config.rate_limit)
    profile_loader = RiskProfileLoader(str(_resolve_profiles_dir(_config)))
    processor = EntityProcessor(_client, _rate_limiter, profile_loader)

    store = None
    if DATABASE_ENABLED:
        provider = DatabaseSessionProvider(DatabaseSettings.from_env(_config.database))
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, provider.init)
            await loop.run_in_executor(None, provider.create_tables)
            _db_provider = provider
            store = BatchJobStore(provider)
        except Exception as e:
            # Jobs still run without the durable mirror; history is empty
            logger.warning("Durable job store unavailable, continuing without it: %s", e)

    _manager = BatchJobManager(processor, store, _config.batch)
    _startup_time = datetime.now(timezone.utc)
    logger.info("Batch Screening API ready (durable store: %s)", "on" if store else "off")


@app.on_event("shutdown")
async def shutdown():
    """Cancel live jobs and release connections."""
    global _manager, _rate_limiter, _client, _db_provider
    logger.info("Shutting down Batch Screening API...")

    if _manager is not None:
        await _manager.shutdown()
        _manager = None
    if _rate_limiter is not None:
        await _rate_limiter.close()
        _rate_limiter = None
    if _client is not None:
        await _client.aclose()
        _client = None
    if _db_provider is not None:
        _db_provider.close()
        _db_provider = None


@app.get(
    "/api/v1/batch/template",
    response_class=PlainTextResponse,
    summary="CSV template",
    description="Sample CSV showing every supported column",
)
async def batch_template():
    return PlainTextResponse(
        generate_template(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="batch_template.csv"'},
    )


@app.post(
    "/api/v1/projects/{project_id}/entities/batch",
    response_model=BatchSubmitResponse,
    responses={
        200: {"model": BatchSubmitResponse, "description": "Batch job created"},
        400: {"model": ErrorResponse, "description": "Invalid CSV or batch too large"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
        503: {"model": ErrorResponse, "description": "Service starting up"},
    },
    summary="Submit a batch screening job",
)
async def submit_batch(
    project_id: str,
    request: BatchSubmitRequest,
    x_user_id: Optional[str] = Header(default=None),
    manager: BatchJobManager = Depends(get_manager),
    config: ConfigManager = Depends(get_config_instance),
    api_key: str = Depends(verify_api_key),
):
    """Parse and validate the CSV, then start a background job.

    The response is returned before any entity has been screened; poll
    GET /api/v1/batch/{job_id} for progress.
    """
    parsed = parse_entities(request.csv_content)
    if not parsed.success:
        raise BatchValidationError(
            "CSV validation failed",
            code="CSV_VALIDATION_ERROR",
            errors=[e.to_dict() for e in parsed.errors],
            suggestion="Fix the listed rows and upload the file again",
        )

    max_entities = config.batch.max_entities
    if len(parsed.records) > max_entities:
        raise BatchValidationError(
            f"Batch contains {len(parsed.records)} entities; the maximum is {max_entities}",
            code="BATCH_TOO_LARGE",
            suggestion="Split the file into smaller batches",
        )

    options = BatchOptions(
        project_id=project_id,
        risk_profile=request.risk_profile,
        matching_profile=MatchingProfile(
            request.matching_profile or config.batch.default_matching_profile
        ),
        chunk_size=min(request.chunk_size, config.batch.max_chunk_size),
    )

    submitted = await manager.submit(parsed.records, options, x_user_id or "unknown")

    return BatchSubmitResponse(
        job_id=submitted.job_id,
        status=submitted.status.value,
        total_entities=len(parsed.records),
    )


@app.get(
    "/api/v1/batch/{job_id}",
    response_model=BatchStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown job"}},
    summary="Batch job status and results",
)
async def get_batch_status(
    job_id: str,
    manager: BatchJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    snapshot = manager.registry.snapshot(job_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Batch job not found")

    job, results = snapshot
    return BatchStatusResponse(
        job=BatchJobResponse.model_validate(job.to_dict()),
        results=[EntityResultResponse.model_validate(r.to_dict()) for r in results],
    )


@app.delete(
    "/api/v1/batch/{job_id}",
    response_model=CancelResponse,
    summary="Cancel a batch job",
)
async def cancel_batch(
    job_id: str,
    manager: BatchJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Signal a running job to stop after the record in progress."""
    return CancelResponse(cancelled=manager.cancel(job_id))


@app.get(
    "/api/v1/projects/{project_id}/entities/batch/history",
    response_model=BatchHistoryResponse,
    summary="Batch job history",
    description="Jobs recorded in the durable store, newest first",
)
async def batch_history(
    project_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    x_user_id: Optional[str] = Header(default=None),
    manager: BatchJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    jobs = await manager.get_history(submitter_id=x_user_id, project_id=project_id, limit=limit)
    return BatchHistoryResponse(jobs=jobs, total=len(jobs))


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check():
    """Always returns HTTP 200; problems are reported in the body."""
    try:
        uptime_seconds = None
        if _startup_time:
            uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

        database = None
        if _db_provider is not None:
            loop = asyncio.get_running_loop()
            database = await loop.run_in_executor(None, _db_provider.health_check)

        return HealthResponse(
            status="healthy" if _manager is not None else "starting",
            active_jobs=_manager.active_jobs if _manager else 0,
            queued_requests=_rate_limiter.queue_length if _rate_limiter else 0,
            database=database,
            uptime_seconds=uptime_seconds,
        )
    except Exception as e:
        return HealthResponse(status="error", error_message=str(e))


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
