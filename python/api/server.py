"""
FastAPI Sanctions & PEP Screening API Server

Provides REST API endpoints over the screening core: sanctions screening,
PEP screening and the periodic screening scheduler.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Security
from fastapi.security import APIKeyHeader

from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from api.models import (
    BatchScreenRequest,
    BatchScreenResponse,
    BulkScheduleRequest,
    CancelResponse,
    DueResponse,
    ErrorResponse,
    ExecuteRequest,
    FrequencyUpdateRequest,
    HealthResponse,
    ImmediateScheduleRequest,
    PartyModel,
    PepScreenRequest,
    PepScreenResponse,
    RetryRequest,
    ScheduleRequest,
    ScheduleResponse,
    ScreenRequest,
    SimilarityRequest,
    SimilarityResponse,
)
from audit_logger import configure_logging, get_audit_logger
from config_manager import ConfigManager, get_config
from database.connection import DatabaseSessionProvider, close_db, init_db
from database.monitoring import record_schedule_sweep, record_screening
from database.repositories import (
    DatabaseListRepository, DatabasePartyProvider, PartyRepository, ScheduleRepository
)
from match_classifier import MatchClassifier
from pep_screener import PepScreener
from scheduler import PeriodicScreeningScheduler
from screener import SanctionsScreener, validate_party
from screening_models import utc_now

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_config: Optional[ConfigManager] = None
_db_provider: Optional[DatabaseSessionProvider] = None
_screener: Optional[SanctionsScreener] = None
_pep_screener: Optional[PepScreener] = None
_scheduler: Optional[PeriodicScreeningScheduler] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Argument out of range or unknown value"},
    401: {"model": ErrorResponse, "description": "Missing API key"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
    422: {"model": ErrorResponse, "description": "Validation error"},
    500: {"model": ErrorResponse, "description": "Screening failed"},
}


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


def build_services(provider: DatabaseSessionProvider, config: ConfigManager) -> None:
    """Wire the screeners and the scheduler to the database."""
    global _db_provider, _screener, _pep_screener, _scheduler
    audit = get_audit_logger(log_dir=config.audit.log_dir, enable_console=config.audit.console)
    repository = DatabaseListRepository(provider, candidate_slack=config.matching.candidate_slack)

    _db_provider = provider
    _screener = SanctionsScreener(repository, config=config, audit_logger=audit)
    _pep_screener = PepScreener(repository, config=config, audit_logger=audit)
    _scheduler = PeriodicScreeningScheduler(
        ScheduleRepository(provider),
        _screener,
        DatabasePartyProvider(provider),
        pep_screener=_pep_screener,
        config=config,
        audit_logger=audit
    )


def _service_unavailable() -> HTTPException:
    return HTTPException(status_code=503, detail="Service not initialized. Service is starting up.")


def get_screener() -> SanctionsScreener:
    """Dependency to get the sanctions screener."""
    if _screener is None:
        raise _service_unavailable()
    return _screener


def get_pep_screener() -> PepScreener:
    if _pep_screener is None:
        raise _service_unavailable()
    return _pep_screener


def get_scheduler() -> PeriodicScreeningScheduler:
    if _scheduler is None:
        raise _service_unavailable()
    return _scheduler


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


# Create FastAPI application
app = FastAPI(
    title="Sanctions & PEP Screening API",
    description="Screen parties against sanctions lists and PEP data, and manage periodic re-screening",
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
    """Load configuration, connect to the database and build the services."""
    global _config, _startup_time

    logger.info("Starting Sanctions & PEP Screening API...")
    _config = get_config(CONFIG_PATH)
    configure_logging(_config.logging)
    provider = init_db(_config.database)
    build_services(provider, _config)
    _startup_time = utc_now()
    logger.info("API ready")


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Sanctions & PEP Screening API...")
    close_db()


# ============================================
# SCREENING
# ============================================

@app.post(
    "/api/v1/screen",
    responses=ERROR_RESPONSES,
    summary="Screen a party against sanctions lists",
)
def screen_party(
    request: ScreenRequest,
    screener: SanctionsScreener = Depends(get_screener),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Screen one party. Unavailable lists are skipped and reported in metadata."""
    options = request.options.to_options() if request.options else None
    started = time.perf_counter()
    try:
        result = screener.screen(request.party.to_party(), request.lists, options)
    except Exception:
        record_screening("sanctions", "error", time.perf_counter() - started)
        raise
    record_screening("sanctions", "match" if result.has_matches else "clear", time.perf_counter() - started)
    return result.to_dict()


@app.post(
    "/api/v1/screen/batch",
    response_model=BatchScreenResponse,
    responses=ERROR_RESPONSES,
    summary="Screen several parties",
)
def screen_batch(
    request: BatchScreenRequest,
    screener: SanctionsScreener = Depends(get_screener),
    api_key: str = Depends(verify_api_key),
):
    """Screen parties independently; a failing party is reported, never fatal."""
    options = request.options.to_options() if request.options else None
    parties = [p.to_party() for p in request.parties]
    results = screener.screen_multiple(parties, request.lists, options)
    failed = [p.id for p in parties if p.id not in results]
    return BatchScreenResponse(
        total_parties=len(parties),
        screened=len(results),
        failed_party_ids=failed,
        results={party_id: result.to_dict() for party_id, result in results.items()},
    )


@app.post(
    "/api/v1/similarity",
    response_model=SimilarityResponse,
    responses=ERROR_RESPONSES,
    summary="Similarity of two names",
)
def name_similarity(
    request: SimilarityRequest,
    screener: SanctionsScreener = Depends(get_screener),
    config: ConfigManager = Depends(get_config_instance),
    api_key: str = Depends(verify_api_key),
):
    score = screener.calculate_similarity(request.name1, request.name2)
    classifier = MatchClassifier(config.matching, config.lists)
    strength = None
    if classifier.qualifies(score, config.matching.similarity_threshold):
        strength = classifier.strength_for(score).value
    return SimilarityResponse(
        name1=request.name1,
        name2=request.name2,
        similarity=round(score, 6),
        match_strength=strength,
    )


@app.post(
    "/api/v1/pep/screen",
    response_model=PepScreenResponse,
    responses=ERROR_RESPONSES,
    summary="Screen a party for PEP exposure",
)
def screen_pep(
    request: PepScreenRequest,
    pep_screener: PepScreener = Depends(get_pep_screener),
    api_key: str = Depends(verify_api_key),
):
    party = request.party.to_party()
    options = request.options.to_options() if request.options else None
    started = time.perf_counter()
    profiles = pep_screener.screen_for_pep(party, options)
    record_screening("pep", "match" if profiles else "clear", time.perf_counter() - started)

    level = pep_screener.assess_risk_level(party, profiles)
    return PepScreenResponse(
        party_id=party.id,
        is_pep=bool(profiles),
        pep_risk_level=level.value,
        requires_edd=pep_screener.requires_edd(party, profiles),
        monitoring_frequency=pep_screener.get_monitoring_frequency(level).value,
        profiles=[p.to_dict() for p in profiles],
    )


@app.post(
    "/api/v1/pep/related",
    responses=ERROR_RESPONSES,
    summary="Family members and associates of a PEP",
)
def related_persons(
    request: PepScreenRequest,
    pep_screener: PepScreener = Depends(get_pep_screener),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    party = request.party.to_party()
    options = request.options.to_options() if request.options else None
    related = pep_screener.check_related_persons(party, options)
    return {
        'party_id': party.id,
        'related_count': len(related),
        'related_persons': [p.to_dict() for p in related],
    }


# ============================================
# SCHEDULING
# ============================================

@app.post(
    "/api/v1/schedules",
    response_model=ScheduleResponse,
    responses=ERROR_RESPONSES,
    summary="Schedule periodic screening of a party",
)
def create_schedule(
    request: ScheduleRequest,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
):
    schedule = scheduler.schedule_screening(request.party_id, request.frequency, request.to_options())
    return schedule.to_dict()


@app.post(
    "/api/v1/schedules/immediate",
    response_model=ScheduleResponse,
    responses=ERROR_RESPONSES,
    summary="Queue a one-off screening",
)
def create_immediate_schedule(
    request: ImmediateScheduleRequest,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
):
    options = request.model_dump(exclude={'party_id'}, exclude_none=True)
    schedule = scheduler.schedule_immediate_screening(request.party_id, options)
    return schedule.to_dict()


@app.post(
    "/api/v1/schedules/bulk",
    responses=ERROR_RESPONSES,
    summary="Schedule many parties",
)
def bulk_schedule(
    request: BulkScheduleRequest,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    options = request.model_dump(include={'lists', 'screening_options'}, exclude_none=True)
    return scheduler.bulk_schedule_screening(request.party_ids, request.frequency, options)


@app.get(
    "/api/v1/schedules/due",
    response_model=DueResponse,
    responses=ERROR_RESPONSES,
    summary="Parties due for screening",
)
def due_parties(
    limit: int = 100,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
):
    as_of = utc_now()
    return DueResponse(
        as_of=as_of.isoformat(),
        party_ids=scheduler.get_parties_due_for_screening(as_of, limit),
    )


@app.get(
    "/api/v1/schedules/statistics",
    responses=ERROR_RESPONSES,
    summary="Execution statistics",
)
def schedule_statistics(
    since: Optional[datetime] = None,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    return scheduler.get_execution_statistics(since)


@app.post(
    "/api/v1/schedules/execute",
    responses=ERROR_RESPONSES,
    summary="Run due screenings",
)
def execute_schedules(
    request: Optional[ExecuteRequest] = None,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    request = request or ExecuteRequest()
    options = request.model_dump(exclude={'as_of'}, exclude_none=True)
    summary = scheduler.execute_scheduled_screenings(request.as_of, options)
    record_schedule_sweep(summary)
    return summary


@app.post(
    "/api/v1/schedules/retry",
    responses=ERROR_RESPONSES,
    summary="Retry failed screenings",
)
def retry_schedules(
    request: Optional[RetryRequest] = None,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    request = request or RetryRequest()
    return scheduler.retry_failed_screenings(request.max_attempts)


@app.get(
    "/api/v1/schedules/{party_id}",
    response_model=ScheduleResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "No active schedule"}},
    summary="Active schedule of a party",
)
def get_schedule(
    party_id: str,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
):
    schedule = scheduler.get_schedule_details(party_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail=f"No active schedule for party {party_id}")
    return schedule.to_dict()


@app.delete(
    "/api/v1/schedules/{party_id}",
    response_model=CancelResponse,
    responses=ERROR_RESPONSES,
    summary="Cancel the schedules of a party",
)
def cancel_schedule(
    party_id: str,
    reason: Optional[str] = None,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
):
    cancelled = scheduler.cancel_scheduled_screening(party_id, reason)
    return CancelResponse(party_id=party_id, cancelled=cancelled)


@app.put(
    "/api/v1/schedules/{party_id}/frequency",
    response_model=ScheduleResponse,
    responses=ERROR_RESPONSES,
    summary="Change the screening frequency of a party",
)
def update_frequency(
    party_id: str,
    request: FrequencyUpdateRequest,
    scheduler: PeriodicScreeningScheduler = Depends(get_scheduler),
    api_key: str = Depends(verify_api_key),
):
    schedule = scheduler.update_screening_frequency(party_id, request.frequency)
    return schedule.to_dict()


# ============================================
# PARTIES / HEALTH
# ============================================

@app.put(
    "/api/v1/parties/{party_id}",
    responses=ERROR_RESPONSES,
    summary="Register or update a monitored party",
)
def upsert_party(
    party_id: str,
    request: PartyModel,
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Store the party snapshot used by scheduled screenings."""
    if _db_provider is None:
        raise _service_unavailable()
    party = request.to_party()
    if party.id != party_id:
        raise HTTPException(status_code=400, detail="Party id in path and body differ")
    validate_party(party, get_config_instance().matching.min_name_length)
    with _db_provider.session_scope() as session:
        PartyRepository(session).upsert(party)
    return party.to_dict()


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
)
def health_check(config: ConfigManager = Depends(get_config_instance)):
    """Health check endpoint (no authentication)."""
    connected = _db_provider.health_check() if _db_provider is not None else False
    uptime = (utc_now() - _startup_time).total_seconds() if _startup_time else None
    return HealthResponse(
        status="healthy" if connected else "degraded",
        database_connected=connected,
        default_lists=list(config.lists.default_lists),
        uptime_seconds=uptime,
    )


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint - redirect info."""
    return {
        "message": "Sanctions & PEP Screening API",
        "docs": "/api/docs",
        "health": "/api/v1/health",
    }
