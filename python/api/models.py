"""
Pydantic request/response schemas for the Screening Core API

Thin transport shapes over the domain types in screening_models.py. Domain
validation (party shape, threshold ranges, list names) stays in the core so
the API and embedded callers get the same errors.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from screening_models import Party, PepScreeningOptions, ScreeningOptions


# ============================================
# SHARED
# ============================================

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PartyModel(BaseModel):
    """Party to screen."""
    id: str = Field(default="", max_length=100, description="Party identifier")
    name: str = Field(default="", max_length=500, description="Primary name")
    type: str = Field(default="individual", description="individual or organization")
    aliases: List[str] = Field(default_factory=list, description="Alternative names")
    risk_rating: Optional[str] = Field(default=None, description="Declared risk rating (LOW, MEDIUM, HIGH)")

    def to_party(self) -> Party:
        return Party.from_dict(self.model_dump())


class ScreeningOptionsModel(BaseModel):
    """Per-call sanctions screening options."""
    similarity_threshold: Optional[float] = Field(default=None, description="Threshold in [0, 1]")
    include_aliases: bool = True
    phonetic_matching: bool = True
    token_based: bool = True

    def to_options(self) -> ScreeningOptions:
        return ScreeningOptions.from_dict(self.model_dump())


class PepOptionsModel(BaseModel):
    """Per-call PEP screening options."""
    include_family: bool = True
    include_associates: bool = True
    include_former: bool = True
    min_risk_level: str = "LOW"
    similarity_threshold: Optional[float] = None

    def to_options(self) -> PepScreeningOptions:
        return PepScreeningOptions.from_dict(self.model_dump())


# ============================================
# SCREENING
# ============================================

class ScreenRequest(BaseModel):
    """Request schema for a single sanctions screening."""
    party: PartyModel
    lists: Optional[List[str]] = Field(default=None, description="Lists to screen (default lists when omitted)")
    options: Optional[ScreeningOptionsModel] = None


class BatchScreenRequest(BaseModel):
    """Request schema for batch screening."""
    parties: List[PartyModel] = Field(..., min_length=1, max_length=1000)
    lists: Optional[List[str]] = None
    options: Optional[ScreeningOptionsModel] = None


class BatchScreenResponse(BaseModel):
    """Batch screening outcome; parties that failed are listed, not returned."""
    total_parties: int
    screened: int
    failed_party_ids: List[str]
    results: Dict[str, Dict[str, Any]]


class SimilarityRequest(BaseModel):
    name1: str = Field(..., max_length=500)
    name2: str = Field(..., max_length=500)


class SimilarityResponse(BaseModel):
    name1: str
    name2: str
    similarity: float = Field(..., description="Similarity in [0, 1]")
    match_strength: Optional[str] = Field(default=None, description="Tier when the score qualifies as a match")


class PepScreenRequest(BaseModel):
    party: PartyModel
    options: Optional[PepOptionsModel] = None


class PepScreenResponse(BaseModel):
    party_id: str
    is_pep: bool
    pep_risk_level: str
    requires_edd: bool
    monitoring_frequency: str
    profiles: List[Dict[str, Any]]


# ============================================
# SCHEDULING
# ============================================

class ScheduleRequest(BaseModel):
    """Request schema for a recurring schedule."""
    party_id: str = Field(..., max_length=100)
    frequency: str = Field(..., description="daily, weekly, monthly, quarterly, annual or immediate")
    start_date: Optional[datetime] = None
    lists: Optional[List[str]] = None
    screening_options: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    priority: str = "normal"

    @field_validator('start_date')
    @classmethod
    def validate_start_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    def to_options(self) -> Dict[str, Any]:
        return self.model_dump(exclude={'party_id', 'frequency'}, exclude_none=True)


class ImmediateScheduleRequest(BaseModel):
    party_id: str = Field(..., max_length=100)
    reason: str = "manual"
    lists: Optional[List[str]] = None
    screening_options: Optional[Dict[str, Any]] = None


class BulkScheduleRequest(BaseModel):
    party_ids: List[str]
    frequency: str
    lists: Optional[List[str]] = None
    screening_options: Optional[Dict[str, Any]] = None


class ExecuteRequest(BaseModel):
    as_of: Optional[datetime] = None
    batch_size: Optional[int] = None
    continue_on_error: bool = True
    include_pep: Optional[bool] = None

    @field_validator('as_of')
    @classmethod
    def validate_as_of(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class RetryRequest(BaseModel):
    max_attempts: Optional[int] = None


class FrequencyUpdateRequest(BaseModel):
    frequency: str


class ScheduleResponse(BaseModel):
    """Persisted schedule."""
    schedule_id: str
    party_id: str
    frequency: str
    next_screening_date: Optional[str]
    scheduled_at: Optional[str]
    lists: List[str]
    screening_options: Dict[str, Any]
    metadata: Dict[str, Any]
    status: str
    priority: str
    execution_count: int
    last_executed_at: Optional[str] = None
    last_execution_status: Optional[str] = None
    failed_attempts: int = 0


class CancelResponse(BaseModel):
    party_id: str
    cancelled: int


class DueResponse(BaseModel):
    as_of: str
    party_ids: List[str]


# ============================================
# HEALTH / ERRORS
# ============================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or degraded")
    database_connected: bool
    default_lists: List[str]
    uptime_seconds: Optional[float] = None


class ErrorDetail(BaseModel):
    """Error detail structure."""
    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    timestamp: str = Field(..., description="Error timestamp")
    field: Optional[str] = Field(default=None, description="Field that caused the error")
    errors: Optional[List[str]] = Field(default=None, description="All validation errors")


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: ErrorDetail
