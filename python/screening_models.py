"""
Domain types for the Sanctions & PEP Screening Core

Value objects produced by the screeners and the scheduler, the ordered
level enums used for risk aggregation, per-call option objects and the
error taxonomy shared by every service.

All result objects serialize to plain dictionaries with stable field names
(`to_dict()`) so downstream case-management and audit systems can store them
as structured records.
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple


def utc_now() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ============================================
# ENUMS
# ============================================

class OrderedStrEnum(str, PyEnum):
    """String enum whose members compare by declaration order.

    Members are declared from lowest to highest. Lookup by value is
    case-insensitive so repository and config data can use any casing.
    """

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            wanted = value.strip().upper()
            for member in cls:
                if member.value.upper() == wanted or member.name == wanted:
                    return member
        return None

    def __lt__(self, other):
        if isinstance(other, type(self)):
            return self.rank < other.rank
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, type(self)):
            return self.rank <= other.rank
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, type(self)):
            return self.rank > other.rank
        return NotImplemented

    def __ge__(self, other):
        if isinstance(other, type(self)):
            return self.rank >= other.rank
        return NotImplemented


class RiskLevel(OrderedStrEnum):
    """Overall risk of a screening result"""
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PepLevel(OrderedStrEnum):
    """Seniority / exposure level of a politically exposed person"""
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    def escalate(self) -> 'PepLevel':
        """One tier up; HIGH and NONE stay where they are"""
        if self is PepLevel.LOW:
            return PepLevel.MEDIUM
        if self is PepLevel.MEDIUM:
            return PepLevel.HIGH
        return self


class MatchStrength(OrderedStrEnum):
    """Discrete tier of a qualifying name match"""
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"
    EXACT = "exact"


class PartyType(str, PyEnum):
    """Type of screened party"""
    INDIVIDUAL = "INDIVIDUAL"
    ORGANIZATION = "ORGANIZATION"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            wanted = value.strip().upper()
            for member in cls:
                if member.value == wanted:
                    return member
        return None


class SanctionsList(str, PyEnum):
    """Watch lists a party can be screened against"""
    OFAC = "ofac"
    UN = "un"
    EU = "eu"
    UK_HMT = "uk_hmt"
    AU_DFAT = "au_dfat"
    CA_SEMA = "ca_sema"
    CH_SECO = "ch_seco"
    INTERPOL = "interpol"
    WORLD_BANK = "world_bank"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            wanted = value.strip().lower()
            for member in cls:
                if member.value == wanted:
                    return member
        return None


class ListClass(str, PyEnum):
    """Escalation policy class of a list.

    BLOCKING lists (asset freeze, denied parties) block on any match.
    ADVISORY lists only trigger a review from moderate strength upwards.
    """
    BLOCKING = "blocking"
    ADVISORY = "advisory"


class ScreeningFrequency(str, PyEnum):
    """Re-screening cadence"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    IMMEDIATE = "immediate"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            wanted = value.strip().lower()
            for member in cls:
                if member.value == wanted:
                    return member
        return None

    @classmethod
    def from_pep_level(cls, level: PepLevel) -> 'ScreeningFrequency':
        """Monitoring cadence for a PEP of the given level"""
        if level is PepLevel.HIGH:
            return cls.MONTHLY
        if level is PepLevel.MEDIUM:
            return cls.QUARTERLY
        return cls.ANNUAL


class ScheduleStatus(str, PyEnum):
    """Lifecycle state of a screening schedule"""
    ACTIVE = "active"
    PENDING_IMMEDIATE = "pending_immediate"
    FAILED = "failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_executable(self) -> bool:
        return self in (ScheduleStatus.ACTIVE, ScheduleStatus.PENDING_IMMEDIATE)


# ============================================
# ERRORS
# ============================================

class ScreeningError(Exception):
    """Base class for screening core errors"""
    code = "SCREENING_ERROR"


class InvalidPartyError(ScreeningError, ValueError):
    """Raised when a party is malformed (id, name or type)

    Attributes:
        party_id: Id of the offending party (may be empty)
        errors: Every violation found, in "field: message" form
    """
    code = "INVALID_PARTY"

    def __init__(self, party_id: str, errors: Sequence[str]):
        self.party_id = party_id or ""
        self.errors = list(errors)
        label = self.party_id or "<empty>"
        super().__init__(f"Invalid party {label}: " + "; ".join(self.errors))

    @property
    def fields(self) -> List[str]:
        return [e.split(":", 1)[0].strip() for e in self.errors]


class ScreeningFailedError(ScreeningError):
    """Wraps an unexpected failure during screening or scheduling

    Attributes:
        subject_id: Party id, or a batch marker such as "batch" / "retry"
        cause: Human-readable description of the underlying failure
    """
    code = "SCREENING_FAILED"

    def __init__(self, subject_id: str, cause: str):
        self.subject_id = subject_id
        self.cause = cause
        super().__init__(f"Screening failed for {subject_id}: {cause}")


class ArgumentOutOfRangeError(ScreeningError, ValueError):
    """Raised when a numeric argument is outside its documented bounds"""
    code = "ARGUMENT_OUT_OF_RANGE"

    def __init__(self, argument: str, value: Any, minimum: int, maximum: int):
        self.argument = argument
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            f"{argument} must be between {minimum} and {maximum}, got {value}"
        )


# ============================================
# PARTY
# ============================================

@dataclass(frozen=True)
class Party:
    """Read-only view of the subject of a screening"""
    id: str
    name: str
    party_type: Any = PartyType.INDIVIDUAL
    aliases: Tuple[str, ...] = ()
    risk_rating: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Party':
        return cls(
            id=str(data.get('id') or ''),
            name=data.get('name') or '',
            party_type=data.get('type', data.get('party_type', PartyType.INDIVIDUAL)),
            aliases=tuple(data.get('aliases') or ()),
            risk_rating=data.get('risk_rating'),
        )

    def to_dict(self) -> Dict[str, Any]:
        party_type = self.party_type.value if isinstance(self.party_type, PartyType) else self.party_type
        return {
            'id': self.id,
            'name': self.name,
            'type': party_type,
            'aliases': list(self.aliases),
            'risk_rating': self.risk_rating,
        }


# ============================================
# OPTIONS
# ============================================

@dataclass
class ScreeningOptions:
    """Per-call options of a sanctions screening"""
    similarity_threshold: Optional[float] = None
    include_aliases: bool = True
    phonetic_matching: bool = True
    token_based: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ScreeningOptions':
        data = data or {}
        return cls(
            similarity_threshold=data.get('similarity_threshold', data.get('threshold')),
            include_aliases=data.get('include_aliases', True),
            phonetic_matching=data.get('phonetic_matching', True),
            token_based=data.get('token_based', True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class PepScreeningOptions:
    """Per-call options of a PEP screening"""
    include_family: bool = True
    include_associates: bool = True
    include_former: bool = True
    min_risk_level: PepLevel = PepLevel.LOW
    similarity_threshold: Optional[float] = None

    def __post_init__(self):
        self.min_risk_level = PepLevel(self.min_risk_level)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PepScreeningOptions':
        data = data or {}
        return cls(
            include_family=data.get('include_family', True),
            include_associates=data.get('include_associates', True),
            include_former=data.get('include_former', True),
            min_risk_level=data.get('min_risk_level', PepLevel.LOW),
            similarity_threshold=data.get('similarity_threshold'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data['min_risk_level'] = self.min_risk_level.value
        return data


# ============================================
# RESULTS
# ============================================

@dataclass(frozen=True)
class SanctionsMatch:
    """One qualifying candidate hit against a list entry"""
    list_entry_id: str
    list: SanctionsList
    matched_name: str
    match_strength: MatchStrength
    similarity_score: float  # 0-100
    list_class: ListClass
    risk_level: RiskLevel
    requires_blocking: bool
    requires_review: bool
    additional_info: Dict[str, Any] = field(default_factory=dict)
    matched_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'list_entry_id': self.list_entry_id,
            'list': self.list.value,
            'list_class': self.list_class.value,
            'matched_name': self.matched_name,
            'match_strength': self.match_strength.value,
            'similarity_score': round(self.similarity_score, 2),
            'risk_level': self.risk_level.value,
            'requires_blocking': self.requires_blocking,
            'requires_review': self.requires_review,
            'additional_info': self.additional_info,
            'matched_at': _iso(self.matched_at),
        }


@dataclass(frozen=True)
class PepProfile:
    """PEP record for a matched individual, rebuilt on every screening"""
    pep_id: str
    name: str
    level: PepLevel
    position: str = "Unknown"
    country: str = "Unknown"
    organization: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    related_persons: Tuple[str, ...] = ()
    additional_info: Dict[str, Any] = field(default_factory=dict)
    identified_at: datetime = field(default_factory=utc_now)

    def is_former(self, as_of: Optional[datetime] = None) -> bool:
        """True when the role has ended"""
        if self.end_date is None:
            return False
        return self.end_date < (as_of or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pep_id': self.pep_id,
            'name': self.name,
            'level': self.level.value,
            'position': self.position,
            'country': self.country,
            'organization': self.organization,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'is_former': self.is_former(),
            'related_persons': list(self.related_persons),
            'additional_info': self.additional_info,
            'identified_at': _iso(self.identified_at),
        }


@dataclass(frozen=True)
class ScreeningResult:
    """Aggregate outcome of one sanctions screening invocation"""
    screening_id: str
    party_id: str
    party_name: str
    party_type: str
    has_matches: bool
    matches: Tuple[SanctionsMatch, ...]
    pep_profiles: Tuple[PepProfile, ...]
    requires_blocking: bool
    requires_review: bool
    overall_risk_level: RiskLevel
    metadata: Dict[str, Any]
    screened_at: datetime
    processing_time_ms: float

    def highest_match_strength(self) -> Optional[MatchStrength]:
        if not self.matches:
            return None
        return max(m.match_strength for m in self.matches)

    def matched_lists(self) -> List[SanctionsList]:
        seen: List[SanctionsList] = []
        for match in self.matches:
            if match.list not in seen:
                seen.append(match.list)
        return seen

    def with_pep_profiles(self, profiles: Sequence[PepProfile], pep_risk_level: PepLevel) -> 'ScreeningResult':
        """Copy of this result combined with a PEP screening outcome"""
        metadata = dict(self.metadata)
        metadata['pep_risk_level'] = pep_risk_level.value
        return dataclasses.replace(self, pep_profiles=tuple(profiles), metadata=metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'screening_id': self.screening_id,
            'party_id': self.party_id,
            'party_name': self.party_name,
            'party_type': self.party_type,
            'has_matches': self.has_matches,
            'match_count': len(self.matches),
            'matches': [m.to_dict() for m in self.matches],
            'pep_profiles': [p.to_dict() for p in self.pep_profiles],
            'requires_blocking': self.requires_blocking,
            'requires_review': self.requires_review,
            'overall_risk_level': self.overall_risk_level.value,
            'metadata': self.metadata,
            'screened_at': _iso(self.screened_at),
            'processing_time_ms': round(self.processing_time_ms, 2),
        }


# ============================================
# SCHEDULING
# ============================================

@dataclass
class ScreeningSchedule:
    """Persisted scheduling state for one party"""
    schedule_id: str
    party_id: str
    frequency: ScreeningFrequency
    next_screening_date: datetime
    scheduled_at: datetime
    lists: List[str] = field(default_factory=list)
    screening_options: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    priority: str = "normal"
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    last_execution_status: Optional[str] = None
    failed_attempts: int = 0
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schedule_id': self.schedule_id,
            'party_id': self.party_id,
            'frequency': self.frequency.value,
            'next_screening_date': _iso(self.next_screening_date),
            'scheduled_at': _iso(self.scheduled_at),
            'lists': list(self.lists),
            'screening_options': self.screening_options,
            'metadata': self.metadata,
            'status': self.status.value,
            'priority': self.priority,
            'execution_count': self.execution_count,
            'last_executed_at': _iso(self.last_executed_at),
            'last_execution_status': self.last_execution_status,
            'failed_attempts': self.failed_attempts,
        }


@dataclass
class ScheduleExecution:
    """One execution of a schedule, kept as history for statistics"""
    schedule_id: str
    party_id: str
    started_at: datetime
    completed_at: datetime
    status: str  # success | failed
    matches_found: int = 0
    processing_time_seconds: float = 0.0
    screening_id: Optional[str] = None
    error_message: Optional[str] = None
