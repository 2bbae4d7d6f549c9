"""
Collaborator contracts of the screening core

The screeners and the scheduler only talk to the outside world through the
interfaces below. Production wiring uses the SQLAlchemy implementations in
the ``database`` package; the in-memory implementations here back unit tests
and embedded use.

Candidate and PEP records are plain dictionaries. Required keys: ``id`` and
``name``. Optional keys: ``aliases``, ``position``, ``country``,
``organization``, ``start_date``, ``end_date``, ``level``,
``related_persons``, ``relationship``. Any other key is passed through as
metadata.
"""

import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from screening_models import (
    Party, SanctionsList, ScheduleExecution, ScreeningSchedule
)

CandidateRecord = Dict[str, Any]


class ConcurrentUpdateError(Exception):
    """Raised by a schedule store when an optimistic update lost the race"""

    def __init__(self, schedule_id: str, expected_version: int):
        self.schedule_id = schedule_id
        self.expected_version = expected_version
        super().__init__(
            f"Schedule {schedule_id} was modified concurrently (expected version {expected_version})"
        )


# ============================================
# INTERFACES
# ============================================

class ListRepository(ABC):
    """Source of sanctions-list candidates and PEP records"""

    @abstractmethod
    def find_by_name(self, normalized_name: str, sanctions_list: SanctionsList,
                     threshold: float) -> List[CandidateRecord]:
        """Near-name candidates of one list; the caller re-scores them"""

    @abstractmethod
    def is_list_available(self, sanctions_list: SanctionsList) -> bool:
        """False when the list cannot currently be screened against"""

    @abstractmethod
    def find_pep_by_name(self, name: str, threshold: float) -> List[CandidateRecord]:
        """PEP candidates for a normalized name"""

    @abstractmethod
    def get_related_persons(self, pep_id: str) -> List[CandidateRecord]:
        """Family members and close associates of a PEP"""


class PartyProvider(ABC):
    """Read-only access to screened parties"""

    @abstractmethod
    def get_party(self, party_id: str) -> Optional[Party]:
        """Party by id, or None when unknown"""


class ScheduleStore(ABC):
    """Persistence of screening schedules and their execution history

    ``update`` is an optimistic compare-and-set on ``schedule.version``: it
    must raise ConcurrentUpdateError when the stored version differs, and
    bump the version on success. This keeps two concurrent sweeps from
    double-counting an execution.
    """

    @abstractmethod
    def add(self, schedule: ScreeningSchedule) -> ScreeningSchedule:
        pass

    @abstractmethod
    def update(self, schedule: ScreeningSchedule) -> ScreeningSchedule:
        pass

    @abstractmethod
    def get(self, schedule_id: str) -> Optional[ScreeningSchedule]:
        pass

    @abstractmethod
    def find_by_party(self, party_id: str, include_inactive: bool = False) -> List[ScreeningSchedule]:
        """Schedules of a party, newest first"""

    @abstractmethod
    def find_due(self, as_of: datetime, limit: int) -> List[ScreeningSchedule]:
        """Executable schedules due at or before ``as_of``.

        High priority first, then by next screening date.
        """

    @abstractmethod
    def find_retryable(self, max_attempts: int, limit: int) -> List[ScreeningSchedule]:
        """Executable schedules whose last run failed with fewer than ``max_attempts`` failures"""

    @abstractmethod
    def record_execution(self, execution: ScheduleExecution) -> None:
        pass

    @abstractmethod
    def executions_since(self, since: Optional[datetime]) -> List[ScheduleExecution]:
        pass

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        """Number of schedules per status value"""


# ============================================
# IN-MEMORY IMPLEMENTATIONS
# ============================================

class InMemoryListRepository(ListRepository):
    """Dictionary-backed list repository

    Args:
        entries: list value -> candidate records
        peps: PEP records, keyed by their ``id``
        relationships: pep id -> related pep records
        unavailable: lists reported as unavailable
    """

    def __init__(self,
                 entries: Optional[Dict[str, List[CandidateRecord]]] = None,
                 peps: Optional[Iterable[CandidateRecord]] = None,
                 relationships: Optional[Dict[str, List[CandidateRecord]]] = None,
                 unavailable: Optional[Iterable[str]] = None):
        self.entries = {SanctionsList(k): list(v) for k, v in (entries or {}).items()}
        self.peps = list(peps or [])
        self.relationships = dict(relationships or {})
        self.unavailable = {SanctionsList(v) for v in (unavailable or [])}

    def find_by_name(self, normalized_name, sanctions_list, threshold):
        return list(self.entries.get(sanctions_list, []))

    def is_list_available(self, sanctions_list):
        return sanctions_list not in self.unavailable

    def find_pep_by_name(self, name, threshold):
        return list(self.peps)

    def get_related_persons(self, pep_id):
        return list(self.relationships.get(pep_id, []))


class InMemoryPartyProvider(PartyProvider):
    """Party provider over a fixed set of parties"""

    def __init__(self, parties: Optional[Iterable[Party]] = None):
        self._parties = {p.id: p for p in (parties or [])}

    def add(self, party: Party) -> None:
        self._parties[party.id] = party

    def get_party(self, party_id):
        return self._parties.get(party_id)


class InMemoryScheduleStore(ScheduleStore):
    """Thread-safe schedule store with optimistic versioning"""

    def __init__(self):
        self._lock = threading.Lock()
        self._schedules: Dict[str, ScreeningSchedule] = {}
        self._executions: List[ScheduleExecution] = []

    def add(self, schedule):
        with self._lock:
            stored = copy.deepcopy(schedule)
            stored.version = 1
            self._schedules[stored.schedule_id] = stored
            return copy.deepcopy(stored)

    def update(self, schedule):
        with self._lock:
            current = self._schedules.get(schedule.schedule_id)
            if current is None or current.version != schedule.version:
                raise ConcurrentUpdateError(schedule.schedule_id, schedule.version)
            stored = copy.deepcopy(schedule)
            stored.version = current.version + 1
            self._schedules[stored.schedule_id] = stored
            return copy.deepcopy(stored)

    def get(self, schedule_id):
        with self._lock:
            stored = self._schedules.get(schedule_id)
            return copy.deepcopy(stored) if stored else None

    def find_by_party(self, party_id, include_inactive=False):
        with self._lock:
            found = [
                s for s in self._schedules.values()
                if s.party_id == party_id and (include_inactive or s.status.is_executable)
            ]
        found.sort(key=lambda s: s.scheduled_at, reverse=True)
        return [copy.deepcopy(s) for s in found]

    def find_due(self, as_of, limit):
        with self._lock:
            due = [
                s for s in self._schedules.values()
                if s.status.is_executable and s.next_screening_date <= as_of
            ]
        due.sort(key=lambda s: (s.priority != 'high', s.next_screening_date))
        return [copy.deepcopy(s) for s in due[:limit]]

    def find_retryable(self, max_attempts, limit):
        with self._lock:
            found = [
                s for s in self._schedules.values()
                if s.status.is_executable
                and s.last_execution_status == 'failed'
                and 0 < s.failed_attempts < max_attempts
            ]
        found.sort(key=lambda s: s.next_screening_date)
        return [copy.deepcopy(s) for s in found[:limit]]

    def record_execution(self, execution):
        with self._lock:
            self._executions.append(copy.deepcopy(execution))

    def executions_since(self, since):
        with self._lock:
            return [
                copy.deepcopy(e) for e in self._executions
                if since is None or e.started_at >= since
            ]

    def count_by_status(self):
        counts: Dict[str, int] = {}
        with self._lock:
            for s in self._schedules.values():
                counts[s.status.value] = counts.get(s.status.value, 0) + 1
        return counts


__all__ = [
    'CandidateRecord',
    'ConcurrentUpdateError',
    'ListRepository',
    'PartyProvider',
    'ScheduleStore',
    'InMemoryListRepository',
    'InMemoryPartyProvider',
    'InMemoryScheduleStore',
]
