"""
Periodic Screening Scheduler
Keeps parties under continuous sanctions / PEP monitoring

Features:
- Risk-derived cadences with a fixed frequency -> interval table
- Event-triggered immediate screenings (high priority)
- Batched execution of due schedules with per-party isolation
- Bounded retries; exhausted schedules are parked as failed for manual review
- Optimistic updates through the schedule store, so concurrent sweeps never
  double-count an execution
- Execution history and statistics
"""

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from audit_logger import AuditLogger, get_audit_logger, sanitize_for_logging
from config_manager import ConfigManager, DEFAULT_FREQUENCY_DAYS, get_config
from contracts import ConcurrentUpdateError, PartyProvider, ScheduleStore
from pep_screener import PepScreener
from screener import SanctionsScreener
from screening_models import (
    ArgumentOutOfRangeError, InvalidPartyError, ScheduleExecution, ScheduleStatus,
    ScreeningError, ScreeningFailedError, ScreeningFrequency, ScreeningResult,
    ScreeningSchedule, utc_now
)

logger = logging.getLogger(__name__)

FrequencyArg = Union[str, ScreeningFrequency]

MAX_RETRY_ATTEMPTS_LIMIT = 10
MAX_DUE_LIMIT = 1000


def calculate_next_screening_date(
    frequency: FrequencyArg,
    reference_date: datetime,
    frequency_days: Optional[Dict[str, int]] = None
) -> datetime:
    """Next screening date for a cadence

    Pure function of its arguments. IMMEDIATE returns the reference date.

    Args:
        frequency: Screening cadence
        reference_date: Date the interval starts from
        frequency_days: Cadence -> interval table (built-in table when None)

    Returns:
        reference_date plus the cadence interval
    """
    frequency = ScreeningFrequency(frequency)
    if frequency is ScreeningFrequency.IMMEDIATE:
        return reference_date
    days = (frequency_days or DEFAULT_FREQUENCY_DAYS)[frequency.value]
    return reference_date + timedelta(days=days)


def generate_schedule_id() -> str:
    return "SCH-" + uuid.uuid4().hex[:16].upper()


class PeriodicScreeningScheduler:
    """Schedules and executes recurring screenings

    Args:
        store: Schedule persistence (optimistic updates)
        screener: Sanctions screener used for every execution
        party_provider: Resolves party ids to parties at execution time
        pep_screener: Optional PEP screener combined into each execution
        config: Configuration manager (global instance when omitted)
        audit_logger: Audit sink (global instance when omitted)
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        store: ScheduleStore,
        screener: SanctionsScreener,
        party_provider: PartyProvider,
        pep_screener: Optional[PepScreener] = None,
        config: Optional[ConfigManager] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.screener = screener
        self.party_provider = party_provider
        self.pep_screener = pep_screener
        self.config = config or get_config()
        self.audit = audit_logger or get_audit_logger()
        self.clock = clock

    @property
    def settings(self):
        return self.config.scheduler

    def calculate_next_screening_date(self, frequency: FrequencyArg, reference_date: datetime) -> datetime:
        return calculate_next_screening_date(frequency, reference_date, self.settings.frequency_days)

    @staticmethod
    def _require_party_id(party_id: str) -> str:
        party_id = (party_id or "").strip() if isinstance(party_id, str) else party_id
        if not party_id:
            raise InvalidPartyError("", ["id: party id must not be empty"])
        return party_id

    @staticmethod
    def _check_range(argument: str, value: Any, minimum: int, maximum: int) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or not minimum <= value <= maximum:
            raise ArgumentOutOfRangeError(argument, value, minimum, maximum)
        return value

    def _fail(self, subject_id: str, stage: str, error: Exception) -> ScreeningFailedError:
        logger.error(f"Scheduler {stage} failed for {sanitize_for_logging(str(subject_id))}: "
                     f"{sanitize_for_logging(str(error))}")
        return ScreeningFailedError(subject_id, f"{stage}: {error}")

    # ============================================
    # SCHEDULING
    # ============================================

    def schedule_screening(self, party_id: str, frequency: FrequencyArg,
                           options: Optional[Dict[str, Any]] = None) -> ScreeningSchedule:
        """Create the regular schedule of a party

        An existing regular schedule of the party is cancelled and replaced.

        Args:
            party_id: Party to monitor
            frequency: Screening cadence
            options: ``start_date``, ``lists``, ``screening_options``,
                ``metadata``, ``priority``

        Returns:
            The persisted schedule

        Raises:
            InvalidPartyError: Empty party id
            ScreeningFailedError: Persistence failure
        """
        party_id = self._require_party_id(party_id)
        frequency = ScreeningFrequency(frequency)
        if frequency is ScreeningFrequency.IMMEDIATE:
            return self.schedule_immediate_screening(party_id, options)

        options = options or {}
        try:
            now = self.clock()
            reference = options.get('start_date') or now
            schedule = ScreeningSchedule(
                schedule_id=generate_schedule_id(),
                party_id=party_id,
                frequency=frequency,
                next_screening_date=self.calculate_next_screening_date(frequency, reference),
                scheduled_at=now,
                lists=[str(getattr(l, 'value', l)) for l in options.get('lists') or []],
                screening_options=dict(options.get('screening_options') or {}),
                metadata=dict(options.get('metadata') or {}),
                status=ScheduleStatus.ACTIVE,
                priority=options.get('priority', 'normal')
            )
            schedule = self.store.add(schedule)

            # Replaced schedules are cancelled only once the new one is stored
            for existing in self.store.find_by_party(party_id):
                if (existing.schedule_id != schedule.schedule_id
                        and existing.frequency is not ScreeningFrequency.IMMEDIATE):
                    self._cancel(existing, now, "rescheduled")
        except ScreeningError:
            raise
        except Exception as e:
            raise self._fail(party_id, "scheduling", e) from e

        self.audit.log_schedule_event("SCHEDULE_CREATED", schedule)
        logger.info(f"Scheduled {frequency.value} screening for party {sanitize_for_logging(party_id)}")
        return schedule

    def schedule_immediate_screening(self, party_id: str,
                                     options: Optional[Dict[str, Any]] = None) -> ScreeningSchedule:
        """Create a high-priority one-off screening due now

        Independent of the party's regular cadence; ``options['reason']`` is
        kept in the schedule metadata.
        """
        party_id = self._require_party_id(party_id)
        options = options or {}
        try:
            now = self.clock()
            metadata = dict(options.get('metadata') or {})
            metadata['reason'] = options.get('reason', metadata.get('reason', 'manual'))
            schedule = ScreeningSchedule(
                schedule_id=generate_schedule_id(),
                party_id=party_id,
                frequency=ScreeningFrequency.IMMEDIATE,
                next_screening_date=now,
                scheduled_at=now,
                lists=[str(getattr(l, 'value', l)) for l in options.get('lists') or []],
                screening_options=dict(options.get('screening_options') or {}),
                metadata=metadata,
                status=ScheduleStatus.PENDING_IMMEDIATE,
                priority='high'
            )
            schedule = self.store.add(schedule)
        except ScreeningError:
            raise
        except Exception as e:
            raise self._fail(party_id, "immediate scheduling", e) from e

        self.audit.log_schedule_event("SCHEDULE_CREATED", schedule, context={'reason': metadata['reason']})
        logger.info(f"Immediate screening queued for party {sanitize_for_logging(party_id)}")
        return schedule

    def bulk_schedule_screening(self, party_ids: Iterable[str], frequency: FrequencyArg,
                                options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Schedule many parties; per-party failures are collected, not raised

        Raises:
            ArgumentOutOfRangeError: Empty or oversized id list
        """
        party_ids = list(party_ids)
        self._check_range("party_ids", len(party_ids), 1, self.settings.max_batch_size)
        frequency = ScreeningFrequency(frequency)

        started = time.perf_counter()
        schedules: Dict[str, str] = {}
        errors: Dict[str, str] = {}
        for index, party_id in enumerate(party_ids):
            try:
                schedule = self.schedule_screening(party_id, frequency, options)
                schedules[schedule.party_id] = schedule.schedule_id
            except Exception as e:
                key = str(party_id) if party_id else f"#{index}"
                errors[key] = str(e)
                logger.error(f"Bulk scheduling failed for {sanitize_for_logging(key)}: {sanitize_for_logging(str(e))}")
                self.audit.log_batch_party_failed(key, "scheduler", str(e))

        return {
            'total_parties': len(party_ids),
            'successful': len(schedules),
            'failed': len(errors),
            'frequency': frequency.value,
            'schedules': schedules,
            'processing_time_seconds': round(time.perf_counter() - started, 4),
            'errors': errors
        }

    # ============================================
    # EXECUTION
    # ============================================

    def execute_scheduled_screenings(self, as_of: Optional[datetime] = None,
                                     options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run every schedule due at or before ``as_of``

        Args:
            as_of: Cut-off date (now when None)
            options: ``batch_size`` (1..max_batch_size), ``continue_on_error``
                (default True), ``include_pep``

        Returns:
            Execution summary with counts, elapsed time and per-party errors

        Raises:
            ArgumentOutOfRangeError: batch_size out of bounds
            ScreeningFailedError: The due-schedule query failed
        """
        options = options or {}
        batch_size = self._check_range(
            "batch_size", options.get('batch_size', self.settings.batch_size), 1, self.settings.max_batch_size
        )
        continue_on_error = options.get('continue_on_error', True)
        include_pep = options.get('include_pep', self.settings.include_pep)

        started_at = self.clock()
        as_of = as_of or started_at
        started = time.perf_counter()

        try:
            due = self.store.find_due(as_of, batch_size)
        except Exception as e:
            raise self._fail("batch", "due schedule lookup", e) from e

        summary = {
            'execution_started_at': started_at.isoformat(),
            'as_of': as_of.isoformat(),
            'total_due': len(due),
            'total_executed': 0,
            'successful': 0,
            'failed': 0,
            'skipped': 0,
            'total_matches': 0,
            'halted': False,
            'errors': {},
            'warnings': {}
        }

        for schedule in due:
            outcome = self._execute_schedule(schedule, include_pep, self.settings.max_retry_attempts)
            if outcome['status'] == 'skipped':
                summary['skipped'] += 1
                continue
            if outcome.get('warning'):
                summary['warnings'][schedule.party_id] = outcome['warning']
            summary['total_executed'] += 1
            if outcome['status'] == 'success':
                summary['successful'] += 1
                summary['total_matches'] += outcome['matches']
            else:
                summary['failed'] += 1
                summary['errors'][schedule.party_id] = outcome['error']
                if not continue_on_error:
                    summary['halted'] = True
                    logger.warning("Scheduled execution halted after first failure")
                    break

        summary['execution_completed_at'] = self.clock().isoformat()
        summary['processing_time_seconds'] = round(time.perf_counter() - started, 4)
        logger.info(
            f"Scheduled screenings: {summary['successful']} succeeded, {summary['failed']} failed, "
            f"{summary['skipped']} skipped"
        )
        return summary

    def retry_failed_screenings(self, max_attempts: Optional[int] = None) -> Dict[str, Any]:
        """Re-run schedules whose last execution failed

        Only schedules with fewer than ``max_attempts`` failures are retried.
        A schedule reaching ``max_attempts`` is parked in the failed state.
        The retry delay is reported as ``next_retry_at``; nothing sleeps here.

        Raises:
            ArgumentOutOfRangeError: max_attempts outside 1..10
            ScreeningFailedError: The retry query failed
        """
        if max_attempts is None:
            max_attempts = self.settings.max_retry_attempts
        self._check_range("max_attempts", max_attempts, 1, MAX_RETRY_ATTEMPTS_LIMIT)

        started_at = self.clock()
        started = time.perf_counter()
        try:
            candidates = self.store.find_retryable(max_attempts, self.settings.max_batch_size)
        except Exception as e:
            raise self._fail("retry", "failed schedule lookup", e) from e

        summary = {
            'retry_started_at': started_at.isoformat(),
            'max_attempts': max_attempts,
            'total_retried': 0,
            'successful_retries': 0,
            'still_failing': 0,
            'permanently_failed': 0,
            'skipped': 0,
            'errors': {},
            'warnings': {}
        }

        for schedule in candidates:
            outcome = self._execute_schedule(schedule, self.settings.include_pep, max_attempts)
            if outcome['status'] == 'skipped':
                summary['skipped'] += 1
                continue
            if outcome.get('warning'):
                summary['warnings'][schedule.party_id] = outcome['warning']
            summary['total_retried'] += 1
            if outcome['status'] == 'success':
                summary['successful_retries'] += 1
            else:
                summary['still_failing'] += 1
                summary['errors'][schedule.party_id] = outcome['error']
                if outcome.get('permanent'):
                    summary['permanently_failed'] += 1

        completed_at = self.clock()
        summary['retry_completed_at'] = completed_at.isoformat()
        summary['retry_delay_seconds'] = self.settings.retry_delay_seconds
        summary['next_retry_at'] = (
            (completed_at + timedelta(seconds=self.settings.retry_delay_seconds)).isoformat()
            if summary['still_failing'] > summary['permanently_failed'] else None
        )
        summary['processing_time_seconds'] = round(time.perf_counter() - started, 4)
        return summary

    def _screen_party(self, schedule: ScreeningSchedule, include_pep: bool) -> ScreeningResult:
        party = self.party_provider.get_party(schedule.party_id)
        if party is None:
            raise ScreeningFailedError(schedule.party_id, "party not found")

        screening_options = dict(schedule.screening_options)
        pep_options = screening_options.pop('pep_options', None)
        result = self.screener.screen(party, schedule.lists or None, screening_options)

        if include_pep and self.pep_screener is not None:
            profiles = self.pep_screener.screen_for_pep(party, pep_options)
            level = self.pep_screener.assess_risk_level(party, profiles)
            result = result.with_pep_profiles(profiles, level)
        return result

    def _execute_schedule(self, schedule: ScreeningSchedule, include_pep: bool,
                          max_attempts: int) -> Dict[str, Any]:
        """Execute one schedule and persist its new state

        Returns:
            {'status': 'success'|'failed'|'skipped', ...}
        """
        started_at = self.clock()
        started = time.perf_counter()
        result: Optional[ScreeningResult] = None
        error: Optional[str] = None

        try:
            result = self._screen_party(schedule, include_pep)
        except Exception as e:
            error = str(e)
            logger.error(f"Scheduled screening failed for party {sanitize_for_logging(schedule.party_id)}: "
                         f"{sanitize_for_logging(error)}")

        elapsed = time.perf_counter() - started
        completed_at = self.clock()
        permanent = False

        schedule.last_executed_at = completed_at
        if result is not None:
            schedule.execution_count += 1
            schedule.last_execution_status = 'success'
            schedule.failed_attempts = 0
            if schedule.status is ScheduleStatus.PENDING_IMMEDIATE:
                schedule.status = ScheduleStatus.COMPLETED
            else:
                schedule.next_screening_date = self.calculate_next_screening_date(schedule.frequency, completed_at)
        else:
            schedule.last_execution_status = 'failed'
            schedule.failed_attempts += 1
            schedule.next_screening_date = completed_at + timedelta(seconds=self.settings.retry_delay_seconds)
            if schedule.failed_attempts >= max_attempts:
                schedule.status = ScheduleStatus.FAILED
                permanent = True

        try:
            schedule = self.store.update(schedule)
        except ConcurrentUpdateError as e:
            logger.warning(f"Skipping schedule {schedule.schedule_id}: {e}")
            return {'status': 'skipped'}
        except Exception as e:
            logger.error(f"Persisting execution of schedule {schedule.schedule_id} failed: "
                         f"{sanitize_for_logging(str(e))}")
            self.audit.log_batch_party_failed(schedule.party_id, "scheduler", str(e))
            return {'status': 'failed', 'error': f"persistence: {e}", 'permanent': False}

        # Schedule state is already committed at this point
        history_warning: Optional[str] = None
        try:
            self.store.record_execution(ScheduleExecution(
                schedule_id=schedule.schedule_id,
                party_id=schedule.party_id,
                started_at=started_at,
                completed_at=completed_at,
                status='success' if result is not None else 'failed',
                matches_found=len(result.matches) if result is not None else 0,
                processing_time_seconds=round(elapsed, 4),
                screening_id=result.screening_id if result is not None else None,
                error_message=error
            ))
        except Exception as e:
            history_warning = f"execution history not recorded: {e}"
            logger.warning(f"Schedule {schedule.schedule_id}: {sanitize_for_logging(history_warning)}")

        if result is not None:
            self.audit.log_schedule_event("SCHEDULED_EXECUTION_COMPLETED", schedule, context={
                'screening_id': result.screening_id,
                'matches': len(result.matches),
                'overall_risk_level': result.overall_risk_level.value,
                'pep_profiles': len(result.pep_profiles)
            })
            return {'status': 'success', 'matches': len(result.matches), 'result': result,
                    'warning': history_warning}

        if permanent:
            self.audit.log_schedule_event("SCHEDULE_FAILED_PERMANENTLY", schedule, severity="ERROR",
                                          context={'error': error, 'max_attempts': max_attempts})
        else:
            self.audit.log_batch_party_failed(schedule.party_id, "scheduler", error or "")
        return {'status': 'failed', 'error': error, 'permanent': permanent, 'warning': history_warning}

    # ============================================
    # SCHEDULE MAINTENANCE
    # ============================================

    def _cancel(self, schedule: ScreeningSchedule, now: datetime, reason: Optional[str]) -> ScreeningSchedule:
        schedule.status = ScheduleStatus.CANCELLED
        schedule.metadata['cancelled_at'] = now.isoformat()
        if reason:
            schedule.metadata['cancellation_reason'] = reason
        schedule = self.store.update(schedule)
        self.audit.log_schedule_event("SCHEDULE_CANCELLED", schedule, context={'reason': reason})
        return schedule

    def update_screening_frequency(self, party_id: str, frequency: FrequencyArg) -> ScreeningSchedule:
        """Change the cadence of the party's regular schedule

        A schedule parked as failed is reactivated with a fresh retry budget.

        Raises:
            InvalidPartyError: Empty party id
            ScreeningFailedError: No regular schedule, or persistence failure
        """
        party_id = self._require_party_id(party_id)
        frequency = ScreeningFrequency(frequency)
        if frequency is ScreeningFrequency.IMMEDIATE:
            raise ValueError("Use schedule_immediate_screening for immediate screenings")

        try:
            schedule = next(
                (s for s in self.store.find_by_party(party_id, include_inactive=True)
                 if s.frequency is not ScreeningFrequency.IMMEDIATE
                 and s.status in (ScheduleStatus.ACTIVE, ScheduleStatus.FAILED)),
                None
            )
            if schedule is None:
                raise ScreeningFailedError(party_id, "no schedule to update")

            previous = schedule.frequency
            now = self.clock()
            schedule.frequency = frequency
            schedule.next_screening_date = self.calculate_next_screening_date(frequency, now)
            if schedule.status is ScheduleStatus.FAILED:
                schedule.status = ScheduleStatus.ACTIVE
                schedule.failed_attempts = 0
            schedule = self.store.update(schedule)
        except ScreeningError:
            raise
        except Exception as e:
            raise self._fail(party_id, "frequency update", e) from e

        self.audit.log_schedule_event("SCHEDULE_UPDATED", schedule, context={'previous_frequency': previous.value})
        return schedule

    def cancel_scheduled_screening(self, party_id: str, reason: Optional[str] = None) -> int:
        """Cancel every open schedule of a party

        Returns:
            Number of schedules cancelled
        """
        party_id = self._require_party_id(party_id)
        try:
            now = self.clock()
            open_schedules = [
                s for s in self.store.find_by_party(party_id, include_inactive=True)
                if s.status not in (ScheduleStatus.CANCELLED, ScheduleStatus.COMPLETED)
            ]
            for schedule in open_schedules:
                self._cancel(schedule, now, reason)
        except ScreeningError:
            raise
        except Exception as e:
            raise self._fail(party_id, "cancellation", e) from e

        if not open_schedules:
            logger.info(f"No open schedule to cancel for party {sanitize_for_logging(party_id)}")
        return len(open_schedules)

    # ============================================
    # QUERIES
    # ============================================

    def get_schedule_details(self, party_id: str) -> Optional[ScreeningSchedule]:
        """Current schedule of a party: the newest open one, else the newest overall"""
        party_id = self._require_party_id(party_id)
        try:
            schedules = self.store.find_by_party(party_id, include_inactive=True)
        except Exception as e:
            raise self._fail(party_id, "schedule lookup", e) from e
        if not schedules:
            return None
        open_schedules = [s for s in schedules if s.status.is_executable]
        regular = [s for s in open_schedules if s.frequency is not ScreeningFrequency.IMMEDIATE]
        return (regular or open_schedules or schedules)[0]

    def get_next_screening_date(self, party_id: str) -> Optional[datetime]:
        party_id = self._require_party_id(party_id)
        try:
            dates = [s.next_screening_date for s in self.store.find_by_party(party_id)]
        except Exception as e:
            raise self._fail(party_id, "next screening date lookup", e) from e
        return min(dates) if dates else None

    def get_parties_due_for_screening(self, as_of: Optional[datetime] = None, limit: int = 100) -> List[str]:
        """Ids of parties with a schedule due at or before ``as_of``

        Raises:
            ArgumentOutOfRangeError: limit outside 1..1000
        """
        self._check_range("limit", limit, 1, MAX_DUE_LIMIT)
        as_of = as_of or self.clock()
        try:
            due = self.store.find_due(as_of, limit)
        except Exception as e:
            raise self._fail("due", "due party lookup", e) from e

        party_ids: List[str] = []
        for schedule in due:
            if schedule.party_id not in party_ids:
                party_ids.append(schedule.party_id)
        return party_ids

    def get_execution_statistics(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Execution counts, success rate and timing since a date (all history when None)"""
        try:
            executions = self.store.executions_since(since)
            by_status = self.store.count_by_status()
        except Exception as e:
            raise self._fail("statistics", "execution statistics", e) from e

        successful = [e for e in executions if e.status == 'success']
        failed = [e for e in executions if e.status != 'success']
        total = len(executions)
        average = sum(e.processing_time_seconds for e in executions) / total if total else 0.0

        return {
            'total_scheduled': by_status.get(ScheduleStatus.ACTIVE.value, 0)
            + by_status.get(ScheduleStatus.PENDING_IMMEDIATE.value, 0),
            'schedules_by_status': by_status,
            'total_executed': total,
            'total_successful': len(successful),
            'total_failed': len(failed),
            'total_matches_found': sum(e.matches_found for e in successful),
            'average_processing_time_seconds': round(average, 4),
            'success_rate': round(len(successful) / total * 100, 2) if total else 0.0,
            'period_start': since.isoformat() if since else None,
            'period_end': self.clock().isoformat()
        }
