"""
Audit Event Logging Module

Provides structured logging for compliance-relevant state transitions:
- Screening start / completion
- List unavailability and per-list failures
- Per-party failures inside batch calls
- Scheduling actions (created, updated, cancelled, executed, failed)

Every event is one JSON line on the dedicated ``audit`` logger. All values
are sanitized before serialization so party names or repository data cannot
forge additional log entries.
"""

import json
import logging
import re
import sys
import uuid
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from config_manager import LoggingConfig


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    # Remove newlines, carriage returns, and other control characters
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    # Collapse multiple spaces
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    # Truncate to reasonable length
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Apply process logging settings (level, format, handlers) to the root logger"""
    config = config or LoggingConfig()
    handlers = []
    if config.console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.file, encoding='utf-8'))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=getattr(logging, str(config.level).upper(), logging.INFO),
        format=config.format,
        handlers=handlers,
        force=True
    )


@dataclass
class AuditEvent:
    """Structured audit event"""
    event_type: str  # e.g. SCREENING_COMPLETED, LIST_UNAVAILABLE, SCHEDULE_CREATED
    severity: str = "INFO"  # INFO, WARNING, ERROR
    party_id: str = ""
    screening_id: str = ""
    stage: str = ""  # component or list the event relates to
    context: Dict[str, Any] = dataclass_field(default_factory=dict)
    event_id: str = dataclass_field(default_factory=lambda: f"EVT-{uuid.uuid4().hex[:12]}")
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            'event_id': self.event_id,
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'party_id': self.party_id,
            'screening_id': self.screening_id,
            'stage': self.stage,
            'context': self.context
        }

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


class AuditLogger:
    """Writes audit events as JSON lines

    Args:
        log_dir: Directory for ``audit.log``; None disables file output
        log_level: Minimum level to record
        enable_console: Also output to stderr
    """

    LOGGER_NAME = 'audit'

    def __init__(
        self,
        log_dir: Optional[str] = None,
        log_level: int = logging.INFO,
        enable_console: bool = False
    ):
        self.log_dir = Path(log_dir) if log_dir else None

        # Dedicated audit logger
        self.logger = logging.getLogger(self.LOGGER_NAME)
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()

        formatter = logging.Formatter('%(asctime)s - AUDIT - %(levelname)s - %(message)s')

        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_dir / "audit.log", encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    def _sanitize_input(self, text: str, max_length: int = 200) -> str:
        if not text:
            return ""
        sanitized = sanitize_for_logging(text)
        if len(sanitized) > max_length:
            return sanitized[:max_length] + "...(truncated)"
        return sanitized

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Sanitize all values in a context dictionary for safe logging

        Args:
            context: Dictionary with context data

        Returns:
            Sanitized dictionary safe for JSON logging
        """
        if not context:
            return {}

        sanitized = {}
        for key, value in context.items():
            safe_key = self._sanitize_input(str(key), max_length=100) if key else "unknown"

            if value is None or isinstance(value, (bool, int, float)):
                sanitized[safe_key] = value
            elif isinstance(value, str):
                sanitized[safe_key] = self._sanitize_input(value)
            elif isinstance(value, dict):
                sanitized[safe_key] = self._sanitize_context(value)
            elif isinstance(value, (list, tuple, set)):
                sanitized[safe_key] = [
                    item if isinstance(item, (bool, int, float, type(None)))
                    else self._sanitize_input(str(item))
                    for item in value
                ]
            elif isinstance(value, datetime):
                sanitized[safe_key] = value.isoformat()
            else:
                sanitized[safe_key] = self._sanitize_input(str(value))

        return sanitized

    def log_event(
        self,
        event_type: str,
        severity: str = "INFO",
        party_id: str = "",
        screening_id: str = "",
        stage: str = "",
        context: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """Record one audit event

        Args:
            event_type: Event name
            severity: INFO, WARNING or ERROR
            party_id: Subject of the event (sanitized)
            screening_id: Related screening if any
            stage: Component or list the event relates to
            context: Extra data (sanitized)

        Returns:
            The event as written
        """
        event = AuditEvent(
            event_type=event_type,
            severity=severity,
            party_id=self._sanitize_input(party_id, max_length=100),
            screening_id=screening_id,
            stage=self._sanitize_input(stage, max_length=100),
            context=self._sanitize_context(context)
        )

        if severity == "ERROR":
            self.logger.error(event.to_json())
        elif severity == "WARNING":
            self.logger.warning(event.to_json())
        else:
            self.logger.info(event.to_json())
        return event

    # ============================================
    # SCREENING EVENTS
    # ============================================

    def log_screening_started(self, party_id: str, screening_id: str, lists: list) -> None:
        self.log_event(
            "SCREENING_STARTED",
            party_id=party_id,
            screening_id=screening_id,
            stage="sanctions",
            context={'lists': lists}
        )

    def log_screening_completed(self, result) -> None:
        """Log the outcome of a sanctions screening (a ScreeningResult)"""
        strength = result.highest_match_strength()
        self.log_event(
            "SCREENING_COMPLETED",
            party_id=result.party_id,
            screening_id=result.screening_id,
            stage="sanctions",
            context={
                'match_count': len(result.matches),
                'requires_blocking': result.requires_blocking,
                'requires_review': result.requires_review,
                'overall_risk_level': result.overall_risk_level.value,
                'highest_match_strength': strength.value if strength else None,
                'matched_lists': [l.value for l in result.matched_lists()],
                'lists_screened': result.metadata.get('lists_screened', []),
                'processing_time_ms': round(result.processing_time_ms, 2)
            }
        )

    def log_list_unavailable(self, party_id: str, screening_id: str, list_name: str) -> None:
        self.log_event(
            "LIST_UNAVAILABLE",
            severity="WARNING",
            party_id=party_id,
            screening_id=screening_id,
            stage=list_name
        )

    def log_list_failure(self, party_id: str, screening_id: str, list_name: str, error: str) -> None:
        self.log_event(
            "LIST_SCREENING_FAILED",
            severity="ERROR",
            party_id=party_id,
            screening_id=screening_id,
            stage=list_name,
            context={'error': error}
        )

    def log_batch_party_failed(self, party_id: str, stage: str, error: str) -> None:
        self.log_event(
            "BATCH_PARTY_FAILED",
            severity="ERROR",
            party_id=party_id,
            stage=stage,
            context={'error': error}
        )

    def log_pep_screening_completed(self, party_id: str, profile_count: int, risk_level: str) -> None:
        self.log_event(
            "PEP_SCREENING_COMPLETED",
            party_id=party_id,
            stage="pep",
            context={'profile_count': profile_count, 'pep_risk_level': risk_level}
        )

    # ============================================
    # SCHEDULING EVENTS
    # ============================================

    def log_schedule_event(self, event_type: str, schedule, severity: str = "INFO",
                           context: Optional[Dict[str, Any]] = None) -> None:
        """Log a scheduling state transition for a ScreeningSchedule"""
        data = {
            'schedule_id': schedule.schedule_id,
            'frequency': schedule.frequency.value,
            'status': schedule.status.value,
            'next_screening_date': schedule.next_screening_date,
            'failed_attempts': schedule.failed_attempts
        }
        data.update(context or {})
        self.log_event(
            event_type,
            severity=severity,
            party_id=schedule.party_id,
            stage="scheduler",
            context=data
        )


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger(
    log_dir: Optional[str] = None,
    enable_console: bool = False
) -> AuditLogger:
    """Get or create the global audit logger instance

    Args:
        log_dir: Directory for log files (None keeps events on the logging tree only)
        enable_console: Also output to console

    Returns:
        AuditLogger instance
    """
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(
            log_dir=log_dir,
            enable_console=enable_console
        )
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)"""
    global _audit_logger
    _audit_logger = None
