"""
PEP Screener
Identifies Politically Exposed Persons, their family members and close associates

Features:
- Name lookup through the list repository, re-scored with the similarity engine
- PEP level inference from position keywords with the former-PEP downgrade
- Family / associate network expansion with per-class switches
- Risk assessment with escalation for multiple PEP connections
- Enhanced due diligence decision against a configurable threshold
"""

import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from audit_logger import AuditLogger, get_audit_logger, sanitize_for_logging
from config_manager import ConfigManager, get_config
from contracts import CandidateRecord, ListRepository
from name_matching import SimilarityEngine, normalize_name
from screener import validate_party
from screening_models import (
    ArgumentOutOfRangeError, Party, PepLevel, PepProfile, PepScreeningOptions,
    ScreeningError, ScreeningFailedError, ScreeningFrequency, utc_now
)

logger = logging.getLogger(__name__)

OptionsArg = Optional[Union[PepScreeningOptions, Dict[str, Any]]]

FAMILY_RELATIONSHIPS = frozenset({
    'family', 'spouse', 'partner', 'child', 'parent', 'sibling',
    'son', 'daughter', 'father', 'mother', 'brother', 'sister',
})

# Keys consumed when building a profile; everything else is passed through
_PROFILE_KEYS = frozenset({
    'id', 'pep_id', 'name', 'level', 'position', 'country', 'organization',
    'start_date', 'end_date', 'related_persons', 'identified_at',
})


def parse_date(value: Any) -> Optional[datetime]:
    """Parse an optional tenure date into an aware UTC datetime

    Args:
        value: datetime, date, ISO-8601 string or None

    Returns:
        Aware datetime, or None when absent or unparseable
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
        except ValueError:
            logger.warning(f"Unparseable PEP tenure date: {sanitize_for_logging(str(value))}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def months_between(earlier: datetime, later: datetime) -> int:
    """Whole calendar months from ``earlier`` to ``later``"""
    months = (later.year - earlier.year) * 12 + (later.month - earlier.month)
    if later.day < earlier.day:
        months -= 1
    return months


class PepScreener:
    """Screens parties for PEP exposure

    Args:
        repository: Source of PEP records and relationships
        config: Configuration manager (global instance when omitted)
        audit_logger: Audit sink (global instance when omitted)
        similarity_engine: Engine used to re-score repository candidates
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        repository: ListRepository,
        config: Optional[ConfigManager] = None,
        audit_logger: Optional[AuditLogger] = None,
        similarity_engine: Optional[SimilarityEngine] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repository = repository
        self.config = config or get_config()
        self.audit = audit_logger or get_audit_logger()
        self.engine = similarity_engine or SimilarityEngine(self.config.matching)
        self.clock = clock
        self._high_patterns = self._compile(self.config.pep.high_keywords)
        self._medium_patterns = self._compile(self.config.pep.medium_keywords)

    @staticmethod
    def _compile(keywords: Iterable[str]) -> List[re.Pattern]:
        return [re.compile(r'\b' + re.escape(k.lower()) + r'\b') for k in keywords if k]

    # ============================================
    # PROFILE CONSTRUCTION
    # ============================================

    def infer_level(self, position: Optional[str], end_date: Optional[datetime],
                    as_of: Optional[datetime] = None) -> PepLevel:
        """PEP level from position text and tenure

        A role that ended more than ``former_pep_months`` ago is LOW whatever
        the position says.
        """
        now = as_of or self.clock()
        if end_date is not None and months_between(end_date, now) > self.config.pep.former_pep_months:
            return PepLevel.LOW

        text = (position or "").lower()
        if any(p.search(text) for p in self._high_patterns):
            return PepLevel.HIGH
        if any(p.search(text) for p in self._medium_patterns):
            return PepLevel.MEDIUM
        return PepLevel.LOW

    def build_profile(self, record: CandidateRecord, as_of: Optional[datetime] = None) -> PepProfile:
        """Build a PepProfile from a repository record

        An explicit ``level`` is used verbatim; otherwise the level is inferred.

        Raises:
            ValueError: If the record has no id or name
        """
        now = as_of or self.clock()
        pep_id = record.get('id') or record.get('pep_id')
        name = record.get('name')
        if not pep_id or not name:
            raise ValueError("PEP record requires an id and a name")

        start_date = parse_date(record.get('start_date'))
        end_date = parse_date(record.get('end_date'))
        position = record.get('position') or "Unknown"

        level = None
        explicit = record.get('level')
        if explicit:
            try:
                level = PepLevel(explicit)
            except ValueError:
                logger.warning(f"Ignoring invalid PEP level {sanitize_for_logging(str(explicit))} "
                               f"for {sanitize_for_logging(str(pep_id))}")
        if level is None:
            level = self.infer_level(position, end_date, now)

        return PepProfile(
            pep_id=str(pep_id),
            name=name,
            level=level,
            position=position,
            country=record.get('country') or "Unknown",
            organization=record.get('organization'),
            start_date=start_date,
            end_date=end_date,
            related_persons=tuple(str(r) for r in record.get('related_persons') or ()),
            additional_info={k: v for k, v in record.items() if k not in _PROFILE_KEYS},
            identified_at=now
        )

    # ============================================
    # SCREENING
    # ============================================

    def _resolve_options(self, options: OptionsArg) -> PepScreeningOptions:
        if isinstance(options, PepScreeningOptions):
            resolved = PepScreeningOptions(**options.to_dict())
        else:
            resolved = PepScreeningOptions.from_dict(options)
        if resolved.similarity_threshold is None:
            resolved.similarity_threshold = self.config.pep.similarity_threshold
        threshold = resolved.similarity_threshold
        if not isinstance(threshold, (int, float)) or not 0.0 <= threshold <= 1.0:
            raise ArgumentOutOfRangeError("similarity_threshold", threshold, 0, 1)
        return resolved

    def _passes_filter(self, profile: PepProfile, options: PepScreeningOptions, now: datetime) -> bool:
        if profile.level < options.min_risk_level:
            return False
        if not options.include_former and profile.is_former(now):
            return False
        return True

    def screen_for_pep(self, party: Party, options: OptionsArg = None) -> List[PepProfile]:
        """Screen a party for PEP exposure

        Args:
            party: Subject of the screening
            options: PepScreeningOptions or a dict with the same keys

        Returns:
            Matched profiles followed by related persons, unique by pep id

        Raises:
            InvalidPartyError: Malformed party; the repository is never queried
            ArgumentOutOfRangeError: Threshold outside [0, 1]
            ScreeningFailedError: The PEP lookup itself failed
        """
        validate_party(party, self.config.matching.min_name_length)
        resolved = self._resolve_options(options)
        now = self.clock()

        try:
            profiles = self._matched_profiles(party, resolved, now)
            if resolved.include_family or resolved.include_associates:
                profiles.extend(self._related_profiles(profiles, resolved, now))
            unique = self._deduplicate(profiles)
        except ScreeningError:
            raise
        except Exception as e:
            logger.error(f"PEP screening failed for party {sanitize_for_logging(party.id)}: "
                         f"{sanitize_for_logging(str(e))}")
            raise ScreeningFailedError(party.id, str(e)) from e

        level = self.assess_risk_level(party, unique)
        self.audit.log_pep_screening_completed(party.id, len(unique), level.value)
        logger.info(f"PEP screening for {sanitize_for_logging(party.id)}: "
                    f"{len(unique)} profiles, level {level.value}")
        return unique

    def _matched_profiles(self, party: Party, options: PepScreeningOptions,
                          now: datetime) -> List[PepProfile]:
        normalized = normalize_name(party.name)
        threshold = options.similarity_threshold
        records = self.repository.find_pep_by_name(normalized, threshold)

        profiles = []
        for record in records or []:
            score = self._best_score(normalized, record)
            if score < threshold:
                continue
            try:
                profile = self.build_profile(record, now)
            except ValueError as e:
                logger.warning(f"Skipping PEP record: {e}")
                continue
            profile.additional_info['similarity_score'] = round(score * 100, 2)
            if self._passes_filter(profile, options, now):
                profiles.append(profile)
        return profiles

    def _best_score(self, normalized_name: str, record: CandidateRecord) -> float:
        names = [record.get('name') or ""]
        names.extend(a for a in record.get('aliases') or [] if a)
        return max(self.engine.similarity(normalized_name, n) for n in names)

    @staticmethod
    def is_family(record: CandidateRecord) -> bool:
        relationship = str(record.get('relationship') or '').strip().lower()
        return relationship in FAMILY_RELATIONSHIPS

    def _related_profiles(self, profiles: List[PepProfile], options: PepScreeningOptions,
                          now: datetime) -> List[PepProfile]:
        related: List[PepProfile] = []
        for profile in profiles:
            try:
                records = self.repository.get_related_persons(profile.pep_id)
            except Exception as e:
                logger.error(f"Related persons lookup failed for PEP {sanitize_for_logging(profile.pep_id)}: "
                             f"{sanitize_for_logging(str(e))}")
                continue

            for record in records or []:
                family = self.is_family(record)
                if family and not options.include_family:
                    continue
                if not family and not options.include_associates:
                    continue
                try:
                    related_profile = self.build_profile(record, now)
                except ValueError as e:
                    logger.warning(f"Skipping related PEP record: {e}")
                    continue
                related_profile.additional_info.setdefault('related_to', profile.pep_id)
                related_profile.additional_info.setdefault('connection', 'family' if family else 'associate')
                if self._passes_filter(related_profile, options, now):
                    related.append(related_profile)
        return related

    @staticmethod
    def _deduplicate(profiles: List[PepProfile]) -> List[PepProfile]:
        seen = set()
        unique = []
        for profile in profiles:
            if profile.pep_id in seen:
                continue
            seen.add(profile.pep_id)
            unique.append(profile)
        return unique

    def check_related_persons(self, party: Party, options: OptionsArg = None) -> List[PepProfile]:
        """Network of a known PEP: related persons of the party's matched profiles

        Screens without expansion, then expands only the matched profiles.
        The matched profiles themselves are not part of the result.
        """
        resolved = self._resolve_options(options)
        direct_options = PepScreeningOptions(**resolved.to_dict())
        direct_options.include_family = False
        direct_options.include_associates = False

        matched = self.screen_for_pep(party, direct_options)
        if not matched:
            return []

        expand = PepScreeningOptions(**resolved.to_dict())
        if not expand.include_family and not expand.include_associates:
            expand.include_family = True
            expand.include_associates = True

        now = self.clock()
        matched_ids = {p.pep_id for p in matched}
        related = self._related_profiles(matched, expand, now)
        return [p for p in self._deduplicate(related) if p.pep_id not in matched_ids]

    def screen_multiple(self, parties: Iterable[Party], options: OptionsArg = None) -> Dict[str, List[PepProfile]]:
        """PEP screening per party; a failing party is logged and left out"""
        results: Dict[str, List[PepProfile]] = {}
        for party in parties:
            try:
                profiles = self.screen_for_pep(party, options)
            except Exception as e:
                party_id = str(getattr(party, 'id', '') or '')
                logger.error(f"Batch PEP screening failed for party {sanitize_for_logging(party_id)}: "
                             f"{sanitize_for_logging(str(e))}")
                self.audit.log_batch_party_failed(party_id, "pep", str(e))
                continue
            results.setdefault(party.id, profiles)
        return results

    # ============================================
    # RISK
    # ============================================

    def assess_risk_level(self, party: Party, profiles: Iterable[PepProfile]) -> PepLevel:
        """Highest profile level, escalated one tier for multiple PEP connections"""
        profiles = list(profiles)
        if not profiles:
            return PepLevel.NONE

        level = max(p.level for p in profiles)
        distinct = len({p.pep_id for p in profiles})
        if distinct >= self.config.pep.multiple_connection_count:
            escalated = level.escalate()
            if escalated is not level:
                logger.info(f"PEP level escalated {level.value} -> {escalated.value} for party "
                            f"{sanitize_for_logging(party.id)} ({distinct} connections)")
            level = escalated
        return level

    def requires_edd(self, party: Party, profiles: Iterable[PepProfile]) -> bool:
        """True when the assessed level reaches the EDD threshold"""
        return self.assess_risk_level(party, profiles) >= PepLevel(self.config.pep.edd_threshold)

    @staticmethod
    def get_monitoring_frequency(level: PepLevel) -> ScreeningFrequency:
        return ScreeningFrequency.from_pep_level(PepLevel(level))
