"""
Sanctions Screener
Screens parties (and their aliases) against sanctions and watch lists

Features:
- Party validation with every violation reported at once
- Composite name similarity (edit distance, phonetic, token overlap)
- Candidate alias scoring; best scoring name is reported
- Per-list isolation: an unavailable or failing list never aborts the others
- Deduplication by (list entry, list) and risk aggregation per list class
- Batch screening with per-party isolation, optionally on a thread pool
- Structured audit events for every screening

SECURITY: Party data is sanitized before it reaches any log line.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from audit_logger import AuditLogger, get_audit_logger, sanitize_for_logging
from config_manager import ConfigManager, get_config
from contracts import CandidateRecord, ListRepository
from match_classifier import MatchClassifier
from name_matching import SimilarityEngine, normalize_name
from screening_models import (
    ArgumentOutOfRangeError, InvalidPartyError, Party, PartyType, SanctionsList,
    SanctionsMatch, ScreeningError, ScreeningFailedError, ScreeningFrequency,
    ScreeningOptions, ScreeningResult, utc_now
)

logger = logging.getLogger(__name__)

ListsArg = Optional[Iterable[Union[str, SanctionsList]]]
OptionsArg = Optional[Union[ScreeningOptions, Dict[str, Any]]]


def generate_screening_id() -> str:
    """Unique screening id: SCR- followed by 16 upper-case hex characters"""
    return "SCR-" + uuid.uuid4().hex[:16].upper()


def validate_party(party: Party, min_name_length: int = 3) -> PartyType:
    """Validate a party before any repository access

    All violations are collected and reported together.

    Args:
        party: Party to validate
        min_name_length: Minimum length of the trimmed name

    Returns:
        The recognized party type

    Raises:
        InvalidPartyError: If id, name or type are invalid
    """
    errors = []
    party_id = (party.id or "").strip() if isinstance(party.id, str) else party.id

    if not party_id:
        errors.append("id: party id must not be empty")

    name = (party.name or "").strip()
    if not name:
        errors.append("name: party name must not be empty")
    elif len(name) < min_name_length:
        errors.append(f"name: party name must be at least {min_name_length} characters")

    party_type = None
    try:
        party_type = PartyType(party.party_type)
    except ValueError:
        errors.append(
            f"type: unrecognized party type '{sanitize_for_logging(str(party.party_type))}'"
            f" (expected {PartyType.INDIVIDUAL.value} or {PartyType.ORGANIZATION.value})"
        )

    if errors:
        logger.warning("Invalid party %s: %s", sanitize_for_logging(str(party_id or "")), "; ".join(errors))
        raise InvalidPartyError(str(party_id or ""), errors)
    return party_type


class SanctionsScreener:
    """Screens parties against sanctions lists served by a ListRepository

    Args:
        repository: Source of list candidates and list availability
        config: Configuration manager (global instance when omitted)
        audit_logger: Audit sink (global instance when omitted)
        similarity_engine: Engine override; built from the matching config otherwise
        classifier: Classifier override; built from the config otherwise
    """

    def __init__(
        self,
        repository: ListRepository,
        config: Optional[ConfigManager] = None,
        audit_logger: Optional[AuditLogger] = None,
        similarity_engine: Optional[SimilarityEngine] = None,
        classifier: Optional[MatchClassifier] = None
    ):
        self.repository = repository
        self.config = config or get_config()
        self.audit = audit_logger or get_audit_logger()
        self.engine = similarity_engine or SimilarityEngine(self.config.matching)
        self.classifier = classifier or MatchClassifier(self.config.matching, self.config.lists)

    # ============================================
    # OPTIONS
    # ============================================

    def _resolve_options(self, options: OptionsArg) -> ScreeningOptions:
        if isinstance(options, ScreeningOptions):
            resolved = ScreeningOptions(**options.to_dict())
        else:
            resolved = ScreeningOptions.from_dict(options)
        if resolved.similarity_threshold is None:
            resolved.similarity_threshold = self.config.matching.similarity_threshold
        threshold = resolved.similarity_threshold
        if not isinstance(threshold, (int, float)) or not 0.0 <= threshold <= 1.0:
            raise ArgumentOutOfRangeError("similarity_threshold", threshold, 0, 1)
        return resolved

    def _resolve_lists(self, lists: ListsArg) -> List[SanctionsList]:
        names = self.config.lists.default_lists if lists is None else lists
        resolved: List[SanctionsList] = []
        for name in names:
            sanctions_list = SanctionsList(name)
            if sanctions_list not in resolved:
                resolved.append(sanctions_list)
        return resolved

    @staticmethod
    def _name_set(party: Party, include_aliases: bool) -> List[str]:
        names = [party.name.strip()]
        if include_aliases:
            names.extend(a.strip() for a in party.aliases if a and a.strip())
        unique: List[str] = []
        seen = set()
        for name in names:
            key = normalize_name(name)
            if key and key not in seen:
                seen.add(key)
                unique.append(name)
        return unique

    # ============================================
    # SCREENING
    # ============================================

    def screen(self, party: Party, lists: ListsArg = None, options: OptionsArg = None) -> ScreeningResult:
        """Screen one party against the requested lists

        Args:
            party: Subject of the screening
            lists: Lists to screen (configured default lists when None)
            options: ScreeningOptions or a dict with the same keys

        Returns:
            Immutable ScreeningResult; PEP profiles are empty

        Raises:
            InvalidPartyError: Malformed party; the repository is never queried
            ArgumentOutOfRangeError: Threshold outside [0, 1]
            ScreeningFailedError: Any unexpected failure outside a single list
        """
        party_type = validate_party(party, self.config.matching.min_name_length)
        resolved = self._resolve_options(options)
        requested = self._resolve_lists(lists)

        started = time.perf_counter()
        screening_id = generate_screening_id()
        screened_at = utc_now()

        try:
            names = self._name_set(party, resolved.include_aliases)
            self.audit.log_screening_started(party.id, screening_id, [l.value for l in requested])

            matches: List[SanctionsMatch] = []
            lists_screened: List[str] = []
            lists_unavailable: List[str] = []
            lists_failed: List[str] = []

            for sanctions_list in requested:
                try:
                    if not self.repository.is_list_available(sanctions_list):
                        logger.warning(
                            f"List {sanctions_list.value} unavailable, skipped for party "
                            f"{sanitize_for_logging(party.id)}"
                        )
                        self.audit.log_list_unavailable(party.id, screening_id, sanctions_list.value)
                        lists_unavailable.append(sanctions_list.value)
                        continue

                    list_matches: List[SanctionsMatch] = []
                    for name in names:
                        list_matches.extend(self._match_name(name, sanctions_list, resolved))
                except Exception as e:
                    logger.error(
                        f"Screening party {sanitize_for_logging(party.id)} against "
                        f"{sanctions_list.value} failed: {sanitize_for_logging(str(e))}"
                    )
                    self.audit.log_list_failure(party.id, screening_id, sanctions_list.value, str(e))
                    lists_failed.append(sanctions_list.value)
                    continue

                matches.extend(list_matches)
                lists_screened.append(sanctions_list.value)

            unique = self._deduplicate(matches)
            requires_blocking, requires_review, overall = self.classifier.aggregate(unique)

            result = ScreeningResult(
                screening_id=screening_id,
                party_id=party.id,
                party_name=party.name,
                party_type=party_type.value,
                has_matches=bool(unique),
                matches=tuple(unique),
                pep_profiles=(),
                requires_blocking=requires_blocking,
                requires_review=requires_review,
                overall_risk_level=overall,
                metadata={
                    'lists_requested': [l.value for l in requested],
                    'lists_screened': lists_screened,
                    'lists_unavailable': lists_unavailable,
                    'lists_failed': lists_failed,
                    'names_screened': names,
                    'threshold': resolved.similarity_threshold,
                    'options': resolved.to_dict(),
                },
                screened_at=screened_at,
                processing_time_ms=(time.perf_counter() - started) * 1000
            )
        except ScreeningError:
            raise
        except Exception as e:
            logger.error(f"Screening failed for party {sanitize_for_logging(party.id)}: {sanitize_for_logging(str(e))}")
            raise ScreeningFailedError(party.id, str(e)) from e

        self.audit.log_screening_completed(result)
        logger.info(
            f"Screened party {sanitize_for_logging(party.id)}: {len(result.matches)} matches, "
            f"risk {result.overall_risk_level.value}"
        )
        return result

    def screen_name(self, name: str, sanctions_list: Union[str, SanctionsList],
                    options: OptionsArg = None) -> List[SanctionsMatch]:
        """Screen a single name against a single list

        Args:
            name: Name to look up
            sanctions_list: List to search
            options: ScreeningOptions or dict

        Returns:
            Qualifying matches (deduplicated); empty when the list is unavailable

        Raises:
            InvalidPartyError: Name shorter than the configured minimum
        """
        stripped = (name or "").strip()
        min_length = self.config.matching.min_name_length
        if len(stripped) < min_length:
            raise InvalidPartyError("", [f"name: name must be at least {min_length} characters"])

        resolved = self._resolve_options(options)
        target = SanctionsList(sanctions_list)
        if not self.repository.is_list_available(target):
            logger.warning(f"List {target.value} unavailable, name lookup skipped")
            return []
        return self._deduplicate(self._match_name(stripped, target, resolved))

    def _match_name(self, name: str, sanctions_list: SanctionsList,
                    options: ScreeningOptions) -> List[SanctionsMatch]:
        threshold = options.similarity_threshold
        normalized = normalize_name(name)
        candidates = self.repository.find_by_name(normalized, sanctions_list, threshold)

        matches = []
        for candidate in candidates or []:
            scored = self._score_candidate(normalized, candidate, options)
            if scored is None:
                continue
            score, matched_name = scored
            if self.classifier.qualifies(score, threshold):
                matches.append(self.classifier.build_match(candidate, sanctions_list, matched_name, score))
        return matches

    def _score_candidate(self, normalized_name: str, candidate: CandidateRecord,
                         options: ScreeningOptions) -> Optional[tuple]:
        """Best (score, candidate name) over the candidate's primary name and aliases"""
        if not candidate.get('id') or not candidate.get('name'):
            logger.debug("Skipping candidate without id or name")
            return None

        names = [candidate['name']]
        if options.include_aliases:
            names.extend(a for a in candidate.get('aliases') or [] if a)

        best_score = -1.0
        best_name = candidate['name']
        for candidate_name in names:
            score = self.engine.similarity(
                normalized_name,
                candidate_name,
                phonetic=options.phonetic_matching,
                tokens=options.token_based
            )
            if score > best_score:
                best_score = score
                best_name = candidate_name
        return best_score, best_name

    @staticmethod
    def _deduplicate(matches: Sequence[SanctionsMatch]) -> List[SanctionsMatch]:
        """Keep the first match per (list entry id, list)"""
        seen = set()
        unique = []
        for match in matches:
            key = (match.list_entry_id, match.list)
            if key in seen:
                continue
            seen.add(key)
            unique.append(match)
        return unique

    # ============================================
    # BATCH SCREENING
    # ============================================

    def screen_multiple(self, parties: Iterable[Party], lists: ListsArg = None,
                        options: OptionsArg = None) -> Dict[str, ScreeningResult]:
        """Screen several parties independently

        A failure for one party is logged and that party is left out of the
        result; it never aborts the batch.

        Args:
            parties: Parties to screen
            lists: Lists to screen
            options: ScreeningOptions or dict

        Returns:
            Results keyed by party id
        """
        parties = list(parties)
        results: Dict[str, ScreeningResult] = {}
        perf = self.config.performance

        if perf.concurrent_screening and len(parties) > 1:
            with ThreadPoolExecutor(max_workers=perf.max_threads) as executor:
                futures = {
                    executor.submit(self._screen_isolated, party, lists, options): party
                    for party in parties
                }
                for future in as_completed(futures):
                    result = future.result()
                    if result is not None:
                        results.setdefault(result.party_id, result)
        else:
            for party in parties:
                result = self._screen_isolated(party, lists, options)
                if result is not None:
                    results.setdefault(result.party_id, result)

        logger.info(f"Batch screening: {len(results)}/{len(parties)} parties screened")
        return results

    def _screen_isolated(self, party: Party, lists: ListsArg, options: OptionsArg) -> Optional[ScreeningResult]:
        try:
            return self.screen(party, lists, options)
        except Exception as e:
            party_id = getattr(party, 'id', '') or ''
            logger.error(f"Batch screening failed for party {sanitize_for_logging(str(party_id))}: "
                         f"{sanitize_for_logging(str(e))}")
            self.audit.log_batch_party_failed(str(party_id), "sanctions", str(e))
            return None

    # ============================================
    # HELPERS
    # ============================================

    def calculate_similarity(self, a: str, b: str) -> float:
        """Similarity of two names in [0, 1] under the configured policy"""
        return self.engine.similarity(a, b)

    @staticmethod
    def get_recommended_frequency(party: Party) -> ScreeningFrequency:
        """Re-screening cadence for the party's declared risk rating"""
        rating = (party.risk_rating or "").strip().upper()
        if rating in ('HIGH', 'CRITICAL'):
            return ScreeningFrequency.DAILY
        if rating == 'MEDIUM':
            return ScreeningFrequency.WEEKLY
        if rating == 'LOW':
            return ScreeningFrequency.MONTHLY
        return ScreeningFrequency.QUARTERLY
