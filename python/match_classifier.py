"""
Match classification

Turns similarity scores into match-strength tiers and, combined with the
escalation class of the list a candidate came from, into risk levels and
blocking / review flags. The (list class x strength) -> risk level mapping is
the ``lists.risk_table`` configuration table; ConfigManager guarantees it is
total.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from config_manager import ListsConfig, MatchingConfig
from screening_models import (
    ListClass, MatchStrength, RiskLevel, SanctionsList, SanctionsMatch, utc_now
)

logger = logging.getLogger(__name__)


class MatchClassifier:
    """Tiers scores and applies the list escalation policy"""

    def __init__(self, matching: Optional[MatchingConfig] = None, lists: Optional[ListsConfig] = None):
        self.matching = matching or MatchingConfig()
        self.lists = lists or ListsConfig()
        self._risk_table = {
            (ListClass(list_class), MatchStrength(strength)): RiskLevel(level)
            for list_class, row in self.lists.risk_table.items()
            for strength, level in row.items()
        }

    @staticmethod
    def qualifies(score: float, threshold: float) -> bool:
        """A candidate is a match only at or above the threshold"""
        return score >= threshold

    def strength_for(self, score: float) -> MatchStrength:
        """Match strength tier of a 0..1 similarity score"""
        percent = round(score * 100, 6)
        cutoffs = self.matching.strength_cutoffs
        if percent >= cutoffs.exact:
            return MatchStrength.EXACT
        if percent >= cutoffs.strong:
            return MatchStrength.STRONG
        if percent >= cutoffs.moderate:
            return MatchStrength.MODERATE
        return MatchStrength.WEAK

    def list_class(self, sanctions_list: SanctionsList) -> ListClass:
        """Escalation class of a list; unknown lists are treated as blocking"""
        value = self.lists.list_classes.get(sanctions_list.value)
        if value is None:
            logger.warning(f"No escalation class configured for list {sanctions_list.value}, using blocking")
            return ListClass.BLOCKING
        return ListClass(value)

    def risk_level(self, list_class: ListClass, strength: MatchStrength) -> RiskLevel:
        return self._risk_table[(list_class, strength)]

    @staticmethod
    def requires_blocking(list_class: ListClass, strength: MatchStrength) -> bool:
        return list_class is ListClass.BLOCKING

    @staticmethod
    def requires_review(list_class: ListClass, strength: MatchStrength) -> bool:
        if list_class is ListClass.BLOCKING:
            return True
        return strength >= MatchStrength.MODERATE

    def build_match(
        self,
        candidate: Dict[str, Any],
        sanctions_list: SanctionsList,
        matched_name: str,
        score: float,
        matched_at: Optional[datetime] = None,
    ) -> SanctionsMatch:
        """Create the SanctionsMatch for a qualifying candidate

        Args:
            candidate: Repository record (``id``, ``name`` plus extras)
            sanctions_list: List the candidate belongs to
            matched_name: Candidate name (primary or alias) that scored best
            score: Similarity in [0, 1]

        Returns:
            Immutable match whose tier, risk and flags follow from the score
        """
        strength = self.strength_for(score)
        list_class = self.list_class(sanctions_list)
        additional_info = {
            k: v for k, v in candidate.items() if k not in ('id', 'name')
        }
        return SanctionsMatch(
            list_entry_id=str(candidate.get('id')),
            list=sanctions_list,
            matched_name=matched_name,
            match_strength=strength,
            similarity_score=score * 100,
            list_class=list_class,
            risk_level=self.risk_level(list_class, strength),
            requires_blocking=self.requires_blocking(list_class, strength),
            requires_review=self.requires_review(list_class, strength),
            additional_info=additional_info,
            matched_at=matched_at or utc_now(),
        )

    @staticmethod
    def aggregate(matches: Iterable[SanctionsMatch]) -> Tuple[bool, bool, RiskLevel]:
        """(requires_blocking, requires_review, overall_risk_level) of a match set"""
        requires_blocking = False
        requires_review = False
        overall = RiskLevel.NONE
        for match in matches:
            requires_blocking = requires_blocking or match.requires_blocking
            requires_review = requires_review or match.requires_review
            if match.risk_level > overall:
                overall = match.risk_level
        return requires_blocking, requires_review, overall
