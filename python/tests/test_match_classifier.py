"""
Unit tests for match strength tiers and the list escalation policy
"""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ListsConfig, MatchingConfig, StrengthCutoffs
from match_classifier import MatchClassifier
from screening_models import ListClass, MatchStrength, RiskLevel, SanctionsList


@pytest.fixture
def classifier():
    return MatchClassifier(MatchingConfig(), ListsConfig())


class TestStrengthTiers:
    """Tests for score -> strength mapping"""

    @pytest.mark.parametrize("score,expected", [
        (1.0, MatchStrength.EXACT),
        (0.99, MatchStrength.STRONG),
        (0.90, MatchStrength.STRONG),
        (0.89, MatchStrength.MODERATE),
        (0.85, MatchStrength.MODERATE),
        (0.84, MatchStrength.WEAK),
        (0.40, MatchStrength.WEAK),
    ])
    def test_strength_for(self, classifier, score, expected):
        assert classifier.strength_for(score) is expected

    def test_custom_cutoffs(self):
        matching = MatchingConfig(strength_cutoffs=StrengthCutoffs(exact=98.0, strong=80.0, moderate=70.0))
        classifier = MatchClassifier(matching, ListsConfig())
        assert classifier.strength_for(0.98) is MatchStrength.EXACT
        assert classifier.strength_for(0.75) is MatchStrength.MODERATE

    def test_threshold_is_inclusive(self):
        assert MatchClassifier.qualifies(0.85, 0.85) is True
        assert MatchClassifier.qualifies(0.8499, 0.85) is False


class TestEscalationPolicy:
    """Tests for list class, risk level and flags"""

    def test_list_classes(self, classifier):
        assert classifier.list_class(SanctionsList.OFAC) is ListClass.BLOCKING
        assert classifier.list_class(SanctionsList.INTERPOL) is ListClass.ADVISORY

    def test_unconfigured_list_is_blocking(self):
        classifier = MatchClassifier(MatchingConfig(), ListsConfig(list_classes={}))
        assert classifier.list_class(SanctionsList.WORLD_BANK) is ListClass.BLOCKING

    @pytest.mark.parametrize("list_class,strength,expected", [
        (ListClass.BLOCKING, MatchStrength.EXACT, RiskLevel.CRITICAL),
        (ListClass.BLOCKING, MatchStrength.STRONG, RiskLevel.CRITICAL),
        (ListClass.BLOCKING, MatchStrength.MODERATE, RiskLevel.HIGH),
        (ListClass.BLOCKING, MatchStrength.WEAK, RiskLevel.MEDIUM),
        (ListClass.ADVISORY, MatchStrength.EXACT, RiskLevel.HIGH),
        (ListClass.ADVISORY, MatchStrength.STRONG, RiskLevel.MEDIUM),
        (ListClass.ADVISORY, MatchStrength.MODERATE, RiskLevel.MEDIUM),
        (ListClass.ADVISORY, MatchStrength.WEAK, RiskLevel.LOW),
    ])
    def test_risk_table(self, classifier, list_class, strength, expected):
        assert classifier.risk_level(list_class, strength) is expected

    def test_blocking_lists_always_block_and_review(self):
        for strength in MatchStrength:
            assert MatchClassifier.requires_blocking(ListClass.BLOCKING, strength) is True
            assert MatchClassifier.requires_review(ListClass.BLOCKING, strength) is True

    def test_advisory_lists_review_from_moderate(self):
        assert MatchClassifier.requires_blocking(ListClass.ADVISORY, MatchStrength.EXACT) is False
        assert MatchClassifier.requires_review(ListClass.ADVISORY, MatchStrength.WEAK) is False
        assert MatchClassifier.requires_review(ListClass.ADVISORY, MatchStrength.MODERATE) is True
        assert MatchClassifier.requires_review(ListClass.ADVISORY, MatchStrength.EXACT) is True


class TestBuildAndAggregate:
    """Tests for match construction and aggregation"""

    def test_build_match(self, classifier):
        candidate = {'id': 'OFAC-1', 'name': 'Viktor Petrov', 'program': 'SDGT', 'aliases': ['V. Petrov']}
        match = classifier.build_match(candidate, SanctionsList.OFAC, 'Viktor Petrov', 0.92)

        assert match.list_entry_id == 'OFAC-1'
        assert match.match_strength is MatchStrength.STRONG
        assert match.similarity_score == pytest.approx(92.0)
        assert match.list_class is ListClass.BLOCKING
        assert match.risk_level is RiskLevel.CRITICAL
        assert match.requires_blocking is True
        assert match.additional_info == {'program': 'SDGT', 'aliases': ['V. Petrov']}

    def test_aggregate_empty(self):
        assert MatchClassifier.aggregate([]) == (False, False, RiskLevel.NONE)

    def test_aggregate_takes_highest_risk_and_any_flag(self, classifier):
        advisory = classifier.build_match({'id': 'I-1', 'name': 'X'}, SanctionsList.INTERPOL, 'X', 0.86)
        blocking = classifier.build_match({'id': 'O-1', 'name': 'X'}, SanctionsList.OFAC, 'X', 0.5)

        assert MatchClassifier.aggregate([advisory]) == (False, True, RiskLevel.MEDIUM)
        assert MatchClassifier.aggregate([advisory, blocking]) == (True, True, RiskLevel.MEDIUM)

        exact = classifier.build_match({'id': 'O-2', 'name': 'X'}, SanctionsList.UN, 'X', 1.0)
        assert MatchClassifier.aggregate([advisory, exact])[2] is RiskLevel.CRITICAL

    def test_match_serializes_stable_fields(self, classifier):
        match = classifier.build_match({'id': 'UN-7', 'name': 'Y'}, SanctionsList.UN, 'Y', 1.0)
        data = match.to_dict()
        assert data['list'] == 'un'
        assert data['match_strength'] == 'exact'
        assert data['risk_level'] == 'CRITICAL'
        assert data['similarity_score'] == 100.0
