"""
Unit tests for the sanctions screener

Uses the in-memory list repository so no database is required.
"""

import re
import pytest
from unittest.mock import MagicMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from audit_logger import AuditLogger
from config_manager import ConfigManager
from contracts import InMemoryListRepository, ListRepository
from screener import SanctionsScreener, generate_screening_id, validate_party
from screening_models import (
    ArgumentOutOfRangeError, InvalidPartyError, MatchStrength, Party, PartyType,
    RiskLevel, SanctionsList, ScreeningFrequency, ScreeningOptions
)


OFAC_ENTRIES = [
    {'id': 'OFAC-1', 'name': 'Viktor Petrov', 'aliases': ['Victor Petroff'], 'program': 'UKRAINE-EO13660'},
    {'id': 'OFAC-2', 'name': 'Global Shipping Holdings', 'entity_type': 'organization'},
]
UN_ENTRIES = [
    {'id': 'UN-1', 'name': 'Viktor Petrov'},
]
INTERPOL_ENTRIES = [
    {'id': 'INT-1', 'name': 'Maria Garcia'},
]


@pytest.fixture
def config(tmp_path):
    return ConfigManager(config_path=str(tmp_path / "missing.yaml"))


@pytest.fixture
def audit():
    return AuditLogger(log_dir=None)


@pytest.fixture
def repository():
    return InMemoryListRepository(entries={
        'ofac': OFAC_ENTRIES,
        'un': UN_ENTRIES,
        'interpol': INTERPOL_ENTRIES,
    })


@pytest.fixture
def screener(repository, config, audit):
    return SanctionsScreener(repository, config=config, audit_logger=audit)


class FailingListRepository(InMemoryListRepository):
    """Raises for one list, serves the others"""

    def __init__(self, failing, **kwargs):
        super().__init__(**kwargs)
        self.failing = SanctionsList(failing)

    def find_by_name(self, normalized_name, sanctions_list, threshold):
        if sanctions_list is self.failing:
            raise ConnectionError("list backend timed out")
        return super().find_by_name(normalized_name, sanctions_list, threshold)


class TestPartyValidation:
    """Tests for party validation"""

    def test_valid_party(self):
        assert validate_party(Party(id='P1', name='John Smith')) is PartyType.INDIVIDUAL
        assert validate_party(Party(id='P2', name='Acme', party_type='organization')) is PartyType.ORGANIZATION

    def test_all_errors_reported_together(self):
        with pytest.raises(InvalidPartyError) as exc_info:
            validate_party(Party(id='', name='  ', party_type='robot'))
        assert exc_info.value.fields == ['id', 'name', 'type']

    def test_short_name(self):
        with pytest.raises(InvalidPartyError) as exc_info:
            validate_party(Party(id='P1', name='Al'))
        assert exc_info.value.fields == ['name']
        assert exc_info.value.party_id == 'P1'

    def test_invalid_party_never_reaches_repository(self, config, audit):
        repository = MagicMock(spec=ListRepository)
        screener = SanctionsScreener(repository, config=config, audit_logger=audit)

        with pytest.raises(InvalidPartyError):
            screener.screen(Party(id='P1', name=''))

        repository.find_by_name.assert_not_called()
        repository.is_list_available.assert_not_called()


class TestScreening:
    """Tests for single-party screening"""

    def test_exact_match_on_blocking_list(self, screener):
        result = screener.screen(Party(id='P1', name='Viktor Petrov'), ['ofac'])

        assert result.has_matches is True
        assert len(result.matches) == 1
        match = result.matches[0]
        assert match.list_entry_id == 'OFAC-1'
        assert match.list is SanctionsList.OFAC
        assert match.match_strength is MatchStrength.EXACT
        assert match.additional_info['program'] == 'UKRAINE-EO13660'
        assert result.requires_blocking is True
        assert result.requires_review is True
        assert result.overall_risk_level is RiskLevel.CRITICAL

    def test_no_match(self, screener):
        result = screener.screen(Party(id='P2', name='Jonathan Whitfield'), ['ofac', 'un'])

        assert result.has_matches is False
        assert result.matches == ()
        assert result.requires_blocking is False
        assert result.requires_review is False
        assert result.overall_risk_level is RiskLevel.NONE
        assert result.metadata['lists_screened'] == ['ofac', 'un']

    def test_candidate_alias_reported_as_matched_name(self, screener):
        result = screener.screen(Party(id='P1', name='Victor Petroff'), ['ofac'])

        assert [m.list_entry_id for m in result.matches] == ['OFAC-1']
        assert result.matches[0].matched_name == 'Victor Petroff'
        assert result.matches[0].match_strength is MatchStrength.EXACT

    def test_party_aliases_screened(self, screener):
        party = Party(id='P3', name='Jonathan Whitfield', aliases=('Viktor Petrov',))

        assert screener.screen(party, ['ofac']).has_matches is True
        without_aliases = screener.screen(party, ['ofac'], {'include_aliases': False})
        assert without_aliases.has_matches is False

    def test_matches_deduplicated_per_entry_and_list(self, screener):
        party = Party(id='P1', name='Viktor Petrov', aliases=('Victor Petroff',))
        result = screener.screen(party, ['ofac', 'un'])

        keys = [(m.list_entry_id, m.list) for m in result.matches]
        assert sorted(keys) == [('OFAC-1', SanctionsList.OFAC), ('UN-1', SanctionsList.UN)]

    def test_advisory_list_match_requires_review_only(self, screener):
        result = screener.screen(Party(id='P4', name='Maria Garcia'), ['interpol'])

        assert result.has_matches is True
        assert result.requires_blocking is False
        assert result.requires_review is True
        assert result.overall_risk_level is RiskLevel.HIGH

    def test_unavailable_list_is_skipped(self, config, audit):
        repository = InMemoryListRepository(
            entries={'ofac': OFAC_ENTRIES, 'un': UN_ENTRIES},
            unavailable=['un']
        )
        screener = SanctionsScreener(repository, config=config, audit_logger=audit)

        result = screener.screen(Party(id='P1', name='Viktor Petrov'), ['ofac', 'un'])

        assert [m.list for m in result.matches] == [SanctionsList.OFAC]
        assert result.metadata['lists_unavailable'] == ['un']
        assert result.metadata['lists_screened'] == ['ofac']

    def test_failing_list_is_isolated(self, config, audit):
        repository = FailingListRepository('un', entries={'ofac': OFAC_ENTRIES, 'un': UN_ENTRIES})
        screener = SanctionsScreener(repository, config=config, audit_logger=audit)

        result = screener.screen(Party(id='P1', name='Viktor Petrov'), ['ofac', 'un'])

        assert [m.list_entry_id for m in result.matches] == ['OFAC-1']
        assert result.metadata['lists_failed'] == ['un']

    def test_default_lists_used_when_none_given(self, screener, config):
        result = screener.screen(Party(id='P1', name='Viktor Petrov'))
        assert result.metadata['lists_requested'] == config.lists.default_lists

    def test_unknown_list_rejected(self, screener):
        with pytest.raises(ValueError):
            screener.screen(Party(id='P1', name='Viktor Petrov'), ['atlantis'])

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_threshold_out_of_range(self, screener, threshold):
        with pytest.raises(ArgumentOutOfRangeError) as exc_info:
            screener.screen(Party(id='P1', name='Viktor Petrov'), ['ofac'], {'similarity_threshold': threshold})
        assert exc_info.value.argument == 'similarity_threshold'

    def test_options_object_accepted(self, screener):
        options = ScreeningOptions(similarity_threshold=0.95)
        result = screener.screen(Party(id='P1', name='Viktor Petrov'), ['ofac'], options)
        assert result.metadata['threshold'] == 0.95
        assert options.similarity_threshold == 0.95

    def test_screening_is_repeatable(self, screener):
        party = Party(id='P1', name='Viktor Petrov')
        first = screener.screen(party, ['ofac', 'un'])
        second = screener.screen(party, ['ofac', 'un'])

        assert first.screening_id != second.screening_id
        assert [(m.list_entry_id, m.similarity_score) for m in first.matches] == \
            [(m.list_entry_id, m.similarity_score) for m in second.matches]

    def test_candidates_without_id_are_ignored(self, config, audit):
        repository = InMemoryListRepository(entries={'ofac': [{'name': 'Viktor Petrov'}, {'id': 'X'}]})
        screener = SanctionsScreener(repository, config=config, audit_logger=audit)
        assert screener.screen(Party(id='P1', name='Viktor Petrov'), ['ofac']).has_matches is False

    def test_result_serialization(self, screener):
        data = screener.screen(Party(id='P1', name='Viktor Petrov'), ['ofac']).to_dict()

        assert re.match(r'^SCR-[0-9A-F]{16}$', data['screening_id'])
        assert data['party_type'] == 'INDIVIDUAL'
        assert data['match_count'] == 1
        assert data['overall_risk_level'] == 'CRITICAL'
        assert data['pep_profiles'] == []


class TestScreenName:
    """Tests for single-name lookups"""

    def test_returns_matches(self, screener):
        matches = screener.screen_name('Viktor Petrov', 'un')
        assert [m.list_entry_id for m in matches] == ['UN-1']

    def test_short_name_rejected(self, screener):
        with pytest.raises(InvalidPartyError):
            screener.screen_name('Al', 'ofac')

    def test_unavailable_list_returns_empty(self, config, audit):
        repository = InMemoryListRepository(entries={'ofac': OFAC_ENTRIES}, unavailable=['ofac'])
        screener = SanctionsScreener(repository, config=config, audit_logger=audit)
        assert screener.screen_name('Viktor Petrov', 'ofac') == []


class TestBatchScreening:
    """Tests for screen_multiple"""

    def test_failures_are_isolated(self, screener):
        parties = [
            Party(id='P1', name='Viktor Petrov'),
            Party(id='P2', name=''),
            Party(id='P3', name='Jonathan Whitfield'),
        ]
        results = screener.screen_multiple(parties, ['ofac'])

        assert set(results) == {'P1', 'P3'}
        assert results['P1'].has_matches is True
        assert results['P3'].has_matches is False

    def test_concurrent_batch(self, repository, config, audit):
        config.performance.concurrent_screening = True
        config.performance.max_threads = 2
        screener = SanctionsScreener(repository, config=config, audit_logger=audit)

        parties = [Party(id=f'P{i}', name='Viktor Petrov') for i in range(5)]
        results = screener.screen_multiple(parties, ['ofac'])
        assert len(results) == 5
        assert all(r.has_matches for r in results.values())


class TestHelpers:
    """Tests for helper functions"""

    def test_screening_id_format(self):
        assert re.match(r'^SCR-[0-9A-F]{16}$', generate_screening_id())

    def test_calculate_similarity(self, screener):
        assert screener.calculate_similarity('Viktor Petrov', 'viktor petrov') == 1.0

    @pytest.mark.parametrize("rating,expected", [
        ('HIGH', ScreeningFrequency.DAILY),
        ('critical', ScreeningFrequency.DAILY),
        ('MEDIUM', ScreeningFrequency.WEEKLY),
        ('LOW', ScreeningFrequency.MONTHLY),
        (None, ScreeningFrequency.QUARTERLY),
    ])
    def test_recommended_frequency(self, rating, expected):
        party = Party(id='P1', name='Viktor Petrov', risk_rating=rating)
        assert SanctionsScreener.get_recommended_frequency(party) is expected
