"""
Unit tests for the PEP screener
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from audit_logger import AuditLogger
from config_manager import ConfigManager
from contracts import InMemoryListRepository, ListRepository
from pep_screener import PepScreener, months_between, parse_date
from screening_models import (
    InvalidPartyError, Party, PepLevel, PepProfile, PepScreeningOptions,
    ScreeningFrequency
)


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

MINISTER = {
    'id': 'PEP-1',
    'name': 'Carlos Mendez',
    'position': 'Minister of Finance',
    'country': 'AR',
    'start_date': '2019-12-10',
    'end_date': '2024-12-01',
}
GOVERNOR = {
    'id': 'PEP-9',
    'name': 'Helena Brandt',
    'aliases': ['Helene Brandt'],
    'position': 'Governor of the Central Bank',
    'country': 'DE',
    'source': 'national-register',
}
RELATED = {
    'PEP-1': [
        {'id': 'PEP-2', 'name': 'Ana Mendez', 'relationship': 'spouse'},
        {'id': 'PEP-3', 'name': 'Luis Ortega', 'relationship': 'business partner', 'position': 'Deputy Director'},
    ],
}


@pytest.fixture
def config(tmp_path):
    return ConfigManager(config_path=str(tmp_path / "missing.yaml"))


@pytest.fixture
def audit():
    return AuditLogger(log_dir=None)


@pytest.fixture
def repository():
    return InMemoryListRepository(peps=[MINISTER, GOVERNOR], relationships=RELATED)


@pytest.fixture
def pep_screener(repository, config, audit):
    return PepScreener(repository, config=config, audit_logger=audit, clock=lambda: NOW)


def profile(pep_id, level):
    return PepProfile(pep_id=pep_id, name=f"Person {pep_id}", level=level)


class TestDates:
    """Tests for tenure date helpers"""

    def test_parse_date(self):
        assert parse_date('2024-12-01') == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert parse_date('2024-12-01T00:00:00Z') == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert parse_date(None) is None
        assert parse_date('not a date') is None

    def test_months_between(self):
        assert months_between(datetime(2024, 12, 1, tzinfo=timezone.utc), NOW) == 18
        assert months_between(datetime(2025, 6, 2, tzinfo=timezone.utc), NOW) == 11


class TestLevelInference:
    """Tests for position keyword and tenure rules"""

    @pytest.mark.parametrize("position,expected", [
        ('President of the Republic', PepLevel.HIGH),
        ('Minister of Finance', PepLevel.HIGH),
        ('Deputy Director of Customs', PepLevel.MEDIUM),
        ('Ambassador to Spain', PepLevel.MEDIUM),
        ('Clerk', PepLevel.LOW),
        ('Ministerial adviser', PepLevel.LOW),
        (None, PepLevel.LOW),
    ])
    def test_position_keywords(self, pep_screener, position, expected):
        assert pep_screener.infer_level(position, None) is expected

    def test_former_pep_downgraded(self, pep_screener):
        ended = datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert pep_screener.infer_level('Minister of Finance', ended) is PepLevel.LOW

    def test_recently_ended_role_keeps_level(self, pep_screener):
        ended = datetime(2025, 12, 1, tzinfo=timezone.utc)
        assert pep_screener.infer_level('Minister of Finance', ended) is PepLevel.HIGH

    def test_explicit_level_wins(self, pep_screener):
        record = dict(GOVERNOR, level='MEDIUM')
        assert pep_screener.build_profile(record).level is PepLevel.MEDIUM

    def test_build_profile(self, pep_screener):
        built = pep_screener.build_profile(MINISTER)

        assert built.pep_id == 'PEP-1'
        assert built.level is PepLevel.LOW
        assert built.end_date == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert built.is_former(NOW) is True
        assert built.identified_at == NOW

    def test_build_profile_defaults_and_passthrough(self, pep_screener):
        built = pep_screener.build_profile({'id': 'X', 'name': 'Some Name', 'source': 'registry'})
        assert built.position == 'Unknown'
        assert built.country == 'Unknown'
        assert built.additional_info == {'source': 'registry'}

    def test_build_profile_requires_id_and_name(self, pep_screener):
        with pytest.raises(ValueError):
            pep_screener.build_profile({'id': 'X'})


class TestPepScreening:
    """Tests for screen_for_pep"""

    def test_matched_profile_with_network(self, pep_screener):
        profiles = pep_screener.screen_for_pep(Party(id='C1', name='Carlos Mendez'))

        assert [p.pep_id for p in profiles] == ['PEP-1', 'PEP-2', 'PEP-3']
        assert profiles[0].additional_info['similarity_score'] == 100.0
        assert profiles[1].additional_info['connection'] == 'family'
        assert profiles[1].additional_info['related_to'] == 'PEP-1'
        assert profiles[2].additional_info['connection'] == 'associate'
        assert profiles[2].level is PepLevel.MEDIUM

    def test_family_switch(self, pep_screener):
        profiles = pep_screener.screen_for_pep(Party(id='C1', name='Carlos Mendez'), {'include_family': False})
        assert [p.pep_id for p in profiles] == ['PEP-1', 'PEP-3']

    def test_associate_switch(self, pep_screener):
        options = PepScreeningOptions(include_associates=False)
        profiles = pep_screener.screen_for_pep(Party(id='C1', name='Carlos Mendez'), options)
        assert [p.pep_id for p in profiles] == ['PEP-1', 'PEP-2']

    def test_former_excluded_on_request(self, pep_screener):
        profiles = pep_screener.screen_for_pep(Party(id='C1', name='Carlos Mendez'), {'include_former': False})
        assert profiles == []

    def test_min_risk_level_filter(self, pep_screener):
        profiles = pep_screener.screen_for_pep(Party(id='C1', name='Carlos Mendez'), {'min_risk_level': 'MEDIUM'})
        assert profiles == []

    def test_alias_match(self, pep_screener):
        profiles = pep_screener.screen_for_pep(Party(id='C2', name='Helene Brandt'))
        assert [p.pep_id for p in profiles] == ['PEP-9']
        assert profiles[0].level is PepLevel.HIGH
        assert profiles[0].additional_info['source'] == 'national-register'

    def test_no_match(self, pep_screener):
        assert pep_screener.screen_for_pep(Party(id='C3', name='Jonathan Whitfield')) == []

    def test_invalid_party_never_reaches_repository(self, config, audit):
        repository = MagicMock(spec=ListRepository)
        screener = PepScreener(repository, config=config, audit_logger=audit, clock=lambda: NOW)

        with pytest.raises(InvalidPartyError):
            screener.screen_for_pep(Party(id='', name='Carlos Mendez'))
        repository.find_pep_by_name.assert_not_called()

    def test_related_lookup_failure_keeps_direct_match(self, config, audit):
        repository = InMemoryListRepository(peps=[MINISTER])
        repository.get_related_persons = MagicMock(side_effect=ConnectionError("down"))
        screener = PepScreener(repository, config=config, audit_logger=audit, clock=lambda: NOW)

        profiles = screener.screen_for_pep(Party(id='C1', name='Carlos Mendez'))
        assert [p.pep_id for p in profiles] == ['PEP-1']

    def test_check_related_persons_excludes_matched(self, pep_screener):
        related = pep_screener.check_related_persons(Party(id='C1', name='Carlos Mendez'))
        assert [p.pep_id for p in related] == ['PEP-2', 'PEP-3']

    def test_check_related_persons_without_match(self, pep_screener):
        assert pep_screener.check_related_persons(Party(id='C3', name='Jonathan Whitfield')) == []

    def test_screen_multiple_isolates_failures(self, pep_screener):
        parties = [Party(id='C1', name='Carlos Mendez'), Party(id='C2', name='')]
        results = pep_screener.screen_multiple(parties)
        assert list(results) == ['C1']


class TestPepRisk:
    """Tests for risk assessment and EDD"""

    def test_no_profiles(self, pep_screener):
        party = Party(id='C1', name='Carlos Mendez')
        assert pep_screener.assess_risk_level(party, []) is PepLevel.NONE
        assert pep_screener.requires_edd(party, []) is False

    def test_highest_level_wins(self, pep_screener):
        party = Party(id='C1', name='Carlos Mendez')
        profiles = [profile('A', PepLevel.LOW), profile('B', PepLevel.HIGH)]
        assert pep_screener.assess_risk_level(party, profiles) is PepLevel.HIGH

    def test_multiple_connections_escalate(self, pep_screener):
        party = Party(id='C1', name='Carlos Mendez')
        three = [profile(i, PepLevel.MEDIUM) for i in ('A', 'B', 'C')]
        two = three[:2]

        assert pep_screener.assess_risk_level(party, three) is PepLevel.HIGH
        assert pep_screener.assess_risk_level(party, two) is PepLevel.MEDIUM
        assert pep_screener.requires_edd(party, three) is True
        assert pep_screener.requires_edd(party, two) is False

    def test_duplicate_ids_count_once(self, pep_screener):
        party = Party(id='C1', name='Carlos Mendez')
        profiles = [profile('A', PepLevel.MEDIUM), profile('A', PepLevel.MEDIUM), profile('B', PepLevel.MEDIUM)]
        assert pep_screener.assess_risk_level(party, profiles) is PepLevel.MEDIUM

    def test_high_stays_high(self, pep_screener):
        party = Party(id='C1', name='Carlos Mendez')
        profiles = [profile(i, PepLevel.HIGH) for i in ('A', 'B', 'C')]
        assert pep_screener.assess_risk_level(party, profiles) is PepLevel.HIGH

    @pytest.mark.parametrize("level,expected", [
        (PepLevel.HIGH, ScreeningFrequency.MONTHLY),
        (PepLevel.MEDIUM, ScreeningFrequency.QUARTERLY),
        (PepLevel.LOW, ScreeningFrequency.ANNUAL),
        ('LOW', ScreeningFrequency.ANNUAL),
    ])
    def test_monitoring_frequency(self, level, expected):
        assert PepScreener.get_monitoring_frequency(level) is expected
