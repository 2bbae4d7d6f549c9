"""
Unit tests for name normalization and the similarity engine
"""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import MatchingConfig
from name_matching import SimilarityEngine, normalize_name, similarity, tokenize


class TestNormalizeName:
    """Tests for name canonicalization"""

    def test_lowercases_and_strips_punctuation(self):
        assert normalize_name("  O'Brien-Smith, Jr. ") == "obriensmith jr"

    def test_collapses_whitespace(self):
        assert normalize_name("John \t  Smith\n") == "john smith"

    def test_none_and_empty(self):
        assert normalize_name(None) == ""
        assert normalize_name("") == ""
        assert normalize_name("!!! ---") == ""

    def test_keeps_unicode_letters_and_digits(self):
        assert normalize_name("José Núñez 2nd") == "josé núñez 2nd"

    def test_underscore_is_removed(self):
        assert normalize_name("john_smith") == "johnsmith"

    def test_tokenize(self):
        assert tokenize("john smith") == ["john", "smith"]
        assert tokenize("") == []


class TestSimilarityEngine:
    """Tests for the composite similarity score"""

    @pytest.fixture
    def engine(self):
        return SimilarityEngine(MatchingConfig())

    def test_identical_names_score_one(self, engine):
        assert engine.similarity("John Smith", "john   smith!") == 1.0

    def test_empty_side_scores_zero(self, engine):
        assert engine.similarity("", "John Smith") == 0.0
        assert engine.similarity("John Smith", None) == 0.0
        assert engine.similarity("...", "John Smith") == 0.0

    def test_score_is_symmetric(self, engine):
        pairs = [
            ("John Smith", "Jon Smith"),
            ("Viktor Petrov", "Victor Petroff"),
            ("Maria Garcia Lopez", "Maria Garcia"),
            ("Acme Trading LLC", "Acme Trade"),
        ]
        for a, b in pairs:
            assert engine.similarity(a, b) == pytest.approx(engine.similarity(b, a))

    def test_score_is_bounded(self, engine):
        for a, b in [("John Smith", "Jon Smith"), ("A B C", "C B A"), ("Smith", "Smyth")]:
            score = engine.similarity(a, b)
            assert 0.0 <= score <= 1.0

    def test_spelling_variant_meets_default_threshold(self, engine):
        assert engine.similarity("John Smith", "Jon Smith") >= 0.85

    def test_unrelated_names_score_low(self, engine):
        assert engine.similarity("John Smith", "Maria Garcia") < 0.5

    def test_edit_distance_only(self):
        engine = SimilarityEngine(phonetic_boost=0.0, token_boost=0.0)
        assert engine.similarity("John Smith", "Jon Smith") == pytest.approx(0.9)

    def test_edit_distance_score(self):
        assert SimilarityEngine.edit_distance_score("abc", "abd") == pytest.approx(2 / 3)
        assert SimilarityEngine.edit_distance_score("", "") == 0.0

    def test_boosts_never_lower_the_score(self, engine):
        plain = SimilarityEngine(phonetic_boost=0.0, token_boost=0.0)
        for a, b in [("John Smith", "Jon Smith"), ("Smith John", "John Smith")]:
            assert engine.similarity(a, b) >= plain.similarity(a, b)

    def test_disabling_signals_per_call(self, engine):
        full = engine.similarity("Smith John", "John Smith")
        bare = engine.similarity("Smith John", "John Smith", phonetic=False, tokens=False)
        assert bare <= full
        assert bare == pytest.approx(SimilarityEngine.edit_distance_score("Smith John", "John Smith"))


class TestPhoneticMatching:
    """Tests for Soundex / Metaphone agreement"""

    def test_sound_alike_names(self):
        for mode in ("all", "any"):
            engine = SimilarityEngine(phonetic_mode=mode)
            assert engine.phonetic_match("Smith", "Smyth") is True

    def test_different_names(self):
        engine = SimilarityEngine(phonetic_mode="any")
        assert engine.phonetic_match("Smith", "Jones") is False

    def test_degenerate_codes_never_match(self):
        engine = SimilarityEngine(phonetic_mode="any")
        assert engine.phonetic_codes("1234") == ("", "")
        assert engine.phonetic_match("1234", "1234") is False

    def test_invalid_mode_rejected(self):
        with pytest.raises(ValueError):
            SimilarityEngine(phonetic_mode="some")

    def test_mode_read_from_config(self):
        engine = SimilarityEngine(MatchingConfig(phonetic_mode="ANY"))
        assert engine.phonetic_mode == "any"


class TestTokenOverlap:
    """Tests for token overlap"""

    def test_reordered_tokens_fully_overlap(self):
        engine = SimilarityEngine()
        assert engine.token_overlap("John Smith", "Smith John") == pytest.approx(1.0)

    def test_divides_by_larger_token_count(self):
        engine = SimilarityEngine()
        assert engine.token_overlap("John Smith", "John") == pytest.approx(0.5)
        assert engine.token_overlap("John", "John Smith") == pytest.approx(0.5)

    def test_empty_side(self):
        assert SimilarityEngine().token_overlap("", "John") == 0.0


def test_module_level_similarity_uses_config():
    config = MatchingConfig(phonetic_boost=0.0, token_boost=0.0)
    assert similarity("John Smith", "Jon Smith", config) == pytest.approx(0.9)
    assert similarity("John Smith", "John Smith") == 1.0
