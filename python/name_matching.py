"""
Name normalization and similarity scoring

The similarity engine combines three independently testable signals:

- edit distance: classic Levenshtein distance (rapidfuzz), scaled by the
  longer name into a 0..1 score
- phonetic agreement: Soundex and Metaphone codes (jellyfish) of the names'
  letters; a match adds ``phonetic_boost``
- token overlap: share of the shorter name's tokens that have a close token
  on the other side; above ``token_overlap_ratio`` adds ``token_boost``

Boost magnitudes and thresholds are policy values read from the
``matching`` configuration section and can be overridden per engine.
"""

import logging
import re
from typing import List, Optional

import jellyfish
from rapidfuzz.distance import Levenshtein

from config_manager import MatchingConfig

logger = logging.getLogger(__name__)

# Anything that is not a Unicode letter, digit or whitespace
_NON_NAME_CHARS = re.compile(r'[^\w\s]|_', re.UNICODE)
_WHITESPACE = re.compile(r'\s+')


def normalize_name(name: Optional[str]) -> str:
    """Canonical form of a name for comparison.

    Lower-cases, strips every character that is not a letter, digit or
    space, collapses whitespace runs and trims. No transliteration.

    Args:
        name: Raw name (None is treated as empty)

    Returns:
        Normalized name, possibly empty
    """
    if not name:
        return ""
    text = name.lower()
    text = _NON_NAME_CHARS.sub('', text)
    text = _WHITESPACE.sub(' ', text)
    return text.strip()


def tokenize(normalized_name: str) -> List[str]:
    """Whitespace tokens of an already normalized name"""
    return normalized_name.split() if normalized_name else []


def _letters(text: str) -> str:
    return ''.join(ch for ch in text if ch.isalpha())


def _is_degenerate(code: str) -> bool:
    return not code or not code.strip('0')


class SimilarityEngine:
    """Scores the similarity of two names in [0.0, 1.0]

    Args:
        config: Matching policy; defaults to the built-in policy values
        phonetic_boost: Override of ``config.phonetic_boost``
        token_boost: Override of ``config.token_boost``
        token_match_threshold: Override of ``config.token_match_threshold``
        token_overlap_ratio: Override of ``config.token_overlap_ratio``
        phonetic_mode: "all" (Soundex and Metaphone must agree) or "any"
    """

    def __init__(
        self,
        config: Optional[MatchingConfig] = None,
        phonetic_boost: Optional[float] = None,
        token_boost: Optional[float] = None,
        token_match_threshold: Optional[float] = None,
        token_overlap_ratio: Optional[float] = None,
        phonetic_mode: Optional[str] = None,
    ):
        config = config or MatchingConfig()
        self.phonetic_boost = config.phonetic_boost if phonetic_boost is None else phonetic_boost
        self.token_boost = config.token_boost if token_boost is None else token_boost
        self.token_match_threshold = (
            config.token_match_threshold if token_match_threshold is None else token_match_threshold
        )
        self.token_overlap_ratio = (
            config.token_overlap_ratio if token_overlap_ratio is None else token_overlap_ratio
        )
        self.phonetic_mode = (phonetic_mode or config.phonetic_mode).lower()
        if self.phonetic_mode not in ('all', 'any'):
            raise ValueError(f"phonetic_mode must be 'all' or 'any', got {self.phonetic_mode!r}")

    # ============================================
    # INDIVIDUAL SIGNALS
    # ============================================

    @staticmethod
    def edit_distance_score(a: str, b: str) -> float:
        """1 - levenshtein(a, b) / max(len(a), len(b)) on normalized input"""
        a = normalize_name(a)
        b = normalize_name(b)
        longest = max(len(a), len(b))
        if longest == 0:
            return 0.0
        score = 1.0 - (Levenshtein.distance(a, b) / longest)
        return max(0.0, min(1.0, score))

    @staticmethod
    def phonetic_codes(name: str) -> tuple:
        """(soundex, metaphone) of the letters of a normalized name"""
        letters = _letters(normalize_name(name))
        if not letters:
            return ("", "")
        return (jellyfish.soundex(letters), jellyfish.metaphone(letters))

    def phonetic_match(self, a: str, b: str) -> bool:
        """True when the names share non-degenerate phonetic codes"""
        soundex_a, metaphone_a = self.phonetic_codes(a)
        soundex_b, metaphone_b = self.phonetic_codes(b)

        soundex_ok = not _is_degenerate(soundex_a) and soundex_a == soundex_b
        metaphone_ok = not _is_degenerate(metaphone_a) and metaphone_a == metaphone_b

        if self.phonetic_mode == 'any':
            return soundex_ok or metaphone_ok
        return soundex_ok and metaphone_ok

    def token_overlap(self, a: str, b: str, phonetic: bool = True) -> float:
        """Share of tokens with a close counterpart on the other side.

        Tokens of the shorter side are matched against the other side and the
        count is divided by the larger token count. With equal token counts
        both directions are evaluated and the lower share wins, so the
        measure is symmetric. Token pairs are compared with base and phonetic
        scoring only.
        """
        tokens_a = tokenize(normalize_name(a))
        tokens_b = tokenize(normalize_name(b))
        if not tokens_a or not tokens_b:
            return 0.0

        denominator = max(len(tokens_a), len(tokens_b))
        if len(tokens_a) < len(tokens_b):
            return self._matched_tokens(tokens_a, tokens_b, phonetic) / denominator
        if len(tokens_b) < len(tokens_a):
            return self._matched_tokens(tokens_b, tokens_a, phonetic) / denominator
        return min(
            self._matched_tokens(tokens_a, tokens_b, phonetic),
            self._matched_tokens(tokens_b, tokens_a, phonetic)
        ) / denominator

    def _matched_tokens(self, shorter: List[str], other: List[str], phonetic: bool) -> int:
        matched = 0
        for token in shorter:
            if any(self._score(token, candidate, phonetic=phonetic, tokens=False) >= self.token_match_threshold
                   for candidate in other):
                matched += 1
        return matched

    # ============================================
    # COMPOSITE SCORE
    # ============================================

    def similarity(self, a: str, b: str, phonetic: bool = True, tokens: bool = True) -> float:
        """Composite similarity of two names.

        Args:
            a: First name (raw or normalized)
            b: Second name (raw or normalized)
            phonetic: Apply the phonetic boost
            tokens: Apply the token-overlap boost

        Returns:
            Score in [0.0, 1.0]; exactly 1.0 for identical normalized names
            and 0.0 when either side normalizes to empty
        """
        return self._score(normalize_name(a), normalize_name(b), phonetic=phonetic, tokens=tokens)

    def _score(self, a: str, b: str, phonetic: bool, tokens: bool) -> float:
        if not a or not b:
            return 0.0
        if a == b:
            return 1.0

        score = self.edit_distance_score(a, b)

        if phonetic and self.phonetic_boost and self.phonetic_match(a, b):
            score = min(1.0, score + self.phonetic_boost)

        # Token pairs never recurse into the token boost
        if tokens and self.token_boost and ' ' in (a + b):
            if self.token_overlap(a, b, phonetic) >= self.token_overlap_ratio:
                score = min(1.0, score + self.token_boost)

        return max(0.0, min(1.0, score))


def similarity(a: str, b: str, config: Optional[MatchingConfig] = None) -> float:
    """Similarity of two names under the given (or default) matching policy"""
    return SimilarityEngine(config).similarity(a, b)
