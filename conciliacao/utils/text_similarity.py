"""
Reference text similarity between sales and settlements.
"""

import re
import unicodedata
from functools import lru_cache

from rapidfuzz import fuzz

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

SCORE_CACHE_SIZE = 4096


@lru_cache(maxsize=SCORE_CACHE_SIZE)
def _token_set_score(left: str, right: str) -> float:
    """Token-set ratio of two normalised texts, ``left <= right``."""
    return fuzz.token_set_ratio(left, right) / 100.0


class TextSimilarityEngine:
    """
    Scores how alike two reference strings are (NSU, authorization codes,
    bank line descriptions), in the range 0.0 - 1.0.

    Uses rapidfuzz token-set ratio on accent-stripped, lower-cased text, so
    "NSU 004512 VISA" and "CRED VISA NSU4512" still score high. Scores are
    memoised in a bounded LRU cache shared by all engines, since the matcher
    compares the same pairs repeatedly while ranking.
    """

    @staticmethod
    def normalize(text: str) -> str:
        """Lower-case, strip accents and collapse punctuation to spaces."""
        if not text:
            return ""
        decomposed = unicodedata.normalize("NFKD", text)
        ascii_text = decomposed.encode("ascii", "ignore").decode("ascii")
        return _NON_ALNUM.sub(" ", ascii_text.lower()).strip()

    def similarity(self, text1: str, text2: str) -> float:
        """Similarity of two texts; 0.0 when either side is empty."""
        left = self.normalize(text1)
        right = self.normalize(text2)
        if not left or not right:
            return 0.0

        if left > right:
            left, right = right, left
        return _token_set_score(left, right)

    @staticmethod
    def cache_info():
        """Hit/miss counters and current size of the score cache."""
        return _token_set_score.cache_info()
