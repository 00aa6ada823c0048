# ========================================================
# ================  scoring.py  ==========================
# ========================================================
from __future__ import annotations

import re
from typing import Optional

from manifests import quality_value
from models import source_priority


class CandidateScorer:
    """
    Deterministic relevance score for a candidate.

    Source priority is the dominant term; extension, size, declared quality
    and URL hints add smaller bonuses. No randomness and no external state,
    so identical inputs always rank identically.
    """

    BASE_SCORE = 10

    MP4_RE = re.compile(r"\.mp4(\?|#|$)", re.IGNORECASE)
    M3U8_RE = re.compile(r"\.m3u8(\?|#|$)", re.IGNORECASE)
    EXTENSION_BONUS = ((MP4_RE, 20), (M3U8_RE, 15))

    # (exclusive lower bound in bytes, bonus); first match wins
    SIZE_TIERS = ((50_000_000, 30), (10_000_000, 20), (5_000_000, 10))
    # (inclusive lower bound in lines, bonus); first match wins
    QUALITY_TIERS = ((1080, 15), (720, 10), (480, 5))

    HD_HINT_RE = re.compile(r"1080|1920|hd|high", re.IGNORECASE)
    HD_HINT_BONUS = 5
    MID_HINT_RE = re.compile(r"720")
    MID_HINT_BONUS = 3

    def score(
        self,
        url: str,
        size: Optional[int] = None,
        source: Optional[str] = None,
        quality: Optional[str] = None,
    ) -> int:
        total = self.BASE_SCORE
        lower = (url or "").lower()

        total += source_priority(source)

        for rx, bonus in self.EXTENSION_BONUS:
            if rx.search(lower):
                total += bonus
                break

        if size:
            for threshold, bonus in self.SIZE_TIERS:
                if size > threshold:
                    total += bonus
                    break

        if quality:
            q = quality_value(quality)
            for threshold, bonus in self.QUALITY_TIERS:
                if q >= threshold:
                    total += bonus
                    break

        if self.HD_HINT_RE.search(lower):
            total += self.HD_HINT_BONUS
        if self.MID_HINT_RE.search(lower):
            total += self.MID_HINT_BONUS

        return total


def score_candidate(url: str, size: Optional[int] = None, source: Optional[str] = None,
                    quality: Optional[str] = None) -> int:
    return CandidateScorer().score(url, size, source, quality)
