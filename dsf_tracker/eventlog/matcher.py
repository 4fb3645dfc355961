from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from rapidfuzz import fuzz
from rapidfuzz.utils import default_process

from dsf_tracker.eventlog.models import MatchResult, PhraseEntry

DEFAULT_THRESHOLD = 0.3
DEFAULT_MIN_MATCH_LENGTH = 10

_NO_MATCH = MatchResult()


def _distance(query: str, phrase: str) -> float:
    """Distance in [0, 1] between two pre-processed strings (0 = identical).

    Takes the better of the whole-string ratio and the best-aligned partial
    ratio, so a line cut short by OCR, or a phrase embedded in a longer line,
    still scores on the overlapping part.
    """
    sim = fuzz.ratio(query, phrase)
    if len(query) != len(phrase):
        sim = max(sim, fuzz.partial_ratio(query, phrase))
    return 1.0 - sim / 100.0


@dataclass(frozen=True)
class PhraseIndex:
    """Pre-processed candidate phrases, searched in their original order."""

    entries: Tuple[PhraseEntry, ...]
    processed: Tuple[str, ...]
    threshold: float
    min_match_length: int

    def search(self, query: str, *, min_match_length: Optional[int] = None) -> MatchResult:
        q = default_process(query or "")
        min_len = self.min_match_length if min_match_length is None else min_match_length
        if len(q) < min_len:
            return _NO_MATCH

        best: Optional[PhraseEntry] = None
        best_score = 1.0
        for entry, p in zip(self.entries, self.processed):
            # the aligned span is at most the shorter of the two strings
            if min(len(q), len(p)) < min_len:
                continue
            score = _distance(q, p)
            # strict "<": on a tie the earlier entry stays
            if best is None or score < best_score:
                best, best_score = entry, score
                if score == 0.0:
                    break

        if best is None or best_score > self.threshold:
            return _NO_MATCH
        return MatchResult(
            kind=best.kind,
            phrase=best.phrase,
            is_first_seen=best.is_first_seen,
            score=round(best_score, 4),
        )


class FuzzyMatcher:
    """Approximate phrase search tolerant to OCR misreads.

    Ties are broken by candidate order: the first entry reaching the best score
    wins, so reordering the vocabulary changes match outcomes.
    """

    def __init__(
        self,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        min_match_length: int = DEFAULT_MIN_MATCH_LENGTH,
    ) -> None:
        self.threshold = float(threshold)
        self.min_match_length = int(min_match_length)

    def index(self, entries: Sequence[PhraseEntry]) -> PhraseIndex:
        ents = tuple(entries)
        return PhraseIndex(
            entries=ents,
            processed=tuple(default_process(e.phrase) for e in ents),
            threshold=self.threshold,
            min_match_length=self.min_match_length,
        )

    def match(
        self,
        candidates: Sequence[PhraseEntry],
        query: str,
        min_match_length: Optional[int] = None,
    ) -> MatchResult:
        return self.index(candidates).search(query, min_match_length=min_match_length)

    def rank(self, candidates: Sequence[PhraseEntry], query: str) -> List[Tuple[PhraseEntry, float]]:
        """All candidates with their distance, best first (stable). For diagnostics."""
        q = default_process(query or "")
        scored = [(e, _distance(q, default_process(e.phrase))) for e in candidates]
        return sorted(scored, key=lambda t: t[1])
