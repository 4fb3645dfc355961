from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from dsf_tracker.eventlog.matcher import FuzzyMatcher
from dsf_tracker.eventlog.models import Classification, MatchResult, Phase, now_ms
from dsf_tracker.eventlog.parser import (
    build_prefix_regex,
    detect_timestamps,
    drop_blank,
    is_timestamp_stub,
    is_world_hop,
    last_timestamp,
    strip_prefix,
    timestamp_to_ms,
)
from dsf_tracker.eventlog.vocabulary import TESTING, UNKNOWN, EventVocabulary
from dsf_tracker.ocr.repair import normalize, split_timestamp
from dsf_tracker.ocr.schema import TextLine

logger = logging.getLogger("dsftracker")

DEFAULT_SPEAKERS = ("Misty", "Fisherman", "Guys", "5Ftx")

# A fresh client accepts lines up to this far in the past
FRESH_LOOKBACK_MS = 3_000
# After a world hop nothing stamped before last-line + this is trusted
HOP_HOLDOFF_MS = 5_000

_BARE_ARRIVAL = "has appeared at the hub!"

ClassifiedCallback = Callable[[Classification], None]


class LineClassifier:
    """Turns batches of captured chat lines into start / end / world-hop classifications.

    State carried between batches: whether timestamps are on, the running
    maximum baseline, the last accepted line and the last accepted timestamp.
    """

    def __init__(
        self,
        vocabulary: EventVocabulary,
        matcher: FuzzyMatcher,
        *,
        speaker_prefixes: Sequence[str] = DEFAULT_SPEAKERS,
        position_tolerance_px: int = 100,
        allow_debug_kind: bool = False,
    ) -> None:
        self.vocabulary = vocabulary
        self.matcher = matcher
        self.position_tolerance_px = int(position_tolerance_px)
        self.allow_debug_kind = bool(allow_debug_kind)

        self._prefix_rx = build_prefix_regex(speaker_prefixes)
        self._lifecycle = matcher.index(vocabulary.lifecycle_entries())
        self._first_seen = matcher.index(vocabulary.first_seen_entries())
        self._departure = matcher.index(vocabulary.departure_entries())

        self.has_timestamps = False
        self.max_basey = 0
        self.last_message = ""
        self.last_timestamp: Optional[int] = None

        self._listeners: List[ClassifiedCallback] = []

    def on_classified(self, cb: ClassifiedCallback) -> None:
        self._listeners.append(cb)

    def _emit(self, c: Classification) -> None:
        for cb in self._listeners:
            try:
                cb(c)
            except Exception:
                logger.exception("on_classified listener failed")

    # -----------------
    # Single-line matching (no state)
    # -----------------

    def match_end(self, text: str) -> MatchResult:
        _, body = split_timestamp(text)
        return self._departure.search(body)

    def is_likely_event_start(self, text: str) -> bool:
        return self._first_seen.search(text).matched

    def match_start(self, text: str) -> MatchResult:
        _, body = split_timestamp(text)
        had_prefix, body = strip_prefix(body, self._prefix_rx)

        # Without a known speaker only the gold arrival broadcast can start an event
        if not had_prefix and not self.is_likely_event_start(body):
            return MatchResult()

        res = self._lifecycle.search(body)
        if not res.matched:
            return res

        if body.strip() == _BARE_ARRIVAL and res.kind and res.kind.lower() not in body.lower():
            # the kind name itself was cut off, only the generic tail survived
            return MatchResult(kind=UNKNOWN, phrase=_BARE_ARRIVAL, is_first_seen=True, score=res.score)
        return res

    def classify_line(self, line: TextLine, observed_at: int) -> Optional[Classification]:
        end = self.match_end(line.text)
        if end.matched:
            if not self._kind_allowed(end.kind, line):
                return None
            return Classification(
                phase=Phase.END, line=line, observed_at=observed_at, kind=end.kind, score=end.score
            )

        start = self.match_start(line.text)
        if not start.matched:
            return None
        if not self._kind_allowed(start.kind, line):
            return None
        return Classification(
            phase=Phase.START,
            line=line,
            observed_at=observed_at,
            kind=start.kind,
            is_first_seen=start.is_first_seen,
            score=start.score,
        )

    def _kind_allowed(self, kind: Optional[str], line: TextLine) -> bool:
        if kind == TESTING and not self.allow_debug_kind:
            logger.error("Event is %s outside debug mode, dropping line %r", TESTING, line.text)
            return False
        return True

    # -----------------
    # Batch processing (stateful)
    # -----------------

    def classify_batch(self, lines: Sequence[TextLine], now: Optional[int] = None) -> List[Classification]:
        now = now_ms() if now is None else int(now)
        batch = normalize(drop_blank(lines))
        if not batch:
            return []

        if any(is_world_hop(ln.text) for ln in batch):
            hop_line = next(ln for ln in batch if is_world_hop(ln.text))
            last_ts = timestamp_to_ms(last_timestamp(batch), now)
            self.last_timestamp = (last_ts if last_ts is not None else now) + HOP_HOLDOFF_MS
            c = Classification(phase=Phase.WORLD_HOP, line=hop_line, observed_at=now)
            self._emit(c)
            return [c]

        # A line far above the newest one is a stale partial read of scrolled-past text
        if self.has_timestamps:
            floor = self.max_basey - self.position_tolerance_px
            batch = [ln for ln in batch if ln.basey is None or ln.basey > floor]

        # Re-checked every batch, the user can toggle timestamps at any time
        self.has_timestamps = detect_timestamps(batch)

        if self.last_timestamp is None:
            self.last_timestamp = now - FRESH_LOOKBACK_MS

        kept: List[TextLine] = []
        for ln in batch:
            ts = timestamp_to_ms(ln.timestamp, now)
            # lines without a timestamp fragment are kept; they may be wrapped continuations
            if ts is not None and ts < self.last_timestamp:
                continue
            if is_timestamp_stub(ln.text):
                continue
            kept.append(ln)

        out: List[Classification] = []
        for ln in kept:
            if ln.basey is not None and ln.basey > self.max_basey:
                self.max_basey = ln.basey
            if ln.text == self.last_message:
                continue
            self.last_message = ln.text

            ts = timestamp_to_ms(ln.timestamp, now) if self.has_timestamps else None
            self.last_timestamp = ts if ts is not None else now

            c = self.classify_line(ln, observed_at=self.last_timestamp)
            if c is None:
                continue
            logger.debug("Classified %s %s (score=%.3f): %r", c.phase.value, c.kind, c.score, ln.text)
            out.append(c)
            self._emit(c)
        return out

    def reset(self) -> None:
        self.has_timestamps = False
        self.max_basey = 0
        self.last_message = ""
        self.last_timestamp = None
