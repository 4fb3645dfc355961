#!/usr/bin/env python3
"""Replay a saved chat log through the line classifier.

Reads one chat line per row (timestamps such as "[08:15:02]" are optional)
and prints what each line would be classified as. Nothing is reported to
the backend.

Examples:
  python -m dsf_tracker.tools.replay_chat chat.txt
  python -m dsf_tracker.tools.replay_chat chat.txt --threshold 0.25 --rank 3
  cat chat.txt | python -m dsf_tracker.tools.replay_chat -
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, TextIO

from dsf_tracker.eventlog.classify import DEFAULT_SPEAKERS, LineClassifier
from dsf_tracker.eventlog.matcher import DEFAULT_MIN_MATCH_LENGTH, DEFAULT_THRESHOLD, FuzzyMatcher
from dsf_tracker.eventlog.models import now_ms
from dsf_tracker.eventlog.parser import is_world_hop
from dsf_tracker.eventlog.vocabulary import EventVocabulary
from dsf_tracker.ocr.repair import normalize, split_timestamp
from dsf_tracker.ocr.schema import TextLine


def _read_lines(fh: TextIO) -> List[TextLine]:
    return [TextLine(text=row.rstrip("\n")) for row in fh if row.strip()]


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Classify a chat log offline")
    p.add_argument("path", help="Chat log file, or - for stdin")
    p.add_argument("--threshold", type=float, default=DEFAULT_THRESHOLD, help="Max fuzzy distance (0..1)")
    p.add_argument("--min-length", type=int, default=DEFAULT_MIN_MATCH_LENGTH, help="Min matched characters")
    p.add_argument("--speakers", default=",".join(DEFAULT_SPEAKERS), help="Comma-separated speaker prefixes")
    p.add_argument("--debug", action="store_true", help="Allow the Testing event kind")
    p.add_argument("--rank", type=int, default=0, help="Also print the N closest phrases for unmatched lines")
    p.add_argument("-v", "--verbose", action="store_true")
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format="%(levelname)s %(message)s")

    if not 0.0 <= args.threshold <= 1.0:
        print("Invalid --threshold; must be between 0 and 1", file=sys.stderr)
        return 2

    vocab = EventVocabulary()
    matcher = FuzzyMatcher(threshold=args.threshold, min_match_length=args.min_length)
    speakers = [s.strip() for s in args.speakers.split(",") if s.strip()]
    classifier = LineClassifier(vocab, matcher, speaker_prefixes=speakers, allow_debug_kind=args.debug)

    if args.path == "-":
        lines = _read_lines(sys.stdin)
    else:
        try:
            with open(args.path, "r", encoding="utf-8") as fh:
                lines = _read_lines(fh)
        except OSError as e:
            print(f"Cannot read {args.path}: {e}", file=sys.stderr)
            return 2

    # one line at a time: a saved log has no screen positions and old timestamps
    now = now_ms()
    hits = 0
    for ln in normalize(lines):
        if is_world_hop(ln.text):
            print(f"HOP    {ln.text}")
            continue
        c = classifier.classify_line(ln, observed_at=now)
        if c is not None:
            hits += 1
            first = " first-seen" if c.is_first_seen else ""
            print(f"{c.phase.value.upper():<6} {c.kind} ({c.score:.3f}{first})  {ln.text}")
            continue
        print(f"-      {ln.text}")
        if args.rank > 0:
            _, body = split_timestamp(ln.text)
            for entry, dist in matcher.rank(vocab.lifecycle_entries(), body)[: args.rank]:
                print(f"         {dist:.3f} {entry.kind}: {entry.phrase}")

    print(f"\n{hits} classified of {len(lines)} lines", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
