from __future__ import annotations

import logging
from typing import List, Optional

from dsf_tracker.eventlog.classify import LineClassifier
from dsf_tracker.eventlog.matcher import FuzzyMatcher
from dsf_tracker.eventlog.vocabulary import TESTING, UNKNOWN, EventVocabulary

logger = logging.getLogger("dsftracker")


# Chat that must never start an event
DEFAULT_NEGATIVE_LINES: List[str] = [
    "Attempting to switch worlds...",
    "[08:15:02]",
]


def run_classifier_selftest(classifier: Optional[LineClassifier] = None) -> bool:
    """Classify every arrival broadcast once and log a summary.

    Catches a broken vocabulary or matcher setup at startup. Never raises.
    """
    try:
        if classifier is None:
            classifier = LineClassifier(EventVocabulary(), FuzzyMatcher())
        vocab = classifier.vocabulary

        failed: List[str] = []
        checked = 0
        for name in vocab.kinds():
            if name in (TESTING, UNKNOWN):
                continue
            checked += 1
            res = classifier.match_start(vocab.first_seen_phrase(name))
            if res.kind != name or not res.is_first_seen:
                failed.append(name)

        for line in DEFAULT_NEGATIVE_LINES:
            checked += 1
            if classifier.match_start(line).matched:
                failed.append(line)
    except Exception:
        logger.exception("Classifier self-test crashed")
        return False

    if failed:
        logger.error("Classifier self-test failed for %d of %d lines: %s", len(failed), checked, ", ".join(failed))
        return False
    logger.info("Classifier self-test passed (%d lines).", checked)
    return True
