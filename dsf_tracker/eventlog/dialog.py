from __future__ import annotations

import logging
from typing import Optional

from dsf_tracker.eventlog.models import OracleReading
from dsf_tracker.eventlog.parser import parse_duration_seconds
from dsf_tracker.eventlog.vocabulary import EventVocabulary
from dsf_tracker.ocr.repair import repair_text
from dsf_tracker.ocr.schema import DialogText

logger = logging.getLogger("dsftracker")

MISTY = "misty"

# Seconds lost between Misty speaking and the text reaching us
OCR_LAG_SECONDS = 2


def is_misty_dialog(dialog: DialogText) -> bool:
    return (dialog.title or "").strip().lower() == MISTY


def parse_misty_dialog(
    dialog: DialogText,
    world: str,
    vocabulary: EventVocabulary,
    *,
    ocr_lag_seconds: int = OCR_LAG_SECONDS,
) -> Optional[OracleReading]:
    """Read Misty's timer dialog.

    Misty names the event when one is running ("The Sea monster has been
    around for 1 minute and 5 seconds") and otherwise only says how long the
    hub has been quiet. Returns None when the dialog is someone else's or no
    time could be read.
    """
    if not is_misty_dialog(dialog):
        return None

    text = repair_text(" ".join(dialog.lines))
    seconds = parse_duration_seconds(text)
    if seconds <= 0:
        logger.error("Unable to parse the time from Misty: %r", text)
        return None

    # Misty says "Sea monster", match names case-insensitively
    kind = vocabulary.find_kind_in_text(text)
    reading = OracleReading(
        world=str(world),
        active=kind is not None,
        kind=kind,
        elapsed_seconds=seconds + int(ocr_lag_seconds),
        source="dialog",
    )
    logger.info(
        "Misty: %s | %s | %s | %s",
        text, "active" if reading.active else "inactive", kind or "-", world,
    )
    return reading
