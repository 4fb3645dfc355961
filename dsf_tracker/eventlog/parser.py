from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

from dsf_tracker.ocr.schema import TextLine


# Game chat timestamp fragment; OCR occasionally drops the brackets.
_RX_TIMESTAMP = re.compile(r"^\s*\[?(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})\]?\s*$")
_RX_HAS_TIMESTAMP = re.compile(r"\d\d:\d\d:\d\d")

# A line holding only a timestamp plus a stray glyph or two ("[08:15:02] -")
_RX_TIMESTAMP_STUB = re.compile(r"^\[\d{2}:\d{2}:\d{2}\]\s*\S?\W?$")

_WORLD_HOP_PHRASES = (
    "Attempting to switch worlds...",
    "Attempting to change worlds...",
)

# Misty's timer dialog, e.g. "... has been active for 3 minutes and 12 seconds."
_RX_DURATION_PART = re.compile(r"(\d+)[^\w\s]*\s*(hour|minute|second)s?", re.IGNORECASE)

_UNIT_SECONDS = {"hour": 3600, "minute": 60, "second": 1}


def _clamp_int(x: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, x))


def _parse_int(s: Optional[str], default: int = 0) -> int:
    try:
        return int((s or "").strip())
    except ValueError:
        return default


def build_prefix_regex(names: Sequence[str]) -> "re.Pattern[str]":
    """Speaker prefix such as "Misty: " (OCR can read ':' as ';')."""
    alt = "|".join(re.escape(n) for n in names if n)
    if not alt:
        return re.compile(r"$^")
    return re.compile(rf"^(?:{alt})[:;]\s*")


def strip_prefix(text: str, prefix_rx: "re.Pattern[str]") -> Tuple[bool, str]:
    m = prefix_rx.match(text or "")
    if not m:
        return False, text
    return True, text[m.end():]


def is_timestamp_stub(text: str) -> bool:
    return bool(_RX_TIMESTAMP_STUB.match((text or "").strip()))


def is_world_hop(text: str) -> bool:
    return any(p in (text or "") for p in _WORLD_HOP_PHRASES)


def detect_timestamps(lines: Iterable[TextLine]) -> bool:
    """True when the user has in-game chat timestamps switched on for this capture."""
    return any(ln.timestamp and _RX_HAS_TIMESTAMP.search(ln.timestamp) for ln in lines)


def timestamp_to_ms(fragment: Optional[str], now: int) -> Optional[int]:
    """Anchor an ``hh:mm:ss`` fragment to the local calendar day of ``now``.

    A time more than 12 hours ahead of ``now`` is taken to be from the previous
    day, so reads just after midnight still order correctly.
    """
    if not fragment:
        return None
    m = _RX_TIMESTAMP.match(fragment)
    if not m:
        return None

    hh = _clamp_int(_parse_int(m.group("hour")), 0, 23)
    mm = _clamp_int(_parse_int(m.group("minute")), 0, 59)
    ss = _clamp_int(_parse_int(m.group("second")), 0, 59)

    ref = datetime.fromtimestamp(now / 1000.0)
    dt = ref.replace(hour=hh, minute=mm, second=ss, microsecond=0)
    if dt - ref > timedelta(hours=12):
        dt -= timedelta(days=1)
    return int(dt.timestamp() * 1000)


def parse_duration_seconds(text: str) -> int:
    """Sum every "<n> hour(s)/minute(s)/second(s)" part found in ``text``."""
    total = 0
    for m in _RX_DURATION_PART.finditer(text or ""):
        total += _parse_int(m.group(1)) * _UNIT_SECONDS[m.group(2).lower()]
    return total


def last_timestamp(lines: Sequence[TextLine]) -> Optional[str]:
    for ln in reversed(lines):
        if ln.timestamp:
            return ln.timestamp
    return None


def drop_blank(lines: Iterable[TextLine]) -> List[TextLine]:
    return [ln for ln in lines if (ln.text or "").strip()]
