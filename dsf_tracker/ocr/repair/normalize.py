import regex as re
from typing import List, Optional, Tuple

from ..schema import TextLine

# Chat timestamp token as rendered by the game client, e.g. "[08:15:02]"
TS = re.compile(r"^\s*\[(?P<ts>\d{2}:\d{2}:\d{2})\]\s*")

# ---------- OCR noise repair ----------
QUOTE_FIX = (
    (re.compile(r"[“”]"), '"'),
    (re.compile(r"[’‘`]"), "'"),
)
DASH_FIX = (
    (re.compile(r"[—–]+"), "-"),
)
SPACE_FIX = (
    (re.compile(r"\s+"), " "),
    (re.compile(r"\s([!?,.])"), r"\1"),
)
# Chat font renders "..." which OCR sometimes splits into spaced dots
ELLIPSIS_FIX = (
    (re.compile(r"\.\s\.\s\."), "..."),
)


def repair_text(t: str) -> str:
    if not t:
        return t
    out = t
    for rx, rep in QUOTE_FIX:
        out = rx.sub(rep, out)
    for rx, rep in DASH_FIX:
        out = rx.sub(rep, out)
    for rx, rep in ELLIPSIS_FIX:
        out = rx.sub(rep, out)
    for rx, rep in SPACE_FIX:
        out = rx.sub(rep, out)
    return out.strip()


def split_timestamp(text: str) -> Tuple[Optional[str], str]:
    """Return (timestamp or None, text without the leading [hh:mm:ss] token)."""
    m = TS.match(text or "")
    if not m:
        return None, (text or "").strip()
    return m.group("ts"), text[m.end():].strip()


def normalize(lines: List[TextLine]) -> List[TextLine]:
    """Return new list with repaired text per line; blank lines dropped, metadata preserved.

    A timestamp embedded in the text is copied to ``timestamp`` when the capture
    collaborator did not supply one separately.
    """
    out: List[TextLine] = []
    for ln in lines:
        text = repair_text(ln.text or "")
        if not text:
            continue
        ts = ln.timestamp
        if ts is None:
            ts, _ = split_timestamp(text)
        out.append(TextLine(text=text, timestamp=ts, basey=ln.basey, channel=ln.channel))
    return out
