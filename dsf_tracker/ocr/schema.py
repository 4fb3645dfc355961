from dataclasses import dataclass
from typing import Optional, Tuple

CHAT = "chat"
DIALOG = "dialog"


@dataclass(frozen=True)
class TextLine:
    text: str
    timestamp: Optional[str] = None  # "hh:mm:ss" fragment read next to the line, if any
    basey: Optional[int] = None      # baseline y of the line in screen pixels
    channel: str = CHAT              # "chat" | "dialog"


@dataclass(frozen=True)
class DialogText:
    title: str
    lines: Tuple[str, ...]  # one entry per dialog row read
