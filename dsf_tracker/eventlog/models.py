from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from dsf_tracker.ocr.schema import TextLine


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class EventKind:
    name: str
    phrases: Tuple[str, ...]  # [0] is the first-seen (arrival) phrase
    departure_phrases: Tuple[str, ...]
    abbreviation: str
    duration: int  # seconds

    @property
    def first_seen_phrase(self) -> str:
        return self.phrases[0]


@dataclass(frozen=True)
class PhraseEntry:
    kind: str
    phrase: str
    is_first_seen: bool = False


@dataclass(frozen=True)
class MatchResult:
    kind: Optional[str] = None
    phrase: str = ""
    is_first_seen: bool = False
    score: float = 1.0  # distance, lower is better

    @property
    def matched(self) -> bool:
        return self.kind is not None


class Phase(str, Enum):
    START = "start"
    END = "end"
    WORLD_HOP = "world_hop"


@dataclass(frozen=True)
class Classification:
    phase: Phase
    line: TextLine
    observed_at: int  # ms
    kind: Optional[str] = None
    is_first_seen: bool = False
    score: float = 1.0


class Mutation(str, Enum):
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"


class Source(str, Enum):
    LOCAL = "local"
    RELAY = "relay"
    ORACLE = "oracle"


@dataclass(frozen=True)
class EventRecord:
    id: str
    kind: str
    world: str
    mutation: Mutation
    duration: int  # seconds, counted from timestamp
    timestamp: int  # ms
    reported_by: str = ""
    source: Source = Source.LOCAL
    previous: Optional["EventRecord"] = field(default=None, compare=True, repr=False)

    def expires_at(self) -> int:
        return self.timestamp + self.duration * 1000

    def is_active(self, now: int) -> bool:
        return self.timestamp <= now < self.expires_at()

    def remaining(self, now: int) -> float:
        return max(0.0, (self.expires_at() - now) / 1000.0)

    def superseded_by(self, **changes: Any) -> "EventRecord":
        """New EDIT version of this record; carries this version as ``previous``."""
        base = replace(self, previous=None)
        return replace(self, mutation=Mutation.EDIT, previous=base, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "world": self.world,
            "mutation": self.mutation.value,
            "duration": self.duration,
            "timestamp": self.timestamp,
            "reported_by": self.reported_by,
            "source": self.source.value,
            "previous": self.previous.to_dict() if self.previous is not None else None,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "EventRecord":
        """Strict decode; raises KeyError/ValueError/TypeError on malformed input."""
        if not isinstance(d, dict):
            raise TypeError(f"expected object, got {type(d).__name__}")
        prev = d.get("previous")
        ident = d["id"]
        kind = d["kind"]
        if not isinstance(ident, str) or not ident or not isinstance(kind, str):
            raise ValueError("id and kind must be non-empty strings")
        return EventRecord(
            id=ident,
            kind=kind,
            world=str(d["world"]),
            mutation=Mutation(d["mutation"]),
            duration=int(d["duration"]),
            timestamp=int(d["timestamp"]),
            reported_by=str(d.get("reported_by") or ""),
            source=Source(d.get("source") or Source.LOCAL.value),
            previous=EventRecord.from_dict(prev) if prev is not None else None,
        )


@dataclass(frozen=True)
class OracleReading:
    """One authoritative read of a world's event timer (Misty dialog or backend)."""

    world: str
    active: bool
    kind: Optional[str] = None
    elapsed_seconds: int = 0  # active: time since spawn, inactive: time since the last event ended
    source: str = "dialog"
    record: Optional[EventRecord] = None  # the backend's own record when it has one

    def remaining_seconds(self, nominal_duration: int, now: Optional[int] = None) -> int:
        if not self.active:
            return 0
        if self.record is not None:
            now = now_ms() if now is None else now
            return int(self.record.remaining(now))
        return max(0, int(nominal_duration) - int(self.elapsed_seconds))
