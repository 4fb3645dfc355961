from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from dsf_tracker.errors import UnknownEventKind
from dsf_tracker.eventlog.models import EventKind, PhraseEntry

logger = logging.getLogger("dsftracker")

ONE_MINUTE = 60

TESTING = "Testing"
UNKNOWN = "Unknown"
UNKNOWN_DURATION = 0  # reserved; callers substitute a configured fallback

# Order matters: fuzzy-match ties go to the kind (and phrase) listed first.
# The gold broadcast that announces an arrival is always the first phrase.
EVENT_KINDS: Tuple[EventKind, ...] = (
    EventKind(
        name="Travelling merchant",
        phrases=(
            "The travelling merchant has arrived at the hub!",
            "I wonder what they've got for sale today?",
            "I've seen them sell some really sweet items before.",
            "They don't come around these parts too often, so make sure you check them out!",
        ),
        departure_phrases=("Sold out already? Guess I'll be packing up my wares.",),
        abbreviation="TM",
        duration=ONE_MINUTE * 10,
    ),
    EventKind(
        name="Jellyfish",
        phrases=(
            "A giant jellyfish has appeared!",
            "Jellyfish invasion inbound, get ready!",
            "Another wave of jellyfish just hopped onto the deck, get rid of them!",
            "Get them off the deck!",
            "Come on, let's kick those jellyfish back into the water!",
            "Give 'em a big kick",
            "That's one giant jellyfish!",
            "They're messing up the deck, get rid of 'em!",
        ),
        departure_phrases=("Phew, the deck is clear of those slimy things.",),
        abbreviation="Jelly",
        duration=ONE_MINUTE * 2,
    ),
    EventKind(
        name="Arkaneo",
        phrases=(
            "The sailfish, Arkaneo, has appeared!",
            "I've heard stories of an angler named Tavia who managed to take a chunk out of him once.",
            "Look at how fast he is!",
            "It's Arkaneo!",
            "I've never seen something move so fast in my life!",
            "No one has ever been able to catch this one.",
        ),
        departure_phrases=("And just like that, he's gone again.",),
        abbreviation="Ark",
        duration=39,
    ),
    EventKind(
        name="Sea Monster",
        phrases=(
            "A sea monster has appeared!",
            "Ahh! The sea monster is back, get some rotten food from those barrels!",
            "Oh no, it's hungry! Start throwing any raw food you've got at it",
            "Come on, throw him some fish!",
            "Give him some fish!",
            "He looks pretty hungry!",
            "That one has some really sharp teeth!",
            "That's one nasty looking sea monster!",
            "The poor thing needs some food!",
            "Throw him some fish!",
        ),
        departure_phrases=("Looks like it's full, off it goes back to the deep.",),
        abbreviation="SM",
        duration=ONE_MINUTE * 2,
    ),
    EventKind(
        name="Treasure Turtle",
        phrases=(
            "A treasure turtle has appeared at the hub!",
            "Check him out, don't miss your chance!",
            "I bet that chest is full of treasure.",
            "Lovely, lovely treasure...",
            "That's one pretty turtle!",
            "These treasure turtles are awfully rare I'll have you know.",
        ),
        departure_phrases=("Aww, the turtle is heading back out to sea.",),
        abbreviation="Turtle",
        duration=ONE_MINUTE * 5,
    ),
    EventKind(
        name="Whale",
        phrases=(
            "A whale has appeared at the hub!",
            "Captain, there be whales here!",
            "Don't fall in. You wouldn't want to get swallowed by that one!",
            "His mouth is full of fish, cast your lines!",
            "That's one giant whale!",
            # Fisherman
            "Get him to spit me out!",
            "Ughhhhh! HELP!",
            "Ugh! Give me a hand, he's swallowed me whole!",
            "AHHHHHHHHHH! It's REALLY wet in here!",
        ),
        departure_phrases=("There goes the whale, back to the open ocean.",),
        abbreviation="Whale",
        duration=ONE_MINUTE * 2,
    ),
    EventKind(
        name="Whirlpool",
        phrases=(
            "A whirlpool has appeared at the hub!",
            "Don't fall in. You don't want to get sucked in by that!",
            "If you throw coins in and the whirlpool glows, that's when you know we're in for a treat!",
            "Sometimes we're rewarded for being generous, when throwing coins into the water.",
            "That's one big whirlpool!",
            "I nearly fell in before, that was scary...",
        ),
        departure_phrases=("The water is settling down again.",),
        abbreviation="Pool",
        duration=ONE_MINUTE * 5,
    ),
    EventKind(
        name=TESTING,
        phrases=(
            "Testing @@@@@ 123456789 abcdefghijklmnopqrstuvwxyz 123",
            "1",
            "Test",
        ),
        departure_phrases=("Testing over @@@@@ 987654321 zyxwvutsrqponmlkjihgfedcba 321",),
        abbreviation="Test",
        duration=30,
    ),
    EventKind(
        name=UNKNOWN,
        phrases=("has appeared at the hub!",),
        departure_phrases=(),
        abbreviation="?",
        duration=UNKNOWN_DURATION,
    ),
)

# Kinds that never take part in fuzzy matching or dialog lookups
_UNMATCHED = {UNKNOWN}


class EventVocabulary:
    """Read-only registry of event kinds and their phrases."""

    def __init__(self, kinds: Iterable[EventKind] = EVENT_KINDS, *, strict: bool = False) -> None:
        self._kinds: Dict[str, EventKind] = {}
        for k in kinds:
            if not k.phrases:
                raise ValueError(f"event kind {k.name!r} has no lifecycle phrases")
            if k.duration <= 0 and k.name != UNKNOWN:
                raise ValueError(f"event kind {k.name!r} must have a positive duration")
            self._kinds[k.name] = k
        self._strict = strict
        self._by_lower = {n.lower(): n for n in self._kinds}
        self._by_abbrev = {k.abbreviation.lower(): k.name for k in self._kinds.values()}

    def _lookup(self, name: str) -> Optional[EventKind]:
        k = self._kinds.get(name)
        if k is None:
            if self._strict:
                raise UnknownEventKind(f"unknown event kind: {name!r}")
            logger.warning("Unknown event kind requested: %r", name)
        return k

    # -----------------
    # Per-kind access
    # -----------------

    def kinds(self) -> List[str]:
        return list(self._kinds)

    def get(self, name: str) -> Optional[EventKind]:
        return self._lookup(name)

    def phrases(self, name: str) -> Tuple[str, ...]:
        k = self._lookup(name)
        return k.phrases if k else ()

    def departure_phrases(self, name: str) -> Tuple[str, ...]:
        k = self._lookup(name)
        return k.departure_phrases if k else ()

    def first_seen_phrase(self, name: str) -> str:
        k = self._lookup(name)
        return k.first_seen_phrase if k else ""

    def duration(self, name: str) -> int:
        k = self._lookup(name)
        return k.duration if k else 0

    def abbreviation(self, name: str) -> str:
        k = self._lookup(name)
        return k.abbreviation if k else ""

    def canonical_name(self, text: str) -> Optional[str]:
        """Resolve a case-insensitive kind name or abbreviation (e.g. user edits)."""
        key = (text or "").strip().lower()
        return self._by_lower.get(key) or self._by_abbrev.get(key)

    # -----------------
    # Flat candidate lists for the matcher
    # -----------------

    def lifecycle_entries(self) -> List[PhraseEntry]:
        return [
            PhraseEntry(kind=k.name, phrase=p, is_first_seen=(i == 0))
            for k in self._kinds.values()
            if k.name not in _UNMATCHED
            for i, p in enumerate(k.phrases)
        ]

    def first_seen_entries(self) -> List[PhraseEntry]:
        return [
            PhraseEntry(kind=k.name, phrase=k.first_seen_phrase, is_first_seen=True)
            for k in self._kinds.values()
            if k.name not in _UNMATCHED
        ]

    def departure_entries(self) -> List[PhraseEntry]:
        return [
            PhraseEntry(kind=k.name, phrase=p)
            for k in self._kinds.values()
            if k.name not in _UNMATCHED
            for p in k.departure_phrases
        ]

    def find_kind_in_text(self, text: str) -> Optional[str]:
        """First real kind whose name appears in ``text`` (Misty names the active event)."""
        low = (text or "").lower()
        for name in self._kinds:
            if name in (TESTING, UNKNOWN):
                continue
            if name.lower() in low:
                return name
        return None
