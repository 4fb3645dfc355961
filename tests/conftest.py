import os
import sys
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dsf_tracker.errors import OracleUnavailable, WorldUnknownToOracle
from dsf_tracker.eventlog.classify import LineClassifier
from dsf_tracker.eventlog.matcher import FuzzyMatcher
from dsf_tracker.eventlog.models import EventRecord, OracleReading
from dsf_tracker.eventlog.vocabulary import EventVocabulary
from dsf_tracker.messages import WorldEventStatus
from dsf_tracker.reconcile import ReconciliationEngine, SubmitOutcome, SubmitStatus
from dsf_tracker.store import EventRecordStore, MemoryKeyValueStore
from dsf_tracker.world import WorldSessionTracker


def local_ms(hour: int, minute: int, second: int) -> int:
    """Wall-clock ms for a local time of day, same convention as chat timestamps."""
    return int(datetime(2026, 10, 19, hour, minute, second).timestamp() * 1000)


T0 = local_ms(8, 15, 3)


class Clock:
    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeBackend:
    """Shared serializer: first create per (kind, world) wins until it expires."""

    def __init__(self) -> None:
        self.accepted: Dict[Tuple[str, str], EventRecord] = {}
        self.world_status: Dict[str, OracleReading] = {}
        self.current_events: List[WorldEventStatus] = []
        self.down = False


class FakeTransport:
    def __init__(self, backend: Optional[FakeBackend] = None, *, perceived_first: bool = False) -> None:
        self.backend = backend or FakeBackend()
        self.perceived_first = perceived_first
        self.expired_responses = 0  # next N calls answer AUTH_EXPIRED
        self.refresh_ok = True
        self.refreshes = 0

        self.creates: List[EventRecord] = []
        self.edits: List[EventRecord] = []
        self.deletes: List[EventRecord] = []
        self.attributions: List[Tuple[str, bool]] = []
        self.registered: List[EventRecord] = []
        self.timers: List[Tuple[str, bool, int]] = []

    def _gate(self) -> Optional[SubmitOutcome]:
        if self.backend.down:
            return SubmitOutcome(SubmitStatus.ERROR, detail="backend unreachable")
        if self.expired_responses > 0:
            self.expired_responses -= 1
            return SubmitOutcome(SubmitStatus.AUTH_EXPIRED, detail="Token has expired")
        return None

    async def submit_create(self, record, *, is_first_event):
        self.creates.append(record)
        gate = self._gate()
        if gate is not None:
            return gate
        key = (record.kind, record.world)
        held = self.backend.accepted.get(key)
        if held is not None and held.is_active(record.timestamp):
            return SubmitOutcome(SubmitStatus.CONFLICT, is_first_event=self.perceived_first)
        self.backend.accepted[key] = record
        return SubmitOutcome(SubmitStatus.OK)

    async def submit_edit(self, record):
        self.edits.append(record)
        return self._gate() or SubmitOutcome(SubmitStatus.OK)

    async def submit_delete(self, record):
        self.deletes.append(record)
        return self._gate() or SubmitOutcome(SubmitStatus.OK)

    async def record_attribution(self, kind, first):
        gate = self._gate()
        if gate is not None:
            return gate
        self.attributions.append((kind, first))
        return SubmitOutcome(SubmitStatus.OK)

    async def fetch_world_status(self, world):
        if self.backend.down:
            raise OracleUnavailable("down")
        reading = self.backend.world_status.get(world)
        if reading is None:
            raise WorldUnknownToOracle(world)
        return reading

    async def fetch_current_events(self):
        if self.backend.down:
            raise OracleUnavailable("down")
        return list(self.backend.current_events)

    async def register_world_event(self, record):
        self.registered.append(record)
        return True

    async def report_world_timer(self, world, active, seconds):
        self.timers.append((world, active, seconds))
        return True

    async def refresh_token(self):
        self.refreshes += 1
        return self.refresh_ok


def make_classifier(**kwargs) -> LineClassifier:
    return LineClassifier(EventVocabulary(), FuzzyMatcher(), **kwargs)


def make_engine(
    transport: Optional[FakeTransport] = None,
    *,
    world: Optional[str] = "50",
    clock: Optional[Clock] = None,
    **kwargs,
) -> ReconciliationEngine:
    clock = clock or Clock()
    store = EventRecordStore(MemoryKeyValueStore(), clock=clock)
    session = WorldSessionTracker(initial_world=world)
    return ReconciliationEngine(
        store,
        session,
        EventVocabulary(),
        transport or FakeTransport(),
        reporter="Angler",
        **kwargs,
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def classifier():
    return make_classifier()
