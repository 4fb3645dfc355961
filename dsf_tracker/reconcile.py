from __future__ import annotations

import functools
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from dsf_tracker.errors import OracleUnavailable, WorldUnknownToOracle
from dsf_tracker.eventlog.models import (
    Classification,
    EventRecord,
    Mutation,
    OracleReading,
    Phase,
    Source,
    now_ms,
)
from dsf_tracker.eventlog.vocabulary import UNKNOWN, UNKNOWN_DURATION, EventVocabulary
from dsf_tracker.messages import (
    Create,
    Delete,
    Edit,
    LogMessage,
    RemoteMessage,
    Sync,
    VersionPing,
    WorldEventStatus,
    WorldStatusUpdate,
)
from dsf_tracker.store import EventRecordStore
from dsf_tracker.world import WorldSessionTracker

logger = logging.getLogger("dsftracker")


# -----------------------------
# Transport contract
# -----------------------------
class SubmitStatus(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"
    AUTH_EXPIRED = "auth_expired"
    ERROR = "error"


@dataclass(frozen=True)
class SubmitOutcome:
    status: SubmitStatus
    is_first_event: bool = False  # only meaningful with CONFLICT
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is SubmitStatus.OK


class EventTransport(Protocol):
    async def submit_create(self, record: EventRecord, *, is_first_event: bool) -> SubmitOutcome: ...

    async def submit_edit(self, record: EventRecord) -> SubmitOutcome: ...

    async def submit_delete(self, record: EventRecord) -> SubmitOutcome: ...

    async def record_attribution(self, kind: str, first: bool) -> SubmitOutcome: ...

    async def fetch_world_status(self, world: str) -> OracleReading: ...

    async def register_world_event(self, record: EventRecord) -> bool: ...

    async def report_world_timer(self, world: str, active: bool, seconds: int) -> bool: ...

    async def fetch_current_events(self) -> List[WorldEventStatus]: ...

    async def refresh_token(self) -> bool: ...


Submit = Callable[..., Awaitable[SubmitOutcome]]


def with_token_refresh(
    submit: Submit,
    refresh: Callable[[], Awaitable[bool]],
    *,
    on_expired: Optional[Callable[[str], None]] = None,
) -> Submit:
    """Retry ``submit`` at most once after a token refresh.

    A second AUTH_EXPIRED (or a failed refresh) is handed to ``on_expired``
    and returned to the caller as-is.
    """

    @functools.wraps(submit)
    async def wrapper(*args: Any, **kwargs: Any) -> SubmitOutcome:
        outcome = await submit(*args, **kwargs)
        if outcome.status is not SubmitStatus.AUTH_EXPIRED:
            return outcome

        logger.warning("Token expired, requesting a new one")
        if await refresh():
            outcome = await submit(*args, **kwargs)
            if outcome.status is not SubmitStatus.AUTH_EXPIRED:
                return outcome

        msg = "Session expired, please log in again"
        logger.error("%s (%s)", msg, getattr(submit, "__name__", "submit"))
        if on_expired is not None:
            on_expired(msg)
        return outcome

    return wrapper


# -----------------------------
# Engine
# -----------------------------
class AttributionPolicy(str, Enum):
    PERCEPTION = "perception"  # count on accept and on a conflict we perceived first
    ACCEPTANCE = "acceptance"  # count on accept only


@dataclass(frozen=True)
class StoreChange:
    action: str  # added | updated | removed | expired
    record: EventRecord


ChangeListener = Callable[[StoreChange], None]


def _log_level(name: str) -> int:
    level = logging.getLevelName((name or "").upper())
    return level if isinstance(level, int) else logging.INFO


class ReconciliationEngine:
    """Turns classifications, relayed messages and oracle reads into store mutations."""

    def __init__(
        self,
        store: EventRecordStore,
        world: WorldSessionTracker,
        vocabulary: EventVocabulary,
        transport: EventTransport,
        *,
        reporter: str = "",
        attribution_policy: AttributionPolicy = AttributionPolicy.PERCEPTION,
        unknown_duration: int = 120,
        oracle_drift_seconds: int = 5,
        app_version: str = "",
        on_notice: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self.world = world
        self.vocabulary = vocabulary
        self.transport = transport
        self.reporter = reporter
        self.attribution_policy = AttributionPolicy(attribution_policy)
        self.unknown_duration = int(unknown_duration)
        self.oracle_drift_seconds = int(oracle_drift_seconds)
        self.app_version = app_version
        self._on_notice = on_notice

        self.world_statuses: Dict[int, WorldEventStatus] = {}
        self._listeners: List[ChangeListener] = []

        self._submit_create = with_token_refresh(transport.submit_create, transport.refresh_token, on_expired=self._notice)
        self._submit_edit = with_token_refresh(transport.submit_edit, transport.refresh_token, on_expired=self._notice)
        self._submit_delete = with_token_refresh(transport.submit_delete, transport.refresh_token, on_expired=self._notice)
        self._attribute = with_token_refresh(transport.record_attribution, transport.refresh_token, on_expired=self._notice)

    # -----------------
    # Listeners
    # -----------------
    def on_change(self, cb: ChangeListener) -> None:
        self._listeners.append(cb)

    def _emit(self, action: str, record: EventRecord) -> None:
        change = StoreChange(action, record)
        for cb in self._listeners:
            try:
                cb(change)
            except Exception:
                logger.exception("Change listener failed")

    def _notice(self, msg: str) -> None:
        if self._on_notice is not None:
            self._on_notice(msg)

    def _upsert(self, record: EventRecord) -> bool:
        existed = record.id in self.store
        if not self.store.upsert(record):
            return False
        stored = self.store.get(record.id) or record
        self._emit("updated" if existed else "added", stored)
        return True

    def _remove(self, record: EventRecord) -> bool:
        if not self.store.remove(record.id):
            return False
        self._emit("removed", record)
        return True

    def nominal_duration(self, kind: str) -> int:
        d = self.vocabulary.duration(kind)
        if kind == UNKNOWN or d == UNKNOWN_DURATION:
            return self.unknown_duration
        return d

    # -----------------
    # Local observations
    # -----------------
    async def handle_classification(self, c: Classification, now: Optional[int] = None) -> Optional[EventRecord]:
        now = now_ms() if now is None else now
        if c.phase is Phase.WORLD_HOP:
            self.world.mark_hop(now)
            return None

        world = self.world.current_world(now)
        if world is None:
            logger.debug("No world known (or hop settling), dropping %s %s", c.phase.value, c.kind)
            return None
        if c.kind is None:
            return None

        if c.phase is Phase.START:
            return await self.report_start(c.kind, world, is_first_event=c.is_first_seen, now=now)
        return await self.report_end(c.kind, world, now=now)

    async def report_start(
        self,
        kind: str,
        world: str,
        *,
        is_first_event: bool,
        now: Optional[int] = None,
        duration: Optional[int] = None,
        source: Source = Source.LOCAL,
    ) -> Optional[EventRecord]:
        now = now_ms() if now is None else now
        existing = self.store.find_active(world, kind, now)
        if existing is not None:
            logger.debug("%s on world %s already tracked as %s", kind, world, existing.id)
            return None

        record = EventRecord(
            id=str(uuid.uuid4()),
            kind=kind,
            world=world,
            mutation=Mutation.CREATE,
            duration=self.nominal_duration(kind) if duration is None else int(duration),
            timestamp=now,
            reported_by=self.reporter,
            source=source,
        )

        outcome = await self._submit_create(record, is_first_event=is_first_event)
        if outcome.status is SubmitStatus.OK:
            self._upsert(record)
            await self._record_attribution(kind, is_first_event)
            logger.info("%s on world %s reported (%ds)", kind, world, record.duration)
            return record

        if outcome.status is SubmitStatus.CONFLICT:
            logger.info("Duplicate event - ignoring %s on %s", kind, world)
            if outcome.is_first_event and self.attribution_policy is AttributionPolicy.PERCEPTION:
                await self._record_attribution(kind, True)
            return None

        # Backend unreachable: keep tracking locally, the relay will reconcile ids later
        logger.warning("Could not submit %s on world %s (%s), keeping local record", kind, world, outcome.detail)
        self._upsert(record)
        return record

    async def _record_attribution(self, kind: str, first: bool) -> None:
        outcome = await self._attribute(kind, first)
        if not outcome.ok:
            logger.warning("Event count for %s not recorded: %s", kind, outcome.detail or outcome.status.value)

    async def report_end(self, kind: str, world: str, *, now: Optional[int] = None) -> Optional[EventRecord]:
        now = now_ms() if now is None else now
        current = self.store.find_active(world, kind, now)
        if current is None:
            logger.debug("%s ended on world %s but nothing is tracked", kind, world)
            return None
        return await self._edit(current, duration=0, timestamp=now)

    async def _edit(self, current: EventRecord, **changes: Any) -> EventRecord:
        edited = current.superseded_by(**changes)
        self._upsert(edited)
        outcome = await self._submit_edit(edited)
        if not outcome.ok:
            logger.warning("Edit of %s not delivered: %s", current.id, outcome.detail or outcome.status.value)
        return edited

    # -----------------
    # User operations
    # -----------------
    async def edit_event(
        self,
        record_id: str,
        *,
        duration: Optional[int] = None,
        world: Optional[str] = None,
        reported_by: Optional[str] = None,
        kind: Optional[str] = None,
        now: Optional[int] = None,
    ) -> Optional[EventRecord]:
        current = self.store.get(record_id)
        if current is None:
            return None

        changes: Dict[str, Any] = {}
        if duration is not None:
            # duration counts from the edit
            changes["duration"] = max(0, int(duration))
            changes["timestamp"] = now_ms() if now is None else now
        if world is not None:
            changes["world"] = str(world)
        if reported_by is not None:
            changes["reported_by"] = reported_by
        if kind is not None:
            name = self.vocabulary.canonical_name(kind)
            if name is None:
                raise ValueError(f"unknown event kind: {kind!r}")
            changes["kind"] = name
        if not changes:
            return current
        return await self._edit(current, **changes)

    async def delete_event(self, record_id: str) -> bool:
        current = self.store.get(record_id)
        if current is None:
            self.store.remove(record_id)
            return False
        self._remove(current)
        deleted = current.superseded_by(mutation=Mutation.DELETE)
        outcome = await self._submit_delete(deleted)
        if not outcome.ok:
            logger.warning("Delete of %s not delivered: %s", record_id, outcome.detail or outcome.status.value)
        return True

    # -----------------
    # Expiry
    # -----------------
    def sweep(self, now: Optional[int] = None) -> List[EventRecord]:
        expired = self.store.sweep(now)
        for r in expired:
            logger.info("%s on world %s expired", r.kind, r.world)
            self._emit("expired", r)
        return expired

    def has_active(self, now: Optional[int] = None) -> bool:
        return bool(self.store.active(now))

    # -----------------
    # Relayed messages
    # -----------------
    async def handle_remote(self, message: RemoteMessage) -> None:
        if isinstance(message, (Create, Edit)):
            self._upsert(message.record)
        elif isinstance(message, Delete):
            self._remove(message.record)
        elif isinstance(message, Sync):
            logger.info("Sync replayed %d record(s)", len(message.records))
            for r in message.records:
                if r.mutation is Mutation.DELETE:
                    self.store.remove(r.id)
                else:
                    self._upsert(r)
        elif isinstance(message, LogMessage):
            logger.log(_log_level(message.level), "Relay: %s", message.message)
            if message.refresh_requested and not await self.transport.refresh_token():
                self._notice("Session expired, please log in again")
        elif isinstance(message, VersionPing):
            if self.app_version and message.version != self.app_version:
                logger.warning("Running %s but relay reports %s", self.app_version, message.version)
                self._notice(f"A new version ({message.version}) is available")
        elif isinstance(message, WorldStatusUpdate):
            await self.apply_world_statuses([message.status])
        else:
            raise TypeError(f"unhandled message {type(message).__name__}")

    async def apply_world_statuses(self, statuses: List[WorldEventStatus], now: Optional[int] = None) -> None:
        """Keep the backend timers per world; the one for the current world is applied."""
        now = now_ms() if now is None else now
        for s in statuses:
            self.world_statuses[s.world] = s
            if str(s.world) == self.world.current and not self.world.is_quiet(now):
                await self._apply_status(s, now)

    async def _apply_status(self, status: WorldEventStatus, now: int) -> None:
        try:
            reading = status.reading(now)
        except OracleUnavailable as e:
            logger.debug("Ignoring world status: %s", e)
            return
        newest = max((r.timestamp for r in self.store.active(now) if r.world == reading.world), default=0)
        if status.last_update_timestamp < newest:
            logger.debug("Status for world %s predates the local events, ignored", reading.world)
            return
        await self.apply_oracle_reading(reading, now)

    async def refresh_world_statuses(self, now: Optional[int] = None) -> int:
        try:
            statuses = await self.transport.fetch_current_events()
        except OracleUnavailable as e:
            logger.info("World status table unavailable: %s", e)
            return 0
        await self.apply_world_statuses(statuses, now)
        return len(statuses)

    # -----------------
    # Oracle
    # -----------------
    async def reconcile_world(self, world: str, now: Optional[int] = None) -> None:
        now = now_ms() if now is None else now
        try:
            reading = await self.transport.fetch_world_status(world)
        except WorldUnknownToOracle:
            for r in [r for r in self.store.active(now) if r.world == world]:
                logger.info("World %s unknown to oracle, registering %s", world, r.kind)
                await self.transport.register_world_event(r)
            return
        except OracleUnavailable as e:
            logger.info("Oracle unreachable, skipping reconciliation for world %s: %s", world, e)
            return
        await self.apply_oracle_reading(reading, now)

    async def apply_dialog_reading(self, reading: OracleReading, now: Optional[int] = None) -> None:
        """Misty has spoken: correct local state, then pass the timer on to the backend."""
        now = now_ms() if now is None else now
        await self.apply_oracle_reading(reading, now)
        if reading.active:
            seconds = reading.remaining_seconds(self.nominal_duration(reading.kind or UNKNOWN), now)
        else:
            seconds = reading.elapsed_seconds
        if not await self.transport.report_world_timer(reading.world, reading.active, seconds):
            logger.warning("Misty time for world %s not sent", reading.world)

    async def apply_oracle_reading(self, reading: OracleReading, now: Optional[int] = None) -> None:
        now = now_ms() if now is None else now
        world = reading.world
        local_active = [r for r in self.store.active(now) if r.world == world]

        if not reading.active:
            for r in local_active:
                logger.info("Oracle says world %s is quiet, ending %s", world, r.kind)
                await self._edit(r, duration=0, timestamp=now)
            return

        kind = reading.kind or UNKNOWN
        remaining = reading.remaining_seconds(self.nominal_duration(kind), now)
        if remaining <= 0:
            return

        local = self.store.find_active(world, kind, now)
        if local is None:
            logger.info("Event added from oracle on world %s: %s (%ds left)", world, kind, remaining)
            await self.report_start(kind, world, is_first_event=False, now=now, duration=remaining, source=Source.ORACLE)
            return

        drift = abs(local.remaining(now) - remaining)
        if drift > self.oracle_drift_seconds:
            logger.info("Correcting %s on world %s by %.0fs", kind, world, drift)
            await self._edit(local, duration=remaining, timestamp=now, source=Source.ORACLE)
