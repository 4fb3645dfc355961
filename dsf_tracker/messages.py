from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dsf_tracker.errors import MessageDecodeError, OracleUnavailable
from dsf_tracker.eventlog.models import EventRecord, Mutation, OracleReading, Source, now_ms

logger = logging.getLogger("dsftracker")

# World timers older than this are no longer trusted (2 h 16 min)
STATUS_STALE_SECONDS = 8160

_WIRE_TYPE = {
    Mutation.CREATE: "addEvent",
    Mutation.EDIT: "editEvent",
    Mutation.DELETE: "deleteEvent",
}
_MUTATION = {
    "addEvent": Mutation.CREATE,
    "testing": Mutation.CREATE,
    "editEvent": Mutation.EDIT,
    "deleteEvent": Mutation.DELETE,
}


# -----------------------------
# Wire models
# -----------------------------
class RecordPayload(BaseModel):
    """An event record as relayed between clients and the backend."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    type: Literal["addEvent", "editEvent", "deleteEvent", "testing"]
    event: str
    world: str
    duration: int
    timestamp: int
    reported_by: str = Field(default="", alias="reportedBy")
    old_event: Optional["RecordPayload"] = Field(default=None, alias="oldEvent")
    source: str = "alt1"
    misty_update: bool = Field(default=False, alias="mistyUpdate")

    def to_record(self, source: Source = Source.RELAY) -> EventRecord:
        prev = self.old_event.to_record(source) if self.old_event is not None else None
        return EventRecord(
            id=self.id,
            kind=self.event,
            world=str(self.world),
            mutation=_MUTATION[self.type],
            duration=int(self.duration),
            timestamp=int(self.timestamp),
            reported_by=self.reported_by,
            source=source,
            previous=prev,
        )

    @classmethod
    def from_record(cls, r: EventRecord, *, misty_update: bool = False) -> "RecordPayload":
        return cls(
            id=r.id,
            type=_WIRE_TYPE[r.mutation],
            event=r.kind,
            world=r.world,
            duration=r.duration,
            timestamp=r.timestamp,
            reported_by=r.reported_by,
            old_event=cls.from_record(r.previous) if r.previous is not None else None,
            misty_update=misty_update,
        )

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class WorldEventStatus(BaseModel):
    """One row of the backend's per-world timer table."""

    model_config = ConfigDict(extra="ignore")

    world: int
    status: Literal["Active", "Inactive", "Spawnable", "Unknown"]
    last_update_timestamp: int  # ms
    event: Optional[str] = None
    active_time: Optional[int] = None
    inactive_time: Optional[int] = None
    job_id: Optional[str] = None
    event_record: Optional[str] = None  # JSON encoded RecordPayload

    def effective_status(self, now: int) -> str:
        if (now - self.last_update_timestamp) / 1000.0 >= STATUS_STALE_SECONDS:
            return "Unknown"
        return self.status

    def record(self) -> Optional[EventRecord]:
        if not self.event_record:
            return None
        try:
            return RecordPayload.model_validate_json(self.event_record).to_record(Source.ORACLE)
        except ValidationError as e:
            logger.warning("World %s carries an unreadable event record: %s", self.world, e)
            return None

    def reading(self, now: Optional[int] = None) -> OracleReading:
        """The row as an oracle reading. A stale row raises OracleUnavailable."""
        now = now_ms() if now is None else now
        effective = self.effective_status(now)
        world = str(self.world)
        if effective == "Unknown":
            raise OracleUnavailable(f"timer for world {world} is stale")
        if effective != "Active":
            return OracleReading(world=world, active=False, source="backend",
                                 elapsed_seconds=int(self.inactive_time or 0))
        record = self.record()
        return OracleReading(
            world=world,
            active=True,
            kind=self.event or (record.kind if record else None),
            elapsed_seconds=int(self.active_time or 0),
            source="backend",
            record=record,
        )


# -----------------------------
# Decoded inbound messages
# -----------------------------
@dataclass(frozen=True)
class Create:
    record: EventRecord


@dataclass(frozen=True)
class Edit:
    record: EventRecord


@dataclass(frozen=True)
class Delete:
    record: EventRecord


@dataclass(frozen=True)
class Sync:
    records: Tuple[EventRecord, ...]


@dataclass(frozen=True)
class LogMessage:
    level: str
    message: str
    refresh_requested: bool = False  # backend rejected our token
    data: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class VersionPing:
    version: str


@dataclass(frozen=True)
class WorldStatusUpdate:
    status: WorldEventStatus


RemoteMessage = Union[Create, Edit, Delete, Sync, LogMessage, VersionPing, WorldStatusUpdate]


def _record(obj: Dict[str, Any]) -> EventRecord:
    try:
        return RecordPayload.model_validate(obj).to_record(Source.RELAY)
    except ValidationError as e:
        raise MessageDecodeError(f"invalid event record: {e.error_count()} error(s)") from e


def _record_message(rec: EventRecord) -> RemoteMessage:
    if rec.mutation is Mutation.CREATE:
        return Create(rec)
    if rec.mutation is Mutation.EDIT:
        return Edit(rec)
    return Delete(rec)


def decode_message(raw: Union[str, bytes, Dict[str, Any], List[Any]]) -> RemoteMessage:
    """Decode one relayed payload into a tagged message. Raises MessageDecodeError."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MessageDecodeError(f"not JSON: {e}") from e
    else:
        data = raw

    # A reconnect sync answers with the batch of records we missed
    if isinstance(data, list):
        return Sync(tuple(_record(d) for d in data))
    if not isinstance(data, dict):
        raise MessageDecodeError(f"unexpected payload type {type(data).__name__}")

    kind = data.get("type")
    if "error" in data:
        return LogMessage(
            level="error",
            message=str(data.get("error") or ""),
            refresh_requested=kind == "refresh_token",
        )
    if kind == "SYNC":
        events = data.get("events")
        if not isinstance(events, list):
            raise MessageDecodeError("SYNC without an events list")
        return Sync(tuple(_record(d) for d in events))
    if kind == "clientProfileUpdate":
        fields = data.get("updateFields")
        return LogMessage(level="info", message="profile counters updated",
                          data=fields if isinstance(fields, dict) else {})
    if kind == "log":
        return LogMessage(level=str(data.get("level") or "info"), message=str(data.get("message") or ""))
    if kind in _MUTATION:
        return _record_message(_record(data))
    if kind is not None:
        raise MessageDecodeError(f"unknown message type {kind!r}")
    if "version" in data:
        return VersionPing(str(data["version"]))
    if "world" in data and "status" in data:
        try:
            return WorldStatusUpdate(WorldEventStatus.model_validate(data))
        except ValidationError as e:
            raise MessageDecodeError(f"invalid world status: {e.error_count()} error(s)") from e
    raise MessageDecodeError("payload matches no known message shape")


def sync_request(last: Optional[EventRecord]) -> Dict[str, Any]:
    """Message sent on (re)connect so the relay replays what we missed."""
    return {
        "type": "SYNC",
        "lastEventTimestamp": last.timestamp if last is not None else 0,
        "lastEventId": last.id if last is not None else None,
    }
