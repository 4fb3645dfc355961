from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import replace
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Set

from dsf_tracker.eventlog.models import EventRecord, Mutation, now_ms

logger = logging.getLogger("dsftracker")

STORE_KEY = "eventHistory"
SNAPSHOT_VERSION = 1


# -----------------------------
# Key-value persistence
# -----------------------------
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes) -> None: ...


class MemoryKeyValueStore:
    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self.data[key] = bytes(value)


class FileKeyValueStore:
    """One file per key under ``root``; writes are atomic (temp file + rename)."""

    def __init__(self, root: str) -> None:
        self._root = root
        os.makedirs(root, exist_ok=True)

    def _path(self, key: str) -> str:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return os.path.join(self._root, f"{safe}.json")

    def get(self, key: str) -> Optional[bytes]:
        try:
            with open(self._path(key), "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def set(self, key: str, value: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=self._root, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(value)
            os.replace(tmp, self._path(key))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


# -----------------------------
# Record views
# -----------------------------
class RecordView:
    """Lazy, restartable sequence over the store; re-evaluated on every iteration."""

    def __init__(self, producer: Callable[[], Iterator[EventRecord]]) -> None:
        self._producer = producer

    def __iter__(self) -> Iterator[EventRecord]:
        return self._producer()

    def __len__(self) -> int:
        return sum(1 for _ in self._producer())

    def __bool__(self) -> bool:
        return next(iter(self), None) is not None


# -----------------------------
# Store
# -----------------------------
class EventRecordStore:
    """Canonical event records for this client, mirrored to a key-value store on every mutation."""

    def __init__(
        self,
        kv: Optional[KeyValueStore] = None,
        *,
        clock: Callable[[], int] = now_ms,
        key: str = STORE_KEY,
    ) -> None:
        self._kv = kv if kv is not None else MemoryKeyValueStore()
        self._clock = clock
        self._key = key

        self._records: Dict[str, EventRecord] = {}
        self._expired: Set[str] = set()
        self._deleted: Dict[str, int] = {}  # id -> deleted at (ms)

    # -----------------
    # Queries
    # -----------------
    def get(self, record_id: str) -> Optional[EventRecord]:
        return self._records.get(record_id)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def find_active(self, world: str, kind: str, now: Optional[int] = None) -> Optional[EventRecord]:
        now = self._clock() if now is None else now
        for r in reversed(list(self._records.values())):
            if r.world == world and r.kind == kind and r.is_active(now):
                return r
        return None

    def all_for_world(self, world: str) -> RecordView:
        return RecordView(lambda: (r for r in list(self._records.values()) if r.world == world))

    def active(self, now: Optional[int] = None) -> RecordView:
        def _gen() -> Iterator[EventRecord]:
            t = self._clock() if now is None else now
            return (r for r in list(self._records.values()) if r.is_active(t))

        return RecordView(_gen)

    def history(self, now: Optional[int] = None) -> RecordView:
        """Expired records first, then active ones, each in insertion order."""

        def _gen() -> Iterator[EventRecord]:
            t = self._clock() if now is None else now
            recs = list(self._records.values())
            expired = [r for r in recs if not r.is_active(t)]
            active = [r for r in recs if r.is_active(t)]
            return iter(expired + active)

        return RecordView(_gen)

    def last_record(self) -> Optional[EventRecord]:
        if not self._records:
            return None
        return max(self._records.values(), key=lambda r: r.timestamp)

    def is_deleted(self, record_id: str) -> bool:
        return record_id in self._deleted

    # -----------------
    # Mutations
    # -----------------
    def upsert(self, record: EventRecord) -> bool:
        """Apply one record version. Returns True when the store changed.

        Idempotent. An edit for an unknown id first replays the embedded
        previous version as a create, then applies the edit.
        """
        if record.mutation is Mutation.DELETE:
            return self.remove(record.id)

        changed = self._apply(record, heal=True)
        if changed:
            self._persist()
        return changed

    def _apply(self, record: EventRecord, *, heal: bool) -> bool:
        if record.id in self._deleted:
            logger.debug("Ignoring %s for deleted event %s", record.mutation.value, record.id)
            return False

        cur = self._records.get(record.id)
        if cur is None:
            if record.mutation is Mutation.EDIT and record.previous is not None and heal:
                prev = record.previous
                logger.info("Edit for unknown event %s arrived first, replaying previous version", record.id)
                replayed = self._apply(replace(prev, mutation=Mutation.CREATE, previous=None), heal=False)
                if not replayed and prev.id not in self._records:
                    logger.info("Previous version of %s was rejected, dropping the edit", record.id)
                    return False
                if prev.id != record.id:
                    # the edit supersedes a record stored under another id
                    self._records.pop(prev.id, None)
                    self._expired.discard(prev.id)
                self._store(record)
                return True
            return self._insert_new(record)

        if record == cur:
            return False
        if record.mutation is Mutation.CREATE:
            # first report wins; a re-delivered or raced create never overwrites
            return False
        if record.timestamp < cur.timestamp:
            logger.debug("Stale edit for %s (%d < %d) ignored", record.id, record.timestamp, cur.timestamp)
            return False
        if record.previous is not None and _strip(record.previous) != _strip(cur):
            logger.debug("Edit for %s was made against another version, applying anyway", record.id)
        self._store(record)
        return True

    def _overlapping(self, record: EventRecord) -> Optional[EventRecord]:
        """Another record of the same (world, kind) whose active window overlaps ``record``'s."""
        for r in self._records.values():
            if r.id == record.id or r.world != record.world or r.kind != record.kind:
                continue
            if r.timestamp < record.expires_at() and record.timestamp < r.expires_at():
                return r
        return None

    def _insert_new(self, record: EventRecord) -> bool:
        clash = self._overlapping(record)
        if clash is not None:
            if clash.timestamp <= record.timestamp:
                logger.info(
                    "Duplicate %s on world %s (%s), keeping first report %s",
                    record.kind, record.world, record.id, clash.id,
                )
                return False
            logger.info("Earlier report %s replaces %s for %s on world %s",
                        record.id, clash.id, record.kind, record.world)
            self._records.pop(clash.id, None)
            self._expired.discard(clash.id)
        self._store(record)
        return True

    def _store(self, record: EventRecord) -> None:
        self._records[record.id] = record
        if record.is_active(self._clock()):
            self._expired.discard(record.id)

    def remove(self, record_id: str) -> bool:
        """Delete from both active and history views. Deleting an absent id is a no-op."""
        existed = self._records.pop(record_id, None) is not None
        self._expired.discard(record_id)
        first_delete = record_id not in self._deleted
        self._deleted[record_id] = self._clock()
        if existed or first_delete:
            self._persist()
        return existed

    def sweep(self, now: Optional[int] = None) -> List[EventRecord]:
        """Records that crossed from active to expired since the previous sweep."""
        now = self._clock() if now is None else now
        out: List[EventRecord] = []
        for r in list(self._records.values()):
            if r.id in self._expired:
                continue
            if not r.is_active(now) and now >= r.timestamp:
                self._expired.add(r.id)
                out.append(r)
        return out

    def prune(self, older_than_ms: int) -> int:
        """Drop expired records and tombstones older than the cutoff."""
        stale = [rid for rid, r in self._records.items() if r.expires_at() < older_than_ms]
        for rid in stale:
            del self._records[rid]
            self._expired.discard(rid)
        old_tombs = [rid for rid, at in self._deleted.items() if at < older_than_ms]
        for rid in old_tombs:
            del self._deleted[rid]
        if stale or old_tombs:
            self._persist()
        return len(stale)

    def clear(self) -> None:
        self._records.clear()
        self._expired.clear()
        self._deleted.clear()
        self._persist()

    # -----------------
    # Persistence
    # -----------------
    def snapshot(self) -> bytes:
        doc = {
            "version": SNAPSHOT_VERSION,
            "records": [r.to_dict() for r in self._records.values()],
            "deleted": self._deleted,
        }
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    def restore(self, data: bytes) -> bool:
        """Replace the store contents from a snapshot. Malformed data leaves the store empty."""
        try:
            doc = json.loads(data.decode("utf-8"))
            if not isinstance(doc, dict) or doc.get("version") != SNAPSHOT_VERSION:
                raise ValueError("unsupported snapshot")
            raw_records = doc["records"]
            raw_deleted = doc.get("deleted") or {}
            if not isinstance(raw_records, list) or not isinstance(raw_deleted, dict):
                raise ValueError("records must be a list and deleted an object")
            records = [EventRecord.from_dict(d) for d in raw_records]
            deleted = {str(k): int(v) for k, v in raw_deleted.items()}
        except Exception as e:
            logger.warning("Discarding malformed event history (%s)", e)
            self._records, self._expired, self._deleted = {}, set(), {}
            self._persist()
            return False

        self._records = {r.id: r for r in records}
        self._deleted = deleted
        now = self._clock()
        self._expired = {r.id for r in records if not r.is_active(now)}
        self._persist()
        return True

    def load(self) -> bool:
        data = self._kv.get(self._key)
        if data is None:
            return False
        return self.restore(data)

    def _persist(self) -> None:
        try:
            self._kv.set(self._key, self.snapshot())
        except OSError:
            logger.exception("Failed to persist event history")


def _strip(r: EventRecord) -> EventRecord:
    # compare versions without their audit back-reference
    return replace(r, previous=None, mutation=Mutation.CREATE)
