import json

from conftest import T0, Clock

from dsf_tracker.eventlog.models import EventRecord, Mutation, Source
from dsf_tracker.store import EventRecordStore, FileKeyValueStore, MemoryKeyValueStore


def _create(id_="e1", kind="Whale", world="50", duration=120, ts=T0, **kw):
    return EventRecord(id=id_, kind=kind, world=world, mutation=Mutation.CREATE, duration=duration, timestamp=ts, **kw)


def _store(clock=None, kv=None):
    return EventRecordStore(kv if kv is not None else MemoryKeyValueStore(), clock=clock or Clock())


def test_upsert_is_idempotent():
    store = _store()
    rec = _create()

    assert store.upsert(rec)
    assert not store.upsert(rec)
    assert len(store) == 1
    assert store.find_active("50", "Whale") == rec


def test_edit_replaces_same_id():
    store = _store()
    rec = _create()
    store.upsert(rec)

    edited = rec.superseded_by(duration=60, timestamp=T0 + 1_000)
    assert store.upsert(edited)
    assert store.get("e1").duration == 60
    assert store.get("e1").previous == rec


def test_stale_edit_is_ignored():
    store = _store()
    rec = _create()
    store.upsert(rec)
    store.upsert(rec.superseded_by(duration=60, timestamp=T0 + 5_000))

    assert not store.upsert(rec.superseded_by(duration=90, timestamp=T0 + 1_000))
    assert store.get("e1").duration == 60


def test_edit_before_create_matches_create_before_edit():
    rec = _create()
    edit = rec.superseded_by(duration=30, timestamp=T0 + 2_000)

    in_order = _store()
    in_order.upsert(rec)
    in_order.upsert(edit)

    reordered = _store()
    reordered.upsert(edit)
    reordered.upsert(rec)

    assert list(in_order.history()) == list(reordered.history())
    assert reordered.get("e1") == edit


def test_second_create_for_active_world_kind_keeps_earliest():
    store = _store()
    first = _create("a", ts=T0)
    later = _create("b", ts=T0 + 500)
    earlier = _create("c", ts=T0 - 500)

    store.upsert(first)
    assert not store.upsert(later)
    assert store.upsert(earlier)
    assert [r.id for r in store.active()] == ["c"]


def test_heal_edit_for_a_duplicate_is_dropped():
    store = _store()
    store.upsert(_create("mine", ts=T0 - 5_000))

    theirs = _create("theirs", ts=T0 - 2_000).superseded_by(reported_by="Other")
    assert not store.upsert(theirs)
    assert [r.id for r in store.active() if r.world == "50" and r.kind == "Whale"] == ["mine"]
    assert store.get("theirs") is None


def test_heal_edit_for_an_earlier_report_replaces_the_later_one():
    store = _store()
    store.upsert(_create("mine", ts=T0 - 2_000))

    theirs = _create("theirs", ts=T0 - 5_000).superseded_by(duration=90)
    assert store.upsert(theirs)
    assert [r.id for r in store.active()] == ["theirs"]
    assert store.get("theirs").duration == 90


def test_remove_is_idempotent_and_tombstones():
    store = _store()
    rec = _create()
    store.upsert(rec)

    assert store.remove("e1")
    assert not store.remove("e1")
    assert not store.remove("never-seen")
    assert store.get("e1") is None
    # a late relay of the create must not resurrect it
    assert not store.upsert(rec)
    assert list(store.history()) == []


def test_expired_record_stays_in_history():
    clock = Clock()
    store = _store(clock)
    rec = _create(duration=120)
    store.upsert(rec)

    assert store.sweep(T0 + 60_000) == []
    assert rec.is_active(T0 + 119_999)

    clock.now = T0 + 121_000
    assert store.sweep() == [rec]
    assert store.sweep() == []
    assert list(store.active()) == []
    assert list(store.history()) == [rec]


def test_history_lists_expired_before_active():
    clock = Clock()
    store = _store(clock)
    old = _create("old", kind="Arkaneo", duration=39, ts=T0)
    new = _create("new", kind="Whale", duration=120, ts=T0 + 50_000)
    store.upsert(new)
    store.upsert(old)

    clock.now = T0 + 60_000
    assert [r.id for r in store.history()] == ["old", "new"]
    assert [r.id for r in store.all_for_world("50")] == ["new", "old"]


def test_views_are_restartable():
    store = _store()
    store.upsert(_create())
    view = store.active()

    assert len(list(view)) == 1
    assert len(list(view)) == 1
    store.upsert(_create("e2", kind="Jellyfish"))
    assert len(view) == 2


def test_every_mutation_is_mirrored_to_kv():
    kv = MemoryKeyValueStore()
    store = _store(kv=kv)

    store.upsert(_create())
    doc = json.loads(kv.get("eventHistory"))
    assert [r["id"] for r in doc["records"]] == ["e1"]

    store.remove("e1")
    doc = json.loads(kv.get("eventHistory"))
    assert doc["records"] == []
    assert "e1" in doc["deleted"]


def test_load_restores_from_file(tmp_path):
    kv = FileKeyValueStore(str(tmp_path / "state"))
    store = _store(kv=kv)
    rec = _create(reported_by="Angler", source=Source.RELAY)
    store.upsert(rec)
    store.upsert(rec.superseded_by(duration=60, timestamp=T0 + 1_000))

    again = _store(kv=FileKeyValueStore(str(tmp_path / "state")))
    assert again.load()
    assert again.get("e1") == store.get("e1")
    assert again.get("e1").previous == rec


def test_restore_malformed_data_ends_empty():
    store = _store()
    store.upsert(_create())

    for bad in [b"not json", b"[]", b'{"version": 1, "records": [{"id": "x"}]}', b'{"version": 99}']:
        assert not store.restore(bad)
        assert len(store) == 0


def test_restore_survives_out_of_range_and_deeply_nested_json():
    store = _store()
    infinite = (
        b'{"version":1,"records":[{"id":"a","kind":"Whale","world":"50","mutation":"create",'
        b'"duration":Infinity,"timestamp":0}],"deleted":{}}'
    )
    nested = b"[" * 100_000 + b"]" * 100_000

    for bad in (infinite, nested):
        store.upsert(_create())
        assert not store.restore(bad)
        assert len(store) == 0


def test_last_record_is_newest_by_timestamp():
    store = _store()
    assert store.last_record() is None
    store.upsert(_create("a", ts=T0))
    store.upsert(_create("b", kind="Jellyfish", ts=T0 + 10))
    assert store.last_record().id == "b"


def test_prune_drops_old_history():
    clock = Clock()
    store = _store(clock)
    store.upsert(_create("a", duration=10))
    store.remove("gone")

    clock.now = T0 + 3_600_000
    assert store.prune(T0 + 60_000) == 1
    assert len(store) == 0
    assert not store.is_deleted("gone")
