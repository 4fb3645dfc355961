import pytest

from dsf_tracker.eventlog.models import EventRecord, Mutation, OracleReading, Source


def _rec(duration=120, ts=1_000_000):
    return EventRecord(id="e1", kind="Whale", world="50", mutation=Mutation.CREATE, duration=duration, timestamp=ts)


def test_is_active_boundaries():
    rec = _rec(duration=120, ts=1_000_000)

    assert not rec.is_active(999_999)
    assert rec.is_active(1_000_000)
    assert rec.is_active(1_119_999)
    assert not rec.is_active(1_120_000)
    assert not rec.is_active(1_121_000)


def test_zero_duration_is_never_active():
    rec = _rec(duration=0)
    assert not rec.is_active(rec.timestamp)
    assert rec.remaining(rec.timestamp) == 0.0


def test_remaining_counts_down():
    rec = _rec(duration=120, ts=0)
    assert rec.remaining(30_000) == 90.0
    assert rec.remaining(500_000) == 0.0


def test_superseded_by_keeps_one_level_of_history():
    rec = _rec()
    first = rec.superseded_by(duration=60)
    second = first.superseded_by(duration=30)

    assert second.mutation is Mutation.EDIT
    assert second.previous.duration == 60
    assert second.previous.previous is None


def test_dict_round_trip():
    rec = _rec().superseded_by(duration=60, reported_by="Angler", source=Source.ORACLE)
    assert EventRecord.from_dict(rec.to_dict()) == rec


@pytest.mark.parametrize(
    "bad",
    [
        None,
        {},
        {"id": "", "kind": "Whale", "world": "1", "mutation": "create", "duration": 1, "timestamp": 1},
        {"id": "x", "kind": "Whale", "world": "1", "mutation": "explode", "duration": 1, "timestamp": 1},
        {"id": "x", "kind": "Whale", "world": "1", "mutation": "create", "duration": "soon", "timestamp": 1},
    ],
)
def test_from_dict_rejects_malformed(bad):
    with pytest.raises((KeyError, ValueError, TypeError)):
        EventRecord.from_dict(bad)


def test_oracle_remaining_from_elapsed():
    reading = OracleReading(world="50", active=True, kind="Whale", elapsed_seconds=50)
    assert reading.remaining_seconds(120) == 70
    assert OracleReading(world="50", active=True, kind="Whale", elapsed_seconds=500).remaining_seconds(120) == 0
    assert OracleReading(world="50", active=False).remaining_seconds(120) == 0


def test_oracle_remaining_prefers_backend_record():
    reading = OracleReading(world="50", active=True, kind="Whale", elapsed_seconds=10, record=_rec(ts=0))
    assert reading.remaining_seconds(120, now=100_000) == 20
