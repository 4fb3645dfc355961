from conftest import T0

from dsf_tracker.world import WorldSessionTracker


def test_hop_opens_six_second_quiet_window():
    ws = WorldSessionTracker(initial_world="50")

    until = ws.mark_hop(T0)
    assert until == T0 + 6_000
    assert ws.is_quiet(T0 + 5_999)
    assert ws.current_world(T0 + 3_000) is None
    assert not ws.is_quiet(T0 + 6_000)


def test_world_is_resolved_again_after_hop():
    reported = {"world": 50}
    ws = WorldSessionTracker(lambda: reported["world"])
    assert ws.current_world(T0) == "50"

    ws.mark_hop(T0)
    reported["world"] = 84
    assert ws.current_world(T0 + 6_500) == "84"
    assert ws.previous == "50"


def test_sensor_wins_over_lookup():
    calls = []

    def lookup():
        calls.append(1)
        return "12"

    ws = WorldSessionTracker(lambda: 77, lookup)
    assert ws.current_world(T0) == "77"
    assert calls == []


def test_lookup_used_when_sensor_has_no_world():
    ws = WorldSessionTracker(lambda: 0, lambda: " 12 ")
    assert ws.current_world(T0) == "12"


def test_failing_sensor_falls_back_to_lookup():
    def sensor():
        raise RuntimeError("client gone")

    ws = WorldSessionTracker(sensor, lambda: "31")
    assert ws.current_world(T0) == "31"


def test_last_known_world_kept_when_nothing_resolves():
    reported = {"world": 50}
    ws = WorldSessionTracker(lambda: reported["world"], lambda: None)
    assert ws.current_world(T0) == "50"

    ws.mark_hop(T0)
    reported["world"] = None
    assert ws.current_world(T0 + 7_000) == "50"


def test_no_world_at_all():
    ws = WorldSessionTracker()
    assert ws.current_world(T0) is None
