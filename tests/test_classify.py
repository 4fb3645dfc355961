from conftest import T0, local_ms, make_classifier

from dsf_tracker.eventlog.models import Phase
from dsf_tracker.eventlog.vocabulary import UNKNOWN
from dsf_tracker.ocr.schema import TextLine


def test_merchant_arrival_is_first_seen_start(classifier):
    out = classifier.classify_batch(
        [TextLine("[08:15:02] The travelling merchant has arrived at the hub!")], now=T0
    )

    assert len(out) == 1
    c = out[0]
    assert c.phase is Phase.START
    assert c.kind == "Travelling merchant"
    assert c.is_first_seen
    assert c.observed_at == local_ms(8, 15, 2)
    assert classifier.has_timestamps


def test_prefixed_flavor_line_starts_without_first_seen(classifier):
    out = classifier.classify_batch([TextLine("Misty: That's one giant jellyfish!")], now=T0)

    assert [(c.phase, c.kind, c.is_first_seen) for c in out] == [(Phase.START, "Jellyfish", False)]


def test_ocr_reads_colon_as_semicolon(classifier):
    res = classifier.match_start("Fisherman; Ugh! Give me a hand, he's swallowed me whole!")
    assert res.kind == "Whale"


def test_unprefixed_flavor_line_needs_first_seen_precheck(classifier):
    line = "Sometimes we're rewarded for being generous, when throwing coins into the water."
    assert not classifier.match_start(line).matched
    assert classifier.match_start("Misty: " + line).kind == "Whirlpool"


def test_departure_takes_precedence(classifier):
    out = classifier.classify_batch([TextLine("Misty: Aww, the turtle is heading back out to sea.")], now=T0)

    assert [(c.phase, c.kind) for c in out] == [(Phase.END, "Treasure Turtle")]


def test_bare_arrival_maps_to_unknown(classifier):
    res = classifier.match_start("has appeared at the hub!")
    assert res.kind == UNKNOWN
    assert res.is_first_seen


def test_verbatim_duplicate_line_is_skipped(classifier):
    line = TextLine("A giant jellyfish has appeared!")
    out = classifier.classify_batch([line, line], now=T0)
    assert len(out) == 1


def test_timestamp_stub_is_dropped(classifier):
    out = classifier.classify_batch([TextLine("[08:15:02] -")], now=T0)
    assert out == []


def test_lines_older_than_last_accepted_are_dropped(classifier):
    classifier.classify_batch([TextLine("[08:15:02] A whale has appeared at the hub!")], now=T0)

    later = T0 + 10_000
    out = classifier.classify_batch(
        [
            TextLine("[08:15:01] A giant jellyfish has appeared!"),
            TextLine("[08:15:10] A sea monster has appeared!"),
        ],
        now=later,
    )
    assert [c.kind for c in out] == ["Sea Monster"]


def test_fresh_client_ignores_lines_older_than_lookback(classifier):
    out = classifier.classify_batch([TextLine("[08:14:50] A whale has appeared at the hub!")], now=T0)
    assert out == []


def test_world_hop_short_circuits_batch(classifier):
    out = classifier.classify_batch(
        [
            TextLine("[08:15:02] A whale has appeared at the hub!"),
            TextLine("[08:15:03] Attempting to switch worlds..."),
        ],
        now=T0,
    )

    assert [c.phase for c in out] == [Phase.WORLD_HOP]
    assert classifier.last_timestamp == local_ms(8, 15, 3) + 5_000


def test_lines_far_above_newest_baseline_are_dropped(classifier):
    classifier.classify_batch([TextLine("[08:15:02] Nothing to see here today", basey=500)], now=T0)

    out = classifier.classify_batch(
        [
            TextLine("[08:15:04] A whale has appeared at the hub!", basey=300),
            TextLine("[08:15:05] A giant jellyfish has appeared!", basey=520),
        ],
        now=T0 + 3_000,
    )
    assert [c.kind for c in out] == ["Jellyfish"]
    assert classifier.max_basey == 520


def test_testing_kind_suppressed_outside_debug(classifier):
    line = TextLine("Testing @@@@@ 123456789 abcdefghijklmnopqrstuvwxyz 123")
    assert classifier.classify_batch([line], now=T0) == []

    debug = make_classifier(allow_debug_kind=True)
    out = debug.classify_batch([line], now=T0)
    assert [c.kind for c in out] == ["Testing"]


def test_listeners_receive_classifications(classifier):
    seen = []
    classifier.on_classified(seen.append)
    classifier.on_classified(lambda c: 1 / 0)

    classifier.classify_batch([TextLine("A whale has appeared at the hub!")], now=T0)
    assert [c.kind for c in seen] == ["Whale"]


def test_reset_forgets_batch_state(classifier):
    classifier.classify_batch([TextLine("[08:15:02] A whale has appeared at the hub!", basey=400)], now=T0)
    classifier.reset()
    assert classifier.last_timestamp is None
    assert classifier.max_basey == 0
    assert not classifier.has_timestamps
