import pytest

from dsf_tracker.eventlog.dialog import is_misty_dialog, parse_misty_dialog
from dsf_tracker.eventlog.parser import parse_duration_seconds
from dsf_tracker.eventlog.vocabulary import EventVocabulary
from dsf_tracker.ocr.schema import DialogText


@pytest.mark.parametrize(
    "text,seconds",
    [
        ("for 1 minute and 5 seconds", 65),
        ("for 2 minutes", 120),
        ("for 1 hour, 2 minutes and 3 seconds", 3723),
        ("for 45 seconds.", 45),
        ("for 3, minutes", 180),
        ("a little while", 0),
    ],
)
def test_duration_parts_are_summed(text, seconds):
    assert parse_duration_seconds(text) == seconds


def test_only_misty_is_read():
    assert is_misty_dialog(DialogText(" misty ", ()))
    assert not is_misty_dialog(DialogText("Fisherman", ()))
    assert parse_misty_dialog(DialogText("Fisherman", ("for 2 minutes",)), "50", EventVocabulary()) is None


def test_active_event_is_named():
    dialog = DialogText("Misty", ("The whirlpool has been here for 2 minutes and 10 seconds.",))
    reading = parse_misty_dialog(dialog, "50", EventVocabulary(), ocr_lag_seconds=0)

    assert reading.active
    assert reading.kind == "Whirlpool"
    assert reading.elapsed_seconds == 130
    assert reading.remaining_seconds(300) == 170


def test_quiet_hub_reading_includes_lag():
    dialog = DialogText("Misty", ("Nothing's happened for 10 minutes.",))
    reading = parse_misty_dialog(dialog, "7", EventVocabulary())

    assert not reading.active
    assert reading.kind is None
    assert reading.world == "7"
    assert reading.elapsed_seconds == 602


def test_unreadable_time_gives_no_reading():
    dialog = DialogText("Misty", ("Hello there, angler!",))
    assert parse_misty_dialog(dialog, "50", EventVocabulary()) is None
