from __future__ import annotations

import pytest

from apps.clinic.app.scheduling import (  # type: ignore[import]
    AppointmentWindow,
    ConflictReason,
    DaySchedule,
    Slot,
    adjacent_dates,
    availability_from_json,
    detect_conflicts,
    find_overlapping,
    format_minutes,
    parse_duration,
    parse_hhmm,
    parse_iso_date,
    resolve_duration,
    windows_overlap,
)

DAY = "2025-06-10"


def _never_booked(_w: AppointmentWindow) -> bool:
    return False


def _reasons(conflicts):
    return {c.appointment_id: c.reason for c in conflicts}


def test_appointment_inside_slot_has_no_conflict():
    availability = {DAY: DaySchedule(enabled=True, slots=[Slot("09:00", "10:00")])}
    apts = [
        AppointmentWindow(id="a1", date=DAY, time="09:00", duration=30),
        AppointmentWindow(id="a2", date=DAY, time="09:30", duration=30),
        AppointmentWindow(id="a3", date=DAY, time="09:30"),
    ]
    assert detect_conflicts(apts, availability, _never_booked) == []


def test_appointment_spilling_out_of_slot_is_slot_unavailable():
    availability = {DAY: DaySchedule(enabled=True, slots=[Slot("09:00", "10:00")])}
    apts = [
        AppointmentWindow(id="late", date=DAY, time="09:45", duration=30),
        AppointmentWindow(id="early", date=DAY, time="08:30", duration=30),
        AppointmentWindow(id="long", date=DAY, time="09:00", duration=90),
    ]
    reasons = _reasons(detect_conflicts(apts, availability, _never_booked))
    assert reasons == {
        "late": ConflictReason.SLOT_UNAVAILABLE,
        "early": ConflictReason.SLOT_UNAVAILABLE,
        "long": ConflictReason.SLOT_UNAVAILABLE,
    }


def test_slot_crossing_midnight_accepts_late_and_early_windows():
    availability = {DAY: DaySchedule(enabled=True, slots=[Slot("23:00", "01:00")])}
    apts = [
        AppointmentWindow(id="late", date=DAY, time="23:30", duration=60),
        AppointmentWindow(id="after-midnight", date=DAY, time="00:30", duration=30),
        AppointmentWindow(id="too-late", date=DAY, time="00:45", duration=30),
    ]
    reasons = _reasons(detect_conflicts(apts, availability, _never_booked))
    assert reasons == {"too-late": ConflictReason.SLOT_UNAVAILABLE}


def test_missing_or_disabled_day_is_no_availability_and_skips_booking_lookup():
    availability = {
        "2025-06-11": DaySchedule(enabled=False, slots=[Slot("09:00", "17:00")]),
    }
    looked_up = []

    def is_booked(w):
        looked_up.append(w.id)
        return True

    apts = [
        AppointmentWindow(id="missing", date=DAY, time="09:00", duration=30),
        AppointmentWindow(id="disabled", date="2025-06-11", time="09:00", duration=30),
    ]
    reasons = _reasons(detect_conflicts(apts, availability, is_booked))
    assert reasons == {
        "missing": ConflictReason.NO_AVAILABILITY,
        "disabled": ConflictReason.NO_AVAILABILITY,
    }
    assert looked_up == []


def test_exact_time_booking_is_already_booked():
    availability = {DAY: DaySchedule(enabled=True, slots=[Slot("09:00", "12:00")])}
    apts = [
        AppointmentWindow(id="clash", date=DAY, time="10:00", duration=30),
        AppointmentWindow(id="free", date=DAY, time="11:00", duration=30),
    ]
    conflicts = detect_conflicts(apts, availability, lambda w: w.time == "10:00")
    assert len(conflicts) == 1
    c = conflicts[0]
    assert (c.appointment_id, c.date, c.time, c.reason) == ("clash", DAY, "10:00", ConflictReason.ALREADY_BOOKED)


def test_every_appointment_is_evaluated():
    availability = {DAY: DaySchedule(enabled=True, slots=[Slot("09:00", "10:00")])}
    apts = [
        AppointmentWindow(id="x1", date="2025-06-12", time="09:00"),
        AppointmentWindow(id="x2", date=DAY, time="09:50"),
        AppointmentWindow(id="x3", date=DAY, time="09:00"),
    ]
    reasons = _reasons(detect_conflicts(apts, availability, lambda w: w.id == "x3"))
    assert reasons == {
        "x1": ConflictReason.NO_AVAILABILITY,
        "x2": ConflictReason.SLOT_UNAVAILABLE,
        "x3": ConflictReason.ALREADY_BOOKED,
    }


@pytest.mark.parametrize(
    "raw,expected",
    [(45, 45), ("45", 45), (" 60 ", 60), (0, None), ("0", None), (-5, None), ("abc", None), (None, None), (True, None)],
)
def test_parse_duration(raw, expected):
    assert parse_duration(raw) == expected


def test_invalid_duration_falls_back_to_default():
    assert resolve_duration(None) == 30
    assert resolve_duration("nope") == 30
    assert resolve_duration(-1) == 30


def test_clock_helpers():
    assert parse_hhmm("09:30") == 570
    assert format_minutes(23 * 60 + 45 + 30) == "00:15"
    with pytest.raises(ValueError):
        parse_hhmm("24:00")
    with pytest.raises(ValueError):
        parse_hhmm("9h30")


def test_availability_from_json_drops_malformed_entries():
    av = availability_from_json(
        {
            DAY: {"enabled": True, "slots": [{"start": "09:00", "end": "10:00"}, {"start": "bad", "end": "10:00"}]},
            "not-a-date": {"enabled": True, "slots": []},
        }
    )
    assert list(av) == [DAY]
    assert av[DAY].slots == [Slot("09:00", "10:00")]


def test_find_overlapping_ignores_candidate_itself_and_other_dates():
    existing = [
        AppointmentWindow(id="a", date=DAY, time="09:00", duration=60),
        AppointmentWindow(id="b", date=DAY, time="10:00", duration=30),
        AppointmentWindow(id="c", date="2025-06-11", time="09:30", duration=30),
    ]
    hits = find_overlapping(existing, AppointmentWindow(id="new", date=DAY, time="09:30", duration=30))
    assert [w.id for w in hits] == ["a"]
    assert find_overlapping(existing, AppointmentWindow(id="a", date=DAY, time="09:15", duration=30)) == []


@pytest.mark.parametrize("raw", ["2025-W24-2", "2025-163", "20250610", "2025-6-10", "2025-02-30", " 2025-06-10"])
def test_parse_iso_date_accepts_only_calendar_dates(raw):
    with pytest.raises(ValueError):
        parse_iso_date(raw)


def test_parse_iso_date_and_neighbours():
    assert parse_iso_date(DAY) == DAY
    assert adjacent_dates("2025-03-01") == ["2025-02-28", "2025-03-01", "2025-03-02"]
    assert adjacent_dates("2024-12-31") == ["2024-12-30", "2024-12-31", "2025-01-01"]


def test_late_appointment_overlaps_next_morning():
    late = AppointmentWindow(id="late", date=DAY, time="23:45", duration=30)
    assert windows_overlap(late, AppointmentWindow(id="early", date="2025-06-11", time="00:00", duration=30))
    assert not windows_overlap(late, AppointmentWindow(id="after", date="2025-06-11", time="00:15", duration=30))
    assert not windows_overlap(late, AppointmentWindow(id="day-after", date="2025-06-12", time="00:00"))
    hits = find_overlapping([late], AppointmentWindow(id="new", date="2025-06-11", time="00:05", duration=15))
    assert [w.id for w in hits] == ["late"]
