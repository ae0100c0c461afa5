"""
Therapist availability, appointment windows and the two pieces of logic the
transfer workflow is built on:

- ``detect_conflicts``: which of a patient's appointments a receiving
  therapist cannot cleanly honor.
- ``add_appointment_slots`` / ``prune_appointment_slots``: keep a therapist's
  per-date availability in line with the appointments actually assigned.

Everything here is pure: no database, no HTTP. Availability maps are never
mutated in place; every function returns a new one.

Clock arithmetic is done in minutes on a 0..1440 day. A slot whose end is
not after its start wraps past midnight and ends at ``end + 1440``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date as _date, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

log = logging.getLogger("clinicdesk.scheduling")

DEFAULT_APPOINTMENT_MINUTES = int(os.getenv("DEFAULT_APPOINTMENT_MINUTES", "30"))
MINUTES_PER_DAY = 24 * 60
ACTIVE_STATUSES = ("pending", "ongoing")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ConflictReason(str, Enum):
    NO_AVAILABILITY = "no_availability"
    SLOT_UNAVAILABLE = "slot_unavailable"
    ALREADY_BOOKED = "already_booked"


@dataclass(frozen=True)
class Slot:
    start: str
    end: str

    def bounds(self) -> Tuple[int, int]:
        start = parse_hhmm(self.start)
        end = parse_hhmm(self.end)
        if end <= start:
            end += MINUTES_PER_DAY
        return start, end

    @property
    def wraps(self) -> bool:
        return parse_hhmm(self.end) <= parse_hhmm(self.start)

    def to_json(self) -> Dict[str, str]:
        return {"start": self.start, "end": self.end}


@dataclass
class DaySchedule:
    enabled: bool = True
    slots: List[Slot] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "slots": [sl.to_json() for sl in self.slots]}


Availability = Dict[str, DaySchedule]


@dataclass(frozen=True)
class AppointmentWindow:
    """The part of an appointment that matters for scheduling."""

    id: str
    date: str
    time: str
    duration: Optional[int] = None

    @property
    def minutes(self) -> int:
        return resolve_duration(self.duration)

    def bounds(self) -> Tuple[int, int]:
        start = parse_hhmm(self.time)
        return start, start + self.minutes

    def as_slot(self) -> Slot:
        start, end = self.bounds()
        return Slot(start=format_minutes(start), end=format_minutes(end))


@dataclass(frozen=True)
class AppointmentConflict:
    appointment_id: str
    date: str
    time: str
    reason: ConflictReason


# ---------------------------------------------------------------------------
# Clock helpers


def parse_hhmm(value: str) -> int:
    """``"HH:MM"`` (24h) to minutes after midnight. Raises ValueError."""
    try:
        hh, mm = str(value).strip().split(":")
        hhi = int(hh)
        mmi = int(mm)
    except (TypeError, ValueError):
        raise ValueError(f"time must be HH:MM 24h, got {value!r}")
    if hhi < 0 or hhi > 23 or mmi < 0 or mmi > 59:
        raise ValueError(f"time must be HH:MM 24h, got {value!r}")
    return hhi * 60 + mmi


def format_minutes(total_minutes: int) -> str:
    normalized = total_minutes % MINUTES_PER_DAY
    return f"{normalized // 60:02d}:{normalized % 60:02d}"


def parse_iso_date(value: str) -> str:
    """Validate a ``YYYY-MM-DD`` date key and return it unchanged."""
    text = str(value)
    if not DATE_RE.match(text):
        raise ValueError(f"date must be YYYY-MM-DD, got {value!r}")
    try:
        _date.fromisoformat(text)
    except ValueError:
        raise ValueError(f"date must be YYYY-MM-DD, got {value!r}")
    return text


def adjacent_dates(value: str) -> List[str]:
    """The day before, the day itself and the day after."""
    day = _date.fromisoformat(parse_iso_date(value))
    return [(day + timedelta(days=n)).isoformat() for n in (-1, 0, 1)]


def parse_duration(value: Any) -> Optional[int]:
    """Positive minute count from a number or numeric string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if number != number or number in (float("inf"), float("-inf")) or number <= 0:
        return None
    return int(number)


def resolve_duration(value: Any) -> int:
    return parse_duration(value) or DEFAULT_APPOINTMENT_MINUTES


# ---------------------------------------------------------------------------
# Interval math


def _shifted(start: int, end: int, slot: Slot) -> List[Tuple[int, int]]:
    # An early-morning window can only land inside a wrapping slot on its
    # "next day" side.
    candidates = [(start, end)]
    if slot.wraps:
        candidates.append((start + MINUTES_PER_DAY, end + MINUTES_PER_DAY))
    return candidates


def slot_fits(slot: Slot, window: AppointmentWindow) -> bool:
    slot_start, slot_end = slot.bounds()
    start, end = window.bounds()
    return any(slot_start <= s and e <= slot_end for s, e in _shifted(start, end, slot))


def slot_overlaps(slot: Slot, window: AppointmentWindow) -> bool:
    slot_start, slot_end = slot.bounds()
    start, end = window.bounds()
    return any(s < slot_end and e > slot_start for s, e in _shifted(start, end, slot))


def _absolute_bounds(w: AppointmentWindow) -> Tuple[int, int]:
    offset = _date.fromisoformat(w.date).toordinal() * MINUTES_PER_DAY
    start, end = w.bounds()
    return offset + start, offset + end


def windows_overlap(a: AppointmentWindow, b: AppointmentWindow) -> bool:
    """Compared on an absolute timeline, so a late booking can run into the next day."""
    a_start, a_end = _absolute_bounds(a)
    b_start, b_end = _absolute_bounds(b)
    return a_start < b_end and b_start < a_end


def sort_slots(slots: Iterable[Slot]) -> List[Slot]:
    return sorted(slots, key=lambda sl: (parse_hhmm(sl.start), parse_hhmm(sl.end)))


# ---------------------------------------------------------------------------
# Storage boundary


def availability_from_json(raw: Optional[Mapping[str, Any]]) -> Availability:
    """
    Build a typed availability map from its stored JSON form.

    Malformed dates or slots are dropped (and logged) so that one bad entry
    written by an older client does not make a therapist unschedulable.
    """
    out: Availability = {}
    if not isinstance(raw, Mapping):
        return out
    for date_key, day in raw.items():
        try:
            parse_iso_date(date_key)
        except ValueError:
            log.warning("availability: dropping invalid date key %r", date_key)
            continue
        if not isinstance(day, Mapping):
            continue
        slots: List[Slot] = []
        for item in day.get("slots") or []:
            try:
                sl = Slot(start=str(item["start"]), end=str(item["end"]))
                sl.bounds()
            except (KeyError, TypeError, ValueError):
                log.warning("availability: dropping invalid slot %r on %s", item, date_key)
                continue
            slots.append(sl)
        out[date_key] = DaySchedule(enabled=bool(day.get("enabled")), slots=slots)
    return out


def availability_to_json(availability: Availability) -> Dict[str, Any]:
    return {date_key: availability[date_key].to_json() for date_key in sorted(availability)}


def _copy(availability: Availability) -> Availability:
    return {k: DaySchedule(enabled=v.enabled, slots=list(v.slots)) for k, v in availability.items()}


def _group_by_date(windows: Iterable[AppointmentWindow]) -> Dict[str, List[AppointmentWindow]]:
    grouped: Dict[str, List[AppointmentWindow]] = {}
    for w in windows:
        grouped.setdefault(w.date, []).append(w)
    return grouped


# ---------------------------------------------------------------------------
# Conflict detection


def detect_conflicts(
    appointments: Iterable[AppointmentWindow],
    availability: Availability,
    is_booked: Callable[[AppointmentWindow], bool],
) -> List[AppointmentConflict]:
    """
    Evaluate every appointment independently against the receiving
    therapist's availability.

    ``is_booked`` answers whether the receiving therapist already has another
    active appointment at exactly the same date and time; it is only
    consulted for appointments that fit an open slot.
    """
    conflicts: List[AppointmentConflict] = []
    for apt in appointments:
        reason: Optional[ConflictReason] = None
        day = availability.get(apt.date)
        if day is None or not day.enabled:
            reason = ConflictReason.NO_AVAILABILITY
        elif not any(slot_fits(sl, apt) for sl in day.slots):
            reason = ConflictReason.SLOT_UNAVAILABLE
        elif is_booked(apt):
            reason = ConflictReason.ALREADY_BOOKED
        if reason is not None:
            conflicts.append(
                AppointmentConflict(appointment_id=apt.id, date=apt.date, time=apt.time, reason=reason)
            )
    return conflicts


def find_overlapping(
    existing: Iterable[AppointmentWindow],
    candidate: AppointmentWindow,
) -> List[AppointmentWindow]:
    """Existing appointments whose windows intersect the candidate's."""
    return [w for w in existing if w.id != candidate.id and windows_overlap(w, candidate)]


# ---------------------------------------------------------------------------
# Reconciliation


def add_appointment_slots(
    availability: Availability,
    appointments: Iterable[AppointmentWindow],
) -> Availability:
    """
    Open availability for incoming appointments.

    A date without an enabled schedule gets a fresh one made of one slot per
    appointment. On an enabled date, a synthesized slot is merged unless it
    duplicates an existing slot or an existing slot already covers the
    appointment. Calling this twice with the same appointments is a no-op
    the second time.
    """
    updated = _copy(availability)
    for date_key, windows in _group_by_date(appointments).items():
        day = updated.get(date_key)
        slots: List[Slot] = list(day.slots) if day is not None and day.enabled else []
        for w in windows:
            if any(slot_fits(sl, w) for sl in slots):
                continue
            slots.append(w.as_slot())
        updated[date_key] = DaySchedule(enabled=True, slots=sort_slots(slots))
    return updated


def prune_appointment_slots(
    availability: Availability,
    transferred: Iterable[AppointmentWindow],
    remaining: Iterable[AppointmentWindow],
) -> Availability:
    """
    Retract the slots a therapist only had because of appointments that were
    just transferred away.

    ``remaining`` are the therapist's other active appointments. A slot that
    exactly matches a transferred appointment window survives only while one
    of them still overlaps it; dates left without slots are dropped.
    """
    updated = _copy(availability)
    remaining_by_date = _group_by_date(remaining)
    for date_key, windows in _group_by_date(transferred).items():
        day = updated.get(date_key)
        if day is None or not day.enabled:
            continue
        released = {w.as_slot() for w in windows}
        others = remaining_by_date.get(date_key, [])
        kept = [
            sl for sl in day.slots
            if sl not in released or any(slot_overlaps(sl, o) for o in others)
        ]
        if kept:
            updated[date_key] = DaySchedule(enabled=True, slots=kept)
        else:
            del updated[date_key]
    return updated
