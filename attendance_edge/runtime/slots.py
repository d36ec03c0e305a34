"""
Timetable lookups: which slot is running in a room, and which slots ended.

Slot times are wall-clock ``HH:MM`` in the node timezone; everything
returned from here is timezone-aware UTC.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from ..config import SlotConfig
from ..core.errors import ConfigError


def _parse_hhmm(value: str, slot_id: str) -> datetime.time:
    try:
        hour, minute = str(value).split(":", 1)
        return datetime.time(int(hour), int(minute))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"slot {slot_id}: invalid time {value!r} (expected HH:MM)") from exc


@dataclass(frozen=True)
class SlotOccurrence:
    slot_id: str
    room_id: str
    start_utc: datetime.datetime
    end_utc: datetime.datetime
    local_date: datetime.date

    @property
    def occurrence_id(self) -> str:
        """``<slot_id>@<local date>``: unique per session of a recurring slot."""
        return f"{self.slot_id}@{self.local_date.isoformat()}"


class SlotCalendar:
    def __init__(self, slots: Iterable[SlotConfig], timezone: str = "UTC") -> None:
        try:
            self.tz = ZoneInfo(timezone)
        except (KeyError, ValueError) as exc:
            raise ConfigError(f"unknown timezone {timezone!r}") from exc
        self._slots: List[tuple] = []
        for slot in slots:
            start = _parse_hhmm(slot.start, slot.id)
            end = _parse_hhmm(slot.end, slot.id)
            if end <= start:
                raise ConfigError(f"slot {slot.id}: end {slot.end} is not after start {slot.start}")
            date = None
            if slot.date:
                try:
                    date = datetime.date.fromisoformat(slot.date)
                except ValueError as exc:
                    raise ConfigError(f"slot {slot.id}: invalid date {slot.date!r}") from exc
            self._slots.append((slot, start, end, date))

    def __len__(self) -> int:
        return len(self._slots)

    def _occurrence_on(self, entry: tuple, day: datetime.date) -> Optional[SlotOccurrence]:
        slot, start, end, date = entry
        if date is not None:
            if date != day:
                return None
        elif day.weekday() not in slot.weekdays:
            return None
        start_local = datetime.datetime.combine(day, start, tzinfo=self.tz)
        end_local = datetime.datetime.combine(day, end, tzinfo=self.tz)
        return SlotOccurrence(
            slot_id=slot.id,
            room_id=slot.room_id,
            start_utc=start_local.astimezone(datetime.timezone.utc),
            end_utc=end_local.astimezone(datetime.timezone.utc),
            local_date=day,
        )

    def resolve(self, room_id: Optional[str], ts: datetime.datetime) -> Optional[SlotOccurrence]:
        """The slot running in ``room_id`` at ``ts``; on overlap the latest-starting wins."""
        if room_id is None:
            return None
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=datetime.timezone.utc)
        day = ts.astimezone(self.tz).date()
        best: Optional[SlotOccurrence] = None
        for entry in self._slots:
            if entry[0].room_id != room_id:
                continue
            occ = self._occurrence_on(entry, day)
            if occ is None or not occ.start_utc <= ts < occ.end_utc:
                continue
            if best is None or occ.start_utc > best.start_utc:
                best = occ
        return best

    def occurrences_ending_between(
        self, start: datetime.datetime, end: datetime.datetime
    ) -> List[SlotOccurrence]:
        """Occurrences with ``start < end_utc <= end``, oldest first."""
        if end <= start:
            return []
        first_day = start.astimezone(self.tz).date()
        last_day = end.astimezone(self.tz).date()
        found: List[SlotOccurrence] = []
        day = first_day
        while day <= last_day:
            for entry in self._slots:
                occ = self._occurrence_on(entry, day)
                if occ is not None and start < occ.end_utc <= end:
                    found.append(occ)
            day += datetime.timedelta(days=1)
        found.sort(key=lambda occ: (occ.end_utc, occ.slot_id))
        return found


__all__ = ["SlotCalendar", "SlotOccurrence"]
