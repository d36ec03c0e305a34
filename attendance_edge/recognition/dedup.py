"""
Per-camera attendance deduplication.

Each (camera, identity) pair moves NONE -> ACTIVE -> COOLDOWN: the first
match activates the pair and emits, emitting starts the cooldown window,
and the next match after the window expires re-activates the pair and
emits again. Matches inside the window only refresh ``last_seen``.

A ``Deduplicator`` belongs to exactly one camera lane and is only touched
by that lane's processing thread, so it holds no lock.
"""

from __future__ import annotations

import datetime
import enum
import logging
from dataclasses import dataclass
from typing import Dict, Optional


class DedupState(str, enum.Enum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    COOLDOWN = "COOLDOWN"


@dataclass
class DedupEntry:
    first_seen: datetime.datetime
    last_seen: datetime.datetime
    last_emitted: Optional[datetime.datetime] = None
    state: DedupState = DedupState.NONE
    slot_id: Optional[str] = None


class Deduplicator:
    """Decides whether a positive match becomes an attendance event."""

    def __init__(
        self,
        camera_id: str,
        *,
        cooldown_sec: float,
        idle_evict_sec: float = 7200.0,
        reset_on_slot_change: bool = True,
    ) -> None:
        self.logger = logging.getLogger(f"Dedup-{camera_id}")
        self.camera_id = camera_id
        self.cooldown = datetime.timedelta(seconds=float(cooldown_sec))
        self.idle_evict = datetime.timedelta(seconds=float(idle_evict_sec))
        self.reset_on_slot_change = reset_on_slot_change
        self._entries: Dict[str, DedupEntry] = {}
        self.suppressed = 0

    def __len__(self) -> int:
        return len(self._entries)

    def state(self, identity_id: str, now: Optional[datetime.datetime] = None) -> DedupState:
        entry = self._entries.get(identity_id)
        if entry is None:
            return DedupState.NONE
        if now is not None and entry.state == DedupState.COOLDOWN and self._expired(entry, now):
            return DedupState.ACTIVE
        return entry.state

    def _expired(self, entry: DedupEntry, ts: datetime.datetime) -> bool:
        return entry.last_emitted is None or ts - entry.last_emitted >= self.cooldown

    def observe(self, identity_id: str, ts: datetime.datetime, slot_id: Optional[str] = None) -> bool:
        """Record a positive match at ``ts``. Returns True when an event should be emitted."""
        entry = self._entries.get(identity_id)
        if entry is None:
            entry = DedupEntry(first_seen=ts, last_seen=ts, state=DedupState.ACTIVE, slot_id=slot_id)
            self._entries[identity_id] = entry
        else:
            entry.last_seen = max(entry.last_seen, ts)
            slot_changed = self.reset_on_slot_change and slot_id is not None and slot_id != entry.slot_id
            if entry.state == DedupState.COOLDOWN and not slot_changed and not self._expired(entry, ts):
                self.suppressed += 1
                return False
            entry.state = DedupState.ACTIVE
            entry.slot_id = slot_id

        entry.last_emitted = ts
        entry.state = DedupState.COOLDOWN
        return True

    def evict_idle(self, now: datetime.datetime) -> int:
        """Drop entries unseen for longer than the idle period. Returns how many were removed."""
        stale = [key for key, entry in self._entries.items() if now - entry.last_seen > self.idle_evict]
        for key in stale:
            del self._entries[key]
        if stale:
            self.logger.debug("Evicted %d idle dedup entries camera=%s", len(stale), self.camera_id)
        return len(stale)

    def update_windows(
        self,
        *,
        cooldown_sec: Optional[float] = None,
        idle_evict_sec: Optional[float] = None,
    ) -> None:
        """Apply new window lengths; running windows are measured against the new values."""
        if cooldown_sec is not None:
            self.cooldown = datetime.timedelta(seconds=float(cooldown_sec))
        if idle_evict_sec is not None:
            self.idle_evict = datetime.timedelta(seconds=float(idle_evict_sec))


__all__ = ["DedupEntry", "DedupState", "Deduplicator"]
