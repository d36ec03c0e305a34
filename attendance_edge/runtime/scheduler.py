"""
Periodic tasks: slot finalization and health heartbeats.

``FinalizerScheduler`` calls the record service's finalize-slot operation
once each slot has ended (plus a grace period). Progress is kept in a
small JSON state file so slots that ended while the node was down are
finalized on the next start, within a catch-up window. A failed call
stays pending and is retried on the next tick; finalizing a slot twice
is harmless.

``Scheduler`` publishes ``HealthHeartbeat`` messages over MQTT.
"""

from __future__ import annotations

import datetime
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..core.errors import DeliveryError, safe_json_dump_atomic, safe_json_load
from ..models.event import HealthHeartbeat, SlotFinalizeRequest, isoformat_utc
from .slots import SlotCalendar


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _parse_iso(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


class FinalizerScheduler:
    """
    Parameters
    ----------
    client: Any
        Object with ``finalize_slot(SlotFinalizeRequest)`` raising ``DeliveryError``.
    calendar: SlotCalendar
        Timetable used for the time-based trigger.
    state_path: str
        JSON file recording the last scanned instant and pending finalizations.
    interval_sec: float
        Tick period.
    grace_sec: float
        Delay after a slot's end before it is finalized.
    catchup_hours: float
        How far back missed slots are recovered after downtime.
    """

    def __init__(
        self,
        client: Any,
        calendar: SlotCalendar,
        *,
        state_path: str,
        node_id: Optional[str] = None,
        interval_sec: float = 30.0,
        grace_sec: float = 300.0,
        catchup_hours: float = 24.0,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.client = client
        self.calendar = calendar
        self.state_path = Path(state_path).expanduser()
        self.node_id = node_id
        self.interval_sec = max(1.0, float(interval_sec))
        self.grace = datetime.timedelta(seconds=max(0.0, float(grace_sec)))
        self.catchup = datetime.timedelta(hours=max(0.0, float(catchup_hours)))
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_scan: Optional[datetime.datetime] = None
        # key -> {"slot_id", "timestamp", "attempts", "last_error"}
        self.pending: Dict[str, Dict[str, Any]] = {}
        self.finalized_count = 0
        self._load_state()

    @staticmethod
    def _key(slot_id: str, timestamp: str) -> str:
        return f"{slot_id}@{timestamp}"

    def _load_state(self) -> None:
        data = safe_json_load(self.state_path, {}, logger=self.logger)
        if not isinstance(data, dict):
            return
        self.last_scan = _parse_iso(data.get("last_scan_utc"))
        pending = data.get("pending")
        if isinstance(pending, list):
            for item in pending:
                if isinstance(item, dict) and item.get("slot_id") and item.get("timestamp"):
                    key = self._key(str(item["slot_id"]), str(item["timestamp"]))
                    self.pending[key] = {
                        "slot_id": str(item["slot_id"]),
                        "timestamp": str(item["timestamp"]),
                        "attempts": int(item.get("attempts", 0)),
                        "last_error": item.get("last_error"),
                    }

    def _save_state(self) -> None:
        data = {
            "last_scan_utc": isoformat_utc(self.last_scan) if self.last_scan else None,
            "pending": list(self.pending.values()),
        }
        safe_json_dump_atomic(self.state_path, data, logger=self.logger, context={"component": "finalizer"})

    def _queue(self, slot_id: str, timestamp: str) -> str:
        key = self._key(slot_id, timestamp)
        self.pending.setdefault(key, {"slot_id": slot_id, "timestamp": timestamp, "attempts": 0, "last_error": None})
        return key

    def _attempt(self, key: str) -> bool:
        item = self.pending[key]
        request = SlotFinalizeRequest(slot_id=item["slot_id"], timestamp=item["timestamp"], node_id=self.node_id)
        try:
            self.client.finalize_slot(request)
        except DeliveryError as exc:
            item["attempts"] = int(item["attempts"]) + 1
            item["last_error"] = str(exc)[:300]
            if not exc.retryable:
                self.logger.error("Finalize rejected slot=%s ts=%s: %s", item["slot_id"], item["timestamp"], exc)
                self.pending.pop(key, None)
                return False
            self.logger.warning(
                "Finalize failed slot=%s ts=%s attempt=%s; will retry: %s",
                item["slot_id"],
                item["timestamp"],
                item["attempts"],
                exc,
            )
            return False
        self.pending.pop(key, None)
        self.finalized_count += 1
        self.logger.info("Finalized slot %s (%s)", item["slot_id"], item["timestamp"])
        return True

    def tick(self, now: Optional[datetime.datetime] = None) -> List[str]:
        """Queue newly ended slots, attempt all pending ones. Returns finalized slot ids."""
        now = now or self._clock()
        horizon = now - self.grace
        with self._lock:
            floor = now - self.catchup
            start = self.last_scan if self.last_scan is not None and self.last_scan > floor else floor
            for occ in self.calendar.occurrences_ending_between(start, horizon):
                self._queue(occ.occurrence_id, isoformat_utc(occ.end_utc))
            if self.last_scan is None or horizon > self.last_scan:
                self.last_scan = horizon
            done: List[str] = []
            for key in list(self.pending):
                slot_id = self.pending[key]["slot_id"]
                if self._attempt(key):
                    done.append(slot_id)
            self._save_state()
            return done

    def request_finalize(self, slot_id: str, timestamp: Optional[datetime.datetime] = None) -> bool:
        """Explicit close-call. The request stays pending if the service is unavailable."""
        ts = isoformat_utc(timestamp or self._clock())
        with self._lock:
            key = self._queue(str(slot_id), ts)
            ok = self._attempt(key)
            self._save_state()
            return ok

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="FinalizerScheduler", daemon=True)
        self._thread.start()
        self.logger.info(
            "Finalizer started interval=%ss slots=%s pending=%s", self.interval_sec, len(self.calendar), len(self.pending)
        )

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:
                self.logger.exception("Finalizer tick failed: %s", exc)
            self._stop_event.wait(timeout=self.interval_sec)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)


class Scheduler:
    """Periodically publishes node health heartbeats."""

    def __init__(
        self,
        node_id: str,
        publisher: Any,
        supervisor: Any,
        *,
        store: Any = None,
        outbox: Any = None,
        interval: float = 30.0,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.node_id = node_id
        self.publisher = publisher
        self.supervisor = supervisor
        self.store = store
        self.outbox = outbox
        self.interval = max(1.0, float(interval))
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="Scheduler", daemon=True)
        self._thread.start()
        self.logger.info("Scheduler started with interval=%ss", self.interval)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.send_health()
            except Exception as exc:
                self.logger.exception("Error during scheduled task: %s", exc)
            self._stop_event.wait(timeout=self.interval)

    def build_heartbeat(self) -> HealthHeartbeat:
        lanes = self.supervisor.lane_statuses()
        connected = sum(1 for lane in lanes if lane.state == "CONNECTED")
        if lanes and connected == len(lanes):
            status = "OK"
        elif connected > 0:
            status = "DEGRADED"
        else:
            status = "ERROR" if lanes else "OK"
        snapshot = self.store.current() if self.store is not None else None
        return HealthHeartbeat(
            node_id=self.node_id,
            status=status,
            connected_cameras=connected,
            total_cameras=len(lanes),
            enrollment_version=snapshot.version if snapshot is not None else 0,
            enrolled_identities=snapshot.active_count if snapshot is not None else 0,
            spool_pending=self.outbox.pending_count() if self.outbox is not None else 0,
            timestamp=isoformat_utc(_utcnow()),
            lanes=lanes,
        )

    def send_health(self) -> None:
        self.publisher.publish_heartbeat(self.build_heartbeat())

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self.logger.info("Scheduler stopped")


__all__ = ["FinalizerScheduler", "Scheduler"]
