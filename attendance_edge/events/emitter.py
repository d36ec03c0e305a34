"""
Attendance event delivery.

``EventEmitter.emit`` is called from camera lanes and never blocks them:
the event is handed to a bounded queue drained by a delivery thread. Each
event gets a bounded number of attempts with exponential backoff; after
that it is written to the spool and replayed on a timer or on demand.
An event the record service rejects outright is spooled as dead and kept
for inspection only. Retry settings can be changed on a running emitter.
Delivery is at-least-once; the record service dedupes on
(identity_id, slot_id).
"""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from typing import Any, Callable, Optional

from ..core.errors import DeliveryError, log_exception
from ..models.event import AttendanceEvent, isoformat_utc
from ..models.frame import MatchResult
from .outbox import Outbox


class EventEmitter:
    """
    Parameters
    ----------
    client: Any
        Object with ``post_attendance(event)`` raising ``DeliveryError``.
    outbox: Outbox
        Local spool for events whose attempts are exhausted.
    node_id: Optional[str]
        Stamped on every event.
    max_attempts: int
        Delivery attempts per event before spooling.
    backoff_base_sec, backoff_max_sec: float
        Delay before attempt ``i + 1`` is ``min(max, base * 2**(i-1))``.
    queue_size: int
        Capacity of the in-memory delivery queue; overflow is spooled directly.
    replay_interval_sec: float
        Period of the spool replay thread.
    sleep: Optional[Callable[[float], Any]]
        Backoff sleep; defaults to a wait on the stop flag.
    """

    def __init__(
        self,
        client: Any,
        outbox: Outbox,
        *,
        node_id: Optional[str] = None,
        max_attempts: int = 3,
        backoff_base_sec: float = 1.0,
        backoff_max_sec: float = 30.0,
        queue_size: int = 1000,
        replay_interval_sec: float = 30.0,
        replay_batch_size: int = 100,
        sleep: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.client = client
        self.outbox = outbox
        self.node_id = node_id
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_sec = max(0.0, float(backoff_base_sec))
        self.backoff_max_sec = max(self.backoff_base_sec, float(backoff_max_sec))
        self.replay_interval_sec = max(1.0, float(replay_interval_sec))
        self.replay_batch_size = max(1, int(replay_batch_size))
        self._queue: "queue.Queue[AttendanceEvent]" = queue.Queue(maxsize=max(1, int(queue_size)))
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._replay_lock = threading.Lock()
        self._delivery_thread: Optional[threading.Thread] = None
        self._replay_thread: Optional[threading.Thread] = None
        self._last_summary = time.monotonic()
        self.delivered = 0
        self.spooled = 0
        self.replayed = 0
        self.failed_attempts = 0
        self.rejected = 0

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_max_sec, self.backoff_base_sec * (2 ** max(0, attempt - 1)))

    def build_event(
        self,
        match: MatchResult,
        *,
        room_id: Optional[str],
        slot_id: Optional[str],
        evidence_photo: Optional[str],
    ) -> AttendanceEvent:
        if match.identity_id is None:
            raise ValueError("cannot build an attendance event from an unmatched result")
        return AttendanceEvent(
            event_id=str(uuid.uuid4()),
            identity_id=match.identity_id,
            camera_id=match.camera_id,
            room_id=room_id,
            slot_id=slot_id,
            timestamp=isoformat_utc(match.timestamp),
            confidence=round(float(match.score), 4),
            evidence_photo=evidence_photo,
            node_id=self.node_id,
        )

    def emit(
        self,
        match: MatchResult,
        *,
        room_id: Optional[str] = None,
        slot_id: Optional[str] = None,
        evidence_photo: Optional[str] = None,
    ) -> AttendanceEvent:
        """Create the event and queue it for delivery. Never blocks."""
        event = self.build_event(match, room_id=room_id, slot_id=slot_id, evidence_photo=evidence_photo)
        self.logger.info(
            "Attendance event %s identity=%s camera=%s slot=%s score=%.3f",
            event.event_id,
            event.identity_id,
            event.camera_id,
            event.slot_id,
            event.confidence,
        )
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.logger.warning("Delivery queue full; spooling event %s", event.event_id)
            self._spool(event, "delivery_queue_full")
        return event

    def deliver(self, event: AttendanceEvent) -> bool:
        """
        Try to deliver ``event``; spool it when attempts run out.

        An event the record service rejects outright is stored as dead and
        never replayed. Returns True when the record service accepted the event.
        """
        last_error = ""
        rejected = False
        max_attempts = self.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                self.client.post_attendance(event)
                self.delivered += 1
                return True
            except DeliveryError as exc:
                self.failed_attempts += 1
                last_error = str(exc)
                self.logger.debug(
                    "Delivery attempt %d/%d failed event=%s: %s", attempt, max_attempts, event.event_id, exc
                )
                if not exc.retryable:
                    rejected = True
                    break
            if attempt < max_attempts:
                self._sleep(self.backoff_delay(attempt))
                if self._stop.is_set():
                    last_error = last_error or "shutdown"
                    break
        if rejected:
            self.logger.error(
                "Event %s identity=%s rejected by record service; kept as dead: %s",
                event.event_id,
                event.identity_id,
                last_error,
            )
            self.rejected += 1
            self._spool(event, last_error, dead=True)
            return False
        self.logger.warning(
            "Delivery failed for event %s identity=%s; spooled for replay: %s",
            event.event_id,
            event.identity_id,
            last_error,
        )
        self._spool(event, last_error)
        return False

    def _spool(self, event: AttendanceEvent, error: str, *, dead: bool = False) -> None:
        if not self.outbox.enqueue(event, error=error, dead=dead):
            self.logger.error("Event %s could not be spooled", event.event_id)
        elif not dead:
            self.spooled += 1

    def update_policy(
        self,
        *,
        max_attempts: Optional[int] = None,
        backoff_base_sec: Optional[float] = None,
        backoff_max_sec: Optional[float] = None,
        replay_interval_sec: Optional[float] = None,
        replay_batch_size: Optional[int] = None,
    ) -> None:
        """
        Apply new retry settings to a running emitter.

        Events already being retried keep their attempt budget; the next
        replay cycle uses the new interval. The queue size is fixed.
        """
        if max_attempts is not None:
            self.max_attempts = max(1, int(max_attempts))
        if backoff_base_sec is not None:
            self.backoff_base_sec = max(0.0, float(backoff_base_sec))
        if backoff_max_sec is not None:
            self.backoff_max_sec = float(backoff_max_sec)
        self.backoff_max_sec = max(self.backoff_base_sec, self.backoff_max_sec)
        if replay_interval_sec is not None:
            self.replay_interval_sec = max(1.0, float(replay_interval_sec))
        if replay_batch_size is not None:
            self.replay_batch_size = max(1, int(replay_batch_size))
        self.logger.info(
            "Delivery policy attempts=%s backoff=%.1f-%.1fs replay_interval=%.0fs batch=%s",
            self.max_attempts,
            self.backoff_base_sec,
            self.backoff_max_sec,
            self.replay_interval_sec,
            self.replay_batch_size,
        )

    def replay_spool(self, limit: Optional[int] = None) -> int:
        """Resend due spooled events. Returns how many were delivered."""
        with self._replay_lock:
            rows = self.outbox.get_due(limit=limit or self.replay_batch_size)
            sent = 0
            for row in rows:
                try:
                    event = Outbox.load_event(row)
                except ValueError as exc:
                    self.logger.error("Dropping unreadable spooled row %s: %s", row["id"], exc)
                    self.outbox.mark_dead(row["id"], error=f"unreadable: {exc}")
                    continue
                try:
                    self.client.post_attendance(event)
                except DeliveryError as exc:
                    if not exc.retryable:
                        self.logger.error("Spooled event %s rejected: %s", event.event_id, exc)
                        self.outbox.mark_dead(row["id"], error=str(exc))
                        continue
                    self.outbox.mark_failed(
                        row["id"],
                        attempts=row.get("attempts", 0),
                        error=str(exc),
                        backoff_seconds=self.backoff_delay(int(row.get("attempts", 0)) + 1),
                    )
                    # Service still unavailable; leave the rest for the next cycle.
                    break
                self.outbox.mark_sent(row["id"])
                sent += 1
            if sent:
                self.replayed += sent
                self.logger.info("Replayed %d spooled events", sent)
            return sent

    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._delivery_thread is not None and self._delivery_thread.is_alive():
            return
        self._stop.clear()
        self._delivery_thread = threading.Thread(target=self._delivery_loop, name="EventDelivery", daemon=True)
        self._replay_thread = threading.Thread(target=self._replay_loop, name="SpoolReplay", daemon=True)
        self._delivery_thread.start()
        self._replay_thread.start()

    def _delivery_loop(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.deliver(event)
            except Exception as exc:
                log_exception(self.logger, "Event delivery crashed", extra={"event_id": event.event_id}, exc=exc)
                self._spool(event, f"delivery_crash: {exc}")

    def _replay_loop(self) -> None:
        while not self._stop.wait(timeout=self.replay_interval_sec):
            try:
                self.replay_spool()
            except Exception as exc:
                log_exception(self.logger, "Spool replay failed", exc=exc)
            self._log_summary()

    def _log_summary(self) -> None:
        now = time.monotonic()
        if now - self._last_summary < 60.0:
            return
        self._last_summary = now
        stats = self.outbox.stats()
        self.logger.info(
            "Delivery summary delivered=%s spooled=%s replayed=%s rejected=%s pending=%s dead=%s",
            self.delivered,
            self.spooled,
            self.replayed,
            self.rejected,
            stats.get("pending", 0),
            stats.get("dead", 0),
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker threads and spool whatever is still queued."""
        self._stop.set()
        for thread in (self._delivery_thread, self._replay_thread):
            if thread is not None:
                thread.join(timeout=timeout)
        drained = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            self._spool(event, "shutdown")
            drained += 1
        if drained:
            self.logger.warning("Spooled %d undelivered events on shutdown", drained)


__all__ = ["EventEmitter"]
