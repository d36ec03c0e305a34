"""
Edge watchdog for lane stall detection and health reporting.
"""

from __future__ import annotations

import datetime
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..cameras.stream import CameraHealth
from ..core.errors import guarded_call, safe_json_dump_atomic
from ..models.event import isoformat_utc


class EdgeWatchdog:
    """
    Writes a health JSON file every ``interval_sec`` and restarts lanes
    that report CONNECTED but have produced no frame for ``stall_sec``.
    A lane gets one restart per stall; it is retried only after it
    recovers and stalls again.
    """

    def __init__(
        self,
        *,
        supervisor: Any,
        health_path: str,
        interval_sec: float = 5.0,
        stall_sec: float = 45.0,
        restart_lane: Optional[Callable[[str], bool]] = None,
        publisher: Any = None,
        store: Any = None,
        outbox: Any = None,
    ) -> None:
        self.logger = logging.getLogger("EdgeWatchdog")
        self.supervisor = supervisor
        self.restart_lane = restart_lane
        self.publisher = publisher
        self.store = store
        self.outbox = outbox
        self.interval_sec = max(0.5, float(interval_sec))
        self.stall_sec = max(1.0, float(stall_sec))
        self.health_path = Path(health_path).expanduser()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._health_lock = threading.Lock()
        self._last_health: Dict[str, object] = {}
        self._stall_since: Dict[str, datetime.datetime] = {}

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="EdgeWatchdog", daemon=True)
        self._thread.start()
        self.logger.info(
            "Watchdog started interval=%ss stall=%ss health=%s",
            self.interval_sec,
            self.stall_sec,
            self.health_path,
        )

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self.logger.info("Watchdog stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as exc:
                self.logger.exception("Watchdog tick failed: %s", exc)
            self._stop.wait(timeout=self.interval_sec)

    def tick(self, now: Optional[datetime.datetime] = None) -> Dict[str, object]:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        lanes_health = []
        for cam_id, state in self.supervisor.camera_states().items():
            last_frame = state.last_frame_utc
            reference = last_frame or state.started_at_utc
            age = (now - reference).total_seconds() if reference is not None else None
            if state.health == CameraHealth.CONNECTED and not state.finished:
                self._check_stall(cam_id, now, age)
            lanes_health.append(
                {
                    "camera_id": cam_id,
                    "state": state.health.value if state.health else None,
                    "reason": state.reason,
                    "last_frame_utc": isoformat_utc(last_frame) if last_frame else None,
                    "last_frame_age_sec": int(age) if age is not None else None,
                    "fps_estimate": state.fps_estimate,
                    "finished": state.finished,
                }
            )

        snapshot = self.store.current() if self.store is not None else None
        mqtt_connected = False
        if self.publisher is not None:
            mqtt_connected = bool(
                guarded_call("mqtt status", self.publisher.is_connected, fallback=False, logger=self.logger)
            )
        health: Dict[str, object] = {
            "timestamp_utc": isoformat_utc(now.replace(microsecond=0)),
            "mqtt_connected": mqtt_connected,
            "enrollment_version": snapshot.version if snapshot is not None else 0,
            "enrolled_identities": snapshot.active_count if snapshot is not None else 0,
            "spool": self.outbox.stats() if self.outbox is not None else {},
            "lanes": lanes_health,
            "failed_lanes": dict(getattr(self.supervisor, "failed", {})),
        }
        with self._health_lock:
            self._last_health = health
        safe_json_dump_atomic(self.health_path, health, logger=self.logger)
        return health

    def _check_stall(self, cam_id: str, now: datetime.datetime, age: Optional[float]) -> None:
        if age is None:
            return
        if age <= self.stall_sec:
            if self._stall_since.pop(cam_id, None) is not None:
                self.logger.info("Camera recovered from stall: %s", cam_id)
            return
        if cam_id in self._stall_since:
            return
        self._stall_since[cam_id] = now
        self.logger.error("Camera stalled: camera=%s age_sec=%.1f", cam_id, age)
        if self.restart_lane is None:
            return
        try:
            restarted = bool(self.restart_lane(cam_id))
        except Exception as exc:
            self.logger.error("Lane restart failed camera=%s error=%s", cam_id, exc)
            return
        if restarted:
            self.logger.warning("Lane restart requested: %s", cam_id)

    def last_health(self) -> Dict[str, object]:
        with self._health_lock:
            if self._last_health:
                return self._last_health
        return {"status": "starting"}


__all__ = ["EdgeWatchdog"]
