"""
Lifecycle of camera lanes.

The supervisor starts one ``CameraLane`` per enabled camera, keeps lanes
with configuration errors out (reported FAILED, other lanes unaffected)
and applies configuration changes lane by lane: added cameras start,
removed cameras stop, cameras whose source or the shared ingest policy
changed restart, and threshold/cooldown changes are applied in place.

Cameras added through :meth:`LaneSupervisor.register` (camera discovery)
are not part of the YAML file; a reload of the file leaves them running
unless the file now defines a camera with the same id.
"""

from __future__ import annotations

import datetime
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set

from ..cameras.stream import CameraHealth, HealthCallback
from ..config import CameraConfig, LaneParams, Settings, resolve_lane_params
from ..core.errors import ConfigError, log_exception
from ..models.event import LaneStatusModel
from .lane import CameraLane, LaneState

LaneFactory = Callable[[CameraConfig, LaneParams], CameraLane]


class LaneSupervisor:
    def __init__(
        self,
        settings: Settings,
        lane_factory: LaneFactory,
        *,
        on_health: Optional[HealthCallback] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.settings = settings
        self.lane_factory = lane_factory
        self.on_health = on_health
        self.lanes: Dict[str, CameraLane] = {}
        self.failed: Dict[str, str] = {}
        self._cameras: Dict[str, CameraConfig] = {}
        # Ids of cameras added at runtime rather than from the config file.
        self._registered: Set[str] = set()
        self._lock = threading.RLock()

    def _report_failed(self, camera_id: str, reason: str) -> None:
        self.failed[camera_id] = reason
        if self.on_health is not None:
            try:
                self.on_health(camera_id, CameraHealth.FAILED, datetime.datetime.now(datetime.timezone.utc), reason)
            except Exception as exc:
                self.logger.warning("Health callback failed camera=%s: %s", camera_id, exc)

    def _start_lane(self, camera: CameraConfig) -> bool:
        self._cameras[camera.id] = camera
        if not camera.enabled:
            self.logger.info("Camera %s disabled; not starting", camera.id)
            return False
        try:
            params = resolve_lane_params(camera, self.settings)
        except ConfigError as exc:
            self.logger.error("Lane not started: %s", exc)
            self._report_failed(camera.id, str(exc))
            return False
        try:
            lane = self.lane_factory(camera, params)
            lane.start()
        except Exception as exc:
            log_exception(self.logger, "Lane start failed", extra={"camera": camera.id}, exc=exc)
            self._report_failed(camera.id, f"start failed: {exc}")
            return False
        self.failed.pop(camera.id, None)
        self.lanes[camera.id] = lane
        return True

    def _stop_lane(self, camera_id: str) -> None:
        lane = self.lanes.pop(camera_id, None)
        if lane is None:
            return
        try:
            lane.stop()
        except Exception as exc:
            log_exception(self.logger, "Lane stop failed", extra={"camera": camera_id}, exc=exc)

    def start_all(self) -> int:
        """Start every enabled camera. Returns the number of running lanes."""
        with self._lock:
            for camera in self.settings.cameras:
                if camera.id in self.lanes:
                    continue
                self._start_lane(camera)
            self.logger.info("Lanes running=%s failed=%s", len(self.lanes), len(self.failed))
            return len(self.lanes)

    def register(self, camera: CameraConfig) -> bool:
        """Add (or replace) a camera at runtime."""
        with self._lock:
            if camera.id in self.lanes:
                self._stop_lane(camera.id)
            self._registered.add(camera.id)
            self.settings.cameras = [c for c in self.settings.cameras if c.id != camera.id] + [camera]
            return self._start_lane(camera)

    def deregister(self, camera_id: str) -> bool:
        with self._lock:
            known = camera_id in self._cameras
            self._stop_lane(camera_id)
            self._cameras.pop(camera_id, None)
            self._registered.discard(camera_id)
            self.failed.pop(camera_id, None)
            self.settings.cameras = [c for c in self.settings.cameras if c.id != camera_id]
            if known:
                self.logger.info("Camera %s deregistered", camera_id)
            return known

    def registered_ids(self) -> Set[str]:
        with self._lock:
            return set(self._registered)

    def restart(self, camera_id: str) -> bool:
        """Stop and start one lane with its current configuration."""
        with self._lock:
            camera = self._cameras.get(camera_id)
            if camera is None:
                return False
            self._stop_lane(camera_id)
            self.logger.warning("Restarting lane %s", camera_id)
            return self._start_lane(camera)

    def _carry_registered(self, settings: Settings) -> None:
        """Keep runtime-registered cameras in freshly loaded settings."""
        file_ids = {camera.id for camera in settings.cameras}
        for camera_id in sorted(self._registered):
            if camera_id in file_ids:
                self.logger.info("Camera %s is now defined in the config file; file entry wins", camera_id)
                self._registered.discard(camera_id)
                continue
            camera = self._cameras.get(camera_id)
            if camera is not None:
                settings.cameras.append(camera)

    def reconcile(self, settings: Settings, *, calendar: Any = None) -> Dict[str, List[str]]:
        """
        Bring running lanes in line with ``settings``; unaffected lanes keep running.

        A new ``calendar`` is handed to every lane that keeps running.
        """
        changes: Dict[str, List[str]] = {"started": [], "stopped": [], "restarted": [], "updated": [], "failed": []}
        with self._lock:
            ingest_changed = settings.ingest != self.settings.ingest
            self._carry_registered(settings)
            self.settings = settings
            wanted = {camera.id: camera for camera in settings.cameras}
            for camera_id in list(self._cameras):
                if camera_id not in wanted:
                    self._stop_lane(camera_id)
                    self._cameras.pop(camera_id, None)
                    self.failed.pop(camera_id, None)
                    changes["stopped"].append(camera_id)

            for camera_id, camera in wanted.items():
                old = self._cameras.get(camera_id)
                lane = self.lanes.get(camera_id)
                if not camera.enabled:
                    if lane is not None:
                        self._stop_lane(camera_id)
                        changes["stopped"].append(camera_id)
                    self._cameras[camera_id] = camera
                    self.failed.pop(camera_id, None)
                    continue
                if old is None or lane is None:
                    started = self._start_lane(camera)
                    changes["started" if started else "failed"].append(camera_id)
                    continue
                if ingest_changed or old.signature() != camera.signature():
                    # Queue size and reconnect policy are fixed for a lane's lifetime.
                    self._stop_lane(camera_id)
                    started = self._start_lane(camera)
                    changes["restarted" if started else "failed"].append(camera_id)
                    continue
                self._cameras[camera_id] = camera
                try:
                    params = resolve_lane_params(camera, settings)
                except ConfigError as exc:
                    self.logger.error("Stopping lane after config change: %s", exc)
                    self._stop_lane(camera_id)
                    self._report_failed(camera_id, str(exc))
                    changes["failed"].append(camera_id)
                    continue
                if params != lane.params:
                    lane.update_params(params)
                    changes["updated"].append(camera_id)

            if calendar is not None:
                for lane in self.lanes.values():
                    lane.set_calendar(calendar)
        summary = {k: v for k, v in changes.items() if v}
        if summary:
            self.logger.info("Reconciled lanes: %s", summary)
        return changes

    def camera_states(self) -> Dict[str, LaneState]:
        with self._lock:
            return {camera_id: lane.state for camera_id, lane in self.lanes.items()}

    def lane_statuses(self) -> List[LaneStatusModel]:
        with self._lock:
            statuses = [lane.status() for lane in self.lanes.values()]
            statuses.extend(
                LaneStatusModel(camera_id=camera_id, state=CameraHealth.FAILED.value)
                for camera_id in self.failed
                if camera_id not in self.lanes
            )
        return sorted(statuses, key=lambda s: s.camera_id)

    def stop_all(self) -> None:
        with self._lock:
            for camera_id in list(self.lanes):
                self._stop_lane(camera_id)


__all__ = ["LaneSupervisor", "LaneFactory"]
