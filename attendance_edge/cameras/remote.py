"""
Fetch camera configurations from the record service.

Uses ``GET /api/v1/cameras``. Response example::

    {
      "cameras": [
        {
          "camera_id": "room-101-front",
          "rtsp_url": "rtsp://...",
          "room_id": "101",
          "sample_interval_sec": 0.5,
          "is_active": true
        }
      ]
    }
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from ..config import CameraConfig
from ..core.errors import DeliveryError


def parse_remote_cameras(items: List[dict]) -> List[CameraConfig]:
    out: List[CameraConfig] = []
    for c in items:
        if not isinstance(c, dict):
            continue
        # ignore inactive cameras
        if c.get("is_active") is False:
            continue
        cam_id = c.get("camera_id") or c.get("id")
        rtsp = c.get("rtsp_url")
        if not cam_id or not rtsp:
            continue
        camera = CameraConfig(
            id=str(cam_id),
            rtsp_url=str(rtsp),
            room_id=str(c["room_id"]) if c.get("room_id") is not None else None,
        )
        interval = c.get("sample_interval_sec")
        if interval is not None:
            try:
                camera.sample_interval_sec = float(interval)
            except (TypeError, ValueError):
                camera.errors.append(f"sample_interval_sec must be a number, got {interval!r}")
        out.append(camera)
    return out


def fetch_camera_configs(client: Any) -> Optional[List[CameraConfig]]:
    """Return active cameras, or None when the service could not be reached."""
    logger = logging.getLogger("cameras.remote")
    try:
        items = client.fetch_cameras()
    except DeliveryError as exc:
        logger.warning("Failed to fetch cameras: %s", exc)
        return None
    return parse_remote_cameras(items)


class CameraDiscovery:
    """
    Registers and deregisters lanes for cameras announced by the record service.

    Only cameras this class registered are ever deregistered; cameras from
    the YAML file are left alone. The supervisor keeps registered lanes
    across config reloads, so ``_remote`` mirrors what is running.
    """

    def __init__(self, client: Any, supervisor: Any, *, interval_sec: float = 60.0) -> None:
        self.logger = logging.getLogger("CameraDiscovery")
        self.client = client
        self.supervisor = supervisor
        self.interval_sec = max(5.0, float(interval_sec))
        self._remote: Dict[str, CameraConfig] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sync_once(self) -> bool:
        cameras = fetch_camera_configs(self.client)
        if cameras is None:
            return False
        # A config file entry with the same id takes over a discovered camera.
        registered = self.supervisor.registered_ids()
        for camera_id in list(self._remote):
            if camera_id not in registered:
                self.logger.info("Camera %s now comes from the config file", camera_id)
                self._remote.pop(camera_id, None)
        local_ids = {c.id for c in self.supervisor.settings.cameras} - set(self._remote)
        seen = set()
        for camera in cameras:
            if camera.id in local_ids:
                continue
            seen.add(camera.id)
            known = self._remote.get(camera.id)
            if known is not None and known.signature() == camera.signature():
                continue
            self._remote[camera.id] = camera
            self.logger.info("Registering camera %s from record service", camera.id)
            self.supervisor.register(camera)
        for camera_id in list(self._remote):
            if camera_id not in seen:
                self.logger.info("Camera %s no longer active; deregistering", camera_id)
                self.supervisor.deregister(camera_id)
                self._remote.pop(camera_id, None)
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name="CameraDiscovery", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.sync_once()
            except Exception as exc:
                self.logger.exception("Camera discovery failed: %s", exc)
            self._stop.wait(timeout=self.interval_sec)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)


__all__ = ["CameraDiscovery", "fetch_camera_configs", "parse_remote_cameras"]
