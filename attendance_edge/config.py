"""
Configuration loading for the attendance edge node.

This module provides a Settings class that loads configuration data
from a YAML file located on disk and allows overrides via environment
variables. Environment variables take precedence over values defined
in the YAML configuration. See ``config/attendance_edge.yaml`` for a
sample configuration file.

Camera entries are parsed leniently: a malformed camera never fails the
whole load. Problems are collected on the camera and raised as a
``ConfigError`` by :func:`resolve_lane_params` when that camera's lane is
started, so only the affected lane is lost.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional

import yaml

from .core.errors import ConfigError

logger = logging.getLogger("config")


@dataclass
class CameraConfig:
    """Configuration for a single camera source."""

    id: str
    rtsp_url: str
    room_id: Optional[str] = None
    sample_interval_sec: float = 0.5
    test_video: Optional[str] = None
    enabled: bool = True
    # Per-camera overrides of the global recognition/dedup settings.
    match_threshold: Optional[float] = None
    match_margin: Optional[float] = None
    cooldown_sec: Optional[float] = None
    # Parse problems found while loading; raised when the lane starts.
    errors: List[str] = field(default_factory=list, compare=False)

    def source(self) -> str:
        """Return the capture source, preferring an existing test video."""
        if self.test_video:
            path = Path(self.test_video).expanduser()
            if not path.is_absolute():
                path = (Path.cwd() / path).resolve()
            if path.exists():
                return str(path)
            logger.warning("Test video not found for camera %s: %s (falling back to rtsp)", self.id, path)
        return self.rtsp_url

    def signature(self) -> tuple:
        """Fields whose change requires restarting the lane."""
        return (self.rtsp_url, self.room_id, self.sample_interval_sec, self.test_video, self.enabled)


@dataclass
class BackendConfig:
    """Record-of-truth service connection."""

    url: str = "http://127.0.0.1:8001"
    token: Optional[str] = None
    timeout_sec: float = 5.0
    # Pull the camera list from the record service and register lanes at runtime.
    camera_discovery: bool = False
    camera_discovery_interval_sec: float = 60.0


@dataclass
class MqttConfig:
    enabled: bool = True
    host: str = "localhost"
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class IngestConfig:
    """Capture and reconnect behaviour shared by all lanes."""

    queue_size: int = 4
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 30.0
    max_consecutive_failures: int = 10


@dataclass
class RecognitionConfig:
    """
    Detection and matching parameters.

    ``match_threshold`` and ``match_margin`` have no defaults: they have to
    be calibrated per deployment (camera, lighting, model) and a lane
    without an effective value is refused.
    """

    model_name: str = "buffalo_l"
    model_root: Optional[str] = None
    det_size: int = 640
    device: str = "cpu"
    min_detection_confidence: float = 0.5
    min_face_size: int = 40
    max_faces: int = 0
    match_threshold: Optional[float] = None
    match_margin: Optional[float] = None
    index_type: str = "flat"
    batch_size: int = 16


@dataclass
class DedupConfig:
    cooldown_sec: float = 900.0
    idle_evict_sec: float = 7200.0
    # Start a new cooldown window when the resolved slot changes.
    reset_on_slot_change: bool = True


@dataclass
class DeliveryConfig:
    """Attendance delivery, retry and spool settings."""

    max_attempts: int = 3
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 30.0
    queue_size: int = 1000
    spool_path: str = "data/spool.db"
    spool_max_queue: int = 50000
    replay_interval_sec: float = 30.0
    replay_batch_size: int = 100


@dataclass
class EnrollmentConfig:
    """Where enrollment snapshots come from and how often they refresh."""

    source: str = "backend"
    file: Optional[str] = None
    sync_interval_sec: float = 300.0
    cache_path: str = "data/enrollment_cache.json"


@dataclass
class SlotConfig:
    """
    A scheduled class or exam period in one room.

    Either ``weekdays`` (0=Monday) for a recurring class or ``date``
    (``YYYY-MM-DD``) for a one-off exam. Times are ``HH:MM`` in the node
    timezone.
    """

    id: str
    room_id: str
    start: str
    end: str
    weekdays: List[int] = field(default_factory=list)
    date: Optional[str] = None


@dataclass
class FinalizerConfig:
    enabled: bool = True
    interval_sec: float = 30.0
    grace_sec: float = 300.0
    catchup_hours: float = 24.0
    state_path: str = "data/finalizer_state.json"


@dataclass
class SnapshotConfig:
    enabled: bool = True
    base_dir: str = "data/evidence"
    base_url: Optional[str] = None
    padding: float = 0.25
    jpeg_quality: int = 90


@dataclass
class WatchdogConfig:
    interval_sec: float = 5.0
    stall_sec: float = 45.0
    health_path: str = "data/edge_health.json"
    heartbeat_interval_sec: float = 30.0


@dataclass
class Settings:
    """
    Application settings loaded from YAML and environment variables.

    Parameters are typed for convenience. Connection parameters may be
    overridden via environment variables (see :func:`load_settings`).
    """

    node_id: str
    timezone: str
    cameras: List[CameraConfig]
    backend: BackendConfig = field(default_factory=BackendConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    recognition: RecognitionConfig = field(default_factory=RecognitionConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    enrollment: EnrollmentConfig = field(default_factory=EnrollmentConfig)
    slots: List[SlotConfig] = field(default_factory=list)
    finalizer: FinalizerConfig = field(default_factory=FinalizerConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)

    def camera(self, camera_id: str) -> Optional[CameraConfig]:
        for cam in self.cameras:
            if cam.id == camera_id:
                return cam
        return None


@dataclass(frozen=True)
class LaneParams:
    """Validated, effective parameters for one camera lane."""

    camera_id: str
    room_id: Optional[str]
    sample_interval_sec: float
    min_detection_confidence: float
    match_threshold: float
    match_margin: float
    cooldown_sec: float
    idle_evict_sec: float


def _load_yaml_file(config_path: Path) -> dict:
    """Load a YAML configuration file and return a dictionary."""
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file {config_path!s} not found")
    with config_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_path!s} must contain a mapping")
    return data


def _section(cls, data: Any, name: str):
    """Instantiate a section dataclass from a dict, ignoring unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown keys in '%s': %s", name, sorted(unknown))
    try:
        return cls(**{k: v for k, v in data.items() if k in known})
    except TypeError as exc:
        raise ConfigError(f"Invalid section '{name}': {exc}") from exc


def _optional_float(raw: Any, key: str, errors: List[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        errors.append(f"{key} must be a number, got {raw!r}")
        return None


def _parse_camera(cam_dict: dict) -> Optional[CameraConfig]:
    cam_id = cam_dict.get("id") or cam_dict.get("camera_id")
    if not cam_id:
        logger.error("Skipping camera without id: %s", cam_dict)
        return None
    cam_id = str(cam_id)
    errors: List[str] = []
    rtsp_url = os.getenv(f"RTSP_URL_{cam_id}", cam_dict.get("rtsp_url") or "")
    if not rtsp_url and not cam_dict.get("test_video"):
        errors.append("rtsp_url is required")
    interval = _optional_float(cam_dict.get("sample_interval_sec", 0.5), "sample_interval_sec", errors)
    return CameraConfig(
        id=cam_id,
        rtsp_url=str(rtsp_url),
        room_id=str(cam_dict["room_id"]) if cam_dict.get("room_id") is not None else None,
        sample_interval_sec=interval if interval is not None else 0.5,
        test_video=cam_dict.get("test_video"),
        enabled=bool(cam_dict.get("enabled", True)),
        match_threshold=_optional_float(cam_dict.get("match_threshold"), "match_threshold", errors),
        match_margin=_optional_float(cam_dict.get("match_margin"), "match_margin", errors),
        cooldown_sec=_optional_float(cam_dict.get("cooldown_sec"), "cooldown_sec", errors),
        errors=errors,
    )


def _parse_slots(raw: Any) -> List[SlotConfig]:
    slots: List[SlotConfig] = []
    for item in raw or []:
        slot = _section(SlotConfig, item, "slots")
        slot.id = str(slot.id)
        slot.room_id = str(slot.room_id)
        slot.weekdays = [int(d) for d in (slot.weekdays or [])]
        if not slot.weekdays and not slot.date:
            raise ConfigError(f"Slot {slot.id} needs weekdays or date")
        slots.append(slot)
    return slots


def load_settings(config_path: str) -> Settings:
    """
    Load settings from a YAML file and environment variables.

    Environment variable overrides:

    - ``NODE_ID`` overrides ``node_id``
    - ``BACKEND_URL`` / ``BACKEND_TOKEN`` override the record service connection
    - ``MQTT_BROKER_HOST`` / ``MQTT_BROKER_PORT`` / ``MQTT_USERNAME`` / ``MQTT_PASSWORD``
    - ``RTSP_URL_<camera_id>`` overrides a camera's RTSP URL
    - ``EDGE_SPOOL_PATH`` overrides the delivery spool location

    Parameters
    ----------
    config_path: str
        Path to the YAML configuration file.

    Returns
    -------
    Settings
        A Settings instance with configuration and environment overrides applied.

    Raises
    ------
    ConfigError
        When a global section is malformed.
    """
    path = Path(config_path)
    data = _load_yaml_file(path)

    node_id = os.getenv("NODE_ID", data.get("node_id"))
    if not node_id:
        raise ConfigError("node_id is required")

    backend = _section(BackendConfig, data.get("backend"), "backend")
    backend.url = os.getenv("BACKEND_URL", backend.url)
    backend.token = os.getenv("BACKEND_TOKEN", backend.token)

    mqtt = _section(MqttConfig, data.get("mqtt"), "mqtt")
    mqtt.host = os.getenv("MQTT_BROKER_HOST", mqtt.host)
    mqtt.port = int(os.getenv("MQTT_BROKER_PORT", mqtt.port))
    mqtt.username = os.getenv("MQTT_USERNAME", mqtt.username)
    mqtt.password = os.getenv("MQTT_PASSWORD", mqtt.password)

    delivery = _section(DeliveryConfig, data.get("delivery"), "delivery")
    delivery.spool_path = os.getenv("EDGE_SPOOL_PATH", delivery.spool_path)

    cameras: List[CameraConfig] = []
    seen: set[str] = set()
    for cam_dict in data.get("cameras", []) or []:
        if not isinstance(cam_dict, dict):
            logger.error("Skipping malformed camera entry: %r", cam_dict)
            continue
        camera = _parse_camera(cam_dict)
        if camera is None:
            continue
        if camera.id in seen:
            camera.errors.append("duplicate camera id")
        seen.add(camera.id)
        cameras.append(camera)

    settings = Settings(
        node_id=str(node_id),
        timezone=str(data.get("timezone", "UTC")),
        cameras=cameras,
        backend=backend,
        mqtt=mqtt,
        ingest=_section(IngestConfig, data.get("ingest"), "ingest"),
        recognition=_section(RecognitionConfig, data.get("recognition"), "recognition"),
        dedup=_section(DedupConfig, data.get("dedup"), "dedup"),
        delivery=delivery,
        enrollment=_section(EnrollmentConfig, data.get("enrollment"), "enrollment"),
        slots=_parse_slots(data.get("slots")),
        finalizer=_section(FinalizerConfig, data.get("finalizer"), "finalizer"),
        snapshots=_section(SnapshotConfig, data.get("snapshots"), "snapshots"),
        watchdog=_section(WatchdogConfig, data.get("watchdog"), "watchdog"),
    )
    if settings.recognition.index_type not in {"flat", "hnsw"}:
        raise ConfigError(f"recognition.index_type must be 'flat' or 'hnsw', got {settings.recognition.index_type!r}")
    if settings.enrollment.source not in {"backend", "file"}:
        raise ConfigError(f"enrollment.source must be 'backend' or 'file', got {settings.enrollment.source!r}")
    return settings


def resolve_lane_params(camera: CameraConfig, settings: Settings) -> LaneParams:
    """
    Validate one camera against the global settings and return its effective parameters.

    Raises
    ------
    ConfigError
        With ``camera_id`` set; only this camera's lane is affected.
    """
    problems = list(camera.errors)
    rec = settings.recognition
    threshold = camera.match_threshold if camera.match_threshold is not None else rec.match_threshold
    margin = camera.match_margin if camera.match_margin is not None else rec.match_margin
    cooldown = camera.cooldown_sec if camera.cooldown_sec is not None else settings.dedup.cooldown_sec

    if threshold is None:
        problems.append("match_threshold is not configured")
    elif not -1.0 <= float(threshold) <= 1.0:
        problems.append(f"match_threshold {threshold} outside [-1, 1]")
    if margin is None:
        problems.append("match_margin is not configured")
    elif not 0.0 <= float(margin) <= 2.0:
        problems.append(f"match_margin {margin} outside [0, 2]")
    if not 0.0 < float(rec.min_detection_confidence) <= 1.0:
        problems.append(f"min_detection_confidence {rec.min_detection_confidence} outside (0, 1]")
    if camera.sample_interval_sec < 0:
        problems.append("sample_interval_sec must be >= 0")
    if cooldown is None or float(cooldown) <= 0:
        problems.append("cooldown_sec must be > 0")

    if problems:
        raise ConfigError(f"camera {camera.id}: {'; '.join(problems)}", camera_id=camera.id)
    return LaneParams(
        camera_id=camera.id,
        room_id=camera.room_id,
        sample_interval_sec=float(camera.sample_interval_sec),
        min_detection_confidence=float(rec.min_detection_confidence),
        match_threshold=float(threshold),
        match_margin=float(margin),
        cooldown_sec=float(cooldown),
        idle_evict_sec=float(settings.dedup.idle_evict_sec),
    )


class ConfigReloader:
    """Polls the configuration file and reports parsed changes."""

    def __init__(
        self,
        path: str,
        on_change: Callable[[Settings], None],
        refresh_interval: float = 5.0,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.path = Path(path).expanduser()
        self.on_change = on_change
        self.refresh_interval = refresh_interval
        self._last_mtime: Optional[float] = self._mtime()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _mtime(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def check_once(self) -> bool:
        """Reload if the file changed. Returns True when ``on_change`` was called."""
        mtime = self._mtime()
        if mtime is None or mtime == self._last_mtime:
            return False
        self._last_mtime = mtime
        try:
            settings = load_settings(str(self.path))
        except Exception as exc:
            self.logger.error("Config reload failed; keeping current settings: %s", exc)
            return False
        self.logger.info("Configuration changed; applying %s", self.path)
        self.on_change(settings)
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="ConfigReloader", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(timeout=self.refresh_interval):
            try:
                self.check_once()
            except Exception as exc:
                self.logger.exception("Config reload tick failed: %s", exc)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)


__all__: List[str] = [
    "CameraConfig",
    "BackendConfig",
    "MqttConfig",
    "IngestConfig",
    "RecognitionConfig",
    "DedupConfig",
    "DeliveryConfig",
    "EnrollmentConfig",
    "SlotConfig",
    "FinalizerConfig",
    "SnapshotConfig",
    "WatchdogConfig",
    "Settings",
    "LaneParams",
    "load_settings",
    "resolve_lane_params",
    "ConfigReloader",
]
