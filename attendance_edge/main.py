"""
Entry point for the attendance edge node.

Usage (from project root)::

    python -m attendance_edge.main --config config/attendance_edge.yaml --device cpu

This script loads the configuration, initializes logging, loads the
enrollment snapshot, starts one recognition lane per camera, the event
delivery and spool replay threads, slot finalization, health heartbeats
and the watchdog. It runs until interrupted.

One-shot modes:

- ``--preflight`` runs the preflight checks and exits.
- ``--replay-spool`` delivers every due spooled event and exits.
- ``--finalize SLOT_ID`` finalizes one slot occurrence (``MATH@2026-03-02``) now and exits.
"""

from __future__ import annotations

import argparse
import datetime
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv

from .cameras.remote import CameraDiscovery
from .cameras.stream import CameraHealth
from .config import CameraConfig, ConfigReloader, LaneParams, Settings, load_settings
from .core.errors import ConfigError
from .cv.embedder import Embedder
from .cv.face_detector import FaceDetector
from .cv.face_model import load_face_models
from .enrollment import EnrollmentStore, EnrollmentSync
from .events.emitter import EventEmitter
from .events.mqtt_client import HealthPublisher
from .events.outbox import Outbox
from .events.record_client import RecordServiceClient
from .logging_config import setup_logging
from .models.event import CameraHealthEvent, isoformat_utc
from .preflight import main as preflight_main
from .runtime.lane import CameraLane
from .runtime.scheduler import FinalizerScheduler, Scheduler
from .runtime.slots import SlotCalendar
from .runtime.supervisor import LaneSupervisor
from .runtime.watchdog import EdgeWatchdog
from .snapshots import SnapshotWriter

ALLOWED_DEVICES = {"auto", "cpu", "cuda:0"}
DEVICE_ALIASES = {"cuda": "cuda:0"}


def _normalize_device(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    val = str(raw).strip().lower()
    if not val:
        return None
    return DEVICE_ALIASES.get(val, val)


def _cuda_available() -> bool:
    try:
        import onnxruntime  # type: ignore
    except ImportError:
        return False
    return "CUDAExecutionProvider" in onnxruntime.get_available_providers()


def resolve_inference_device(cli_device: Optional[str], configured: str, logger: logging.Logger) -> str:
    requested = _normalize_device(cli_device) or _normalize_device(configured) or "auto"
    if requested not in ALLOWED_DEVICES:
        logger.warning("Unsupported device value '%s'. Falling back to auto-select.", requested)
        requested = "auto"
    cuda = _cuda_available()
    if requested == "auto":
        return "cuda:0" if cuda else "cpu"
    if requested == "cuda:0" and not cuda:
        logger.warning("Requested device 'cuda:0' but CUDAExecutionProvider is not available; using CPU.")
        return "cpu"
    return requested


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Attendance Edge Node")
    parser.add_argument(
        "--config",
        type=str,
        default=os.getenv("EDGE_CONFIG_PATH", "config/attendance_edge.yaml"),
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--device",
        type=str,
        default=os.getenv("EDGE_DEVICE"),
        choices=["auto", "cpu", "cuda", "cuda:0"],
        help="Inference device (auto | cpu | cuda:0). Default: recognition.device from the config.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.getenv("EDGE_LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    parser.add_argument("--log-file", type=str, default=os.getenv("EDGE_LOG_FILE"), help="Also log to this file")
    parser.add_argument("--preflight", action="store_true", help="Run preflight checks and exit")
    parser.add_argument("--replay-spool", action="store_true", help="Deliver spooled events and exit")
    parser.add_argument("--finalize", metavar="SLOT_ID", help="Finalize one slot occurrence (<slot>@<YYYY-MM-DD>) and exit")
    return parser.parse_args(argv)


def _make_client(settings: Settings) -> RecordServiceClient:
    return RecordServiceClient(settings.backend.url, token=settings.backend.token, timeout_sec=settings.backend.timeout_sec)


def _make_emitter(settings: Settings, client: RecordServiceClient, outbox: Outbox) -> EventEmitter:
    d = settings.delivery
    return EventEmitter(
        client,
        outbox,
        node_id=settings.node_id,
        max_attempts=d.max_attempts,
        backoff_base_sec=d.backoff_base_sec,
        backoff_max_sec=d.backoff_max_sec,
        queue_size=d.queue_size,
        replay_interval_sec=d.replay_interval_sec,
        replay_batch_size=d.replay_batch_size,
    )


def _make_finalizer(settings: Settings, client: RecordServiceClient) -> FinalizerScheduler:
    f = settings.finalizer
    return FinalizerScheduler(
        client,
        SlotCalendar(settings.slots, settings.timezone),
        state_path=f.state_path,
        node_id=settings.node_id,
        interval_sec=f.interval_sec,
        grace_sec=f.grace_sec,
        catchup_hours=f.catchup_hours,
    )


def replay_spool_once(emitter: EventEmitter, logger: logging.Logger) -> int:
    total = 0
    while True:
        sent = emitter.replay_spool()
        total += sent
        if sent == 0:
            break
    pending = emitter.outbox.pending_count()
    logger.info("Spool replay finished delivered=%s still_pending=%s", total, pending)
    return 0 if pending == 0 else 1


class EdgeNode:
    """Owns every long-running component of a running node."""

    def __init__(self, settings: Settings, config_path: str, device: str) -> None:
        self.logger = logging.getLogger("EdgeNode")
        self.settings = settings
        self.config_path = config_path
        self.device = device
        self.client = _make_client(settings)
        self.outbox = Outbox(Path(settings.delivery.spool_path), max_queue=settings.delivery.spool_max_queue)
        self.emitter = _make_emitter(settings, self.client, self.outbox)
        self.store = EnrollmentStore(index_type=settings.recognition.index_type)
        self.sync = EnrollmentSync(
            self.store,
            client=self.client,
            source=settings.enrollment.source,
            file_path=settings.enrollment.file,
            cache_path=settings.enrollment.cache_path,
            sync_interval_sec=settings.enrollment.sync_interval_sec,
        )
        self.publisher: Optional[HealthPublisher] = (
            HealthPublisher(settings.mqtt, settings.node_id) if settings.mqtt.enabled else None
        )
        self.calendar = SlotCalendar(settings.slots, settings.timezone)
        snaps = settings.snapshots
        self.snapshot_writer = (
            SnapshotWriter(snaps.base_dir, snaps.base_url, padding=snaps.padding, jpeg_quality=snaps.jpeg_quality)
            if snaps.enabled
            else None
        )
        rec = settings.recognition
        self.models = load_face_models(
            rec.model_name,
            root=rec.model_root,
            device=device,
            det_size=rec.det_size,
            det_thresh=rec.min_detection_confidence,
        )
        self.supervisor = LaneSupervisor(settings, self._build_lane, on_health=self._on_camera_health)
        self.finalizer = _make_finalizer(settings, self.client) if settings.finalizer.enabled else None
        self.scheduler = (
            Scheduler(
                settings.node_id,
                self.publisher,
                self.supervisor,
                store=self.store,
                outbox=self.outbox,
                interval=settings.watchdog.heartbeat_interval_sec,
            )
            if self.publisher is not None
            else None
        )
        self.watchdog = EdgeWatchdog(
            supervisor=self.supervisor,
            health_path=settings.watchdog.health_path,
            interval_sec=settings.watchdog.interval_sec,
            stall_sec=settings.watchdog.stall_sec,
            restart_lane=self.supervisor.restart,
            publisher=self.publisher,
            store=self.store,
            outbox=self.outbox,
        )
        self.reloader = ConfigReloader(config_path, self._on_config_change)
        self.discovery = (
            CameraDiscovery(self.client, self.supervisor, interval_sec=settings.backend.camera_discovery_interval_sec)
            if settings.backend.camera_discovery
            else None
        )

    def _build_lane(self, camera: CameraConfig, params: LaneParams) -> CameraLane:
        rec = self.settings.recognition
        return CameraLane(
            camera,
            params,
            detector=FaceDetector(
                self.models.detector,
                min_confidence=rec.min_detection_confidence,
                min_face_size=rec.min_face_size,
                max_faces=rec.max_faces,
            ),
            embedder=Embedder(self.models.recognizer, batch_size=rec.batch_size),
            store=self.store,
            emitter=self.emitter,
            calendar=self.calendar,
            snapshot_writer=self.snapshot_writer,
            ingest=self.settings.ingest,
            on_health=self._on_camera_health,
            reset_on_slot_change=self.settings.dedup.reset_on_slot_change,
        )

    def _on_camera_health(
        self, camera_id: str, state: CameraHealth, ts: datetime.datetime, reason: Optional[str]
    ) -> None:
        if self.publisher is None:
            return
        self.publisher.publish_camera_health(
            CameraHealthEvent(
                camera_id=camera_id,
                state=state.value,
                timestamp=isoformat_utc(ts),
                node_id=self.settings.node_id,
                reason=reason,
            )
        )

    def _on_config_change(self, settings: Settings) -> None:
        self.settings = settings
        self.calendar = SlotCalendar(settings.slots, settings.timezone)
        if self.finalizer is not None:
            self.finalizer.calendar = self.calendar
        d = settings.delivery
        self.emitter.update_policy(
            max_attempts=d.max_attempts,
            backoff_base_sec=d.backoff_base_sec,
            backoff_max_sec=d.backoff_max_sec,
            replay_interval_sec=d.replay_interval_sec,
            replay_batch_size=d.replay_batch_size,
        )
        # Lanes started from here on are built from self.settings and self.calendar.
        self.supervisor.reconcile(settings, calendar=self.calendar)

    def start(self) -> None:
        if self.sync.load_cached():
            self.logger.info("Loaded cached enrollment version=%s", self.store.version)
        try:
            self.sync.sync_once()
        except Exception as exc:
            self.logger.warning("Initial enrollment sync failed; using cached snapshot: %s", exc)
        if self.store.current().empty:
            self.logger.warning("No enrolled identities; every face will be unmatched until a snapshot arrives")
        self.sync.start()
        if self.publisher is not None:
            self.publisher.connect()
        self.emitter.start()
        self.supervisor.start_all()
        if self.discovery is not None:
            self.discovery.start()
        if self.finalizer is not None:
            self.finalizer.start()
        if self.scheduler is not None:
            self.scheduler.start()
        self.watchdog.start()
        self.reloader.start()

    def stop(self) -> None:
        self.reloader.stop()
        if self.discovery is not None:
            self.discovery.stop()
        self.watchdog.stop()
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.finalizer is not None:
            self.finalizer.stop()
        self.supervisor.stop_all()
        self.emitter.stop()
        self.sync.stop()
        if self.publisher is not None:
            self.publisher.stop()
        self.outbox.close()
        self.client.close()


def main(argv: Optional[List[str]] = None) -> int:
    # Load local .env so connection settings and tokens are honored.
    load_dotenv()
    args = parse_args(argv if argv is not None else sys.argv[1:])
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    setup_logging(level=log_level, log_file=args.log_file)
    logger = logging.getLogger("main")
    if args.preflight:
        return preflight_main(["--config", args.config])
    try:
        settings: Settings = load_settings(args.config)
    except (OSError, ConfigError) as exc:
        logger.error("Failed to load configuration: %s", exc)
        return 1
    logger.info("Loaded settings for node %s (%s cameras)", settings.node_id, len(settings.cameras))

    if args.replay_spool or args.finalize:
        client = _make_client(settings)
        try:
            if args.replay_spool:
                outbox = Outbox(Path(settings.delivery.spool_path), max_queue=settings.delivery.spool_max_queue)
                try:
                    return replay_spool_once(_make_emitter(settings, client, outbox), logger)
                finally:
                    outbox.close()
            ok = _make_finalizer(settings, client).request_finalize(args.finalize)
            return 0 if ok else 1
        finally:
            client.close()

    device = resolve_inference_device(args.device, settings.recognition.device, logger)
    logger.info("Inference device: %s", device)
    try:
        node = EdgeNode(settings, args.config, device)
    except (RuntimeError, ConfigError) as exc:
        logger.error("Edge node failed to initialize: %s", exc)
        return 1

    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    node.start()
    logger.info("Edge node started; press Ctrl+C to stop")
    try:
        while not stop_event.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Shutting down edge node…")
    finally:
        node.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
