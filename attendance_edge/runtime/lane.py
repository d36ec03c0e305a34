"""
One camera's recognition lane.

A lane runs two threads. The capture thread pulls sampled frames from a
``StreamIngestor`` into a small drop-oldest ``FrameQueue``; the
processing thread takes frames from that queue and runs
detect -> embed -> match -> dedup -> emit on each one in order. Slow
inference therefore costs dropped frames, never a stalled capture, and
events of one camera leave in frame order.

Stopping a lane sets its stop flag: an inference call already in
progress finishes, but its result is thrown away.
"""

from __future__ import annotations

import datetime
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..cameras.stream import CameraHealth, FrameQueue, HealthCallback, OpenCapture, StreamIngestor
from ..config import CameraConfig, IngestConfig, LaneParams
from ..core.errors import log_exception
from ..models.event import AttendanceEvent, LaneStatusModel, isoformat_utc
from ..models.frame import Frame
from ..recognition.dedup import Deduplicator
from ..recognition.matcher import Matcher


@dataclass
class LaneStats:
    """Counters for one lane. Only the lane's own threads write them."""

    frames_captured: int = 0
    frames_processed: int = 0
    frames_dropped: int = 0
    degenerate_frames: int = 0
    faces_detected: int = 0
    low_confidence_faces: int = 0
    alignment_failures: int = 0
    matches: int = 0
    unmatched: Counter = field(default_factory=Counter)
    duplicates_suppressed: int = 0
    events_emitted: int = 0
    discarded_after_stop: int = 0
    errors: int = 0


@dataclass
class LaneState:
    """Mutable health state shared with the watchdog and heartbeat."""

    started_at_utc: Optional[datetime.datetime] = None
    last_frame_utc: Optional[datetime.datetime] = None
    last_frame_monotonic: Optional[float] = None
    fps_estimate: Optional[float] = None
    health: Optional[CameraHealth] = None
    reason: Optional[str] = None
    finished: bool = False


class CameraLane:
    """
    Parameters
    ----------
    camera: CameraConfig
        Camera definition.
    params: LaneParams
        Validated per-lane thresholds and windows.
    detector, embedder:
        ``FaceDetector`` and ``Embedder`` (or compatible fakes).
    store:
        ``EnrollmentStore`` shared by all lanes.
    emitter:
        ``EventEmitter`` shared by all lanes.
    calendar:
        Optional ``SlotCalendar`` for slot resolution.
    snapshot_writer:
        Optional ``SnapshotWriter`` for evidence photos.
    ingest: IngestConfig
        Queue size and reconnect policy.
    on_health: Optional[HealthCallback]
        Forwarded camera state transitions.
    open_capture: Optional[OpenCapture]
        Capture factory override for the ingestor.
    """

    def __init__(
        self,
        camera: CameraConfig,
        params: LaneParams,
        *,
        detector: Any,
        embedder: Any,
        store: Any,
        emitter: Any,
        calendar: Any = None,
        snapshot_writer: Any = None,
        ingest: Optional[IngestConfig] = None,
        on_health: Optional[HealthCallback] = None,
        open_capture: Optional[OpenCapture] = None,
        reset_on_slot_change: bool = True,
        failed_retry_sec: float = 60.0,
        evict_interval_sec: float = 60.0,
    ) -> None:
        self.logger = logging.getLogger(f"Lane-{camera.id}")
        self.camera = camera
        self.camera_id = camera.id
        self.params = params
        self.detector = detector
        self.embedder = embedder
        self.emitter = emitter
        self.calendar = calendar
        self.snapshot_writer = snapshot_writer
        self.ingest = ingest or IngestConfig()
        self.on_health = on_health
        self.failed_retry_sec = max(1.0, float(failed_retry_sec))
        self.evict_interval_sec = max(1.0, float(evict_interval_sec))
        self.matcher = Matcher(store, threshold=params.match_threshold, margin=params.match_margin)
        self.dedup = Deduplicator(
            camera.id,
            cooldown_sec=params.cooldown_sec,
            idle_evict_sec=params.idle_evict_sec,
            reset_on_slot_change=reset_on_slot_change,
        )
        self.queue: FrameQueue[Frame] = FrameQueue(self.ingest.queue_size)
        self.stats = LaneStats()
        self.state = LaneState()
        self._stop = threading.Event()
        self.ingestor = StreamIngestor(
            camera.id,
            camera.source(),
            sample_interval_sec=params.sample_interval_sec,
            backoff_base_sec=self.ingest.backoff_base_sec,
            backoff_max_sec=self.ingest.backoff_max_sec,
            max_consecutive_failures=self.ingest.max_consecutive_failures,
            on_health=self._handle_health,
            stop_event=self._stop,
            open_capture=open_capture,
        )
        self._capture_thread: Optional[threading.Thread] = None
        self._process_thread: Optional[threading.Thread] = None
        self._last_evict = time.monotonic()
        self._last_summary = time.monotonic()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _handle_health(
        self, camera_id: str, state: CameraHealth, ts: datetime.datetime, reason: Optional[str]
    ) -> None:
        self.state.health = state
        self.state.reason = reason
        if self.on_health is not None:
            self.on_health(camera_id, state, ts, reason)

    def start(self) -> None:
        if self._capture_thread is not None and self._capture_thread.is_alive():
            return
        self.state.started_at_utc = datetime.datetime.now(datetime.timezone.utc)
        self._capture_thread = threading.Thread(target=self._capture_loop, name=f"Capture-{self.camera_id}", daemon=True)
        self._process_thread = threading.Thread(target=self._process_loop, name=f"Process-{self.camera_id}", daemon=True)
        self._process_thread.start()
        self._capture_thread.start()
        self.logger.info(
            "Lane started camera=%s room=%s threshold=%.3f margin=%.3f cooldown=%ss",
            self.camera_id,
            self.params.room_id,
            self.params.match_threshold,
            self.params.match_margin,
            self.params.cooldown_sec,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self.queue.close()
        for thread in (self._capture_thread, self._process_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
        self.logger.info("Lane stopped camera=%s", self.camera_id)

    def is_alive(self) -> bool:
        return any(t is not None and t.is_alive() for t in (self._capture_thread, self._process_thread))

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in (self._capture_thread, self._process_thread):
            if thread is not None:
                thread.join(timeout=timeout)

    def update_params(self, params: LaneParams) -> None:
        """Apply thresholds and windows in place; no restart needed."""
        self.params = params
        self.matcher.update(threshold=params.match_threshold, margin=params.match_margin)
        self.dedup.update_windows(cooldown_sec=params.cooldown_sec, idle_evict_sec=params.idle_evict_sec)
        self.logger.info(
            "Lane params updated threshold=%.3f margin=%.3f cooldown=%ss",
            params.match_threshold,
            params.match_margin,
            params.cooldown_sec,
        )

    def set_calendar(self, calendar: Any) -> None:
        """Resolve slots from ``calendar`` starting with the next match."""
        self.calendar = calendar

    def _record_frame(self) -> None:
        now_mono = time.monotonic()
        self.state.last_frame_utc = datetime.datetime.now(datetime.timezone.utc)
        if self.state.last_frame_monotonic is not None:
            dt = now_mono - self.state.last_frame_monotonic
            if dt > 0:
                inst = 1.0 / dt
                prev = self.state.fps_estimate
                self.state.fps_estimate = inst if prev is None else (0.8 * prev + 0.2 * inst)
        self.state.last_frame_monotonic = now_mono

    def _capture_loop(self) -> None:
        try:
            while not self._stop.is_set():
                for frame in self.ingestor.frames():
                    self.stats.frames_captured += 1
                    self._record_frame()
                    if self.queue.put(frame):
                        self.stats.frames_dropped += 1
                if self._stop.is_set():
                    break
                if self.ingestor.state != CameraHealth.FAILED:
                    # File source reached its end.
                    self.state.finished = True
                    break
                self.logger.error(
                    "Camera %s FAILED; next attempt in %.0fs", self.camera_id, self.failed_retry_sec
                )
                if self._stop.wait(timeout=self.failed_retry_sec):
                    break
        except Exception as exc:
            self.stats.errors += 1
            log_exception(self.logger, "Capture loop crashed", extra={"camera": self.camera_id}, exc=exc)
        finally:
            self.queue.close()

    def _process_loop(self) -> None:
        while True:
            frame = self.queue.get(timeout=0.5)
            if frame is None:
                if self.queue.closed and len(self.queue) == 0:
                    break
                continue
            if self._stop.is_set():
                self.stats.discarded_after_stop += 1
                continue
            try:
                self.process_frame(frame)
            except Exception as exc:
                self.stats.errors += 1
                log_exception(
                    self.logger,
                    "Frame processing failed",
                    extra={"camera": self.camera_id, "seq": frame.seq},
                    exc=exc,
                )
            self._maybe_housekeep(frame.timestamp)

    def _maybe_housekeep(self, now_utc: datetime.datetime) -> None:
        now = time.monotonic()
        if now - self._last_evict >= self.evict_interval_sec:
            self._last_evict = now
            self.dedup.evict_idle(now_utc)
        if now - self._last_summary >= 60.0:
            self._last_summary = now
            s = self.stats
            self.logger.info(
                "Lane summary camera=%s frames=%s dropped=%s degenerate=%s faces=%s matches=%s "
                "unmatched=%s suppressed=%s events=%s errors=%s",
                self.camera_id,
                s.frames_processed,
                s.frames_dropped,
                s.degenerate_frames,
                s.faces_detected,
                s.matches,
                dict(s.unmatched),
                s.duplicates_suppressed,
                s.events_emitted,
                s.errors,
            )

    def process_frame(self, frame: Frame) -> List[AttendanceEvent]:
        """Run one frame through detect -> embed -> match -> dedup -> emit."""
        params = self.params
        degenerate_before = getattr(self.detector, "degenerate_frames", 0)
        rejected_before = getattr(self.detector, "rejected_faces", 0)
        faces = self.detector.detect(frame, min_confidence=params.min_detection_confidence)
        self.stats.degenerate_frames += getattr(self.detector, "degenerate_frames", 0) - degenerate_before
        self.stats.low_confidence_faces += getattr(self.detector, "rejected_faces", 0) - rejected_before
        self.stats.frames_processed += 1
        if not faces:
            return []
        self.stats.faces_detected += len(faces)

        embeddings = self.embedder.embed(frame.image, faces)
        self.stats.alignment_failures += len(faces) - len(embeddings)
        if self._stop.is_set():
            self.stats.discarded_after_stop += 1
            return []

        events: List[AttendanceEvent] = []
        for embedding in embeddings:
            result = self.matcher.match(embedding, self.camera_id, frame.timestamp)
            if not result.matched:
                self.stats.unmatched[result.reason] += 1
                continue
            self.stats.matches += 1
            calendar = self.calendar
            slot = calendar.resolve(params.room_id, frame.timestamp) if calendar is not None else None
            slot_id = slot.occurrence_id if slot is not None else None
            if not self.dedup.observe(result.identity_id, frame.timestamp, slot_id):
                self.stats.duplicates_suppressed += 1
                continue
            if self._stop.is_set():
                self.stats.discarded_after_stop += 1
                return events
            evidence = None
            if self.snapshot_writer is not None:
                evidence = self.snapshot_writer.save(
                    frame.image,
                    embedding.face,
                    identity_id=result.identity_id,
                    timestamp_utc=isoformat_utc(frame.timestamp),
                )
            event = self.emitter.emit(result, room_id=params.room_id, slot_id=slot_id, evidence_photo=evidence)
            self.stats.events_emitted += 1
            events.append(event)
        return events

    def status(self) -> LaneStatusModel:
        health = self.state.health.value if self.state.health is not None else "STARTING"
        return LaneStatusModel(
            camera_id=self.camera_id,
            state=health,
            last_frame_utc=isoformat_utc(self.state.last_frame_utc) if self.state.last_frame_utc else None,
            fps_estimate=round(self.state.fps_estimate, 2) if self.state.fps_estimate is not None else None,
            frames_dropped=self.stats.frames_dropped,
            events_emitted=self.stats.events_emitted,
        )

    def stats_dict(self) -> Dict[str, Any]:
        s = self.stats
        return {
            "frames_captured": s.frames_captured,
            "frames_processed": s.frames_processed,
            "frames_dropped": s.frames_dropped,
            "degenerate_frames": s.degenerate_frames,
            "faces_detected": s.faces_detected,
            "low_confidence_faces": s.low_confidence_faces,
            "alignment_failures": s.alignment_failures,
            "matches": s.matches,
            "unmatched": dict(s.unmatched),
            "duplicates_suppressed": s.duplicates_suppressed,
            "events_emitted": s.events_emitted,
            "discarded_after_stop": s.discarded_after_stop,
            "errors": s.errors,
            "reconnects": self.ingestor.reconnects,
        }


__all__ = ["CameraLane", "LaneState", "LaneStats"]
