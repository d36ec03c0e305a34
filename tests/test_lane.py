import datetime
import threading

import numpy as np

from attendance_edge.cameras.stream import CameraHealth
from attendance_edge.config import CameraConfig, IngestConfig, LaneParams, SlotConfig
from attendance_edge.enrollment import EnrollmentStore
from attendance_edge.models.frame import DetectedFace, Embedding, Frame
from attendance_edge.runtime.lane import CameraLane
from attendance_edge.runtime.slots import SlotCalendar

UTC = datetime.timezone.utc
ALICE = [1.0, 0.0, 0.0, 0.0]
BOB = [0.0, 1.0, 0.0, 0.0]
STRANGER = [0.0, 0.0, 0.0, 1.0]


class _DummyCapture:
    def __init__(self, total_frames: int) -> None:
        self._total_frames = total_frames
        self._idx = 0
        self.released = False

    def isOpened(self) -> bool:  # noqa: N802
        return True

    def read(self):  # type: ignore[no-untyped-def]
        if self._idx < self._total_frames:
            self._idx += 1
            return True, np.zeros((120, 160, 3), dtype=np.uint8)
        return False, None

    def get(self, _prop):  # type: ignore[no-untyped-def]
        return 0.0

    def release(self) -> None:
        self.released = True


class _DummyDetector:
    """Reports one face per vector in ``people``."""

    def __init__(self, people, fail: bool = False) -> None:  # type: ignore[no-untyped-def]
        self.people = people
        self.fail = fail
        self.degenerate_frames = 0
        self.rejected_faces = 0
        self.thresholds = []

    def detect(self, frame, *, min_confidence=None):  # type: ignore[no-untyped-def]
        if self.fail:
            raise RuntimeError("detector crashed")
        self.thresholds.append(min_confidence)
        return [
            DetectedFace(
                camera_id=frame.camera_id,
                frame_seq=frame.seq,
                frame_ts=frame.timestamp,
                bbox=(10 * i, 10, 10 * i + 60, 70),
                landmarks=((1.0, 1.0),) * 5,
                det_score=0.9,
            )
            for i in range(len(self.people))
        ]


class _DummyEmbedder:
    def __init__(self, people) -> None:  # type: ignore[no-untyped-def]
        self.people = people

    def embed(self, image, faces):  # type: ignore[no-untyped-def]
        return [
            Embedding(vector=np.array(vec, dtype=np.float32), quality=0.9, face=face)
            for vec, face in zip(self.people, faces)
        ]


class _RecordingEmitter:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.events = []

    def emit(self, match, *, room_id=None, slot_id=None, evidence_photo=None):  # type: ignore[no-untyped-def]
        event = {
            "identity_id": match.identity_id,
            "camera_id": match.camera_id,
            "room_id": room_id,
            "slot_id": slot_id,
            "evidence_photo": evidence_photo,
        }
        with self.lock:
            self.events.append(event)
        return event


class _RecordingSnapshots:
    def __init__(self) -> None:
        self.saved = []

    def save(self, image, face, *, identity_id, timestamp_utc):  # type: ignore[no-untyped-def]
        self.saved.append((identity_id, timestamp_utc))
        return f"/evidence/{identity_id}.jpg"


def _store() -> EnrollmentStore:
    store = EnrollmentStore()
    store.refresh(
        [
            {"identity_id": "alice", "embeddings": [ALICE]},
            {"identity_id": "bob", "embeddings": [BOB]},
        ]
    )
    return store


def _params(camera_id: str = "CAM_1", **overrides) -> LaneParams:  # type: ignore[no-untyped-def]
    values = dict(
        camera_id=camera_id,
        room_id="101",
        sample_interval_sec=0.0,
        min_detection_confidence=0.6,
        match_threshold=0.5,
        match_margin=0.1,
        cooldown_sec=600.0,
        idle_evict_sec=7200.0,
    )
    values.update(overrides)
    return LaneParams(**values)


def _lane(people, *, camera_id="CAM_1", emitter=None, store=None, fail=False, frames=3, **kwargs):  # type: ignore[no-untyped-def]
    camera = CameraConfig(id=camera_id, rtsp_url=f"/videos/{camera_id}.mp4", room_id="101")
    return CameraLane(
        camera,
        _params(camera_id),
        detector=_DummyDetector(people, fail=fail),
        embedder=_DummyEmbedder(people),
        store=store or _store(),
        emitter=emitter or _RecordingEmitter(),
        ingest=IngestConfig(queue_size=8),
        open_capture=lambda source, realtime: _DummyCapture(frames),
        **kwargs,
    )


def _frame(seq: int, ts: datetime.datetime, camera_id: str = "CAM_1") -> Frame:
    return Frame(camera_id=camera_id, seq=seq, timestamp=ts, image=np.zeros((120, 160, 3), dtype=np.uint8))


def test_process_frame_emits_once_per_identity():
    emitter = _RecordingEmitter()
    lane = _lane([ALICE, BOB, STRANGER], emitter=emitter)
    t0 = datetime.datetime(2026, 3, 2, 9, 15, tzinfo=UTC)

    first = lane.process_frame(_frame(1, t0))
    second = lane.process_frame(_frame(2, t0 + datetime.timedelta(seconds=1)))

    assert [e["identity_id"] for e in first] == ["alice", "bob"]
    assert second == []
    assert lane.stats.matches == 4
    assert lane.stats.duplicates_suppressed == 2
    assert lane.stats.unmatched["below_threshold"] == 2
    assert lane.stats.events_emitted == 2
    assert lane.detector.thresholds == [0.6, 0.6]


def test_process_frame_attaches_slot_and_evidence():
    calendar = SlotCalendar([SlotConfig(id="MATH", room_id="101", start="09:00", end="10:00", weekdays=[0])], "UTC")
    snapshots = _RecordingSnapshots()
    emitter = _RecordingEmitter()
    lane = _lane([ALICE], emitter=emitter, calendar=calendar, snapshot_writer=snapshots)

    lane.process_frame(_frame(1, datetime.datetime(2026, 3, 2, 9, 15, tzinfo=UTC)))

    event = emitter.events[0]
    assert event["slot_id"] == "MATH@2026-03-02"
    assert event["room_id"] == "101"
    assert event["evidence_photo"] == "/evidence/alice.jpg"
    assert snapshots.saved == [("alice", "2026-03-02T09:15:00Z")]


def test_new_slot_restarts_cooldown():
    calendar = SlotCalendar(
        [
            SlotConfig(id="MATH", room_id="101", start="09:00", end="10:00", weekdays=[0]),
            SlotConfig(id="PHYS", room_id="101", start="10:00", end="11:00", weekdays=[0]),
        ],
        "UTC",
    )
    emitter = _RecordingEmitter()
    lane = _lane([ALICE], emitter=emitter, calendar=calendar)
    lane.process_frame(_frame(1, datetime.datetime(2026, 3, 2, 9, 55, tzinfo=UTC)))
    lane.process_frame(_frame(2, datetime.datetime(2026, 3, 2, 10, 1, tzinfo=UTC)))
    assert [e["slot_id"] for e in emitter.events] == ["MATH@2026-03-02", "PHYS@2026-03-02"]


def test_weekly_sessions_emit_separately():
    calendar = SlotCalendar([SlotConfig(id="MATH", room_id="101", start="09:00", end="10:00", weekdays=[0, 2])], "UTC")
    emitter = _RecordingEmitter()
    lane = _lane([ALICE], emitter=emitter, calendar=calendar)
    lane.process_frame(_frame(1, datetime.datetime(2026, 3, 2, 9, 15, tzinfo=UTC)))
    lane.process_frame(_frame(2, datetime.datetime(2026, 3, 4, 9, 15, tzinfo=UTC)))
    assert [e["slot_id"] for e in emitter.events] == ["MATH@2026-03-02", "MATH@2026-03-04"]


def test_calendar_swap_applies_to_running_lane():
    old = SlotCalendar([SlotConfig(id="MATH", room_id="101", start="09:00", end="10:00", weekdays=[0])], "UTC")
    new = SlotCalendar([SlotConfig(id="BIO", room_id="101", start="09:00", end="10:00", weekdays=[0])], "UTC")
    emitter = _RecordingEmitter()
    lane = _lane([ALICE], emitter=emitter, calendar=old)
    lane.process_frame(_frame(1, datetime.datetime(2026, 3, 2, 9, 5, tzinfo=UTC)))
    lane.set_calendar(new)
    lane.process_frame(_frame(2, datetime.datetime(2026, 3, 2, 9, 10, tzinfo=UTC)))
    assert [e["slot_id"] for e in emitter.events] == ["MATH@2026-03-02", "BIO@2026-03-02"]


def test_results_after_stop_are_discarded():
    emitter = _RecordingEmitter()
    lane = _lane([ALICE], emitter=emitter)
    lane.stop()
    assert lane.process_frame(_frame(1, datetime.datetime(2026, 3, 2, 9, 15, tzinfo=UTC))) == []
    assert emitter.events == []
    assert lane.stats.discarded_after_stop == 1


def test_update_params_applies_in_place():
    lane = _lane([ALICE])
    lane.update_params(_params(match_threshold=0.99, match_margin=0.2, cooldown_sec=30.0))
    assert lane.matcher.threshold == 0.99
    assert lane.matcher.margin == 0.2
    assert lane.dedup.cooldown == datetime.timedelta(seconds=30)


def test_lane_runs_file_source_to_completion():
    health = []
    emitter = _RecordingEmitter()
    lane = _lane([ALICE], emitter=emitter, frames=3, on_health=lambda cam, state, ts, reason: health.append(state))
    assert lane.status().state == "STARTING"

    lane.start()
    lane.join(timeout=5)

    assert not lane.is_alive()
    assert lane.state.finished is True
    assert lane.stats.frames_captured == 3
    assert lane.stats.frames_processed + lane.stats.frames_dropped == 3
    assert [e["identity_id"] for e in emitter.events] == ["alice"]
    assert health == [CameraHealth.CONNECTED]
    status = lane.status()
    assert status.state == "CONNECTED"
    assert status.events_emitted == 1
    assert status.last_frame_utc is not None


def test_failing_lane_does_not_affect_other_lanes():
    emitter = _RecordingEmitter()
    store = _store()
    broken = _lane([ALICE], camera_id="CAM_BROKEN", emitter=emitter, store=store, fail=True)
    healthy = _lane([BOB], camera_id="CAM_OK", emitter=emitter, store=store)

    broken.start()
    healthy.start()
    broken.join(timeout=5)
    healthy.join(timeout=5)

    assert broken.stats.errors >= 1
    assert broken.stats.events_emitted == 0
    assert [(e["camera_id"], e["identity_id"]) for e in emitter.events] == [("CAM_OK", "bob")]


def test_enrollment_refresh_is_visible_to_running_matcher():
    store = EnrollmentStore()
    emitter = _RecordingEmitter()
    lane = _lane([ALICE], emitter=emitter, store=store)
    t0 = datetime.datetime(2026, 3, 2, 9, 15, tzinfo=UTC)

    lane.process_frame(_frame(1, t0))
    assert lane.stats.unmatched["empty_index"] == 1

    store.refresh([{"identity_id": "alice", "embeddings": [ALICE]}])
    lane.process_frame(_frame(2, t0 + datetime.timedelta(seconds=1)))
    assert [e["identity_id"] for e in emitter.events] == ["alice"]
