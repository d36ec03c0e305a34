import logging

from attendance_edge.config import DeliveryConfig, IngestConfig, Settings, SlotConfig

from attendance_edge import main as edge_main
from attendance_edge.core.errors import DeliveryError
from attendance_edge.events.emitter import EventEmitter
from attendance_edge.events.outbox import Outbox
from attendance_edge.models.event import AttendanceEvent
from attendance_edge.runtime.slots import SlotCalendar


def test_parse_args_defaults(monkeypatch):
    monkeypatch.delenv("EDGE_CONFIG_PATH", raising=False)
    monkeypatch.delenv("EDGE_DEVICE", raising=False)
    args = edge_main.parse_args([])
    assert args.config == "config/attendance_edge.yaml"
    assert args.device is None
    assert args.preflight is False
    assert args.finalize is None

    args = edge_main.parse_args(["--device", "cuda", "--finalize", "MATH-0900", "--replay-spool"])
    assert args.device == "cuda"
    assert args.finalize == "MATH-0900"
    assert args.replay_spool is True


def test_device_resolution(monkeypatch):
    logger = logging.getLogger("test")
    monkeypatch.setattr(edge_main, "_cuda_available", lambda: False)
    assert edge_main.resolve_inference_device(None, "auto", logger) == "cpu"
    assert edge_main.resolve_inference_device("cuda", "cpu", logger) == "cpu"
    assert edge_main.resolve_inference_device(None, "tpu", logger) == "cpu"

    monkeypatch.setattr(edge_main, "_cuda_available", lambda: True)
    assert edge_main.resolve_inference_device(None, "auto", logger) == "cuda:0"
    assert edge_main.resolve_inference_device("cpu", "auto", logger) == "cpu"
    assert edge_main.resolve_inference_device(None, "cuda", logger) == "cuda:0"


class _FlakyClient:
    def __init__(self, fail_on) -> None:  # type: ignore[no-untyped-def]
        self.fail_on = set(fail_on)
        self.sent = []

    def post_attendance(self, event) -> None:  # type: ignore[no-untyped-def]
        if event.identity_id in self.fail_on:
            raise DeliveryError("down")
        self.sent.append(event.identity_id)


def _event(identity_id: str) -> AttendanceEvent:
    return AttendanceEvent(
        event_id=f"evt-{identity_id}",
        identity_id=identity_id,
        camera_id="CAM_1",
        timestamp="2026-03-02T09:15:00Z",
        confidence=0.9,
    )


def test_replay_spool_once(tmp_path):
    outbox = Outbox(tmp_path / "spool.db")
    for name in ("alice", "bob"):
        outbox.enqueue(_event(name))
    client = _FlakyClient(fail_on=[])
    emitter = EventEmitter(client, outbox, replay_batch_size=1)

    assert edge_main.replay_spool_once(emitter, logging.getLogger("test")) == 0
    assert client.sent == ["alice", "bob"]

    outbox.enqueue(_event("carol"))
    client.fail_on = {"carol"}
    assert edge_main.replay_spool_once(emitter, logging.getLogger("test")) == 1


def test_main_returns_error_for_missing_config(tmp_path):
    assert edge_main.main(["--config", str(tmp_path / "missing.yaml")]) == 1


class _RecordingSupervisor:
    def __init__(self) -> None:
        self.calls = []

    def reconcile(self, settings, *, calendar=None):  # type: ignore[no-untyped-def]
        self.calls.append((settings, calendar))
        return {}


def test_config_change_updates_delivery_ingest_and_timetable(tmp_path):
    old = Settings(node_id="EDGE_TEST", timezone="UTC")
    node = edge_main.EdgeNode.__new__(edge_main.EdgeNode)
    node.settings = old
    node.calendar = SlotCalendar([], "UTC")
    node.finalizer = None
    node.emitter = EventEmitter(_FlakyClient([]), Outbox(tmp_path / "spool.db"), max_attempts=3, backoff_base_sec=1)
    node.supervisor = _RecordingSupervisor()

    new = Settings(
        node_id="EDGE_TEST",
        timezone="Asia/Kolkata",
        slots=[SlotConfig(id="MATH", room_id="101", start="09:00", end="10:00", weekdays=[0])],
        ingest=IngestConfig(queue_size=16, backoff_max_sec=5.0),
        delivery=DeliveryConfig(max_attempts=6, backoff_base_sec=2.0, backoff_max_sec=20.0, replay_interval_sec=10.0),
    )
    node._on_config_change(new)

    assert node.emitter.max_attempts == 6
    assert node.emitter.backoff_base_sec == 2.0
    assert node.emitter.backoff_max_sec == 20.0
    assert node.emitter.replay_interval_sec == 10.0
    # New lanes are built from the reloaded ingest settings.
    assert node.settings.ingest.queue_size == 16
    settings, calendar = node.supervisor.calls[-1]
    assert settings is new
    assert calendar is node.calendar
    assert len(calendar) == 1
