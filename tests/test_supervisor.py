import copy

from attendance_edge.cameras.stream import CameraHealth
from attendance_edge.config import CameraConfig, IngestConfig, RecognitionConfig, Settings
from attendance_edge.models.event import LaneStatusModel
from attendance_edge.runtime.lane import LaneState
from attendance_edge.runtime.supervisor import LaneSupervisor


class _DummyLane:
    def __init__(self, camera, params) -> None:  # type: ignore[no-untyped-def]
        self.camera = camera
        self.params = params
        self.state = LaneState(health=CameraHealth.CONNECTED)
        self.started = False
        self.stopped = False
        self.updates = []
        self.calendars = []

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def update_params(self, params) -> None:  # type: ignore[no-untyped-def]
        self.params = params
        self.updates.append(params)

    def set_calendar(self, calendar) -> None:  # type: ignore[no-untyped-def]
        self.calendars.append(calendar)

    def status(self) -> LaneStatusModel:
        return LaneStatusModel(camera_id=self.camera.id, state="CONNECTED")


def _settings(*cameras: CameraConfig) -> Settings:
    return Settings(
        node_id="EDGE_TEST",
        timezone="UTC",
        cameras=list(cameras),
        recognition=RecognitionConfig(match_threshold=0.5, match_margin=0.1),
    )


def _cam(camera_id: str, **kwargs) -> CameraConfig:  # type: ignore[no-untyped-def]
    return CameraConfig(id=camera_id, rtsp_url=f"rtsp://example/{camera_id}", room_id="101", **kwargs)


def _supervisor(settings: Settings):  # type: ignore[no-untyped-def]
    created = []
    health = []

    def _factory(camera, params):  # type: ignore[no-untyped-def]
        lane = _DummyLane(camera, params)
        created.append(lane)
        return lane

    supervisor = LaneSupervisor(settings, _factory, on_health=lambda cam, state, ts, reason: health.append((cam, state)))
    return supervisor, created, health


def test_config_error_fails_only_that_lane():
    settings = _settings(_cam("CAM_A"), _cam("CAM_B", match_margin=5.0), _cam("CAM_OFF", enabled=False))
    supervisor, created, health = _supervisor(settings)

    assert supervisor.start_all() == 1
    assert set(supervisor.lanes) == {"CAM_A"}
    assert "CAM_B" in supervisor.failed
    assert health == [("CAM_B", CameraHealth.FAILED)]
    assert [(s.camera_id, s.state) for s in supervisor.lane_statuses()] == [("CAM_A", "CONNECTED"), ("CAM_B", "FAILED")]


def test_reconcile_applies_changes_lane_by_lane():
    settings = _settings(_cam("CAM_A"), _cam("CAM_B"), _cam("CAM_C"))
    supervisor, created, _ = _supervisor(settings)
    supervisor.start_all()
    lane_a, lane_b, lane_c = created

    new_settings = copy.deepcopy(settings)
    new_settings.cameras = [
        _cam("CAM_A", match_threshold=0.7),
        CameraConfig(id="CAM_B", rtsp_url="rtsp://example/moved", room_id="101"),
        _cam("CAM_D"),
    ]
    changes = supervisor.reconcile(new_settings)

    assert changes["updated"] == ["CAM_A"]
    assert changes["restarted"] == ["CAM_B"]
    assert changes["stopped"] == ["CAM_C"]
    assert changes["started"] == ["CAM_D"]
    assert supervisor.lanes["CAM_A"] is lane_a
    assert lane_a.params.match_threshold == 0.7
    assert lane_b.stopped and supervisor.lanes["CAM_B"] is not lane_b
    assert lane_c.stopped
    assert set(supervisor.lanes) == {"CAM_A", "CAM_B", "CAM_D"}


def test_reconcile_without_changes_touches_nothing():
    settings = _settings(_cam("CAM_A"))
    supervisor, created, _ = _supervisor(settings)
    supervisor.start_all()
    changes = supervisor.reconcile(copy.deepcopy(settings))
    assert all(not v for v in changes.values())
    assert created[0].updates == []
    assert not created[0].stopped


def test_reconcile_invalid_params_stops_lane():
    settings = _settings(_cam("CAM_A"))
    supervisor, created, health = _supervisor(settings)
    supervisor.start_all()

    broken = copy.deepcopy(settings)
    broken.cameras = [_cam("CAM_A", match_threshold=3.0)]
    changes = supervisor.reconcile(broken)

    assert changes["failed"] == ["CAM_A"]
    assert created[0].stopped
    assert "CAM_A" not in supervisor.lanes
    assert health[-1] == ("CAM_A", CameraHealth.FAILED)


def test_disabling_camera_stops_lane():
    settings = _settings(_cam("CAM_A"))
    supervisor, created, _ = _supervisor(settings)
    supervisor.start_all()
    disabled = copy.deepcopy(settings)
    disabled.cameras = [_cam("CAM_A", enabled=False)]
    assert supervisor.reconcile(disabled)["stopped"] == ["CAM_A"]
    assert created[0].stopped


def test_register_deregister_restart():
    supervisor, created, _ = _supervisor(_settings())
    assert supervisor.register(_cam("CAM_R")) is True
    assert supervisor.restart("CAM_R") is True
    assert created[0].stopped and created[1].started
    assert supervisor.restart("CAM_UNKNOWN") is False
    assert supervisor.deregister("CAM_R") is True
    assert created[1].stopped
    assert supervisor.lanes == {}
    assert supervisor.settings.cameras == []


def test_stop_all():
    supervisor, created, _ = _supervisor(_settings(_cam("CAM_A"), _cam("CAM_B")))
    supervisor.start_all()
    supervisor.stop_all()
    assert all(lane.stopped for lane in created)
    assert supervisor.lanes == {}


def test_ingest_change_restarts_running_lanes():
    settings = _settings(_cam("CAM_A"), _cam("CAM_B"))
    supervisor, created, _ = _supervisor(settings)
    supervisor.start_all()

    tuned = copy.deepcopy(settings)
    tuned.ingest = IngestConfig(queue_size=16, backoff_base_sec=2.0, backoff_max_sec=60.0)
    changes = supervisor.reconcile(tuned)

    assert changes["restarted"] == ["CAM_A", "CAM_B"]
    assert created[0].stopped and created[1].stopped
    assert [lane.camera.id for lane in created[2:]] == ["CAM_A", "CAM_B"]
    assert supervisor.settings.ingest.queue_size == 16

    # Same ingest settings again: nothing restarts.
    assert supervisor.reconcile(copy.deepcopy(tuned))["restarted"] == []


def test_reconcile_pushes_new_calendar_to_running_lanes():
    settings = _settings(_cam("CAM_A"), _cam("CAM_B"))
    supervisor, created, _ = _supervisor(settings)
    supervisor.start_all()
    calendar = object()

    changes = supervisor.reconcile(copy.deepcopy(settings), calendar=calendar)

    assert all(not v for v in changes.values())
    assert [lane.calendars for lane in created] == [[calendar], [calendar]]


def test_registered_camera_kept_across_reload():
    settings = _settings(_cam("CAM_A"))
    supervisor, created, _ = _supervisor(settings)
    supervisor.start_all()
    supervisor.register(_cam("CAM_R"))
    lane_r = supervisor.lanes["CAM_R"]

    reloaded = _settings(_cam("CAM_A", match_threshold=0.6))
    changes = supervisor.reconcile(reloaded)

    assert changes["stopped"] == []
    assert changes["updated"] == ["CAM_A"]
    assert supervisor.lanes["CAM_R"] is lane_r and not lane_r.stopped
    assert supervisor.registered_ids() == {"CAM_R"}
    assert [c.id for c in supervisor.settings.cameras] == ["CAM_A", "CAM_R"]

    supervisor.deregister("CAM_R")
    assert supervisor.registered_ids() == set()
    assert supervisor.reconcile(_settings(_cam("CAM_A")))["stopped"] == []
    assert set(supervisor.lanes) == {"CAM_A"}
