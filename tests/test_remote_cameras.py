import copy

from attendance_edge.cameras.remote import CameraDiscovery, fetch_camera_configs, parse_remote_cameras
from attendance_edge.config import CameraConfig, RecognitionConfig, Settings
from attendance_edge.core.errors import DeliveryError
from attendance_edge.runtime.supervisor import LaneSupervisor


class _DummyClient:
    def __init__(self, cameras) -> None:  # type: ignore[no-untyped-def]
        self.cameras = cameras

    def fetch_cameras(self):  # type: ignore[no-untyped-def]
        if isinstance(self.cameras, Exception):
            raise self.cameras
        return self.cameras


class _DummySupervisor:
    def __init__(self, cameras) -> None:  # type: ignore[no-untyped-def]
        self.settings = Settings(node_id="EDGE_TEST", timezone="UTC", cameras=list(cameras))
        self.registered = []
        self.deregistered = []

    def register(self, camera) -> bool:  # type: ignore[no-untyped-def]
        self.registered.append(camera.id)
        self.settings.cameras = [c for c in self.settings.cameras if c.id != camera.id] + [camera]
        return True

    def deregister(self, camera_id) -> bool:  # type: ignore[no-untyped-def]
        self.deregistered.append(camera_id)
        self.settings.cameras = [c for c in self.settings.cameras if c.id != camera_id]
        return True

    def registered_ids(self):  # type: ignore[no-untyped-def]
        return set(self.registered) - set(self.deregistered)


def test_parse_remote_cameras():
    cameras = parse_remote_cameras(
        [
            {"camera_id": "CAM_1", "rtsp_url": "rtsp://a", "room_id": 101, "sample_interval_sec": "1.5"},
            {"id": "CAM_2", "rtsp_url": "rtsp://b", "sample_interval_sec": "often"},
            {"camera_id": "CAM_OFF", "rtsp_url": "rtsp://c", "is_active": False},
            {"camera_id": "CAM_NO_URL"},
            "junk",
        ]
    )
    assert [c.id for c in cameras] == ["CAM_1", "CAM_2"]
    assert cameras[0].room_id == "101"
    assert cameras[0].sample_interval_sec == 1.5
    assert cameras[1].errors


def test_fetch_returns_none_when_unreachable():
    assert fetch_camera_configs(_DummyClient(DeliveryError("down"))) is None


def test_discovery_registers_changes_and_removals():
    local = CameraConfig(id="CAM_LOCAL", rtsp_url="rtsp://local")
    supervisor = _DummySupervisor([local])
    client = _DummyClient(
        [
            {"camera_id": "CAM_1", "rtsp_url": "rtsp://a"},
            {"camera_id": "CAM_LOCAL", "rtsp_url": "rtsp://remote-copy"},
        ]
    )
    discovery = CameraDiscovery(client, supervisor)

    assert discovery.sync_once() is True
    assert supervisor.registered == ["CAM_1"]

    # Unchanged cameras are left alone.
    discovery.sync_once()
    assert supervisor.registered == ["CAM_1"]

    client.cameras = [{"camera_id": "CAM_1", "rtsp_url": "rtsp://a2"}, {"camera_id": "CAM_2", "rtsp_url": "rtsp://b"}]
    discovery.sync_once()
    assert supervisor.registered == ["CAM_1", "CAM_1", "CAM_2"]

    client.cameras = [{"camera_id": "CAM_2", "rtsp_url": "rtsp://b"}]
    discovery.sync_once()
    assert supervisor.deregistered == ["CAM_1"]

    # Outage keeps the current lanes.
    client.cameras = DeliveryError("down")
    assert discovery.sync_once() is False
    assert supervisor.deregistered == ["CAM_1"]
    assert "CAM_LOCAL" not in supervisor.deregistered


class _StubLane:
    def __init__(self, camera, params) -> None:  # type: ignore[no-untyped-def]
        self.camera = camera
        self.params = params
        self.stopped = False

    def start(self) -> None:
        pass

    def stop(self) -> None:
        self.stopped = True

    def update_params(self, params) -> None:  # type: ignore[no-untyped-def]
        self.params = params

    def set_calendar(self, calendar) -> None:  # type: ignore[no-untyped-def]
        pass


def _calibrated(cameras):  # type: ignore[no-untyped-def]
    return Settings(
        node_id="EDGE_TEST",
        timezone="UTC",
        cameras=list(cameras),
        recognition=RecognitionConfig(match_threshold=0.5, match_margin=0.1),
    )


def _real_supervisor(settings):  # type: ignore[no-untyped-def]
    created = []

    def _factory(camera, params):  # type: ignore[no-untyped-def]
        lane = _StubLane(camera, params)
        created.append(lane)
        return lane

    return LaneSupervisor(settings, _factory), created


def test_discovered_camera_survives_config_reload():
    settings = _calibrated([CameraConfig(id="CAM_LOCAL", rtsp_url="rtsp://local")])
    supervisor, created = _real_supervisor(settings)
    supervisor.start_all()
    client = _DummyClient([{"camera_id": "CAM_REMOTE", "rtsp_url": "rtsp://remote"}])
    discovery = CameraDiscovery(client, supervisor)
    discovery.sync_once()
    remote_lane = supervisor.lanes["CAM_REMOTE"]

    reloaded = copy.deepcopy(settings)
    reloaded.cameras = [CameraConfig(id="CAM_LOCAL", rtsp_url="rtsp://local")]
    changes = supervisor.reconcile(reloaded)

    assert "CAM_REMOTE" not in changes["stopped"]
    assert supervisor.lanes["CAM_REMOTE"] is remote_lane
    assert not remote_lane.stopped

    # Later discovery ticks see the lane as already running.
    discovery.sync_once()
    assert supervisor.lanes["CAM_REMOTE"] is remote_lane
    assert len(created) == 2

    client.cameras = []
    discovery.sync_once()
    assert remote_lane.stopped
    assert set(supervisor.lanes) == {"CAM_LOCAL"}


def test_config_file_takes_over_discovered_camera():
    settings = _calibrated([])
    supervisor, _ = _real_supervisor(settings)
    client = _DummyClient([{"camera_id": "CAM_X", "rtsp_url": "rtsp://remote"}])
    discovery = CameraDiscovery(client, supervisor)
    discovery.sync_once()

    reloaded = copy.deepcopy(settings)
    reloaded.cameras = [CameraConfig(id="CAM_X", rtsp_url="rtsp://from-file")]
    supervisor.reconcile(reloaded)
    assert supervisor.registered_ids() == set()
    assert supervisor.lanes["CAM_X"].camera.rtsp_url == "rtsp://from-file"

    # The service still lists CAM_X, but the file entry is left alone.
    discovery.sync_once()
    assert supervisor.lanes["CAM_X"].camera.rtsp_url == "rtsp://from-file"
    client.cameras = []
    discovery.sync_once()
    assert "CAM_X" in supervisor.lanes
