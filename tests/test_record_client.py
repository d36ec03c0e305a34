import pytest
import requests

from attendance_edge.core.errors import DeliveryError
from attendance_edge.events.record_client import RecordServiceClient
from attendance_edge.models.event import AttendanceEvent, SlotFinalizeRequest


class _Response:
    def __init__(self, status_code: int, payload=None, text: str = "") -> None:  # type: ignore[no-untyped-def]
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.content = b"x" if payload is not None else b""

    def json(self):  # type: ignore[no-untyped-def]
        return self._payload


class _Session:
    def __init__(self, responses) -> None:  # type: ignore[no-untyped-def]
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, json=None, headers=None, timeout=None):  # type: ignore[no-untyped-def]
        self.calls.append({"method": method, "url": url, "json": json, "headers": headers})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, timeout=None):  # type: ignore[no-untyped-def]
        return self.request("GET", url, timeout=timeout)

    def close(self) -> None:
        pass


EVENT = AttendanceEvent(
    event_id="evt-1",
    identity_id="alice",
    camera_id="CAM_1",
    room_id="101",
    slot_id="MATH-0900",
    timestamp="2026-03-02T09:15:00Z",
    confidence=0.91,
)


def test_post_attendance_sends_idempotency_key():
    session = _Session([_Response(201, {"ok": True})])
    client = RecordServiceClient("http://records:8001/", token="secret", session=session)

    client.post_attendance(EVENT)

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "http://records:8001/api/v1/attendance/events"
    assert call["json"]["identity_id"] == "alice"
    assert call["headers"]["Idempotency-Key"] == "alice:MATH-0900"
    assert session.headers["Authorization"] == "Bearer secret"


@pytest.mark.parametrize(
    "status,retryable",
    [(500, True), (503, True), (408, True), (429, True), (400, False), (404, False), (422, False)],
)
def test_status_codes_map_to_retryable(status, retryable):
    client = RecordServiceClient("http://records", session=_Session([_Response(status, text="nope")]))
    with pytest.raises(DeliveryError) as excinfo:
        client.post_attendance(EVENT)
    assert excinfo.value.status_code == status
    assert excinfo.value.retryable is retryable


def test_connection_errors_are_retryable():
    client = RecordServiceClient("http://records", session=_Session([requests.ConnectionError("refused")]))
    with pytest.raises(DeliveryError) as excinfo:
        client.post_attendance(EVENT)
    assert excinfo.value.retryable is True
    assert excinfo.value.status_code is None


def test_finalize_slot_path():
    session = _Session([_Response(204)])
    client = RecordServiceClient("http://records", session=session)
    client.finalize_slot(SlotFinalizeRequest(slot_id="MATH-0900", timestamp="2026-03-02T10:00:00Z"))
    call = session.calls[0]
    assert call["url"] == "http://records/api/v1/slots/MATH-0900/finalize"
    assert "node_id" not in call["json"]


def test_fetch_cameras_accepts_wrapped_or_bare_lists():
    cams = [{"camera_id": "CAM_1", "rtsp_url": "rtsp://x"}, "junk"]
    client = RecordServiceClient("http://records", session=_Session([_Response(200, {"cameras": cams})]))
    assert client.fetch_cameras() == [cams[0]]
    client = RecordServiceClient("http://records", session=_Session([_Response(200, cams)]))
    assert client.fetch_cameras() == [cams[0]]


def test_ping():
    assert RecordServiceClient("http://records", session=_Session([_Response(200, {})])).ping() is True
    assert RecordServiceClient("http://records", session=_Session([_Response(503)])).ping() is False
    assert RecordServiceClient("http://records", session=_Session([requests.Timeout()])).ping() is False
