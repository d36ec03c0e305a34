from __future__ import annotations

import datetime
import time
from pathlib import Path

import pytest

from attendance_edge.core.errors import DeliveryError
from attendance_edge.events.emitter import EventEmitter
from attendance_edge.events.outbox import Outbox
from attendance_edge.models.frame import MatchResult

TS = datetime.datetime(2026, 3, 2, 9, 15, 30, tzinfo=datetime.timezone.utc)


class _DummyClient:
    def __init__(self, failures=None) -> None:  # type: ignore[no-untyped-def]
        # Each entry is raised once, in order; then calls succeed.
        self.failures = list(failures or [])
        self.calls = []
        self.delivered = []

    def post_attendance(self, event) -> None:  # type: ignore[no-untyped-def]
        self.calls.append(event.event_id)
        if self.failures:
            raise self.failures.pop(0)
        self.delivered.append(event)


def _match(identity_id: str = "alice", score: float = 0.912345) -> MatchResult:
    return MatchResult(identity_id=identity_id, score=score, second_score=0.2, camera_id="CAM_1", timestamp=TS)


def _emitter(tmp_path: Path, client: _DummyClient, **kwargs) -> EventEmitter:  # type: ignore[no-untyped-def]
    sleeps = kwargs.pop("sleeps", [])
    return EventEmitter(
        client,
        Outbox(tmp_path / "spool.db"),
        node_id="EDGE_TEST",
        sleep=sleeps.append,
        **kwargs,
    )


def test_build_event_fields(tmp_path):
    emitter = _emitter(tmp_path, _DummyClient())
    event = emitter.build_event(_match(), room_id="101", slot_id="MATH", evidence_photo="/tmp/a.jpg")
    assert event.identity_id == "alice"
    assert event.camera_id == "CAM_1"
    assert event.slot_id == "MATH"
    assert event.timestamp == "2026-03-02T09:15:30Z"
    assert event.confidence == 0.9123
    assert event.node_id == "EDGE_TEST"
    assert event.event_id
    other = emitter.build_event(_match(), room_id="101", slot_id="MATH", evidence_photo=None)
    assert other.event_id != event.event_id


def test_unmatched_result_is_rejected(tmp_path):
    emitter = _emitter(tmp_path, _DummyClient())
    unmatched = MatchResult(
        identity_id=None, score=0.4, second_score=0.1, camera_id="CAM_1", timestamp=TS, reason="below_threshold"
    )
    with pytest.raises(ValueError):
        emitter.build_event(unmatched, room_id=None, slot_id=None, evidence_photo=None)


def test_deliver_retries_then_succeeds(tmp_path):
    client = _DummyClient([DeliveryError("503", status_code=503), DeliveryError("timeout")])
    sleeps: list = []
    emitter = _emitter(tmp_path, client, max_attempts=3, backoff_base_sec=1, backoff_max_sec=30, sleeps=sleeps)
    event = emitter.build_event(_match(), room_id="101", slot_id=None, evidence_photo=None)

    assert emitter.deliver(event) is True
    assert len(client.calls) == 3
    assert sleeps == [1, 2]
    assert emitter.outbox.pending_count() == 0


def test_exhausted_attempts_spool_the_event(tmp_path):
    client = _DummyClient([DeliveryError("503", status_code=503)] * 3)
    emitter = _emitter(tmp_path, client, max_attempts=3)
    event = emitter.build_event(_match(), room_id="101", slot_id="MATH", evidence_photo=None)

    assert emitter.deliver(event) is False
    assert len(client.calls) == 3
    assert emitter.spooled == 1
    rows = emitter.outbox.get_due(limit=10)
    assert [row["event_id"] for row in rows] == [event.event_id]
    assert "503" in rows[0]["last_error"]


def test_non_retryable_error_is_kept_as_dead(tmp_path):
    client = _DummyClient([DeliveryError("400", status_code=400, retryable=False)])
    emitter = _emitter(tmp_path, client, max_attempts=5)
    event = emitter.build_event(_match(), room_id=None, slot_id=None, evidence_photo=None)
    assert emitter.deliver(event) is False
    assert len(client.calls) == 1
    assert emitter.outbox.pending_count() == 0
    assert emitter.outbox.stats()["dead"] == 1
    assert emitter.rejected == 1
    assert emitter.spooled == 0
    # Nothing to replay later.
    assert emitter.replay_spool() == 0
    assert len(client.calls) == 1


def test_replay_spool_delivers_in_order(tmp_path):
    client = _DummyClient([DeliveryError("down")] * 2)
    emitter = _emitter(tmp_path, client, max_attempts=1)
    first = emitter.build_event(_match("alice"), room_id=None, slot_id=None, evidence_photo=None)
    second = emitter.build_event(_match("bob"), room_id=None, slot_id=None, evidence_photo=None)
    emitter.deliver(first)
    emitter.deliver(second)
    assert emitter.outbox.pending_count() == 2

    assert emitter.replay_spool() == 2
    assert [e.identity_id for e in client.delivered] == ["alice", "bob"]
    assert emitter.outbox.stats()["sent"] == 2
    # The original event ids are preserved across replay.
    assert client.delivered[0].event_id == first.event_id


def test_replay_stops_at_first_retryable_failure(tmp_path):
    client = _DummyClient([DeliveryError("down")] * 2)
    emitter = _emitter(tmp_path, client, max_attempts=1)
    for name in ("alice", "bob"):
        emitter.deliver(emitter.build_event(_match(name), room_id=None, slot_id=None, evidence_photo=None))

    client.failures = [DeliveryError("still down")]
    assert emitter.replay_spool() == 0
    assert len(client.calls) == 3
    assert emitter.outbox.pending_count() == 2


def test_replay_dead_letters_rejected_events(tmp_path):
    client = _DummyClient([DeliveryError("down")])
    emitter = _emitter(tmp_path, client, max_attempts=1)
    emitter.deliver(emitter.build_event(_match(), room_id=None, slot_id=None, evidence_photo=None))

    client.failures = [DeliveryError("unknown identity", status_code=422, retryable=False)]
    assert emitter.replay_spool() == 0
    assert emitter.outbox.stats()["dead"] == 1


def test_background_delivery_and_shutdown_spool(tmp_path):
    client = _DummyClient()
    emitter = _emitter(tmp_path, client)
    emitter.start()
    try:
        event = emitter.emit(_match(), room_id="101", slot_id="MATH")
        deadline = time.monotonic() + 5
        while not client.delivered and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        emitter.stop()
    assert [e.event_id for e in client.delivered] == [event.event_id]

    # Events still queued at shutdown are spooled, not lost.
    idle = _emitter(tmp_path / "idle", _DummyClient())
    queued = idle.emit(_match("bob"))
    assert idle.pending() == 1
    idle.stop()
    assert [row["event_id"] for row in idle.outbox.get_due(limit=10)] == [queued.event_id]


def test_full_queue_spools_directly(tmp_path):
    emitter = _emitter(tmp_path, _DummyClient(), queue_size=1)
    emitter.emit(_match("alice"))
    overflow = emitter.emit(_match("bob"))
    assert emitter.pending() == 1
    assert [row["event_id"] for row in emitter.outbox.get_due(limit=10)] == [overflow.event_id]


def test_backoff_delay_is_capped(tmp_path):
    emitter = _emitter(tmp_path, _DummyClient(), backoff_base_sec=1, backoff_max_sec=5)
    assert [emitter.backoff_delay(i) for i in range(1, 6)] == [1, 2, 4, 5, 5]


def test_update_policy_applies_to_next_delivery(tmp_path):
    client = _DummyClient([DeliveryError("503", status_code=503)] * 5)
    sleeps: list = []
    emitter = _emitter(tmp_path, client, max_attempts=2, backoff_base_sec=1, backoff_max_sec=30, sleeps=sleeps)

    emitter.update_policy(max_attempts=4, backoff_base_sec=0.5, backoff_max_sec=1, replay_interval_sec=5, replay_batch_size=7)
    event = emitter.build_event(_match(), room_id=None, slot_id=None, evidence_photo=None)
    assert emitter.deliver(event) is False

    assert len(client.calls) == 4
    assert sleeps == [0.5, 1, 1]
    assert emitter.replay_interval_sec == 5
    assert emitter.replay_batch_size == 7


def test_update_policy_keeps_backoff_cap_above_base(tmp_path):
    emitter = _emitter(tmp_path, _DummyClient(), backoff_base_sec=1, backoff_max_sec=5)
    emitter.update_policy(backoff_base_sec=10)
    assert emitter.backoff_max_sec == 10
    assert emitter.max_attempts == 3
