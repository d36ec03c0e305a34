"""
Pydantic models for payloads the edge node sends out.

These models mirror the JSON contracts of the record-of-truth service
(attendance ingestion, slot finalize) and of the health topics published
over MQTT. Using Pydantic keeps serialisation consistent between direct
delivery and replay from the local spool.
"""

from __future__ import annotations

import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def isoformat_utc(value: datetime.datetime) -> str:
    """Render a datetime as ``YYYY-MM-DDTHH:MM:SS.ffffffZ`` in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


class AttendanceEvent(BaseModel):
    """A deduplicated attendance observation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    identity_id: str
    camera_id: str
    room_id: Optional[str] = None
    slot_id: Optional[str] = None
    timestamp: str
    confidence: float
    evidence_photo: Optional[str] = None
    node_id: Optional[str] = None

    def idempotency_key(self) -> str:
        """Key the receiving service dedupes on."""
        if self.slot_id:
            return f"{self.identity_id}:{self.slot_id}"
        return f"{self.identity_id}:{self.camera_id}:{self.timestamp[:10]}"


class SlotFinalizeRequest(BaseModel):
    """Body of the finalize-slot call."""

    slot_id: str
    timestamp: str
    node_id: Optional[str] = None


class CameraHealthEvent(BaseModel):
    """A camera connection state transition."""

    camera_id: str
    state: str
    timestamp: str
    node_id: Optional[str] = None
    reason: Optional[str] = None


class LaneStatusModel(BaseModel):
    """Per-lane status entry for heartbeats."""

    camera_id: str
    state: str
    last_frame_utc: Optional[str] = None
    fps_estimate: Optional[float] = None
    frames_dropped: int = 0
    events_emitted: int = 0


class HealthHeartbeat(BaseModel):
    """Periodic node heartbeat."""

    node_id: str
    status: str
    connected_cameras: int
    total_cameras: int
    enrollment_version: int = 0
    enrolled_identities: int = 0
    spool_pending: int = 0
    timestamp: str
    lanes: List[LaneStatusModel] = Field(default_factory=list)


__all__ = [
    "isoformat_utc",
    "AttendanceEvent",
    "SlotFinalizeRequest",
    "CameraHealthEvent",
    "LaneStatusModel",
    "HealthHeartbeat",
]
