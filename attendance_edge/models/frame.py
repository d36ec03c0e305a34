"""
In-process data passed between the stages of a camera lane.

None of these objects are persisted. A ``Frame`` owns the pixel buffer;
everything downstream refers to the frame by camera id, sequence number
and timestamp only.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import numpy as np


@dataclass
class Frame:
    """A sampled video frame."""

    camera_id: str
    seq: int
    timestamp: datetime.datetime
    image: Any


@dataclass(frozen=True)
class DetectedFace:
    """A face located in a frame. ``bbox`` is [x1, y1, x2, y2]."""

    camera_id: str
    frame_seq: int
    frame_ts: datetime.datetime
    bbox: Tuple[int, int, int, int]
    landmarks: Tuple[Tuple[float, float], ...]
    det_score: float

    @property
    def width(self) -> int:
        return max(0, self.bbox[2] - self.bbox[0])

    @property
    def height(self) -> int:
        return max(0, self.bbox[3] - self.bbox[1])


@dataclass
class Embedding:
    """L2-normalised face embedding with its source face."""

    vector: np.ndarray
    quality: float
    face: DetectedFace

    @property
    def dim(self) -> int:
        return int(self.vector.shape[-1])


UNMATCHED_REASONS = ("below_threshold", "ambiguous", "empty_index")


@dataclass(frozen=True)
class MatchResult:
    """
    Outcome of matching one embedding against the enrollment index.

    ``identity_id`` is None for "unmatched"; ``reason`` says why
    (one of ``UNMATCHED_REASONS``) or is ``"matched"``.
    """

    identity_id: Optional[str]
    score: float
    second_score: float
    camera_id: str
    timestamp: datetime.datetime
    reason: str = "matched"
    snapshot_version: int = 0
    candidates: List[Tuple[str, float]] = field(default_factory=list, compare=False)

    @property
    def matched(self) -> bool:
        return self.identity_id is not None

    @property
    def margin(self) -> float:
        return self.score - self.second_score


__all__ = [
    "Frame",
    "DetectedFace",
    "Embedding",
    "MatchResult",
    "UNMATCHED_REASONS",
]
