"""
Face detection for sampled frames.

Wraps the InsightFace detection model (SCRFD/RetinaFace) and converts its
raw ``(bboxes, keypoints)`` output into ``DetectedFace`` records. Corrupt
or undecodable frames produce an empty result instead of an error, and
low-confidence or tiny faces are dropped here so the embedder never sees
them.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import numpy as np

from ..models.frame import DetectedFace, Frame


def is_valid_image(image: Any) -> bool:
    """True for a non-empty HxWx3 uint8-compatible array."""
    if not isinstance(image, np.ndarray):
        return False
    if image.ndim != 3 or image.shape[2] != 3:
        return False
    if image.shape[0] < 2 or image.shape[1] < 2:
        return False
    return image.dtype == np.uint8


class FaceDetector:
    """
    Locate faces and five-point landmarks in a frame.

    Parameters
    ----------
    model: Any
        Object exposing ``detect(img, max_num=0, metric="default")`` returning
        ``(bboxes[N, 5], kpss[N, 5, 2] | None)``. Defaults to the shared
        InsightFace detection model.
    min_confidence: float
        Faces with a detection score below this are discarded.
    min_face_size: int
        Faces narrower or shorter than this (pixels) are discarded.
    max_faces: int
        Keep at most this many faces per frame (0 = unlimited).
    """

    def __init__(
        self,
        model: Any = None,
        *,
        min_confidence: float = 0.5,
        min_face_size: int = 40,
        max_faces: int = 0,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        if model is None:
            from .face_model import load_face_models

            model = load_face_models().detector
        self.model = model
        self.min_confidence = float(min_confidence)
        self.min_face_size = int(min_face_size)
        self.max_faces = max(0, int(max_faces))
        self.degenerate_frames = 0
        self.rejected_faces = 0

    def detect(self, frame: Frame, *, min_confidence: Optional[float] = None) -> List[DetectedFace]:
        threshold = self.min_confidence if min_confidence is None else float(min_confidence)
        image = frame.image
        if not is_valid_image(image):
            self.degenerate_frames += 1
            return []
        try:
            bboxes, kpss = self.model.detect(image, max_num=0, metric="default")
        except Exception as exc:
            self.degenerate_frames += 1
            self.logger.debug("Detection failed camera=%s seq=%s: %s", frame.camera_id, frame.seq, exc)
            return []
        if bboxes is None or len(bboxes) == 0:
            return []

        height, width = image.shape[:2]
        faces: List[DetectedFace] = []
        for idx, row in enumerate(np.asarray(bboxes, dtype="float32")):
            score = float(row[4]) if row.shape[0] > 4 else 0.0
            if not np.isfinite(score) or score < threshold:
                self.rejected_faces += 1
                continue
            x1 = int(max(0, min(width, np.floor(row[0]))))
            y1 = int(max(0, min(height, np.floor(row[1]))))
            x2 = int(max(0, min(width, np.ceil(row[2]))))
            y2 = int(max(0, min(height, np.ceil(row[3]))))
            if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
                self.rejected_faces += 1
                continue
            if kpss is None or idx >= len(kpss):
                # Alignment needs landmarks.
                self.rejected_faces += 1
                continue
            landmarks = tuple((float(x), float(y)) for x, y in np.asarray(kpss[idx]).reshape(-1, 2))
            faces.append(
                DetectedFace(
                    camera_id=frame.camera_id,
                    frame_seq=frame.seq,
                    frame_ts=frame.timestamp,
                    bbox=(x1, y1, x2, y2),
                    landmarks=landmarks,
                    det_score=score,
                )
            )

        faces.sort(key=lambda f: (-f.det_score, f.bbox[0], f.bbox[1]))
        if self.max_faces:
            faces = faces[: self.max_faces]
        return faces


__all__ = ["FaceDetector", "is_valid_image"]
