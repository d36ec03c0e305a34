"""
Face embedding with landmark alignment and batched inference.

Each detected face is warped onto the canonical ArcFace five-point
template before inference so that embeddings are comparable across pose
and scale. Aligned crops from one frame are sent to the recognition
model in batches; results always come back in input order.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

from ..models.frame import DetectedFace, Embedding

try:
    from insightface.utils.face_align import norm_crop  # type: ignore
except ImportError:
    norm_crop = None  # type: ignore


Aligner = Callable[..., np.ndarray]


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    vec = np.asarray(vec, dtype="float32").reshape(-1)
    norm = float(np.linalg.norm(vec))
    if norm > 0 and np.isfinite(norm):
        return vec / norm
    return vec


def face_quality(face: DetectedFace, reference_size: int = 112) -> float:
    """Detection score scaled down for faces smaller than the model input."""
    size = min(face.width, face.height)
    scale = min(1.0, size / float(reference_size)) if reference_size > 0 else 1.0
    return float(face.det_score) * scale


class Embedder:
    """
    Turn ``DetectedFace`` records into L2-normalised embeddings.

    Parameters
    ----------
    model: Any
        Object exposing ``get_feat(list_of_aligned_images) -> ndarray[N, D]``.
        Defaults to the shared InsightFace recognition model.
    aligner: Optional[Aligner]
        ``aligner(image, landmark=ndarray[5, 2], image_size=int)`` returning
        an aligned crop. Defaults to ``insightface.utils.face_align.norm_crop``.
    image_size: int
        Side of the aligned crop fed to the model.
    batch_size: int
        Maximum number of crops per inference call.
    """

    def __init__(
        self,
        model: Any = None,
        *,
        aligner: Optional[Aligner] = None,
        image_size: int = 112,
        batch_size: int = 16,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        if model is None:
            from .face_model import load_face_models

            model = load_face_models().recognizer
        if aligner is None:
            if norm_crop is None:
                raise RuntimeError("insightface is not installed; face alignment is unavailable")
            aligner = norm_crop
        self.model = model
        self.aligner = aligner
        self.image_size = int(image_size)
        self.batch_size = max(1, int(batch_size))
        self.alignment_failures = 0
        self.inference_calls = 0

    def _align(self, image: np.ndarray, face: DetectedFace) -> Optional[np.ndarray]:
        landmark = np.asarray(face.landmarks, dtype="float32").reshape(-1, 2)
        if landmark.shape != (5, 2):
            return None
        try:
            crop = self.aligner(image, landmark=landmark, image_size=self.image_size)
        except Exception as exc:
            self.logger.debug("Alignment failed camera=%s bbox=%s: %s", face.camera_id, face.bbox, exc)
            return None
        if crop is None or getattr(crop, "size", 0) == 0:
            return None
        return crop

    def embed(self, image: np.ndarray, faces: Sequence[DetectedFace]) -> List[Embedding]:
        """
        Embed every face in ``faces``; faces that cannot be aligned are skipped.

        The returned list preserves the order of ``faces``.
        """
        aligned: List[np.ndarray] = []
        sources: List[DetectedFace] = []
        for face in faces:
            crop = self._align(image, face)
            if crop is None:
                self.alignment_failures += 1
                continue
            aligned.append(crop)
            sources.append(face)
        if not aligned:
            return []

        results: List[Embedding] = []
        for start in range(0, len(aligned), self.batch_size):
            batch = aligned[start:start + self.batch_size]
            batch_faces = sources[start:start + self.batch_size]
            feats = np.asarray(self.model.get_feat(batch), dtype="float32")
            self.inference_calls += 1
            feats = feats.reshape(len(batch), -1)
            for face, feat in zip(batch_faces, feats):
                results.append(Embedding(vector=l2_normalize(feat), quality=face_quality(face, self.image_size), face=face))
        return results


__all__ = ["Embedder", "l2_normalize", "face_quality"]
