"""
Evidence photo writer for attendance events.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import cv2  # type: ignore
import numpy as np

from .models.frame import DetectedFace


def crop_face(image: np.ndarray, face: DetectedFace, padding: float = 0.25) -> Optional[np.ndarray]:
    """Cut the face box out of ``image`` with ``padding`` (fraction of box size) on each side."""
    height, width = image.shape[:2]
    x1, y1, x2, y2 = face.bbox
    pad_x = int(round((x2 - x1) * padding))
    pad_y = int(round((y2 - y1) * padding))
    x1, y1 = max(0, x1 - pad_x), max(0, y1 - pad_y)
    x2, y2 = min(width, x2 + pad_x), min(height, y2 + pad_y)
    if x2 <= x1 or y2 <= y1:
        return None
    return image[y1:y2, x1:x2]


class SnapshotWriter:
    """Writes evidence crops to disk and returns a URL or absolute path."""

    def __init__(
        self,
        base_dir: str,
        base_url: Optional[str] = None,
        *,
        padding: float = 0.25,
        jpeg_quality: int = 90,
    ) -> None:
        self.logger = logging.getLogger("SnapshotWriter")
        self.base_dir = Path(base_dir).expanduser()
        self.base_url = base_url.rstrip("/") if base_url else None
        self.padding = max(0.0, float(padding))
        self.jpeg_quality = int(max(10, min(100, jpeg_quality)))

    def save(
        self,
        image: np.ndarray,
        face: DetectedFace,
        *,
        identity_id: str,
        timestamp_utc: str,
    ) -> Optional[str]:
        crop = crop_face(image, face, self.padding)
        if crop is None:
            self.logger.warning("Evidence skipped: empty crop camera=%s bbox=%s", face.camera_id, face.bbox)
            return None
        date_part = timestamp_utc.split("T")[0] if "T" in timestamp_utc else "unknown"
        rel_dir = Path(face.camera_id) / date_part
        out_dir = self.base_dir / rel_dir
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self.logger.warning("Evidence dir create failed path=%s err=%s", out_dir, exc)
            return None
        stamp = timestamp_utc.replace(":", "").replace("-", "").replace(".", "")
        filename = f"{identity_id}_{stamp}_{face.frame_seq}.jpg"
        out_path = out_dir / filename
        try:
            ok = bool(cv2.imwrite(str(out_path), crop, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality]))
        except cv2.error as exc:
            self.logger.warning("Evidence write exception path=%s err=%s", out_path, exc)
            return None
        if not ok:
            self.logger.warning("Evidence write failed path=%s", out_path)
            return None
        if self.base_url:
            return f"{self.base_url}/{rel_dir.as_posix()}/{filename}"
        return str(out_path.resolve())


__all__ = ["SnapshotWriter", "crop_face"]
