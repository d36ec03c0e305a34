"""
Process-wide InsightFace model loading.

Detection and recognition weights are loaded once per process and shared
by every camera lane. ONNX Runtime sessions are safe to call from
several threads.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Optional

try:
    from insightface.app import FaceAnalysis  # type: ignore
except ImportError:
    FaceAnalysis = None  # type: ignore


@dataclass
class FaceModels:
    """Detection model (``detect``) and recognition model (``get_feat``)."""

    detector: Any
    recognizer: Any
    name: str


_models: Optional[FaceModels] = None
_models_lock = threading.Lock()


def _providers(device: str) -> list[str]:
    if device.startswith("cuda"):
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def load_face_models(
    model_name: Optional[str] = None,
    *,
    root: Optional[str] = None,
    device: str = "cpu",
    det_size: int = 640,
    det_thresh: float = 0.5,
) -> FaceModels:
    """
    Load (or return the cached) InsightFace detection + recognition models.

    Raises
    ------
    RuntimeError
        If insightface is not installed or the model pack has no detection
        or recognition model.
    """
    global _models
    if _models is not None:
        return _models
    if FaceAnalysis is None:
        raise RuntimeError("insightface is not installed; install the 'inference' extra to run recognition")

    with _models_lock:
        if _models is not None:
            return _models
        logger = logging.getLogger("face_model")
        name = model_name or os.getenv("ATTENDANCE_FACE_MODEL", "buffalo_l")
        model_root = root or os.getenv("INSIGHTFACE_HOME", os.path.expanduser("~/.insightface"))
        ctx_id = 0 if device.startswith("cuda") else -1

        def _init(pack: str) -> "FaceAnalysis":
            app = FaceAnalysis(
                name=pack,
                root=model_root,
                allowed_modules=["detection", "recognition"],
                providers=_providers(device),
            )
            app.prepare(ctx_id=ctx_id, det_thresh=det_thresh, det_size=(det_size, det_size))
            return app

        try:
            app = _init(name)
        except AssertionError:
            logger.error(
                "InsightFace model '%s' loaded without 'detection'. "
                "Check %s/models/%s for *.onnx files (no extra subfolder).",
                name,
                model_root,
                name,
            )
            if name == "buffalo_l":
                raise
            logger.warning("Falling back to buffalo_l.")
            name = "buffalo_l"
            app = _init(name)

        recognizer = app.models.get("recognition")
        if recognizer is None:
            raise RuntimeError(f"InsightFace model pack '{name}' has no recognition model")
        _models = FaceModels(detector=app.det_model, recognizer=recognizer, name=name)
        logger.info("Loaded InsightFace model pack %s on %s", name, device)
        return _models


__all__ = ["FaceModels", "load_face_models"]
