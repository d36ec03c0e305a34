"""
Add reference embeddings for one identity to a local enrollment snapshot file.

Usage:
  python tools/generate_face_embedding.py --image a.jpg --image b.jpg --identity-id S1001 --name Alice

The output file has the same shape the record service serves, so it can be
used with ``enrollment.source: file``.
"""

from __future__ import annotations

import argparse
import datetime
import logging
from pathlib import Path
from typing import Any, Dict, List

from attendance_edge.core.errors import safe_json_dump_atomic, safe_json_load
from attendance_edge.cv.embedder import Embedder
from attendance_edge.cv.face_detector import FaceDetector
from attendance_edge.cv.face_model import load_face_models
from attendance_edge.enrollment.sync import payload_checksum
from attendance_edge.models.frame import Frame

try:
    import numpy as np  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("numpy is not installed. Install it to use this tool.") from exc

try:
    import cv2  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("opencv-python is not installed. Install it to use this tool.") from exc


logger = logging.getLogger("generate_face_embedding")


def compute_embedding(image_path: str, detector: FaceDetector, embedder: Embedder) -> List[float]:
    raw = np.fromfile(image_path, dtype=np.uint8)
    if raw.size == 0:
        raise ValueError(f"Unable to read image bytes: {image_path}")
    image = cv2.imdecode(raw, cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError(f"Unable to decode image: {image_path}")

    now = datetime.datetime.now(datetime.timezone.utc)
    faces = detector.detect(Frame(camera_id="enroll", seq=0, timestamp=now, image=image))
    if not faces:
        raise ValueError(f"No face detected in {image_path}. Use a clear frontal photo.")
    # Reference photos may include bystanders; keep the largest face.
    largest = max(faces, key=lambda f: f.width * f.height)
    embeddings = embedder.embed(image, [largest])
    if not embeddings:
        raise ValueError(f"Face in {image_path} could not be aligned.")
    return [float(x) for x in embeddings[0].vector]


def upsert_identity(
    items: List[Dict[str, Any]],
    identity_id: str,
    name: str,
    embeddings: List[List[float]],
    *,
    replace: bool = False,
) -> List[Dict[str, Any]]:
    for item in items:
        if str(item.get("identity_id")) == identity_id:
            item["name"] = name
            item["active"] = True
            item["embeddings"] = embeddings if replace else list(item.get("embeddings") or []) + embeddings
            return items
    items.append({"identity_id": identity_id, "name": name, "active": True, "embeddings": embeddings})
    return items


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate enrollment embeddings from reference photos.")
    parser.add_argument("--image", action="append", required=True, help="Reference photo (repeatable).")
    parser.add_argument("--identity-id", required=True, help="Student or staff identifier.")
    parser.add_argument("--name", default="", help="Display name.")
    parser.add_argument("--replace", action="store_true", help="Replace existing embeddings instead of adding.")
    parser.add_argument("--model", default=None, help="InsightFace model pack (default buffalo_l).")
    parser.add_argument(
        "--output",
        default="config/enrollment.json",
        help="Snapshot JSON file (default: config/enrollment.json).",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)

    models = load_face_models(args.model)
    detector = FaceDetector(models.detector, min_face_size=20)
    embedder = Embedder(models.recognizer)
    vectors = [compute_embedding(path, detector, embedder) for path in args.image]

    output = Path(args.output)
    data = safe_json_load(output, {}, logger=logger) if output.exists() else {}
    items = data.get("items") if isinstance(data, dict) else None
    items = upsert_identity(list(items or []), args.identity_id, args.name, vectors, replace=args.replace)
    ok = safe_json_dump_atomic(output, {"checksum": payload_checksum(items), "items": items}, logger=logger)
    if not ok:
        raise SystemExit(f"Failed to write {output}")
    print(f"Saved {len(vectors)} embedding(s) for {args.identity_id} to {output}")


if __name__ == "__main__":
    main()
