"""
Versioned enrollment snapshots and the similarity index built from them.

A snapshot is built completely (parse, validate, normalise, index) before
it becomes visible. The swap itself is one reference assignment under a
lock, so a matcher that grabbed ``store.current()`` keeps a consistent
view for the whole match even if a refresh lands meanwhile.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from ..core.errors import EnrollmentError

try:
    import faiss  # type: ignore
    _FAISS_OK = True
except Exception:
    faiss = None  # type: ignore
    _FAISS_OK = False


@dataclass(frozen=True)
class EnrolledIdentity:
    identity_id: str
    embeddings: Tuple[Tuple[float, ...], ...]
    active: bool = True
    display_name: Optional[str] = None


class FaceIndex:
    """Inner-product index over L2-normalised rows (FAISS, numpy fallback)."""

    def __init__(self, dim: int, index_type: str = "flat") -> None:
        self.dim = int(dim)
        self.index_type = index_type
        self.index = None
        self._mat: Optional[np.ndarray] = None
        self.size = 0

    def build(self, matrix: np.ndarray) -> None:
        matrix = np.ascontiguousarray(matrix, dtype="float32")
        self.size = int(matrix.shape[0])
        if self.size == 0:
            self.index = None
            self._mat = None
            return
        self.dim = int(matrix.shape[1])
        if _FAISS_OK:
            if self.index_type == "hnsw":
                index = faiss.IndexHNSWFlat(self.dim, 32, faiss.METRIC_INNER_PRODUCT)  # type: ignore[attr-defined]
            else:
                index = faiss.IndexFlatIP(self.dim)  # type: ignore[attr-defined]
            index.add(matrix)
            self.index = index
        else:
            self._mat = matrix

    def search(self, vector: np.ndarray, k: int) -> List[Tuple[int, float]]:
        """Return up to ``k`` ``(row, score)`` pairs, best first."""
        if self.size == 0 or k <= 0:
            return []
        k = min(int(k), self.size)
        vec = np.asarray(vector, dtype="float32").reshape(1, -1)
        if vec.shape[1] != self.dim:
            raise ValueError(f"query dimension {vec.shape[1]} != index dimension {self.dim}")
        if self.index is not None:
            scores, idx = self.index.search(vec, k)
            return [(int(i), float(s)) for i, s in zip(idx[0], scores[0]) if i >= 0]
        assert self._mat is not None
        scores = (vec @ self._mat.T)[0]
        order = np.argsort(-scores, kind="stable")[:k]
        return [(int(i), float(scores[i])) for i in order]


@dataclass(frozen=True)
class EnrollmentSnapshot:
    """An immutable, fully indexed enrollment set."""

    version: int
    checksum: Optional[str]
    identities: Dict[str, EnrolledIdentity]
    row_identity: Tuple[str, ...]
    index: FaceIndex
    dim: int
    max_refs: int
    loaded_at: float = field(default_factory=time.time)

    @property
    def empty(self) -> bool:
        return not self.row_identity

    @property
    def active_count(self) -> int:
        return sum(1 for ident in self.identities.values() if ident.active)


def _empty_snapshot() -> EnrollmentSnapshot:
    return EnrollmentSnapshot(
        version=0,
        checksum=None,
        identities={},
        row_identity=(),
        index=FaceIndex(0),
        dim=0,
        max_refs=0,
    )


def _vectors(raw: object, identity_id: str) -> List[List[float]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise EnrollmentError(f"identity {identity_id}: embeddings must be a list")
    vectors: List[List[float]] = []
    for item in raw:
        vec = item.get("embedding") if isinstance(item, dict) else item
        if not isinstance(vec, (list, tuple)) or not vec:
            raise EnrollmentError(f"identity {identity_id}: malformed embedding")
        try:
            vectors.append([float(x) for x in vec])
        except (TypeError, ValueError) as exc:
            raise EnrollmentError(f"identity {identity_id}: non-numeric embedding") from exc
    return vectors


def parse_entries(entries: Iterable[dict]) -> List[EnrolledIdentity]:
    """Parse raw snapshot items into identities. Raises EnrollmentError."""
    identities: List[EnrolledIdentity] = []
    seen: set[str] = set()
    for item in entries:
        if not isinstance(item, dict):
            raise EnrollmentError(f"snapshot item must be a mapping, got {type(item).__name__}")
        raw_id = item.get("identity_id", item.get("id"))
        if raw_id is None or str(raw_id) == "":
            raise EnrollmentError("snapshot item without identity_id")
        identity_id = str(raw_id)
        if identity_id in seen:
            raise EnrollmentError(f"duplicate identity {identity_id}")
        seen.add(identity_id)
        vectors = _vectors(item.get("embeddings"), identity_id)
        identities.append(
            EnrolledIdentity(
                identity_id=identity_id,
                embeddings=tuple(tuple(v) for v in vectors),
                active=bool(item.get("active", True)),
                display_name=item.get("name"),
            )
        )
    return identities


class EnrollmentStore:
    """Holds the current ``EnrollmentSnapshot`` and swaps it atomically."""

    def __init__(self, *, index_type: str = "flat") -> None:
        self.logger = logging.getLogger("enrollment")
        self.index_type = index_type
        self._lock = threading.Lock()
        self._snapshot = _empty_snapshot()
        self.refresh_failures = 0

    def current(self) -> EnrollmentSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def _build(self, entries: Iterable[dict], checksum: Optional[str], version: int) -> EnrollmentSnapshot:
        identities = parse_entries(entries)
        rows: List[np.ndarray] = []
        row_identity: List[str] = []
        refs: Dict[str, int] = {}
        dim: Optional[int] = None
        for ident in identities:
            for vec in ident.embeddings:
                arr = np.asarray(vec, dtype="float32")
                if dim is None:
                    dim = arr.shape[0]
                elif arr.shape[0] != dim:
                    raise EnrollmentError(
                        f"identity {ident.identity_id}: embedding dimension {arr.shape[0]} != {dim}"
                    )
                if not ident.active:
                    continue
                norm = float(np.linalg.norm(arr))
                if not np.isfinite(norm) or norm == 0:
                    raise EnrollmentError(f"identity {ident.identity_id}: zero or non-finite embedding")
                rows.append(arr / norm)
                row_identity.append(ident.identity_id)
                refs[ident.identity_id] = refs.get(ident.identity_id, 0) + 1

        index = FaceIndex(dim or 0, self.index_type)
        if rows:
            index.build(np.vstack(rows))
        return EnrollmentSnapshot(
            version=version,
            checksum=checksum,
            identities={ident.identity_id: ident for ident in identities},
            row_identity=tuple(row_identity),
            index=index,
            dim=int(dim or 0),
            max_refs=max(refs.values()) if refs else 0,
        )

    def refresh(self, entries: Iterable[dict], checksum: Optional[str] = None) -> EnrollmentSnapshot:
        """
        Build a new snapshot and make it current.

        On any failure the previous snapshot stays active and
        ``EnrollmentError`` is raised.
        """
        next_version = self._snapshot.version + 1
        try:
            snapshot = self._build(list(entries), checksum, next_version)
        except EnrollmentError:
            self.refresh_failures += 1
            self.logger.warning("Enrollment refresh rejected; keeping version %s", self._snapshot.version)
            raise
        except Exception as exc:
            self.refresh_failures += 1
            self.logger.warning("Enrollment refresh failed; keeping version %s", self._snapshot.version)
            raise EnrollmentError(f"enrollment refresh failed: {exc}") from exc
        with self._lock:
            snapshot = replace(snapshot, version=self._snapshot.version + 1)
            self._snapshot = snapshot
        self.logger.info(
            "Enrollment snapshot v%s active: identities=%s indexed_rows=%s",
            snapshot.version,
            len(snapshot.identities),
            len(snapshot.row_identity),
        )
        return snapshot


__all__ = [
    "EnrolledIdentity",
    "EnrollmentSnapshot",
    "EnrollmentStore",
    "FaceIndex",
    "parse_entries",
]
