"""
Identity matching with an acceptance threshold and an ambiguity margin.
"""

from __future__ import annotations

import datetime
import logging
from typing import Dict, List, Tuple, Union

import numpy as np

from ..enrollment.store import EnrollmentStore
from ..models.frame import Embedding, MatchResult


def clamp_score(score: float) -> float:
    if not np.isfinite(score):
        return -1.0
    return float(max(-1.0, min(1.0, score)))


class Matcher:
    """
    Match embeddings against the current enrollment snapshot.

    A result is positive only when the best identity scores at least
    ``threshold`` and beats the runner-up identity by at least ``margin``.
    With a single enrolled identity the runner-up score is -1.
    """

    def __init__(self, store: EnrollmentStore, *, threshold: float, margin: float) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.store = store
        self.threshold = float(threshold)
        self.margin = float(margin)

    def update(self, *, threshold: float, margin: float) -> None:
        self.threshold = float(threshold)
        self.margin = float(margin)

    def match(
        self,
        embedding: Union[Embedding, np.ndarray],
        camera_id: str,
        timestamp: datetime.datetime,
    ) -> MatchResult:
        vector = embedding.vector if isinstance(embedding, Embedding) else np.asarray(embedding, dtype="float32")
        # One snapshot reference for the whole match.
        snapshot = self.store.current()
        if snapshot.empty:
            return MatchResult(
                identity_id=None,
                score=-1.0,
                second_score=-1.0,
                camera_id=camera_id,
                timestamp=timestamp,
                reason="empty_index",
                snapshot_version=snapshot.version,
            )
        if vector.reshape(-1).shape[0] != snapshot.dim:
            raise ValueError(f"embedding dimension {vector.reshape(-1).shape[0]} != enrolled dimension {snapshot.dim}")

        # max_refs + 1 rows always include at least two distinct identities when two exist.
        hits = snapshot.index.search(vector, snapshot.max_refs + 1)
        best: Dict[str, float] = {}
        for row, score in hits:
            identity_id = snapshot.row_identity[row]
            score = clamp_score(score)
            if score > best.get(identity_id, -2.0):
                best[identity_id] = score
        ranked: List[Tuple[str, float]] = sorted(best.items(), key=lambda item: (-item[1], item[0]))
        top_id, top_score = ranked[0]
        second_score = ranked[1][1] if len(ranked) > 1 else -1.0

        if top_score < self.threshold:
            identity_id, reason = None, "below_threshold"
        elif top_score - second_score < self.margin:
            identity_id, reason = None, "ambiguous"
        else:
            identity_id, reason = top_id, "matched"
        return MatchResult(
            identity_id=identity_id,
            score=top_score,
            second_score=second_score,
            camera_id=camera_id,
            timestamp=timestamp,
            reason=reason,
            snapshot_version=snapshot.version,
            candidates=ranked[:2],
        )


__all__ = ["Matcher", "clamp_score"]
