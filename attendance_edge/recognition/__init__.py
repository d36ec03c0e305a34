"""Matching and deduplication for recognised faces."""

from .dedup import DedupState, Deduplicator
from .matcher import Matcher

__all__ = ["DedupState", "Deduplicator", "Matcher"]
