"""
Enrollment snapshot sync for edge nodes.

Pulls full snapshots from the record service (or a local JSON file) on a
fixed interval, skips payloads whose checksum is unchanged and caches the
last good payload on disk so a restarted node can match before the
backend is reachable.
"""

from __future__ import annotations

import json
import logging
import threading
from hashlib import sha256
from pathlib import Path
from typing import Any, Optional

from ..core.errors import EnrollmentError, safe_json_dump_atomic, safe_json_load
from .store import EnrollmentStore


def payload_checksum(items: list) -> str:
    body = json.dumps(items, sort_keys=True, separators=(",", ":"), default=str)
    return sha256(body.encode("utf-8")).hexdigest()[:24]


class EnrollmentSync:
    """
    Keeps an ``EnrollmentStore`` up to date.

    Parameters
    ----------
    store: EnrollmentStore
        Target store.
    client: Any
        Object with ``fetch_enrollment_snapshot() -> dict``; required when
        ``source`` is ``"backend"``.
    source: str
        ``"backend"`` or ``"file"``.
    file_path: Optional[str]
        Snapshot file for ``source="file"``.
    cache_path: Optional[str]
        Where the last applied payload is cached.
    sync_interval_sec: float
        Pull interval.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        *,
        client: Any = None,
        source: str = "backend",
        file_path: Optional[str] = None,
        cache_path: Optional[str] = None,
        sync_interval_sec: float = 300.0,
    ) -> None:
        self.logger = logging.getLogger("enrollment")
        self.store = store
        self.client = client
        self.source = source
        self.file_path = Path(file_path).expanduser() if file_path else None
        self.cache_path = Path(cache_path).expanduser() if cache_path else None
        self.sync_interval_sec = max(5.0, float(sync_interval_sec))
        self._checksum: Optional[str] = None
        self._apply_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_error: Optional[str] = None

    def load_cached(self) -> bool:
        """Apply the on-disk cache, if any. Returns True when a snapshot was loaded."""
        if self.cache_path is None or not self.cache_path.exists():
            return False
        payload = safe_json_load(self.cache_path, None, logger=self.logger)
        if not isinstance(payload, dict):
            return False
        try:
            return self._apply(payload, cache=False)
        except EnrollmentError as exc:
            self.logger.warning("Ignoring unusable enrollment cache %s: %s", self.cache_path, exc)
            return False

    def apply_snapshot(self, payload: dict) -> bool:
        """Apply a pushed snapshot. Raises EnrollmentError; the old snapshot stays active."""
        return self._apply(payload, cache=True)

    def _apply(self, payload: dict, *, cache: bool) -> bool:
        if not isinstance(payload, dict):
            raise EnrollmentError("snapshot payload must be a mapping")
        items = payload.get("items")
        if not isinstance(items, list):
            raise EnrollmentError("snapshot payload has no 'items' list")
        checksum = payload.get("checksum") or payload_checksum(items)
        with self._apply_lock:
            if checksum == self._checksum:
                return False
            self.store.refresh(items, checksum)
            self._checksum = checksum
        if cache and self.cache_path is not None:
            safe_json_dump_atomic(
                self.cache_path,
                {"checksum": checksum, "items": items},
                logger=self.logger,
                context={"component": "enrollment_cache"},
            )
        return True

    def _fetch(self) -> Optional[dict]:
        if self.source == "file":
            if self.file_path is None:
                raise EnrollmentError("enrollment.source is 'file' but no file is configured")
            try:
                with self.file_path.open("r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, ValueError) as exc:
                raise EnrollmentError(f"cannot read {self.file_path}: {exc}") from exc
        if self.client is None:
            raise EnrollmentError("enrollment.source is 'backend' but no client is configured")
        return self.client.fetch_enrollment_snapshot()

    def sync_once(self) -> bool:
        """Pull and apply one snapshot. Returns True when the store changed."""
        payload = self._fetch()
        if payload is None:
            return False
        changed = self._apply(payload, cache=True)
        self.last_error = None
        if changed:
            self.logger.info("Enrollment synced: version=%s", self.store.version)
        return changed

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="EnrollmentSync", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sync_once()
            except Exception as exc:
                self.last_error = str(exc)
                self.logger.warning(
                    "Enrollment sync failed; keeping version %s: %s", self.store.version, exc
                )
            self._stop_event.wait(timeout=self.sync_interval_sec)


__all__ = ["EnrollmentSync", "payload_checksum"]
