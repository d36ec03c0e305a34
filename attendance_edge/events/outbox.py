"""
Disk-backed spool for attendance events.

Events whose delivery attempts are exhausted land here and are replayed
later. Rows are never deleted on success: they move from ``pending`` to
``sent``, which acts as the replay cursor, and old ``sent`` rows are
pruned when the spool reaches its size limit.
"""

from __future__ import annotations

import datetime
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models.event import AttendanceEvent


def _utc_iso(value: Optional[datetime.datetime] = None) -> str:
    value = value or datetime.datetime.now(datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


class Outbox:
    def __init__(
        self,
        db_path: Path,
        *,
        max_queue: int = 50000,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger("Outbox")
        self.db_path = Path(db_path)
        self.max_queue = max(0, int(max_queue))
        self._lock = threading.Lock()
        self._conn = self._open_connection(self.db_path)
        self._init_db()

    def _open_connection(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS spool (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at_utc TEXT NOT NULL,
                    event_id TEXT NOT NULL UNIQUE,
                    camera_id TEXT,
                    identity_id TEXT,
                    slot_id TEXT,
                    payload_json TEXT NOT NULL,
                    attempts INTEGER DEFAULT 0,
                    next_attempt_at_utc TEXT,
                    last_error TEXT,
                    status TEXT DEFAULT 'pending'
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_spool_status_next ON spool(status, next_attempt_at_utc)"
            )

    def enqueue(self, event: AttendanceEvent, *, error: Optional[str] = None, dead: bool = False) -> bool:
        """
        Spool an event. Re-spooling an event already present is a no-op that returns True.

        ``dead`` rows are kept for inspection and never replayed.
        """
        payload_json = event.model_dump_json()
        created_at = _utc_iso()
        with self._lock:
            self._trim_if_needed_locked(extra=1)
            try:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO spool (
                        created_at_utc,
                        event_id,
                        camera_id,
                        identity_id,
                        slot_id,
                        payload_json,
                        attempts,
                        next_attempt_at_utc,
                        last_error,
                        status
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        created_at,
                        event.event_id,
                        event.camera_id,
                        event.identity_id,
                        event.slot_id,
                        payload_json,
                        created_at,
                        (error or "")[:300] or None,
                        "dead" if dead else "pending",
                    ),
                )
                return True
            except sqlite3.Error as exc:
                self.logger.error(
                    "Spool enqueue failed camera=%s event_id=%s: %s",
                    event.camera_id,
                    event.event_id,
                    exc,
                )
                return False

    def _trim_if_needed_locked(self, extra: int = 0) -> None:
        if self.max_queue <= 0:
            return
        count = int(self._conn.execute("SELECT COUNT(*) AS cnt FROM spool").fetchone()["cnt"])
        drop = (count + extra) - self.max_queue
        if drop <= 0:
            return
        # Delivered rows go first; pending rows only when nothing else is left.
        cur = self._conn.execute(
            "DELETE FROM spool WHERE id IN (SELECT id FROM spool WHERE status != 'pending' ORDER BY id ASC LIMIT ?)",
            (drop,),
        )
        remaining = drop - max(0, cur.rowcount)
        if remaining > 0:
            self._conn.execute(
                "DELETE FROM spool WHERE id IN (SELECT id FROM spool ORDER BY id ASC LIMIT ?)",
                (remaining,),
            )
            self.logger.warning("Spool full; dropped %s oldest pending events", remaining)

    def get_due(self, limit: int = 100, *, now: Optional[datetime.datetime] = None) -> List[Dict[str, Any]]:
        now_iso = _utc_iso(now)
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT id, event_id, camera_id, identity_id, slot_id, payload_json,
                       attempts, next_attempt_at_utc, last_error, status
                FROM spool
                WHERE status = 'pending'
                  AND (next_attempt_at_utc IS NULL OR next_attempt_at_utc <= ?)
                ORDER BY id ASC
                LIMIT ?
                """,
                (now_iso, int(limit)),
            )
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    def load_event(row: Dict[str, Any]) -> AttendanceEvent:
        return AttendanceEvent.model_validate(json.loads(row["payload_json"]))

    def mark_sent(self, row_id: int) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE spool SET status='sent', last_error=NULL WHERE id=?",
                (int(row_id),),
            )

    def mark_failed(
        self,
        row_id: int,
        *,
        attempts: Optional[int] = None,
        error: str,
        max_attempts: int = 0,
        backoff_seconds: Optional[float] = None,
    ) -> None:
        """
        Schedule another replay. ``max_attempts`` of 0 never gives up; a
        positive value moves the row to ``dead`` once reached.
        """
        if attempts is None:
            with self._lock:
                row = self._conn.execute("SELECT attempts FROM spool WHERE id=?", (int(row_id),)).fetchone()
                attempts = int(row["attempts"]) if row else 0
        attempts = int(attempts) + 1
        if backoff_seconds is None:
            backoff_seconds = min(60, 2 ** min(attempts, 6))
        else:
            backoff_seconds = min(300.0, max(1.0, float(backoff_seconds)))
        next_attempt = _utc_iso(datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=backoff_seconds))
        status = "dead" if max_attempts > 0 and attempts >= max_attempts else "pending"
        with self._lock:
            self._conn.execute(
                """
                UPDATE spool
                SET attempts=?, next_attempt_at_utc=?, last_error=?, status=?
                WHERE id=?
                """,
                (attempts, next_attempt, (error or "")[:300], status, int(row_id)),
            )

    def mark_dead(self, row_id: int, *, error: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE spool SET status='dead', last_error=? WHERE id=?",
                ((error or "")[:300], int(row_id)),
            )

    def stats(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute("SELECT status, COUNT(*) AS cnt FROM spool GROUP BY status").fetchall()
        stats = {"pending": 0, "sent": 0, "dead": 0}
        for row in rows:
            if row["status"] in stats:
                stats[row["status"]] = int(row["cnt"])
        return stats

    def pending_count(self) -> int:
        return int(self.stats().get("pending", 0))

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                self.logger.warning("Spool close failed: %s", exc)


__all__ = ["Outbox"]
