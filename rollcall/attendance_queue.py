from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .config import QUEUE_DB_PATH, QUEUE_MAX_ITEMS
from .exceptions import StorageUnavailableError


@dataclass
class QueuedAttendance:
    id: int
    client_uuid: str
    payload: dict[str, Any]


class OfflineAttendanceQueue:
    """Attendance marks that could not reach the backend yet.

    Marks are keyed by ``client_uuid`` so replaying one twice is harmless.
    Once more than ``max_items`` are pending the oldest are discarded.
    """

    def __init__(self, db_path: Path = QUEUE_DB_PATH, max_items: int = QUEUE_MAX_ITEMS) -> None:
        self.db_path = Path(db_path)
        self.max_items = max(1, int(max_items))
        self._lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._transaction() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS attendance_queue (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        client_uuid TEXT NOT NULL UNIQUE,
                        payload_json TEXT NOT NULL,
                        queued_at TEXT NOT NULL
                    )
                    """
                )
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailableError(f"Failed to open attendance queue at {self.db_path}: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=5)
            conn.row_factory = sqlite3.Row
            with closing(conn), conn:
                yield conn
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Attendance queue at {self.db_path} failed: {exc}") from exc

    def enqueue(self, payload: dict[str, Any]) -> None:
        row = (
            str(payload["client_uuid"]),
            json.dumps(payload, separators=(",", ":")),
            datetime.now(timezone.utc).isoformat(),
        )
        with self._lock, self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO attendance_queue (client_uuid, payload_json, queued_at) VALUES (?, ?, ?)",
                row,
            )
            conn.execute(
                """
                DELETE FROM attendance_queue
                WHERE id NOT IN (
                    SELECT id FROM attendance_queue ORDER BY id DESC LIMIT ?
                )
                """,
                (self.max_items,),
            )

    def fetch_batch(self, limit: int) -> list[QueuedAttendance]:
        with self._lock, self._transaction() as conn:
            rows = conn.execute(
                "SELECT id, client_uuid, payload_json FROM attendance_queue ORDER BY id ASC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()

        batch: list[QueuedAttendance] = []
        for row in rows:
            try:
                payload = json.loads(row["payload_json"])
            except json.JSONDecodeError:
                payload = {"client_uuid": row["client_uuid"]}
            batch.append(QueuedAttendance(id=int(row["id"]), client_uuid=row["client_uuid"], payload=payload))
        return batch

    def acknowledge(self, client_uuids: list[str]) -> None:
        if not client_uuids:
            return
        with self._lock, self._transaction() as conn:
            conn.executemany(
                "DELETE FROM attendance_queue WHERE client_uuid = ?",
                [(str(item),) for item in client_uuids],
            )

    def size(self) -> int:
        with self._lock, self._transaction() as conn:
            row = conn.execute("SELECT COUNT(*) FROM attendance_queue").fetchone()
        return int(row[0]) if row else 0
