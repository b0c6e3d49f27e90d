import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import numpy as np

from .exceptions import DatabaseError, StorageUnavailableError
from .face_types import UserType


@dataclass(frozen=True, eq=False)
class FaceDescriptor:
    id: str
    user_id: str
    user_type: UserType
    descriptor: np.ndarray
    timestamp: int


@dataclass
class EnrolledUser:
    user_id: str
    user_type: UserType
    samples: int
    last_captured: int


class DescriptorStore:
    """Local SQLite store for enrolled face descriptors.

    One connection is opened on first use and shared by every caller in the
    process. Each statement runs under the store lock, so ``get_all`` always
    sees a whole number of committed ``add`` calls.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._last_ns = 0

    def open(self) -> None:
        with self._lock:
            self._ensure_open()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _ensure_open(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=5, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            with conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS face_descriptors (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        user_type TEXT NOT NULL,
                        descriptor BLOB NOT NULL,
                        descriptor_dim INTEGER NOT NULL,
                        timestamp INTEGER NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_face_descriptors_user
                        ON face_descriptors (user_id, user_type);
                    """
                )
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailableError(f"Failed to open descriptor store at {self.db_path}: {exc}") from exc

        self._conn = conn
        return conn

    def _next_timestamp_ns(self) -> int:
        now = time.time_ns()
        if now <= self._last_ns:
            now = self._last_ns + 1
        self._last_ns = now
        return now

    def add(self, user_id: str, user_type: Union[UserType, str], descriptor: np.ndarray) -> FaceDescriptor:
        vector = np.asarray(descriptor, dtype=np.float32)
        if vector.ndim != 1 or vector.size == 0:
            raise DatabaseError("Descriptor must be a non-empty 1D vector.")
        kind = UserType(user_type)

        with self._lock:
            conn = self._ensure_open()
            stamp_ns = self._next_timestamp_ns()
            record_id = f"{user_id}-{stamp_ns}"
            timestamp_ms = stamp_ns // 1_000_000
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO face_descriptors (
                            id, user_id, user_type, descriptor, descriptor_dim, timestamp
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (record_id, user_id, kind.value, vector.tobytes(), vector.size, timestamp_ms),
                    )
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"Failed to add descriptor for {user_id}: {exc}") from exc

        vector = vector.copy()
        vector.setflags(write=False)
        return FaceDescriptor(
            id=record_id,
            user_id=user_id,
            user_type=kind,
            descriptor=vector,
            timestamp=timestamp_ms,
        )

    def get_all_for_user(self, user_id: str, user_type: Union[UserType, str]) -> List[FaceDescriptor]:
        kind = UserType(user_type)
        return self._select(
            """
            SELECT id, user_id, user_type, descriptor, descriptor_dim, timestamp
            FROM face_descriptors
            WHERE user_id = ? AND user_type = ?
            ORDER BY timestamp ASC, id ASC
            """,
            (user_id, kind.value),
        )

    def get_all(self) -> List[FaceDescriptor]:
        return self._select(
            """
            SELECT id, user_id, user_type, descriptor, descriptor_dim, timestamp
            FROM face_descriptors
            ORDER BY timestamp ASC, id ASC
            """,
            (),
        )

    def remove_all_for_user(self, user_id: str, user_type: Union[UserType, str]) -> int:
        kind = UserType(user_type)
        with self._lock:
            conn = self._ensure_open()
            try:
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM face_descriptors WHERE user_id = ? AND user_type = ?",
                        (user_id, kind.value),
                    )
                    return cursor.rowcount
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"Failed to remove descriptors for {user_id}: {exc}") from exc

    def count(self) -> int:
        with self._lock:
            conn = self._ensure_open()
            try:
                row = conn.execute("SELECT COUNT(*) AS c FROM face_descriptors").fetchone()
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"Failed to count descriptors: {exc}") from exc
        return int(row["c"]) if row else 0

    def list_enrolled_users(self) -> List[EnrolledUser]:
        with self._lock:
            conn = self._ensure_open()
            try:
                rows = conn.execute(
                    """
                    SELECT user_id, user_type, COUNT(*) AS samples, MAX(timestamp) AS last_captured
                    FROM face_descriptors
                    GROUP BY user_id, user_type
                    ORDER BY user_type ASC, user_id ASC
                    """
                ).fetchall()
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"Failed to list enrolled users: {exc}") from exc

        return [
            EnrolledUser(
                user_id=row["user_id"],
                user_type=UserType(row["user_type"]),
                samples=int(row["samples"]),
                last_captured=int(row["last_captured"]),
            )
            for row in rows
        ]

    def _select(self, sql: str, params: tuple) -> List[FaceDescriptor]:
        with self._lock:
            conn = self._ensure_open()
            try:
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StorageUnavailableError(f"Failed to load descriptors: {exc}") from exc

        records: List[FaceDescriptor] = []
        for row in rows:
            vector = np.frombuffer(row["descriptor"], dtype=np.float32, count=row["descriptor_dim"]).copy()
            vector.setflags(write=False)
            records.append(
                FaceDescriptor(
                    id=row["id"],
                    user_id=row["user_id"],
                    user_type=UserType(row["user_type"]),
                    descriptor=vector,
                    timestamp=int(row["timestamp"]),
                )
            )
        return records
