from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

import requests

from .attendance_queue import OfflineAttendanceQueue
from .config import API_BASE_URL, API_TIMEOUT_SECONDS, API_TOKEN, ATTENDANCE_COOLDOWN_SECONDS, QUEUE_FLUSH_BATCH
from .exceptions import AttendanceApiError, AttendanceRejectedError
from .face_types import UserType
from .logger import setup_logger

ACKNOWLEDGED_STATUSES = {"synced", "duplicate"}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class AttendanceRecord:
    user_id: str
    user_type: UserType
    confidence: float
    timestamp: str = field(default_factory=_utc_now_iso)
    client_uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    method: str = "face_recognition"

    def to_payload(self, offline: bool = False) -> dict[str, Any]:
        return {
            "client_uuid": self.client_uuid,
            "user_id": self.user_id,
            "user_type": self.user_type.value,
            "timestamp": self.timestamp,
            "confidence": self.confidence,
            "match_confidence": self.confidence,
            "method": self.method,
            "isOffline": offline,
        }


class AttendanceApiClient:
    def __init__(
        self,
        base_url: str = API_BASE_URL,
        token: str = API_TOKEN,
        timeout: float = API_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise AttendanceApiError(f"{method} {path} failed: {exc}") from exc
        return resp

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise AttendanceApiError(f"Invalid JSON from {resp.url}: {exc}") from exc

    def create_attendance(self, payload: dict[str, Any]) -> dict[str, Any]:
        resp = self._request("POST", "/attendance", json=payload)
        if not resp.ok:
            raise AttendanceRejectedError(
                f"Attendance rejected ({resp.status_code}): {resp.text[:200]}",
                resp.status_code,
            )
        return self._json(resp)

    def sync_attendance(self, payloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
        resp = self._request("POST", "/attendance/sync", json=payloads)
        if not resp.ok:
            raise AttendanceRejectedError(
                f"Attendance sync rejected ({resp.status_code}): {resp.text[:200]}",
                resp.status_code,
            )
        return list(self._json(resp).get("results", []))

    def get_user(self, user_id: str, user_type: Union[UserType, str]) -> Optional[dict[str, Any]]:
        kind = UserType(user_type)
        collection = "students" if kind is UserType.STUDENT else "employees"
        resp = self._request("GET", f"/{collection}/{user_id}")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise AttendanceRejectedError(
                f"User lookup failed ({resp.status_code}): {resp.text[:200]}",
                resp.status_code,
            )
        body = self._json(resp)
        # The backend wraps some resources as {"status": ..., "data": {...}}.
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            return body["data"]
        return body


class AttendanceService:
    """Records recognised users with the backend, queueing marks while offline."""

    def __init__(
        self,
        client: AttendanceApiClient,
        queue: Optional[OfflineAttendanceQueue] = None,
        cooldown_seconds: float = ATTENDANCE_COOLDOWN_SECONDS,
        flush_batch: int = QUEUE_FLUSH_BATCH,
    ):
        self.client = client
        self.queue = queue
        self.cooldown_seconds = cooldown_seconds
        self.flush_batch = flush_batch
        self.logger = setup_logger(self.__class__.__name__)
        self.last_attempt_times: dict[tuple[str, UserType], float] = {}

    def mark_now(self, user_id: str, user_type: Union[UserType, str], confidence: float) -> Optional[AttendanceRecord]:
        kind = UserType(user_type)
        key = (user_id, kind)
        now = time.monotonic()
        last_try = self.last_attempt_times.get(key)
        if last_try is not None and now - last_try < self.cooldown_seconds:
            return None
        self.last_attempt_times[key] = now

        record = AttendanceRecord(user_id=user_id, user_type=kind, confidence=round(float(confidence), 4))
        try:
            self.client.create_attendance(record.to_payload())
        except AttendanceApiError as exc:
            # Only transport and server-side failures are replayed from the queue.
            if isinstance(exc, AttendanceRejectedError) and not exc.retryable:
                self.logger.error("Attendance for %s %s rejected: %s", kind.value, user_id, exc)
                raise
            if self.queue is None:
                raise
            self.queue.enqueue(record.to_payload(offline=True))
            self.logger.warning("Queued attendance for %s %s (size=%d): %s", kind.value, user_id, self.queue.size(), exc)
            return record

        self.logger.info("Attendance marked for %s %s (confidence=%.2f)", kind.value, user_id, record.confidence)
        flushed = self.flush_queue()
        if flushed > 0:
            self.logger.info("Flushed %d queued attendance marks", flushed)
        return record

    def flush_queue(self, max_items: Optional[int] = None) -> int:
        if self.queue is None:
            return 0
        batch_size = max_items if max_items is not None else self.flush_batch
        pending = self.queue.fetch_batch(batch_size)
        if not pending:
            return 0

        try:
            results = self.client.sync_attendance([item.payload for item in pending])
        except AttendanceApiError as exc:
            self.logger.warning("Attendance sync failed, %d marks kept: %s", len(pending), exc)
            return 0

        acked = [
            str(item.get("client_uuid"))
            for item in results
            if item.get("status") in ACKNOWLEDGED_STATUSES and item.get("client_uuid")
        ]
        self.queue.acknowledge(acked)
        return len(acked)
