import sqlite3
from contextlib import closing

import pytest
import requests

from rollcall.attendance_queue import OfflineAttendanceQueue
from rollcall.attendance_service import AttendanceApiClient, AttendanceRecord, AttendanceService
from rollcall.exceptions import AttendanceApiError, AttendanceRejectedError, StorageUnavailableError
from rollcall.face_types import UserType


class FakeResponse:
    def __init__(self, status_code=200, body=None, url="http://backend/api/v1"):
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.url = url
        self.text = str(self._body)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.headers = {}
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs.get("json")))
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return FakeResponse(201, {"id": 1})


def make_client(session):
    return AttendanceApiClient(base_url="http://backend/api/v1/", token="secret", timeout=1, session=session)


def test_record_payload_fields():
    record = AttendanceRecord(user_id="42", user_type=UserType.STUDENT, confidence=0.8)
    payload = record.to_payload()
    assert payload["method"] == "face_recognition"
    assert payload["user_type"] == "student"
    assert payload["confidence"] == payload["match_confidence"] == 0.8
    assert payload["isOffline"] is False
    assert payload["timestamp"].endswith("Z")
    assert record.to_payload(offline=True)["isOffline"] is True


def test_client_posts_attendance_with_token():
    session = FakeSession()
    client = make_client(session)
    client.create_attendance({"user_id": "42"})

    assert session.headers["Authorization"] == "Bearer secret"
    assert session.calls == [("POST", "http://backend/api/v1/attendance", {"user_id": "42"})]


def test_client_wraps_network_errors():
    client = make_client(FakeSession(error=requests.ConnectionError("offline")))
    with pytest.raises(AttendanceApiError):
        client.create_attendance({"user_id": "42"})


def test_client_rejects_error_status():
    client = make_client(FakeSession([FakeResponse(500, {"error": "boom"})]))
    with pytest.raises(AttendanceApiError):
        client.create_attendance({"user_id": "42"})


def test_user_lookup():
    session = FakeSession(
        [
            FakeResponse(200, {"status": "success", "data": {"id": 42, "full_name": "Ada"}}),
            FakeResponse(404, {"error": "not found"}),
        ]
    )
    client = make_client(session)

    assert client.get_user("42", UserType.STUDENT)["full_name"] == "Ada"
    assert client.get_user("7", "employee") is None
    assert [call[1] for call in session.calls] == [
        "http://backend/api/v1/students/42",
        "http://backend/api/v1/employees/7",
    ]


def test_mark_now_respects_cooldown():
    session = FakeSession()
    service = AttendanceService(make_client(session), cooldown_seconds=60)

    first = service.mark_now("42", UserType.STUDENT, 0.91)
    second = service.mark_now("42", UserType.STUDENT, 0.93)
    other_type = service.mark_now("42", UserType.EMPLOYEE, 0.9)

    assert first is not None and second is None and other_type is not None
    assert len(session.calls) == 2
    assert session.calls[0][2]["user_id"] == "42"


def test_mark_now_queues_when_offline(tmp_path):
    queue = OfflineAttendanceQueue(tmp_path / "queue.db")
    session = FakeSession(error=requests.ConnectionError("offline"))
    service = AttendanceService(make_client(session), queue=queue, cooldown_seconds=0)

    record = service.mark_now("42", UserType.STUDENT, 0.9)

    assert record is not None
    assert queue.size() == 1
    queued = queue.fetch_batch(10)[0]
    assert queued.client_uuid == record.client_uuid
    assert queued.payload["isOffline"] is True


def test_mark_now_does_not_queue_rejected_marks(tmp_path):
    queue = OfflineAttendanceQueue(tmp_path / "queue.db")
    session = FakeSession([FakeResponse(404, {"error": "Student not found"})])
    service = AttendanceService(make_client(session), queue=queue, cooldown_seconds=0)

    with pytest.raises(AttendanceRejectedError) as info:
        service.mark_now("999", UserType.STUDENT, 0.9)

    assert info.value.status_code == 404
    assert queue.size() == 0


def test_mark_now_queues_server_errors(tmp_path):
    queue = OfflineAttendanceQueue(tmp_path / "queue.db")
    session = FakeSession([FakeResponse(503, {"error": "maintenance"})])
    service = AttendanceService(make_client(session), queue=queue, cooldown_seconds=0)

    record = service.mark_now("42", UserType.STUDENT, 0.9)

    assert record is not None
    assert queue.size() == 1


def test_mark_now_without_queue_raises():
    service = AttendanceService(make_client(FakeSession(error=requests.Timeout("slow"))), cooldown_seconds=0)
    with pytest.raises(AttendanceApiError):
        service.mark_now("42", UserType.STUDENT, 0.9)


def test_flush_acknowledges_synced_and_duplicates(tmp_path):
    queue = OfflineAttendanceQueue(tmp_path / "queue.db")
    for uuid in ("a", "b", "c"):
        queue.enqueue({"client_uuid": uuid, "user_id": "42"})

    session = FakeSession(
        [
            FakeResponse(
                200,
                {
                    "results": [
                        {"client_uuid": "a", "status": "synced"},
                        {"client_uuid": "b", "status": "duplicate"},
                        {"client_uuid": "c", "status": "error"},
                    ]
                },
            )
        ]
    )
    service = AttendanceService(make_client(session), queue=queue)

    assert service.flush_queue() == 2
    assert [item.client_uuid for item in queue.fetch_batch(10)] == ["c"]
    method, url, body = session.calls[0]
    assert url.endswith("/attendance/sync")
    assert [item["client_uuid"] for item in body] == ["a", "b", "c"]


def test_flush_keeps_queue_when_sync_fails(tmp_path):
    queue = OfflineAttendanceQueue(tmp_path / "queue.db")
    queue.enqueue({"client_uuid": "a"})
    service = AttendanceService(make_client(FakeSession(error=requests.ConnectionError("down"))), queue=queue)

    assert service.flush_queue() == 0
    assert queue.size() == 1


def test_queue_drops_oldest_when_full(tmp_path):
    queue = OfflineAttendanceQueue(tmp_path / "queue.db", max_items=2)
    for uuid in ("a", "b", "c"):
        queue.enqueue({"client_uuid": uuid})
    queue.enqueue({"client_uuid": "c"})

    assert [item.client_uuid for item in queue.fetch_batch(10)] == ["b", "c"]


def test_queue_errors_surface_as_storage_errors(tmp_path):
    queue = OfflineAttendanceQueue(tmp_path / "queue.db")
    with closing(sqlite3.connect(str(tmp_path / "queue.db"))) as conn:
        conn.execute("DROP TABLE attendance_queue")
        conn.commit()

    with pytest.raises(StorageUnavailableError):
        queue.enqueue({"client_uuid": "a"})
    with pytest.raises(StorageUnavailableError):
        queue.size()
    with pytest.raises(StorageUnavailableError):
        queue.fetch_batch(10)
    with pytest.raises(StorageUnavailableError):
        queue.acknowledge(["a"])
