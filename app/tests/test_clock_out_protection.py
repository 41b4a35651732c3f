from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from app.database import SessionLocal
from app.main import app
from app.models.event_outbox import EventOutbox
from app.models.time_clock_session import TimeClockSession

client = TestClient(app)

T0 = datetime(2024, 5, 6, 8, 0, 0, tzinfo=timezone.utc)


def _at(hours: float) -> str:
    return (T0 + timedelta(hours=hours)).isoformat()


def _auth_headers(organization_id: int) -> dict:
    resp = client.post("/auth/token", json={"user_id": "test", "organization_id": organization_id})
    assert resp.status_code == 200, f"token request failed: {resp.status_code} {resp.text}"
    return {"X-Organization-Id": str(organization_id), "Authorization": f"Bearer {resp.json()['access_token']}"}


def _clock_in(headers: dict, employee_id: int = 9001) -> str:
    r = client.post("/api/time-clock/clock-in", headers=headers, json={"employee_id": employee_id, "at": _at(0)})
    assert r.status_code == 201, r.text
    return r.json()["id"]


def _assert_conflict(resp, code: str) -> None:
    assert resp.status_code == 409, resp.text
    detail = resp.json()["detail"]
    assert detail["code"] == code
    assert detail["message"]


def test_second_clock_in_conflicts():
    headers = _auth_headers(9001)
    _clock_in(headers)

    r = client.post("/api/time-clock/clock-in", headers=headers, json={"employee_id": 9001, "at": _at(1)})
    _assert_conflict(r, "AlreadyClockedIn")


def test_double_start_break_conflicts():
    headers = _auth_headers(9002)
    session_id = _clock_in(headers)
    client.post(f"/api/time-clock/sessions/{session_id}/start-break", headers=headers, json={"at": _at(1)})

    r = client.post(f"/api/time-clock/sessions/{session_id}/start-break", headers=headers, json={"at": _at(2)})
    _assert_conflict(r, "BreakAlreadyActive")


def test_end_break_without_break_conflicts_and_leaves_session_unchanged():
    headers = _auth_headers(9003)
    session_id = _clock_in(headers)

    r = client.post(f"/api/time-clock/sessions/{session_id}/end-break", headers=headers, json={"at": _at(1)})
    _assert_conflict(r, "NoActiveBreak")

    fetched = client.get(f"/api/time-clock/sessions/{session_id}", headers=headers).json()
    assert fetched["status"] == "clocked_in"
    assert fetched["breaks"] == []


def test_transitions_after_clock_out_conflict():
    headers = _auth_headers(9004)
    session_id = _clock_in(headers)
    r = client.post(f"/api/time-clock/sessions/{session_id}/clock-out", headers=headers, json={"at": _at(8)})
    assert r.status_code == 200, r.text

    for action in ("start-break", "end-break", "clock-out"):
        r = client.post(f"/api/time-clock/sessions/{session_id}/{action}", headers=headers, json={"at": _at(9)})
        _assert_conflict(r, "SessionNotOpen")


def test_clock_out_before_clock_in_conflicts():
    headers = _auth_headers(9005)
    session_id = _clock_in(headers)

    r = client.post(f"/api/time-clock/sessions/{session_id}/clock-out", headers=headers, json={"at": _at(-1)})
    _assert_conflict(r, "InvalidTransitionTime")


def test_unknown_session_conflicts_and_writes_nothing():
    headers = _auth_headers(9006)

    r = client.post("/api/time-clock/sessions/nope/clock-out", headers=headers, json={"at": _at(1)})
    _assert_conflict(r, "SessionNotOpen")

    db = SessionLocal()
    try:
        assert db.query(EventOutbox).filter(EventOutbox.organization_id == 9006).count() == 0
    finally:
        db.close()


def test_get_unknown_session_404():
    r = client.get("/api/time-clock/sessions/nope", headers=_auth_headers(9007))
    assert r.status_code == 404
    assert r.json()["detail"] == "Time clock session not found"


def test_session_of_another_organization_is_invisible():
    session_id = _clock_in(_auth_headers(9008))
    other = _auth_headers(9009)

    assert client.get(f"/api/time-clock/sessions/{session_id}", headers=other).status_code == 404
    r = client.post(f"/api/time-clock/sessions/{session_id}/clock-out", headers=other, json={"at": _at(1)})
    _assert_conflict(r, "SessionNotOpen")

    db = SessionLocal()
    try:
        row = db.query(TimeClockSession).filter(TimeClockSession.id == session_id).one()
        assert row.status == "clocked_in"
        assert row.clock_out_at is None
    finally:
        db.close()
