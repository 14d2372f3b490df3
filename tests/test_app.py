"""Tests for the FastAPI surface — routes, error mapping and the event stream."""

import sys
import os
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from meetbot.app import create_app
from meetbot.calendar_providers import InMemoryCalendarFeed
from meetbot.clock import FixedClock
from meetbot.config import settings
from meetbot.engine import SchedulingEngine
from meetbot.notifications import LoggingNotifier, NotificationDispatcher
from meetbot.state_machine import MeetingBotStateMachine

A = "a@x.com"
B = "b@x.com"

PROPOSE = {
    "participants": [A, B],
    "duration_minutes": 30,
    "date_range_start": "2026-03-16",
    "date_range_end": "2026-03-16",
    "working_hours_start": "09:00",
    "working_hours_end": "17:00",
    "time_zone": "UTC",
    "max_suggestions": 50,
}

BOT_OPTIONS = {
    "title": "Sync",
    "duration_minutes": 30,
    "time_zone": "UTC",
    "search_days": 7,
    "working_hours_start": "09:00",
    "working_hours_end": "17:00",
    "excluded_weekdays": [5, 6],
}


@pytest.fixture
def feed():
    return InMemoryCalendarFeed()


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def client(feed, notifier, monkeypatch):
    monkeypatch.setattr(settings, "tick_interval_seconds", 0)
    clock = FixedClock(datetime(2026, 3, 15, 8, 0, tzinfo=timezone.utc))
    engine = SchedulingEngine(feed, clock=clock, meeting_link_base_url="https://meet.test")
    machine = MeetingBotStateMachine(
        engine,
        notifier,
        dispatcher=NotificationDispatcher(notifier, max_attempts=1, backoff_min=0, backoff_max=0),
        permission_base_url="https://app.test/permissions",
    )
    with TestClient(create_app(engine=engine, machine=machine)) as c:
        yield c


def _create_bot(client, **extra) -> dict:
    body = {"participant_emails": [A, B], "options": BOT_OPTIONS, "created_by": "org@x.com", **extra}
    resp = client.post("/api/bots", json=body)
    assert resp.status_code == 201
    return resp.json()


# ── Health ──────────────────────────────────────────────────────────


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


# ── Slots & meetings ────────────────────────────────────────────────


class TestMeetingRoutes:
    def test_propose(self, client, feed):
        feed.add_busy(A, datetime(2026, 3, 16, 10, tzinfo=timezone.utc), datetime(2026, 3, 16, 10, 30, tzinfo=timezone.utc))
        resp = client.post("/api/slots/propose", json=PROPOSE)
        assert resp.status_code == 200
        slots = resp.json()["slots"]
        assert len(slots) == 16
        assert slots[-1]["available"] is False
        assert slots[-1]["conflicts"] == [A]

    def test_invalid_request_is_422(self, client):
        resp = client.post("/api/slots/propose", json={**PROPOSE, "duration_minutes": 0})
        assert resp.status_code == 422

    def test_open_commit_complete(self, client):
        draft = {"title": "Sync", "participants": [A, B], "duration_minutes": 30, "time_zone": "UTC"}
        opened = client.post("/api/meetings", json=draft)
        assert opened.status_code == 201
        meeting_id = opened.json()["id"]
        assert opened.json()["status"] == "pending"

        best = client.post("/api/slots/propose", json=PROPOSE).json()["slots"][0]
        committed = client.post("/api/meetings/commit", json={"draft": {**draft, "id": meeting_id}, "slot": best})
        assert committed.status_code == 200
        assert committed.json()["status"] == "scheduled"
        assert committed.json()["meeting_link"].startswith("https://meet.test/")

        again = client.post("/api/meetings/commit", json={"draft": {**draft, "id": meeting_id}, "slot": best})
        assert again.status_code == 409
        assert again.json()["error"] == "already_scheduled"

        done = client.post(f"/api/meetings/{meeting_id}/complete")
        assert done.json()["status"] == "completed"
        assert client.get(f"/api/meetings/{meeting_id}").json()["status"] == "completed"

        cancel = client.post(f"/api/meetings/{meeting_id}/cancel")
        assert cancel.status_code == 409
        assert cancel.json()["error"] == "invalid_transition"

    def test_commit_conflict_returns_conflicts(self, client, feed):
        best = client.post("/api/slots/propose", json=PROPOSE).json()["slots"][0]
        feed.add_busy(B, datetime(2026, 3, 16, 9, tzinfo=timezone.utc), datetime(2026, 3, 16, 9, 30, tzinfo=timezone.utc))

        draft = {"title": "Sync", "participants": [A, B], "duration_minutes": 30}
        resp = client.post("/api/meetings/commit", json={"draft": draft, "slot": best})
        assert resp.status_code == 409
        assert resp.json() == {
            "error": "slot_unavailable",
            "detail": "Slot conflicts with 1 participant(s)",
            "conflicts": [B],
        }

    def test_missing_meeting(self, client):
        resp = client.get("/api/meetings/nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == "meeting_not_found"


# ── Meeting bots ────────────────────────────────────────────────────


class TestBotRoutes:
    def test_create_hides_tokens(self, client, notifier):
        bot = _create_bot(client)
        assert bot["status"] == "collecting_permissions"
        assert "participant_tokens" not in bot
        assert "permission_token" not in bot
        assert len([s for s in notifier.sent if s[0] == "permission_request"]) == 2

    def test_quorum_over_participants_is_422(self, client):
        resp = client.post("/api/bots", json={"participant_emails": [A], "quorum": 2})
        assert resp.status_code == 422

    def test_grant_both_schedules(self, client):
        bot = _create_bot(client)
        client.post(f"/api/bots/{bot['id']}/permissions", json={"email": A})
        resp = client.post(f"/api/bots/{bot['id']}/permissions", json={"email": B})
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "scheduled"
        assert data["scheduled_slot"]["start_time"].startswith("2026-03-16T09:00:00")

    def test_unknown_participant_is_422(self, client):
        bot = _create_bot(client)
        resp = client.post(f"/api/bots/{bot['id']}/permissions", json={"email": "c@x.com"})
        assert resp.status_code == 422
        assert resp.json()["error"] == "unknown_participant"

    def test_unknown_bot_is_404(self, client):
        resp = client.get("/api/bots/nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == "bot_not_found"

    def test_grant_through_link(self, client, notifier):
        bot = _create_bot(client)
        link = next(l for kind, email, l in notifier.sent if kind == "permission_request" and email == B)
        token = link.rsplit("/", 1)[-1]

        resp = client.post(f"/api/permissions/{token}")
        assert resp.status_code == 200
        assert resp.json()["permissions_granted"] == [B]
        assert resp.json()["id"] == bot["id"]

    def test_reminder_and_noop(self, client):
        bot = _create_bot(client, auto_schedule_enabled=False)
        client.post(f"/api/bots/{bot['id']}/permissions", json={"email": A})

        first = client.post(f"/api/bots/{bot['id']}/reminders").json()
        assert first["sent"] is True
        assert first["recipients"] == [B]
        assert first["bot"]["reminders_sent"] == 1

        client.post(f"/api/bots/{bot['id']}/permissions", json={"email": B})
        second = client.post(f"/api/bots/{bot['id']}/reminders").json()
        assert second["sent"] is False
        assert second["bot"]["reminders_sent"] == 1

    def test_decline(self, client):
        bot = _create_bot(client)
        resp = client.post(f"/api/bots/{bot['id']}/decline", json={"email": B, "reason": "busy week"})
        assert resp.json()["status"] == "failed"

    def test_manual_schedule_flow(self, client):
        bot = _create_bot(client, auto_schedule_enabled=False)
        client.post(f"/api/bots/{bot['id']}/permissions", json={"email": A})
        client.post(f"/api/bots/{bot['id']}/permissions", json={"email": B})

        tick = client.post(f"/api/bots/{bot['id']}/tick")
        assert tick.json()["status"] == "ready_to_schedule"

        proposal = client.post(f"/api/bots/{bot['id']}/proposals").json()
        chosen = proposal["slots"][2]
        resp = client.post(f"/api/bots/{bot['id']}/schedule", json={"slot": chosen})
        assert resp.json()["status"] == "scheduled"
        assert resp.json()["scheduled_slot"]["start_time"] == chosen["start_time"]

    def test_proposals_before_ready_is_409(self, client):
        bot = _create_bot(client)
        resp = client.post(f"/api/bots/{bot['id']}/proposals")
        assert resp.status_code == 409

    def test_cancel(self, client):
        bot = _create_bot(client)
        resp = client.post(f"/api/bots/{bot['id']}/cancel", json={"reason": "moved offline"})
        assert resp.json()["status"] == "cancelled"
        assert client.get(f"/api/meetings/{bot['meeting_ref']}").json()["status"] == "cancelled"

        # Cancel without a body is also accepted
        assert client.post(f"/api/bots/{bot['id']}/cancel").json()["status"] == "cancelled"


# ── Bot events ──────────────────────────────────────────────────────


class TestBotEvents:
    def test_event_log(self, client):
        bot = _create_bot(client)
        client.post(f"/api/bots/{bot['id']}/permissions", json={"email": A})
        data = client.get(f"/api/bots/{bot['id']}/events").json()
        assert data["count"] == 2
        assert [e["type"] for e in data["events"]] == ["created", "permission"]

    def test_event_log_unknown_bot(self, client):
        assert client.get("/api/bots/nope/events").status_code == 404

    def test_stream_rejects_unknown_bot(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/api/bots/nope/events/ws") as ws:
                ws.receive_json()

    def test_stream_delivers_live_events(self, client):
        bot = _create_bot(client, auto_schedule_enabled=False)
        with client.websocket_connect(f"/api/bots/{bot['id']}/events/ws") as ws:
            client.post(f"/api/bots/{bot['id']}/permissions", json={"email": A})
            event = ws.receive_json()
            assert event["type"] == "permission"
            assert event["data"]["email"] == A
