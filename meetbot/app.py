"""FastAPI application — HTTP + WebSocket endpoints for meeting scheduling.

Endpoints:

  GET  /health                              Health check
  POST /api/slots/propose                   Ranked slots for a request
  POST /api/meetings                        Open a pending meeting
  POST /api/meetings/commit                 Book a slot
  GET  /api/meetings/{id}                   Meeting record
  POST /api/meetings/{id}/complete|cancel   Explicit lifecycle actions
  POST /api/bots                            Create a permission-collecting bot
  GET  /api/bots/{id}                       Bot record
  POST /api/bots/{id}/permissions           Grant (callback from the permission page)
  POST /api/bots/{id}/decline               Decline
  POST /api/permissions/{token}             Grant through a permission link
  POST /api/bots/{id}/reminders             Remind outstanding participants
  POST /api/bots/{id}/tick                  Advance one bot now
  POST /api/bots/{id}/proposals             Slots for a ready bot
  POST /api/bots/{id}/schedule              Book a slot for a ready bot
  POST /api/bots/{id}/cancel                Cancel a bot
  GET  /api/bots/{id}/events                Bot event log
  WS   /api/bots/{id}/events/ws             Live bot event stream

Bots progress on human timescales. Besides the callbacks above, a
background task started in the lifespan ticks every active bot every
``TICK_INTERVAL_SECONDS`` (reminders, expiry, auto-scheduling retries).
"""

from __future__ import annotations

# Load .env into os.environ before Settings is instantiated.
from dotenv import load_dotenv
load_dotenv()

import asyncio
import contextlib
import logging
import time
from typing import AsyncIterator

# Configure root logger early so all meetbot.* loggers have a handler
# when run via `uvicorn meetbot.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-24s %(levelname)-7s %(message)s",
)

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from meetbot.calendar_providers.memory import InMemoryCalendarFeed
from meetbot.config import settings
from meetbot.engine import SchedulingEngine
from meetbot.errors import SchedulingError
from meetbot.models import BotOptions, MeetingBot, MeetingDraft, SchedulingRequest, TimeSlot
from meetbot.models.fields import Email
from meetbot.notifications.log import LoggingNotifier
from meetbot.state_machine import MeetingBotStateMachine

log = logging.getLogger("meetbot.app")

_START_TIME = time.time()


# ── Request bodies ─────────────────────────────────────────────

class CommitRequest(BaseModel):
    draft: MeetingDraft
    slot: TimeSlot


class CreateBotRequest(BaseModel):
    participant_emails: list[Email] = Field(min_length=1)
    options: BotOptions = Field(default_factory=BotOptions)
    created_by: str = ""
    auto_schedule_enabled: bool = True
    quorum: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _quorum_fits(self) -> "CreateBotRequest":
        if self.quorum is not None and self.quorum > len(set(self.participant_emails)):
            raise ValueError("quorum cannot exceed the number of participants")
        return self


class EmailBody(BaseModel):
    email: Email
    reason: str = ""


class TokenGrantBody(BaseModel):
    email: Email | None = None


class SlotBody(BaseModel):
    slot: TimeSlot


class CancelBody(BaseModel):
    reason: str = ""


def _bot_json(bot: MeetingBot) -> dict:
    # Tokens only ever travel inside the links sent to participants.
    return bot.model_dump(mode="json", exclude={"permission_token", "participant_tokens"})


def create_app(
    engine: SchedulingEngine | None = None,
    machine: MeetingBotStateMachine | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Without arguments the app runs on an in-memory calendar feed and a
    notifier that only logs, which is enough to drive the whole flow by
    hand. Pass a real engine/machine to plug in providers.
    """
    for warning in settings.validate_startup():
        log.warning(warning)

    if engine is None:
        engine = machine.engine if machine is not None else SchedulingEngine(InMemoryCalendarFeed())
    if machine is None:
        machine = MeetingBotStateMachine(engine, LoggingNotifier())

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ticker = None
        if settings.tick_interval_seconds > 0:
            ticker = asyncio.create_task(machine.run_ticker(settings.tick_interval_seconds))
        try:
            yield
        finally:
            if ticker is not None:
                ticker.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await ticker

    app = FastAPI(
        title="Meeting Scheduler",
        description="Slot search, meeting commits and permission-collecting meeting bots",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.machine = machine

    @app.exception_handler(SchedulingError)
    async def scheduling_error(request: Request, exc: SchedulingError) -> JSONResponse:
        log.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.code)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check — confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Slots & meetings ───────────────────────────────────────

    @app.post("/api/slots/propose")
    async def propose(request: SchedulingRequest):
        proposal = await engine.propose_slots(request)
        return proposal.model_dump(mode="json")

    @app.post("/api/meetings", status_code=201)
    async def open_meeting(draft: MeetingDraft):
        meeting = await engine.open_meeting(draft)
        return meeting.model_dump(mode="json")

    @app.post("/api/meetings/commit")
    async def commit(body: CommitRequest):
        meeting = await engine.commit(body.draft, body.slot)
        return meeting.model_dump(mode="json")

    @app.get("/api/meetings/{meeting_id}")
    async def get_meeting(meeting_id: str):
        meeting = await engine.get_meeting(meeting_id)
        return meeting.model_dump(mode="json")

    @app.post("/api/meetings/{meeting_id}/complete")
    async def complete_meeting(meeting_id: str):
        meeting = await engine.complete_meeting(meeting_id)
        return meeting.model_dump(mode="json")

    @app.post("/api/meetings/{meeting_id}/cancel")
    async def cancel_meeting(meeting_id: str):
        meeting = await engine.cancel_meeting(meeting_id)
        return meeting.model_dump(mode="json")

    # ── Meeting bots ───────────────────────────────────────────

    @app.post("/api/bots", status_code=201)
    async def create_bot(body: CreateBotRequest):
        bot = await machine.create_bot(
            body.participant_emails,
            body.options,
            created_by=body.created_by,
            auto_schedule_enabled=body.auto_schedule_enabled,
            quorum=body.quorum,
        )
        return _bot_json(bot)

    @app.get("/api/bots/{bot_id}")
    async def get_bot(bot_id: str):
        return _bot_json(await machine.get_bot(bot_id))

    @app.post("/api/bots/{bot_id}/permissions")
    async def grant_permission(bot_id: str, body: EmailBody):
        return _bot_json(await machine.grant_permission(bot_id, body.email))

    @app.post("/api/bots/{bot_id}/decline")
    async def decline_permission(bot_id: str, body: EmailBody):
        return _bot_json(await machine.decline_permission(bot_id, body.email, body.reason))

    @app.post("/api/permissions/{token}")
    async def grant_by_token(token: str, body: TokenGrantBody | None = None):
        email = body.email if body is not None else None
        return _bot_json(await machine.grant_permission_by_token(token, email))

    @app.post("/api/bots/{bot_id}/reminders")
    async def send_reminder(bot_id: str):
        result = await machine.send_reminder(bot_id)
        return {
            "sent": result.sent,
            "recipients": result.recipients,
            "undelivered": result.undelivered,
            "reason": result.reason,
            "bot": _bot_json(result.bot),
        }

    @app.post("/api/bots/{bot_id}/tick")
    async def tick(bot_id: str):
        return _bot_json(await machine.tick(bot_id))

    @app.post("/api/bots/{bot_id}/proposals")
    async def propose_for_bot(bot_id: str):
        proposal = await machine.propose_for_bot(bot_id)
        return proposal.model_dump(mode="json")

    @app.post("/api/bots/{bot_id}/schedule")
    async def schedule_bot(bot_id: str, body: SlotBody):
        return _bot_json(await machine.schedule_bot(bot_id, body.slot))

    @app.post("/api/bots/{bot_id}/cancel")
    async def cancel_bot(bot_id: str, body: CancelBody | None = None):
        reason = body.reason if body is not None else ""
        return _bot_json(await machine.cancel_bot(bot_id, reason))

    # ── Bot event stream ───────────────────────────────────────

    @app.get("/api/bots/{bot_id}/events")
    async def bot_events(bot_id: str):
        await machine.get_bot(bot_id)
        events = machine.events.history(bot_id)
        return {"events": events, "count": len(events)}

    @app.websocket("/api/bots/{bot_id}/events/ws")
    async def bot_event_stream(websocket: WebSocket, bot_id: str) -> None:
        """WebSocket endpoint that streams bot events as they happen."""
        try:
            bot = await machine.get_bot(bot_id)
        except SchedulingError:
            await websocket.close(code=4004, reason="Bot not found")
            return

        broadcaster = machine.events.get(bot_id)
        if bot.is_terminal:
            machine.events.retire(bot_id)
        queue = broadcaster.subscribe()

        try:
            await websocket.accept()
            while True:
                event = await queue.get()
                await websocket.send_json(event)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unsubscribe(queue)

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "meetbot.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
