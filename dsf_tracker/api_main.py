# api_main.py
# FastAPI service for the DSF event tracker
# - /ingest endpoints fed by the capture agent (OCR'd chat and dialog text)
# - /relay for records pushed by other clients
# - read / edit / delete of the local event history

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from dsf_tracker import __version__
from dsf_tracker.config import Settings
from dsf_tracker.errors import MessageDecodeError
from dsf_tracker.eventlog.models import EventRecord, now_ms
from dsf_tracker.eventlog.selftest import run_classifier_selftest
from dsf_tracker.messages import decode_message
from dsf_tracker.ocr.schema import DialogText, TextLine
from dsf_tracker.reconcile import EventTransport
from dsf_tracker.store import KeyValueStore
from dsf_tracker.tracker import Tracker, build_tracker

logger = logging.getLogger("dsftracker")


# ---------- models ----------
class ChatLineIn(BaseModel):
    text: str
    timestamp: Optional[str] = None
    basey: Optional[int] = None


class ChatIngest(BaseModel):
    lines: List[ChatLineIn]
    world: Optional[int] = None


class DialogIngest(BaseModel):
    title: str
    lines: List[str]
    world: Optional[int] = None


class EventEdit(BaseModel):
    duration: Optional[int] = Field(default=None, ge=0)
    world: Optional[str] = None
    reported_by: Optional[str] = None
    kind: Optional[str] = None


class ReportedWorld:
    """World sensor fed by the capture agent with each ingest call."""

    def __init__(self) -> None:
        self.value: Optional[int] = None

    def __call__(self) -> Optional[int]:
        return self.value

    def update(self, world: Optional[int]) -> None:
        if world is not None:
            self.value = int(world)


# ---------- utils ----------
def _record_out(r: EventRecord, now: int) -> Dict[str, Any]:
    d = r.to_dict()
    d["active"] = r.is_active(now)
    d["remaining"] = r.remaining(now)
    return d


def _tracker(request: Request) -> Tracker:
    return request.app.state.tracker


def _check_key(request: Request, x_api_key: Optional[str] = Header(default=None)) -> None:
    expected = request.app.state.settings.tracker_api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


# ---------- app ----------
def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[EventTransport] = None,
    kv: Optional[KeyValueStore] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reported = ReportedWorld()
        notices: List[str] = []
        tracker = build_tracker(settings, transport=transport, kv=kv, sensor=reported, on_notice=notices.append)
        run_classifier_selftest(tracker.classifier)

        app.state.settings = settings
        app.state.tracker = tracker
        app.state.reported_world = reported
        app.state.notices = notices

        task = asyncio.create_task(tracker.run())
        logger.info("DSF tracker started (env=%s, debug=%s)", settings.environment, settings.debug)
        try:
            yield
        finally:
            tracker.stop()
            await task
            own = tracker.engine.transport
            if transport is None and hasattr(own, "aclose"):
                await own.aclose()

    app = FastAPI(title="DSF Event Tracker", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _routes(app)
    return app


def _routes(app: FastAPI) -> None:
    @app.get("/healthz")
    async def healthz(request: Request):
        return {"ok": True, "env": request.app.state.settings.environment, "version": __version__}

    @app.post("/ingest/chat", dependencies=[Depends(_check_key)])
    async def ingest_chat(request: Request, payload: ChatIngest = Body(...)):
        tracker = _tracker(request)
        request.app.state.reported_world.update(payload.world)
        lines = [TextLine(text=ln.text, timestamp=ln.timestamp, basey=ln.basey) for ln in payload.lines]
        found = await tracker.process_chat(lines)
        return {
            "ok": True,
            "world": tracker.world.current,
            "classifications": [
                {
                    "phase": c.phase.value,
                    "kind": c.kind,
                    "first_seen": c.is_first_seen,
                    "score": c.score,
                    "text": c.line.text,
                }
                for c in found
            ],
        }

    @app.post("/ingest/dialog", dependencies=[Depends(_check_key)])
    async def ingest_dialog(request: Request, payload: DialogIngest = Body(...)):
        tracker = _tracker(request)
        request.app.state.reported_world.update(payload.world)
        dialog = DialogText(title=payload.title, lines=tuple(payload.lines))
        reading = await tracker.process_dialog(dialog)
        if reading is None:
            return {"ok": False, "reading": None}
        return {
            "ok": True,
            "reading": {
                "world": reading.world,
                "active": reading.active,
                "kind": reading.kind,
                "elapsed_seconds": reading.elapsed_seconds,
            },
        }

    @app.post("/relay", dependencies=[Depends(_check_key)])
    async def relay(request: Request, payload: Any = Body(...)):
        try:
            message = decode_message(payload)
        except MessageDecodeError as e:
            raise HTTPException(status_code=422, detail=str(e))
        await _tracker(request).engine.handle_remote(message)
        return {"ok": True, "type": type(message).__name__}

    @app.get("/events")
    async def active_events(request: Request):
        now = now_ms()
        return {"events": [_record_out(r, now) for r in _tracker(request).engine.store.active(now)]}

    @app.get("/events/history")
    async def event_history(request: Request):
        now = now_ms()
        return {"events": [_record_out(r, now) for r in _tracker(request).engine.store.history(now)]}

    @app.patch("/events/{event_id}", dependencies=[Depends(_check_key)])
    async def edit_event(request: Request, event_id: str, payload: EventEdit = Body(...)):
        try:
            edited = await _tracker(request).engine.edit_event(
                event_id,
                duration=payload.duration,
                world=payload.world,
                reported_by=payload.reported_by,
                kind=payload.kind,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        if edited is None:
            raise HTTPException(status_code=404, detail="Event not found")
        return {"ok": True, "event": _record_out(edited, now_ms())}

    @app.delete("/events/{event_id}", dependencies=[Depends(_check_key)])
    async def delete_event(request: Request, event_id: str):
        deleted = await _tracker(request).engine.delete_event(event_id)
        return {"ok": True, "deleted": deleted}

    @app.get("/world")
    async def world(request: Request):
        ws = _tracker(request).world
        now = now_ms()
        return {
            "current": ws.current,
            "previous": ws.previous,
            "quiet": ws.is_quiet(now),
            "quiet_until": ws.quiet_until(),
            "notices": list(request.app.state.notices),
        }


app = create_app()


# ---------- uvicorn entry ----------
if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    uvicorn.run("dsf_tracker.api_main:app", host="0.0.0.0", port=port, reload=False)
