import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel

from railops.config import RailOpsConfig
from railops.core.commands import (
    Ack,
    AssignPlatform,
    ChangeSignal,
    ClearDelay,
    Command,
    CommandProcessor,
    DepartPlatform,
    Hold,
    MoveTrain,
    Proceed,
    Reroute,
    SetMaintenance,
    command_from_dict,
)
from railops.core.entity_store import EntityStore
from railops.core.errors import ConcurrentConflict, InvalidTransition, NotFound
from railops.core.models import EntityKind, SignalState, to_dict
from railops.core.summary import dashboard_summary, filter_trains, platforms_by_station
from railops.feed.emitter import ChangeFeed, Subscription, event_to_dict
from railops.store import audit, db

logger = logging.getLogger(__name__)

config = RailOpsConfig()
logging.getLogger("railops").setLevel(config.log_level)

app = FastAPI(title="Railway Operations Core API")
store = EntityStore()
feed = ChangeFeed(queue_size=config.feed_queue_size)
processor = CommandProcessor(store, feed, audit=lambda entry: audit.write_audit(entry))

KINDS = {
    "trains": EntityKind.TRAIN,
    "signals": EntityKind.SIGNAL,
    "platforms": EntityKind.PLATFORM,
    "sections": EntityKind.SECTION,
}


def reset(payload: Dict[str, Any] | None = None) -> None:
    """(Re)provision the store from ``payload``, the saved snapshot, or the seed file."""
    if payload is None and config.persistence_enabled:
        db.init_db()
        payload = db.load_snapshot()
    if payload is None:
        payload = json.loads(Path(config.seed_path).read_text(encoding="utf-8"))
    store.load_payload(payload)
    if config.persistence_enabled:
        db.save_snapshot(store.snapshot())


if config.db_path:
    db.set_db_path(Path(config.db_path))
if config.audit_path:
    audit.set_audit_path(Path(config.audit_path))
reset()


# Error mapping

@app.exception_handler(NotFound)
async def _not_found(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content=exc.to_dict())


@app.exception_handler(InvalidTransition)
async def _invalid(request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(status_code=422, content=exc.to_dict())


@app.exception_handler(ConcurrentConflict)
async def _conflict(request: Request, exc: ConcurrentConflict) -> JSONResponse:
    return JSONResponse(status_code=409, content=exc.to_dict())


# Request bodies

class VersionIn(BaseModel):
    expected_version: int | None = None


class RerouteIn(VersionIn):
    delay_minutes: int
    destination: str | None = None


class MoveIn(VersionIn):
    location: str


class SignalChangeIn(VersionIn):
    state: SignalState


class AssignIn(VersionIn):
    train: str
    arrival: datetime
    departure: datetime


def _version(body: VersionIn | None) -> int | None:
    return body.expected_version if body else None


def _run(command: Command) -> Dict[str, Any]:
    ack: Ack = processor.execute(command)
    if config.persistence_enabled:
        db.save_entity(ack.kind, store.get(ack.kind, ack.entity_id))
    return {"ack": ack.to_dict()}


def _snapshot_dict() -> Dict[str, List[Dict[str, Any]]]:
    state = store.snapshot()
    return {
        name: [to_dict(e) for e in sorted(state.of(kind).values(), key=lambda e: e.id)]
        for name, kind in KINDS.items()
    }


@app.get("/")
async def root() -> RedirectResponse:
    return RedirectResponse(url="/docs")


@app.get("/favicon.ico")
async def favicon() -> Response:
    return Response(status_code=204)


# Snapshot queries

@app.get("/snapshot")
async def snapshot() -> Dict[str, Any]:
    return _snapshot_dict()


@app.get("/summary")
async def summary() -> Dict[str, Any]:
    state = store.snapshot()
    out = dashboard_summary(
        list(state.trains.values()),
        list(state.signals.values()),
        list(state.platforms.values()),
        delay_threshold=config.critical_delay_minutes,
    )
    out["stations"] = {
        code: {"name": g["name"], "platforms": [p.id for p in g["platforms"]]}
        for code, g in platforms_by_station(state.platforms.values()).items()
    }
    return out


@app.get("/trains")
async def list_trains(type: str = "all", status: str = "all", search: str = "") -> Dict[str, Any]:
    trains = filter_trains(store.list(EntityKind.TRAIN), type=type, status=status, search=search)
    return {"items": [to_dict(t) for t in trains]}


@app.get("/{kind}")
async def list_kind(kind: str) -> Dict[str, Any]:
    if kind not in KINDS:
        raise NotFound("kind", kind)
    return {"items": [to_dict(e) for e in store.list(KINDS[kind])]}


@app.get("/{kind}/{entity_id}")
async def get_entity(kind: str, entity_id: str) -> Dict[str, Any]:
    if kind not in KINDS:
        raise NotFound("kind", kind)
    return {"item": to_dict(store.get(KINDS[kind], entity_id))}


# Train commands

@app.post("/trains/{number}/proceed")
async def proceed(number: str, body: VersionIn | None = None) -> Dict[str, Any]:
    return _run(Proceed(number, expected_version=_version(body)))


@app.post("/trains/{number}/hold")
async def hold(number: str, body: VersionIn | None = None) -> Dict[str, Any]:
    return _run(Hold(number, expected_version=_version(body)))


@app.post("/trains/{number}/reroute")
async def reroute(number: str, body: RerouteIn) -> Dict[str, Any]:
    return _run(Reroute(number, body.delay_minutes, destination=body.destination, expected_version=_version(body)))


@app.post("/trains/{number}/maintenance")
async def maintenance(number: str, body: VersionIn | None = None) -> Dict[str, Any]:
    return _run(SetMaintenance(number, expected_version=_version(body)))


@app.post("/trains/{number}/clear-delay")
async def clear_delay(number: str, body: VersionIn | None = None) -> Dict[str, Any]:
    return _run(ClearDelay(number, expected_version=_version(body)))


@app.post("/trains/{number}/move")
async def move(number: str, body: MoveIn) -> Dict[str, Any]:
    return _run(MoveTrain(number, body.location, expected_version=_version(body)))


# Signal and platform commands

@app.post("/signals/{code}/state")
async def change_signal(code: str, body: SignalChangeIn) -> Dict[str, Any]:
    return _run(ChangeSignal(code, body.state, expected_version=_version(body)))


@app.post("/platforms/sweep-overdue")
async def sweep_overdue() -> Dict[str, Any]:
    acks = processor.sweep_overdue()
    if config.persistence_enabled:
        for ack in acks:
            db.save_entity(ack.kind, store.get(ack.kind, ack.entity_id))
    return {"acks": [a.to_dict() for a in acks]}


@app.post("/platforms/{key}/assign")
async def assign_platform(key: str, body: AssignIn) -> Dict[str, Any]:
    return _run(AssignPlatform(key, body.train, body.arrival, body.departure, expected_version=_version(body)))


@app.post("/platforms/{key}/depart")
async def depart_platform(key: str, body: VersionIn | None = None) -> Dict[str, Any]:
    return _run(DepartPlatform(key, expected_version=_version(body)))


@app.post("/commands/{name}")
async def run_command(name: str, body: Dict[str, Any]) -> Dict[str, Any]:
    """Generic entry point: ``name`` is a command name, ``body`` its arguments."""
    return _run(command_from_dict(name, body))


# Change feed

@app.websocket("/ws/events")
async def events(websocket: WebSocket) -> None:
    """Full snapshot first, then one message per applied change.

    If this subscriber falls behind and events are dropped, a fresh
    snapshot (type ``resync``) is sent instead of the missed events.
    """
    await websocket.accept()
    sub = feed.subscribe()
    try:
        await websocket.send_json({"type": "snapshot", **_snapshot_dict()})
        pump = asyncio.create_task(_pump(websocket, sub))
        listen = asyncio.create_task(_listen(websocket))
        done, pending = await asyncio.wait({pump, listen}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.debug("Event stream closed: %s", exc)
    except WebSocketDisconnect:
        pass
    finally:
        sub.close()


async def _pump(websocket: WebSocket, sub: Subscription) -> None:
    while True:
        event = await run_in_threadpool(sub.get, 0.25)
        if sub.overflowed:
            sub.resync()
            await websocket.send_json({"type": "resync", **_snapshot_dict()})
        elif event is not None:
            await websocket.send_json(event_to_dict(event))


async def _listen(websocket: WebSocket) -> None:
    # Client messages are ignored; this only notices the disconnect
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return

