"""Operator commands and the processor that turns them into validated deltas.

Every command is translated into exactly one ``Delta`` against one entity.
The processor holds the store's write lock from translation until the change
event is published, so commands are applied strictly one after another.

Train status machine::

    running  --Hold-->          stopped
    delayed  --Hold-->          stopped
    running  --Reroute(d>0)-->  delayed
    any      --SetMaintenance-> maintenance
    delayed/stopped/maintenance --Proceed--> running (delay reset)

There is no edge from maintenance to stopped.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .entity_store import EntityStore
from .errors import ConcurrentConflict, InvalidTransition, RailOpsError
from .models import (
    ChangeEvent,
    Delta,
    Entity,
    EntityKind,
    PlatformStatus,
    SignalState,
    TrainStatus,
    parse_datetime,
    to_plain,
    utcnow,
)
from railops.feed.emitter import ChangeFeed

logger = logging.getLogger(__name__)

STATUS_TRANSITION = "status-transition"
NO_CHANGE = "no-change"


@dataclass(frozen=True)
class Proceed:
    train: str
    expected_version: Optional[int] = None
    name = "proceed"


@dataclass(frozen=True)
class Hold:
    train: str
    expected_version: Optional[int] = None
    name = "hold"


@dataclass(frozen=True)
class Reroute:
    train: str
    delay_minutes: int
    destination: Optional[str] = None
    expected_version: Optional[int] = None
    name = "reroute"


@dataclass(frozen=True)
class SetMaintenance:
    train: str
    expected_version: Optional[int] = None
    name = "maintenance"


@dataclass(frozen=True)
class ClearDelay:
    train: str
    expected_version: Optional[int] = None
    name = "clear-delay"


@dataclass(frozen=True)
class MoveTrain:
    train: str
    location: str
    expected_version: Optional[int] = None
    name = "move"


@dataclass(frozen=True)
class ChangeSignal:
    signal: str
    state: SignalState
    expected_version: Optional[int] = None
    name = "signal"


@dataclass(frozen=True)
class AssignPlatform:
    platform: str
    train: str
    arrival: datetime
    departure: datetime
    expected_version: Optional[int] = None
    name = "assign-platform"


@dataclass(frozen=True)
class DepartPlatform:
    platform: str
    expected_version: Optional[int] = None
    name = "depart-platform"


@dataclass(frozen=True)
class MarkOverdue:
    platform: str
    expected_version: Optional[int] = None
    name = "mark-overdue"


Command = Union[
    Proceed, Hold, Reroute, SetMaintenance, ClearDelay, MoveTrain,
    ChangeSignal, AssignPlatform, DepartPlatform, MarkOverdue,
]

COMMANDS: Dict[str, type] = {
    c.name: c
    for c in (Proceed, Hold, Reroute, SetMaintenance, ClearDelay, MoveTrain,
              ChangeSignal, AssignPlatform, DepartPlatform, MarkOverdue)
}


MALFORMED_COMMAND = "malformed-command"

# Arguments naming an entity or a location; always plain strings
_ID_ARGS = ("train", "signal", "platform", "location")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def command_from_dict(name: str, body: Mapping[str, Any]) -> Command:
    """Build a command from its name and a plain dict of arguments.

    Argument types are checked here so that bad input from the wire is
    rejected as ``malformed-command`` before it reaches the store.
    """
    cls = COMMANDS.get(name)
    if cls is None:
        raise InvalidTransition("unknown-command", f"unknown command {name}")
    args = dict(body)
    try:
        for key in _ID_ARGS:
            if key in args and not isinstance(args[key], str):
                raise TypeError(f"{key} must be a string, got {type(args[key]).__name__}")
        version = args.get("expected_version")
        if version is not None and not _is_int(version):
            raise TypeError("expected_version must be an integer")
        if cls is ChangeSignal:
            args["state"] = SignalState(args["state"])
        if cls is AssignPlatform:
            for key in ("arrival", "departure"):
                if args.get(key) is None:
                    raise ValueError(f"{key} is required")
                args[key] = parse_datetime(args[key])
                if args[key] is None:
                    raise ValueError(f"{key} is required")
        if cls is Reroute:
            if not _is_int(args["delay_minutes"]):
                raise TypeError("delay_minutes must be a whole number of minutes")
            destination = args.get("destination")
            if destination is not None and not isinstance(destination, str):
                raise TypeError("destination must be a string")
        return cls(**args)
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidTransition(MALFORMED_COMMAND, f"invalid arguments for {name}: {e}") from e


def describe(command: Command) -> Dict[str, Any]:
    args = {k: to_plain(v) for k, v in asdict(command).items() if k != "expected_version"}
    return {"name": command.name, "args": args}


@dataclass(frozen=True)
class Ack:
    kind: EntityKind
    entity_id: str
    changes: Dict[str, Any]
    version: int
    event: ChangeEvent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "id": self.entity_id,
            "changes": self.changes,
            "version": self.version,
            "seq": self.event.seq,
        }


AuditSink = Callable[[Dict[str, Any]], None]


class CommandProcessor:
    def __init__(
        self,
        store: EntityStore,
        feed: Optional[ChangeFeed] = None,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.feed = feed or ChangeFeed()
        self.audit = audit
        self.clock = clock

    def execute(self, command: Command, at: Optional[datetime] = None) -> Ack:
        """Validate and apply one command; raises ``RailOpsError`` on rejection."""
        with self.store.lock:
            now = at or self.clock()
            try:
                delta = self._translate(command, now)
                entity, (before, after) = self.store.apply(delta)
            except RailOpsError as e:
                logger.warning("Rejected %s: %s", command.name, e)
                self._record(command, now, error=e)
                raise
            event = ChangeEvent(
                seq=self.feed.next_seq(),
                kind=delta.kind,
                entity_id=delta.entity_id,
                before=before,
                after=after,
                at=now,
                command=describe(command),
                version=entity.version,
            )
            self.feed.publish(event)
        logger.info("Applied %s to %s %s (v%d)", command.name, delta.kind.value, delta.entity_id, entity.version)
        self._record(command, now, event=event)
        return Ack(kind=delta.kind, entity_id=delta.entity_id, changes=after, version=entity.version, event=event)

    def sweep_overdue(self, now: Optional[datetime] = None) -> List[Ack]:
        """Mark every occupied platform past its scheduled departure as overdue."""
        acks: List[Ack] = []
        with self.store.lock:
            now = now or self.clock()
            for p in self.store.list(EntityKind.PLATFORM):
                if p.status == PlatformStatus.OCCUPIED and p.scheduled_departure and p.scheduled_departure < now:
                    acks.append(self.execute(MarkOverdue(p.id), at=now))
        return acks

    def _record(self, command: Command, at: datetime, event: Optional[ChangeEvent] = None,
                error: Optional[RailOpsError] = None) -> None:
        if self.audit is None:
            return
        entry: Dict[str, Any] = {"type": "command", "at": at.isoformat(), **describe(command)}
        if event is not None:
            entry.update({"accepted": True, "seq": event.seq, "after": event.after})
        if error is not None:
            entry.update({"accepted": False, **error.to_dict()})
        self.audit(entry)

    # Translation

    def _translate(self, command: Command, now: datetime) -> Delta:
        handler = _HANDLERS.get(type(command))
        if handler is None:
            raise InvalidTransition("unknown-command", f"unsupported command {type(command).__name__}")
        if command.expected_version is not None:
            kind, entity_id = _target(command)
            actual = self.store.get(kind, entity_id).version
            if actual != command.expected_version:
                raise ConcurrentConflict(kind.value, entity_id, command.expected_version, actual)
        kind, entity_id, changes, clears = handler(self.store, command, now)
        current = self.store.get(kind, entity_id)
        changes = _diff(current, changes)
        if not changes:
            raise InvalidTransition(NO_CHANGE, f"{command.name} leaves {kind.value} {entity_id} unchanged")
        return Delta(
            kind=kind,
            entity_id=entity_id,
            changes=changes,
            command=command.name,
            arguments=describe(command)["args"],
            clears_delay=clears,
            expected_version=command.expected_version,
            at=now,
        )


def _target(command: Command) -> tuple:
    # platform first: AssignPlatform also names a train
    for attr, kind in (("platform", EntityKind.PLATFORM), ("signal", EntityKind.SIGNAL), ("train", EntityKind.TRAIN)):
        if hasattr(command, attr):
            return kind, getattr(command, attr)
    raise InvalidTransition("unknown-command", f"{command.name} names no entity")


def _diff(current: Entity, changes: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in changes.items() if getattr(current, k) != v}


def _reject(train: Entity, command: str) -> InvalidTransition:
    return InvalidTransition(STATUS_TRANSITION, f"cannot {command} train {train.number} while {train.status.value}")


def _proceed(store: EntityStore, cmd: Proceed, now: datetime):
    t = store.get(EntityKind.TRAIN, cmd.train)
    if t.status == TrainStatus.RUNNING and t.delay_minutes == 0:
        raise InvalidTransition(STATUS_TRANSITION, f"train {t.number} is already running on time")
    return EntityKind.TRAIN, t.number, {"status": TrainStatus.RUNNING, "delay_minutes": 0}, True


def _hold(store: EntityStore, cmd: Hold, now: datetime):
    t = store.get(EntityKind.TRAIN, cmd.train)
    if t.status not in (TrainStatus.RUNNING, TrainStatus.DELAYED):
        raise _reject(t, "hold")
    return EntityKind.TRAIN, t.number, {"status": TrainStatus.STOPPED}, False


def _reroute(store: EntityStore, cmd: Reroute, now: datetime):
    t = store.get(EntityKind.TRAIN, cmd.train)
    if t.status not in (TrainStatus.RUNNING, TrainStatus.DELAYED):
        raise _reject(t, "reroute")
    changes: Dict[str, Any] = {
        "delay_minutes": cmd.delay_minutes,
        "status": TrainStatus.DELAYED if cmd.delay_minutes > 0 else TrainStatus.RUNNING,
    }
    if cmd.destination is not None:
        changes["destination"] = cmd.destination
    return EntityKind.TRAIN, t.number, changes, False


def _maintenance(store: EntityStore, cmd: SetMaintenance, now: datetime):
    t = store.get(EntityKind.TRAIN, cmd.train)
    if t.status == TrainStatus.MAINTENANCE:
        raise InvalidTransition(STATUS_TRANSITION, f"train {t.number} is already in maintenance")
    return EntityKind.TRAIN, t.number, {"status": TrainStatus.MAINTENANCE}, False


def _clear_delay(store: EntityStore, cmd: ClearDelay, now: datetime):
    t = store.get(EntityKind.TRAIN, cmd.train)
    if t.delay_minutes == 0:
        raise InvalidTransition(STATUS_TRANSITION, f"train {t.number} has no delay to clear")
    changes: Dict[str, Any] = {"delay_minutes": 0}
    if t.status == TrainStatus.DELAYED:
        changes["status"] = TrainStatus.RUNNING
    return EntityKind.TRAIN, t.number, changes, True


def _move(store: EntityStore, cmd: MoveTrain, now: datetime):
    t = store.get(EntityKind.TRAIN, cmd.train)
    if t.status == TrainStatus.STOPPED:
        raise _reject(t, "move")
    return EntityKind.TRAIN, t.number, {"location": cmd.location}, False


def _change_signal(store: EntityStore, cmd: ChangeSignal, now: datetime):
    s = store.get(EntityKind.SIGNAL, cmd.signal)
    state = SignalState(cmd.state)
    if s.state == state:
        raise InvalidTransition(NO_CHANGE, f"signal {s.code} is already {state.value}")
    return EntityKind.SIGNAL, s.code, {"state": state, "last_changed_at": now}, False


def _assign_platform(store: EntityStore, cmd: AssignPlatform, now: datetime):
    p = store.get(EntityKind.PLATFORM, cmd.platform)
    if cmd.arrival is None or cmd.departure is None:
        raise InvalidTransition(MALFORMED_COMMAND, f"platform {p.id} needs both arrival and departure")
    changes = {
        "status": PlatformStatus.OCCUPIED,
        "assigned_train": cmd.train,
        "scheduled_arrival": parse_datetime(cmd.arrival),
        "scheduled_departure": parse_datetime(cmd.departure),
    }
    return EntityKind.PLATFORM, p.id, changes, False


def _depart_platform(store: EntityStore, cmd: DepartPlatform, now: datetime):
    p = store.get(EntityKind.PLATFORM, cmd.platform)
    if p.status == PlatformStatus.FREE:
        raise InvalidTransition(STATUS_TRANSITION, f"platform {p.id} is already free")
    changes = {
        "status": PlatformStatus.FREE,
        "assigned_train": None,
        "scheduled_arrival": None,
        "scheduled_departure": None,
    }
    return EntityKind.PLATFORM, p.id, changes, False


def _mark_overdue(store: EntityStore, cmd: MarkOverdue, now: datetime):
    p = store.get(EntityKind.PLATFORM, cmd.platform)
    return EntityKind.PLATFORM, p.id, {"status": PlatformStatus.OVERDUE}, False


_HANDLERS: Dict[type, Callable] = {
    Proceed: _proceed,
    Hold: _hold,
    Reroute: _reroute,
    SetMaintenance: _maintenance,
    ClearDelay: _clear_delay,
    MoveTrain: _move,
    ChangeSignal: _change_signal,
    AssignPlatform: _assign_platform,
    DepartPlatform: _depart_platform,
    MarkOverdue: _mark_overdue,
}
