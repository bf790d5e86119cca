from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class EntityKind(str, Enum):
    TRAIN = "train"
    SIGNAL = "signal"
    PLATFORM = "platform"
    SECTION = "section"


class TrainType(str, Enum):
    EXPRESS = "express"
    LOCAL = "local"
    FREIGHT = "freight"
    SPECIAL = "special"


class TrainStatus(str, Enum):
    RUNNING = "running"
    DELAYED = "delayed"
    STOPPED = "stopped"
    MAINTENANCE = "maintenance"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SignalState(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class PlatformStatus(str, Enum):
    FREE = "free"
    OCCUPIED = "occupied"
    OVERDUE = "overdue"


class SectionType(str, Enum):
    MAIN = "main"
    JUNCTION = "junction"
    YARD = "yard"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def platform_key(station_code: str, platform_number: str) -> str:
    return f"{station_code}:{platform_number}"


@dataclass(frozen=True)
class Train:
    number: str
    name: str
    type: TrainType
    status: TrainStatus = TrainStatus.RUNNING
    location: Optional[str] = None  # section id or platform key
    destination: str = ""
    delay_minutes: int = 0
    priority: Priority = Priority.MEDIUM
    version: int = 1

    @property
    def id(self) -> str:
        return self.number


@dataclass(frozen=True)
class Signal:
    code: str
    name: str
    section: str  # owning section
    state: SignalState = SignalState.RED
    location: str = ""
    # Section the signal guards; falls back to the owning section
    protects: Optional[str] = None
    is_automatic: bool = False
    last_changed_at: Optional[datetime] = None
    version: int = 1

    @property
    def id(self) -> str:
        return self.code

    @property
    def guarded_section(self) -> str:
        return self.protects or self.section


@dataclass(frozen=True)
class Platform:
    station_code: str
    platform_number: str
    section: str
    station_name: str = ""
    status: PlatformStatus = PlatformStatus.FREE
    assigned_train: Optional[str] = None
    scheduled_arrival: Optional[datetime] = None
    scheduled_departure: Optional[datetime] = None
    capacity: int = 1
    version: int = 1

    @property
    def id(self) -> str:
        return platform_key(self.station_code, self.platform_number)


@dataclass(frozen=True)
class TrackSection:
    id: str
    name: str
    type: SectionType = SectionType.MAIN
    connections: Tuple[str, ...] = ()
    # None means "derive from type": main and junction hold one train, yards many
    single_occupancy: Optional[bool] = None
    stop_required: bool = True
    is_workshop: bool = False
    version: int = 1

    @property
    def holds_one_train(self) -> bool:
        if self.single_occupancy is not None:
            return self.single_occupancy
        return self.type != SectionType.YARD

    @property
    def accepts_maintenance(self) -> bool:
        return self.type == SectionType.YARD or self.is_workshop


Entity = Any  # Train | Signal | Platform | TrackSection

ENTITY_TYPES = {
    EntityKind.TRAIN: Train,
    EntityKind.SIGNAL: Signal,
    EntityKind.PLATFORM: Platform,
    EntityKind.SECTION: TrackSection,
}

# Fields that identify an entity and can never appear in a delta
IDENTITY_FIELDS = {
    EntityKind.TRAIN: {"number"},
    EntityKind.SIGNAL: {"code"},
    EntityKind.PLATFORM: {"station_code", "platform_number"},
    EntityKind.SECTION: {"id"},
}


def mutable_fields(kind: EntityKind) -> set[str]:
    names = {f.name for f in fields(ENTITY_TYPES[kind])}
    return names - IDENTITY_FIELDS[kind] - {"version"}


def bump(entity: Entity, changes: Mapping[str, Any]) -> Entity:
    """Return a new entity version with ``changes`` applied."""
    return replace(entity, version=entity.version + 1, **dict(changes))


@dataclass(frozen=True)
class Delta:
    """A proposed set of field changes to one entity."""

    kind: EntityKind
    entity_id: str
    changes: Dict[str, Any]
    command: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    # Set only by commands allowed to lower a train's delay
    clears_delay: bool = False
    expected_version: Optional[int] = None
    at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ChangeEvent:
    seq: int
    kind: EntityKind
    entity_id: str
    before: Dict[str, Any]
    after: Dict[str, Any]
    at: datetime
    command: Dict[str, Any]
    version: int


@dataclass(frozen=True)
class RailwayState:
    """Read-only view of every entity, taken at one instant."""

    trains: Mapping[str, Train]
    signals: Mapping[str, Signal]
    platforms: Mapping[str, Platform]
    sections: Mapping[str, TrackSection]

    def of(self, kind: EntityKind) -> Mapping[str, Entity]:
        if kind == EntityKind.TRAIN:
            return self.trains
        if kind == EntityKind.SIGNAL:
            return self.signals
        if kind == EntityKind.PLATFORM:
            return self.platforms
        return self.sections

    def section_of(self, location: Optional[str]) -> Optional[str]:
        """Resolve a train location (section id or platform key) to a section id."""
        if location is None:
            return None
        if location in self.sections:
            return location
        platform = self.platforms.get(location)
        return platform.section if platform else None

    def location_exists(self, location: str) -> bool:
        return location in self.sections or location in self.platforms

    def trains_at(self, location: str) -> list[Train]:
        return [t for t in self.trains.values() if t.location == location]


def to_dict(entity: Entity) -> Dict[str, Any]:
    """Plain JSON-friendly dict for an entity (enums as values, datetimes as ISO strings)."""
    out: Dict[str, Any] = {}
    for f in fields(entity):
        out[f.name] = to_plain(getattr(entity, f.name))
    if isinstance(entity, Platform):
        out["key"] = entity.id
    return out


def to_plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return list(value)
    return value


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def train_from_dict(d: Mapping[str, Any]) -> Train:
    return Train(
        number=str(d["number"]),
        name=d.get("name", ""),
        type=TrainType(d.get("type", TrainType.LOCAL.value)),
        status=TrainStatus(d.get("status", TrainStatus.RUNNING.value)),
        location=d.get("location"),
        destination=d.get("destination", ""),
        delay_minutes=int(d.get("delay_minutes", 0) or 0),
        priority=Priority(d.get("priority", Priority.MEDIUM.value)),
        version=int(d.get("version", 1)),
    )


def signal_from_dict(d: Mapping[str, Any]) -> Signal:
    return Signal(
        code=str(d["code"]),
        name=d.get("name", ""),
        section=d["section"],
        state=SignalState(d.get("state", SignalState.RED.value)),
        location=d.get("location", ""),
        protects=d.get("protects"),
        is_automatic=bool(d.get("is_automatic", False)),
        last_changed_at=parse_datetime(d.get("last_changed_at")),
        version=int(d.get("version", 1)),
    )


def platform_from_dict(d: Mapping[str, Any]) -> Platform:
    return Platform(
        station_code=str(d["station_code"]),
        platform_number=str(d["platform_number"]),
        section=d["section"],
        station_name=d.get("station_name", ""),
        status=PlatformStatus(d.get("status", PlatformStatus.FREE.value)),
        assigned_train=d.get("assigned_train"),
        scheduled_arrival=parse_datetime(d.get("scheduled_arrival")),
        scheduled_departure=parse_datetime(d.get("scheduled_departure")),
        capacity=int(d.get("capacity", 1)),
        version=int(d.get("version", 1)),
    )


def section_from_dict(d: Mapping[str, Any]) -> TrackSection:
    return TrackSection(
        id=str(d["id"]),
        name=d.get("name", ""),
        type=SectionType(d.get("type", SectionType.MAIN.value)),
        connections=tuple(d.get("connections", ())),
        single_occupancy=d.get("single_occupancy"),
        stop_required=bool(d.get("stop_required", True)),
        is_workshop=bool(d.get("is_workshop", False)),
        version=int(d.get("version", 1)),
    )


FROM_DICT = {
    EntityKind.TRAIN: train_from_dict,
    EntityKind.SIGNAL: signal_from_dict,
    EntityKind.PLATFORM: platform_from_dict,
    EntityKind.SECTION: section_from_dict,
}
