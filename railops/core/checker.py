"""Invariant checks for proposed deltas and whole railway states.

``check`` is pure: it looks at the current state and one delta and returns
the first rule the delta would break, or ``None``. Rules run in a fixed
order and short-circuit:

1. referential integrity
2. platform single occupancy
3. signal/occupancy conflict
4. monotonic delay
5. status/location coherence
6. section occupancy
7. adjacency
8. platform status
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from .models import (
    Delta,
    Entity,
    EntityKind,
    Platform,
    PlatformStatus,
    RailwayState,
    SignalState,
    Train,
    TrainStatus,
    bump,
    mutable_fields,
)

MALFORMED_DELTA = "malformed-delta"
REFERENTIAL_INTEGRITY = "referential-integrity"
PLATFORM_SINGLE_OCCUPANCY = "platform-single-occupancy"
SIGNAL_OCCUPANCY_CONFLICT = "signal-occupancy-conflict"
MONOTONIC_DELAY = "monotonic-delay"
STATUS_LOCATION_COHERENCE = "status-location-coherence"
SECTION_OCCUPANCY = "section-occupancy"
ADJACENCY = "adjacency"
PLATFORM_STATUS = "platform-status"
NETWORK_TOPOLOGY = "network-topology"

_PLACED_STATUSES = {TrainStatus.RUNNING, TrainStatus.DELAYED, TrainStatus.STOPPED}


@dataclass(frozen=True)
class Violation:
    rule: str
    message: str
    # (kind, id) of the entity that could not be resolved, for referential failures
    missing: Optional[Tuple[str, str]] = None


def check(state: RailwayState, delta: Delta) -> Optional[Violation]:
    current = state.of(delta.kind).get(delta.entity_id)
    if current is None:
        return Violation(REFERENTIAL_INTEGRITY, f"{delta.kind.value} {delta.entity_id} does not exist",
                         missing=(delta.kind.value, delta.entity_id))
    unknown = set(delta.changes) - mutable_fields(delta.kind)
    if unknown:
        return Violation(MALFORMED_DELTA, f"cannot change {', '.join(sorted(unknown))} on {delta.kind.value}")
    try:
        proposed = bump(current, delta.changes)
    except TypeError as e:
        return Violation(MALFORMED_DELTA, str(e))

    for rule in _RULES:
        v = rule(state, delta, current, proposed)
        if v is not None:
            return v
    return None


# --- per-delta rules ------------------------------------------------------

def _referential(state: RailwayState, delta: Delta, current: Entity, proposed: Entity) -> Optional[Violation]:
    ch = delta.changes
    if delta.kind == EntityKind.TRAIN:
        loc = ch.get("location")
        if loc is not None and not state.location_exists(loc):
            return Violation(REFERENTIAL_INTEGRITY, f"location {loc} does not exist", missing=("location", loc))
    elif delta.kind == EntityKind.PLATFORM:
        tid = ch.get("assigned_train")
        if tid is not None and tid not in state.trains:
            return Violation(REFERENTIAL_INTEGRITY, f"train {tid} does not exist", missing=("train", tid))
        sid = ch.get("section")
        if sid is not None and sid not in state.sections:
            return Violation(REFERENTIAL_INTEGRITY, f"section {sid} does not exist", missing=("section", sid))
    elif delta.kind == EntityKind.SIGNAL:
        for key in ("section", "protects"):
            sid = ch.get(key)
            if sid is not None and sid not in state.sections:
                return Violation(REFERENTIAL_INTEGRITY, f"section {sid} does not exist", missing=("section", sid))
    elif delta.kind == EntityKind.SECTION:
        for sid in ch.get("connections", ()):
            if sid not in state.sections:
                return Violation(REFERENTIAL_INTEGRITY, f"section {sid} does not exist", missing=("section", sid))
    return None


def _platform_single_occupancy(state: RailwayState, delta: Delta, current: Entity, proposed: Entity) -> Optional[Violation]:
    if delta.kind != EntityKind.PLATFORM or delta.changes.get("assigned_train") is None:
        return None
    tid = delta.changes["assigned_train"]
    if current.assigned_train is not None and current.assigned_train != tid:
        return Violation(
            PLATFORM_SINGLE_OCCUPANCY,
            f"platform {current.id} is already assigned to train {current.assigned_train}",
        )
    for other in state.platforms.values():
        if other.id != current.id and other.assigned_train == tid:
            return Violation(PLATFORM_SINGLE_OCCUPANCY, f"train {tid} is already assigned to platform {other.id}")
    return None


def _signal_occupancy(state: RailwayState, delta: Delta, current: Entity, proposed: Entity) -> Optional[Violation]:
    if delta.kind != EntityKind.SIGNAL or delta.changes.get("state") != SignalState.GREEN:
        return None
    guarded = proposed.guarded_section
    section = state.sections.get(guarded)
    if section is None or not section.stop_required:
        return None
    for train in state.trains.values():
        if state.section_of(train.location) == guarded:
            return Violation(
                SIGNAL_OCCUPANCY_CONFLICT,
                f"signal {current.code} cannot clear: section {guarded} is occupied by train {train.number}",
            )
    return None


def _monotonic_delay(state: RailwayState, delta: Delta, current: Entity, proposed: Entity) -> Optional[Violation]:
    if delta.kind != EntityKind.TRAIN or "delay_minutes" not in delta.changes:
        return None
    new = delta.changes["delay_minutes"]
    if not isinstance(new, int) or isinstance(new, bool) or new < 0:
        return Violation(MONOTONIC_DELAY, f"delay must be a non-negative whole number of minutes, got {new!r}")
    if new < current.delay_minutes and not delta.clears_delay:
        return Violation(
            MONOTONIC_DELAY,
            f"delay of train {current.number} cannot drop from {current.delay_minutes} to {new} without clearing it",
        )
    return None


def _coherence(state: RailwayState, delta: Delta, current: Entity, proposed: Entity) -> Optional[Violation]:
    if delta.kind != EntityKind.TRAIN or not ({"status", "location"} & set(delta.changes)):
        return None
    return _train_coherence(state, proposed)


def _train_coherence(state: RailwayState, train: Train) -> Optional[Violation]:
    if train.status in _PLACED_STATUSES and train.location is None:
        return Violation(STATUS_LOCATION_COHERENCE, f"{train.status.value} train {train.number} has no location")
    if train.status == TrainStatus.MAINTENANCE:
        sid = state.section_of(train.location)
        section = state.sections.get(sid) if sid else None
        if section is None or not section.accepts_maintenance:
            return Violation(
                STATUS_LOCATION_COHERENCE,
                f"train {train.number} must be in a yard or workshop for maintenance (at {train.location})",
            )
    return None


def _section_occupancy(state: RailwayState, delta: Delta, current: Entity, proposed: Entity) -> Optional[Violation]:
    # platforms are berths of their own; the section count covers only its running line
    if delta.kind != EntityKind.TRAIN:
        return None
    loc = delta.changes.get("location")
    if loc is None or loc == current.location:
        return None
    others = [t for t in state.trains_at(loc) if t.number != current.number]
    platform = state.platforms.get(loc)
    if platform is not None:
        if others:
            return Violation(SECTION_OCCUPANCY, f"platform {loc} is occupied by train {others[0].number}")
        if platform.assigned_train not in (None, current.number):
            return Violation(SECTION_OCCUPANCY, f"platform {loc} is reserved for train {platform.assigned_train}")
        return None
    section = state.sections[loc]
    if section.holds_one_train and others:
        return Violation(SECTION_OCCUPANCY, f"section {loc} is occupied by train {others[0].number}")
    return None


def _adjacency(state: RailwayState, delta: Delta, current: Entity, proposed: Entity) -> Optional[Violation]:
    if delta.kind != EntityKind.TRAIN:
        return None
    loc = delta.changes.get("location")
    if loc is None or loc == current.location:
        return None
    here = state.section_of(current.location)
    if here is None:
        return None
    there = state.section_of(loc)
    if there == here or there in state.sections[here].connections:
        return None
    return Violation(ADJACENCY, f"train {current.number} cannot move from {current.location} to {loc}: not adjacent")


def _platform_status(state: RailwayState, delta: Delta, current: Entity, proposed: Entity) -> Optional[Violation]:
    if delta.kind != EntityKind.PLATFORM:
        return None
    v = _platform_coherence(proposed)
    if v is not None:
        return v
    if proposed.status == PlatformStatus.OVERDUE and current.status != PlatformStatus.OVERDUE:
        if current.status != PlatformStatus.OCCUPIED:
            return Violation(PLATFORM_STATUS, f"platform {current.id} is {current.status.value}, only occupied platforms become overdue")
        departure = proposed.scheduled_departure
        if departure is None or delta.at <= departure:
            return Violation(PLATFORM_STATUS, f"platform {current.id} is not past its scheduled departure")
    return None


def _platform_coherence(p: Platform) -> Optional[Violation]:
    if p.status == PlatformStatus.FREE and p.assigned_train is not None:
        return Violation(PLATFORM_STATUS, f"free platform {p.id} cannot hold train {p.assigned_train}")
    if p.status != PlatformStatus.FREE and p.assigned_train is None:
        return Violation(PLATFORM_STATUS, f"{p.status.value} platform {p.id} has no assigned train")
    if p.scheduled_arrival and p.scheduled_departure and p.scheduled_arrival > p.scheduled_departure:
        return Violation(PLATFORM_STATUS, f"platform {p.id}: arrival is after departure")
    return None


_Rule = Callable[[RailwayState, Delta, Entity, Entity], Optional[Violation]]

_RULES: List[_Rule] = [
    _referential,
    _platform_single_occupancy,
    _signal_occupancy,
    _monotonic_delay,
    _coherence,
    _section_occupancy,
    _adjacency,
    _platform_status,
]


# --- whole-state checks (provisioning) -----------------------------------

def check_state(state: RailwayState) -> List[Violation]:
    """Every invariant violation present in ``state``. Empty means consistent."""
    out: List[Violation] = []
    sections = state.sections

    for s in sections.values():
        for other in s.connections:
            if other not in sections:
                out.append(Violation(REFERENTIAL_INTEGRITY, f"section {s.id} connects to unknown section {other}", ("section", other)))
            elif s.id not in sections[other].connections:
                out.append(Violation(NETWORK_TOPOLOGY, f"link {s.id}-{other} is not symmetric"))

    for sig in state.signals.values():
        for sid in {sig.section, sig.guarded_section}:
            if sid not in sections:
                out.append(Violation(REFERENTIAL_INTEGRITY, f"signal {sig.code} references unknown section {sid}", ("section", sid)))

    assigned: Dict[str, str] = {}
    for p in state.platforms.values():
        if p.section not in sections:
            out.append(Violation(REFERENTIAL_INTEGRITY, f"platform {p.id} references unknown section {p.section}", ("section", p.section)))
        v = _platform_coherence(p)
        if v is not None:
            out.append(v)
        tid = p.assigned_train
        if tid is None:
            continue
        if tid not in state.trains:
            out.append(Violation(REFERENTIAL_INTEGRITY, f"platform {p.id} references unknown train {tid}", ("train", tid)))
        elif tid in assigned:
            out.append(Violation(PLATFORM_SINGLE_OCCUPANCY, f"train {tid} is assigned to platforms {assigned[tid]} and {p.id}"))
        else:
            assigned[tid] = p.id

    occupants: Dict[str, List[str]] = {}
    for t in state.trains.values():
        if t.location is None:
            v = _train_coherence(state, t)
            if v is not None:
                out.append(v)
            continue
        if not state.location_exists(t.location):
            out.append(Violation(REFERENTIAL_INTEGRITY, f"train {t.number} is at unknown location {t.location}", ("location", t.location)))
            continue
        if t.delay_minutes < 0:
            out.append(Violation(MONOTONIC_DELAY, f"train {t.number} has negative delay"))
        v = _train_coherence(state, t)
        if v is not None:
            out.append(v)
        occupants.setdefault(t.location, []).append(t.number)

    for loc, numbers in occupants.items():
        single = loc in state.platforms or sections[loc].holds_one_train
        if single and len(numbers) > 1:
            out.append(Violation(SECTION_OCCUPANCY, f"{loc} holds trains {', '.join(sorted(numbers))}"))

    occupied_sections = {state.section_of(loc) for loc in occupants} - {None}
    if occupied_sections and not _connected(state, occupied_sections):
        out.append(Violation(NETWORK_TOPOLOGY, "occupied sections are not connected"))
    return out


def _connected(state: RailwayState, targets: Set[str]) -> bool:
    start = next(iter(targets))
    seen = {start}
    queue = deque([start])
    while queue:
        sid = queue.popleft()
        for nxt in state.sections[sid].connections:
            if nxt in state.sections and nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return targets <= seen
