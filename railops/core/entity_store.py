from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .checker import REFERENTIAL_INTEGRITY, check, check_state
from .errors import ConcurrentConflict, InvalidTransition, NotFound
from .models import (
    FROM_DICT,
    Delta,
    Entity,
    EntityKind,
    Platform,
    RailwayState,
    Signal,
    TrackSection,
    Train,
    bump,
    to_plain,
)

logger = logging.getLogger(__name__)

Changes = Tuple[Dict[str, Any], Dict[str, Any]]


class EntityStore:
    """Authoritative in-memory state for trains, signals, platforms and sections.

    Entities are immutable; ``apply`` swaps in a new version. Readers copy the
    mapping references under the lock, so every read sees one consistent
    snapshot without holding the lock while they work.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._data: Dict[EntityKind, Dict[str, Entity]] = {kind: {} for kind in EntityKind}

    # Provisioning

    def load(
        self,
        trains: Iterable[Train] = (),
        signals: Iterable[Signal] = (),
        platforms: Iterable[Platform] = (),
        sections: Iterable[TrackSection] = (),
    ) -> None:
        """Replace the whole state after validating it as one unit."""
        data: Dict[EntityKind, Dict[str, Entity]] = {kind: {} for kind in EntityKind}
        for kind, items in (
            (EntityKind.TRAIN, trains),
            (EntityKind.SIGNAL, signals),
            (EntityKind.PLATFORM, platforms),
            (EntityKind.SECTION, sections),
        ):
            for item in items:
                if item.id in data[kind]:
                    raise InvalidTransition(REFERENTIAL_INTEGRITY, f"duplicate {kind.value} id {item.id}")
                data[kind][item.id] = item
        violations = check_state(_state_of(data))
        if violations:
            first = violations[0]
            raise InvalidTransition(first.rule, "; ".join(v.message for v in violations))
        with self.lock:
            self._data = data
        logger.info(
            "Loaded %d trains, %d signals, %d platforms, %d sections",
            len(data[EntityKind.TRAIN]), len(data[EntityKind.SIGNAL]),
            len(data[EntityKind.PLATFORM]), len(data[EntityKind.SECTION]),
        )

    def load_payload(self, payload: Mapping[str, Any]) -> None:
        """Load a seed shaped like ``{"trains": [...], "signals": [...], ...}``."""
        try:
            self.load(
                trains=[FROM_DICT[EntityKind.TRAIN](d) for d in payload.get("trains", [])],
                signals=[FROM_DICT[EntityKind.SIGNAL](d) for d in payload.get("signals", [])],
                platforms=[FROM_DICT[EntityKind.PLATFORM](d) for d in payload.get("platforms", [])],
                sections=[FROM_DICT[EntityKind.SECTION](d) for d in payload.get("sections", [])],
            )
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidTransition("malformed-seed", f"invalid railway payload: {e}") from e

    # Reads

    def snapshot(self) -> RailwayState:
        with self.lock:
            data = {kind: dict(items) for kind, items in self._data.items()}
        return _state_of(data)

    def get(self, kind: EntityKind, entity_id: str) -> Entity:
        kind = EntityKind(kind)
        with self.lock:
            entity = self._data[kind].get(entity_id)
        if entity is None:
            raise NotFound(kind.value, entity_id)
        return entity

    def list(self, kind: EntityKind) -> List[Entity]:
        kind = EntityKind(kind)
        with self.lock:
            items = list(self._data[kind].values())
        return sorted(items, key=lambda e: e.id)

    # Writes

    def apply(self, delta: Delta) -> Tuple[Entity, Changes]:
        """Validate and commit one delta. All-or-nothing.

        Returns the new entity plus (prior, new) values of the fields that changed.
        """
        with self.lock:
            current = self._data[delta.kind].get(delta.entity_id)
            if current is None:
                raise NotFound(delta.kind.value, delta.entity_id)
            if delta.expected_version is not None and delta.expected_version != current.version:
                raise ConcurrentConflict(delta.kind.value, delta.entity_id, delta.expected_version, current.version)
            violation = check(self.snapshot(), delta)
            if violation is not None:
                if violation.rule == REFERENTIAL_INTEGRITY and violation.missing:
                    raise NotFound(*violation.missing)
                raise InvalidTransition(violation.rule, violation.message)
            updated = bump(current, delta.changes)
            self._data[delta.kind][delta.entity_id] = updated
        before = {k: to_plain(getattr(current, k)) for k in delta.changes}
        after = {k: to_plain(getattr(updated, k)) for k in delta.changes}
        return updated, (before, after)


def _state_of(data: Mapping[EntityKind, Mapping[str, Entity]]) -> RailwayState:
    return RailwayState(
        trains=MappingProxyType(dict(data[EntityKind.TRAIN])),
        signals=MappingProxyType(dict(data[EntityKind.SIGNAL])),
        platforms=MappingProxyType(dict(data[EntityKind.PLATFORM])),
        sections=MappingProxyType(dict(data[EntityKind.SECTION])),
    )
