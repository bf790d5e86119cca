import random
from datetime import datetime, timedelta, timezone

import pytest

from railops.core.checker import check_state
from railops.core.commands import (
    AssignPlatform,
    ChangeSignal,
    ClearDelay,
    DepartPlatform,
    Hold,
    MoveTrain,
    Proceed,
    Reroute,
    SetMaintenance,
)
from railops.core.errors import RailOpsError
from railops.core.models import EntityKind, SignalState, to_plain

T0 = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)
LOCATIONS = ["A", "B", "C", "Y", "STA:1", "STA:2", "STC:1", "Z"]


def _random_command(rng, store):
    trains = [t.number for t in store.list(EntityKind.TRAIN)] + ["999"]
    t = rng.choice(trains)
    roll = rng.random()
    if roll < 0.3:
        return MoveTrain(t, rng.choice(LOCATIONS))
    if roll < 0.45:
        current = store.get(EntityKind.TRAIN, t).delay_minutes if t != "999" else 0
        return Reroute(t, max(0, current + rng.randint(-5, 10)))
    if roll < 0.55:
        return Hold(t)
    if roll < 0.65:
        return Proceed(t)
    if roll < 0.7:
        return ClearDelay(t)
    if roll < 0.75:
        return SetMaintenance(t)
    if roll < 0.85:
        return ChangeSignal(rng.choice(["SIG-1", "SIG-2"]), rng.choice(list(SignalState)))
    p = rng.choice(["STA:1", "STA:2", "STC:1"])
    if rng.random() < 0.5:
        return AssignPlatform(p, t, T0, T0 + timedelta(minutes=rng.randint(1, 20)))
    return DepartPlatform(p)


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_random_command_stream_keeps_invariants(seed, store, processor, feed):
    rng = random.Random(seed)
    sub = feed.subscribe(maxsize=1000)
    accepted = 0
    for _ in range(300):
        cmd = _random_command(rng, store)
        before = store.snapshot()
        try:
            ack = processor.execute(cmd)
        except RailOpsError:
            # rejected commands change nothing and publish nothing
            assert store.snapshot() == before
            assert sub.drain() == []
            continue
        accepted += 1
        state = store.snapshot()
        assert check_state(state) == []

        events = sub.drain()
        assert len(events) == 1
        event = events[0]
        entity = state.of(event.kind)[event.entity_id]
        assert event.after == {k: to_plain(getattr(entity, k)) for k in event.after}
        assert event.version == entity.version == before.of(event.kind)[event.entity_id].version + 1
        assert ack.event is event

        if event.kind == EntityKind.TRAIN and not isinstance(cmd, (Proceed, ClearDelay)):
            assert entity.delay_minutes >= before.trains[entity.number].delay_minutes
    assert accepted > 0
