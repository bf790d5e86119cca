from datetime import datetime, timedelta, timezone

import pytest

from railops.core.commands import (
    AssignPlatform,
    ChangeSignal,
    ClearDelay,
    CommandProcessor,
    DepartPlatform,
    Hold,
    MarkOverdue,
    MoveTrain,
    Proceed,
    Reroute,
    SetMaintenance,
    command_from_dict,
    describe,
)
from railops.core.errors import ConcurrentConflict, InvalidTransition, NotFound
from railops.core.models import EntityKind, PlatformStatus, SignalState, TrainStatus, to_plain

T0 = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


def _train(store, number):
    return store.get(EntityKind.TRAIN, number)


# Platform assignment

def test_second_assignment_to_busy_platform_is_rejected(processor, store):
    processor.execute(AssignPlatform("STA:1", "100", T0, T0 + timedelta(minutes=15)))
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(AssignPlatform("STA:1", "200", T0, T0 + timedelta(minutes=15)))
    assert exc.value.rule == "platform-single-occupancy"
    p = store.get(EntityKind.PLATFORM, "STA:1")
    assert (p.assigned_train, p.status, p.version) == ("100", PlatformStatus.OCCUPIED, 2)


def test_depart_frees_platform_for_next_train(processor, store):
    processor.execute(AssignPlatform("STA:1", "100", T0, T0 + timedelta(minutes=15)))
    processor.execute(DepartPlatform("STA:1"))
    p = store.get(EntityKind.PLATFORM, "STA:1")
    assert p.status == PlatformStatus.FREE and p.assigned_train is None and p.scheduled_departure is None
    processor.execute(AssignPlatform("STA:1", "200", T0, T0 + timedelta(minutes=5)))
    assert store.get(EntityKind.PLATFORM, "STA:1").assigned_train == "200"


def test_depart_from_free_platform_is_rejected(processor, store, feed):
    sub = feed.subscribe()
    with pytest.raises(InvalidTransition):
        processor.execute(DepartPlatform("STC:1"))
    assert store.get(EntityKind.PLATFORM, "STC:1").version == 1
    assert sub.drain() == []


def test_assign_unknown_train_is_not_found(processor):
    with pytest.raises(NotFound) as exc:
        processor.execute(AssignPlatform("STA:1", "999", T0, T0 + timedelta(minutes=5)))
    assert (exc.value.kind, exc.value.entity_id) == ("train", "999")


def test_assign_with_departure_before_arrival_is_rejected(processor):
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(AssignPlatform("STA:1", "100", T0, T0 - timedelta(minutes=5)))
    assert exc.value.rule == "platform-status"


# Signals

def test_signal_cannot_clear_into_occupied_section(processor, store):
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(ChangeSignal("SIG-2", SignalState.GREEN))
    assert exc.value.rule == "signal-occupancy-conflict"
    assert store.get(EntityKind.SIGNAL, "SIG-2").state == SignalState.RED

    # move 200 out of C, then the signal clears
    processor.execute(MoveTrain("200", "B"))
    ack = processor.execute(ChangeSignal("SIG-2", SignalState.GREEN))
    sig = store.get(EntityKind.SIGNAL, "SIG-2")
    assert sig.state == SignalState.GREEN
    assert sig.last_changed_at == T0
    assert ack.changes["state"] == "green"


def test_train_at_platform_occupies_guarded_section(processor):
    processor.execute(MoveTrain("200", "B"))
    processor.execute(MoveTrain("200", "STC:1"))
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(ChangeSignal("SIG-2", SignalState.GREEN))
    assert exc.value.rule == "signal-occupancy-conflict"


def test_setting_signal_to_current_state_is_rejected(processor):
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(ChangeSignal("SIG-1", SignalState.RED))
    assert exc.value.rule == "no-change"


# Train status machine

def test_hold_then_proceed_resets_delay(processor, store):
    processor.execute(Reroute("100", 20))
    processor.execute(Hold("100"))
    t = _train(store, "100")
    assert (t.status, t.delay_minutes) == (TrainStatus.STOPPED, 20)
    processor.execute(Proceed("100"))
    t = _train(store, "100")
    assert (t.status, t.delay_minutes) == (TrainStatus.RUNNING, 0)


def test_proceed_on_time_running_train_is_rejected(processor):
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(Proceed("100"))
    assert exc.value.rule == "status-transition"


def test_reroute_marks_train_delayed_and_keeps_delay_monotonic(processor, store):
    processor.execute(Reroute("100", 12, destination="Yard Y"))
    t = _train(store, "100")
    assert (t.status, t.delay_minutes, t.destination) == (TrainStatus.DELAYED, 12, "Yard Y")
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(Reroute("100", 4))
    assert exc.value.rule == "monotonic-delay"
    assert _train(store, "100").delay_minutes == 12


def test_reroute_of_stopped_train_is_rejected(processor):
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(Reroute("300", 50))
    assert exc.value.rule == "status-transition"


def test_clear_delay(processor, store):
    processor.execute(ClearDelay("200"))
    t = _train(store, "200")
    assert (t.status, t.delay_minutes) == (TrainStatus.RUNNING, 0)
    with pytest.raises(InvalidTransition):
        processor.execute(ClearDelay("200"))


def test_clear_delay_keeps_stopped_train_stopped(processor, store):
    processor.execute(ClearDelay("300"))
    t = _train(store, "300")
    assert (t.status, t.delay_minutes) == (TrainStatus.STOPPED, 0)


def test_maintenance_only_in_yard(processor, store):
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(SetMaintenance("100"))
    assert exc.value.rule == "status-location-coherence"

    processor.execute(MoveTrain("100", "B"))
    processor.execute(MoveTrain("100", "Y"))
    processor.execute(SetMaintenance("100"))
    assert _train(store, "100").status == TrainStatus.MAINTENANCE


def test_no_path_from_maintenance_to_stopped(processor, store):
    processor.execute(SetMaintenance("300"))
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(Hold("300"))
    assert exc.value.rule == "status-transition"
    processor.execute(Proceed("300"))
    assert _train(store, "300").status == TrainStatus.RUNNING


def test_train_in_maintenance_cannot_leave_yard(processor):
    processor.execute(SetMaintenance("300"))
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(MoveTrain("300", "B"))
    assert exc.value.rule == "status-location-coherence"


def test_stopped_train_cannot_move(processor):
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(MoveTrain("300", "B"))
    assert exc.value.rule == "status-transition"


def test_move_rules(processor, store):
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(MoveTrain("100", "Y"))
    assert exc.value.rule == "adjacency"
    processor.execute(MoveTrain("100", "B"))
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(MoveTrain("100", "C"))
    assert exc.value.rule == "section-occupancy"
    with pytest.raises(NotFound):
        processor.execute(MoveTrain("100", "Z"))
    assert _train(store, "100").location == "B"


def test_unknown_train_is_not_found(processor):
    with pytest.raises(NotFound):
        processor.execute(Proceed("999"))


# Versions and events

def test_stale_expected_version_conflicts(processor, store):
    v1 = _train(store, "100").version
    processor.execute(Reroute("100", 5))
    with pytest.raises(ConcurrentConflict) as exc:
        processor.execute(Hold("100", expected_version=v1))
    assert exc.value.actual == v1 + 1
    assert _train(store, "100").status == TrainStatus.DELAYED


def test_version_check_runs_before_status_rules(processor):
    # 300 is stopped, so Hold would also be invalid; the stale version is reported
    with pytest.raises(ConcurrentConflict):
        processor.execute(Hold("300", expected_version=9))


def test_matching_expected_version_applies(processor, store):
    ack = processor.execute(Hold("100", expected_version=1))
    assert ack.version == 2


def test_each_command_publishes_one_event_matching_the_store(processor, store, feed):
    sub = feed.subscribe()
    acks = [
        processor.execute(Reroute("100", 8)),
        processor.execute(MoveTrain("100", "B")),
        processor.execute(AssignPlatform("STC:1", "200", T0, T0 + timedelta(minutes=3))),
    ]
    events = sub.drain()
    assert [e.seq for e in events] == [a.event.seq for a in acks]
    assert events[0].seq < events[1].seq < events[2].seq
    for event in events:
        entity = store.get(event.kind, event.entity_id)
        assert event.version == entity.version
        assert event.after == {k: to_plain(getattr(entity, k)) for k in event.after}
    assert events[1].before == {"location": "A"}
    assert events[1].after == {"location": "B"}
    assert events[0].command == {"name": "reroute", "args": {"train": "100", "delay_minutes": 8, "destination": None}}


def test_rejected_and_accepted_commands_are_audited(store, feed):
    entries = []
    proc = CommandProcessor(store, feed, audit=entries.append, clock=lambda: T0)
    proc.execute(Hold("100"))
    with pytest.raises(InvalidTransition):
        proc.execute(Hold("100"))
    assert [e["accepted"] for e in entries] == [True, False]
    assert entries[0]["name"] == "hold" and entries[0]["after"] == {"status": "stopped"}
    assert entries[1]["rule"] == "status-transition"


# Overdue platforms

def test_sweep_marks_only_late_platforms(processor, store):
    processor.execute(AssignPlatform("STA:1", "100", T0, T0 + timedelta(minutes=10)))
    processor.execute(AssignPlatform("STC:1", "200", T0, T0 + timedelta(minutes=30)))
    acks = processor.sweep_overdue(now=T0 + timedelta(minutes=15))
    assert [a.entity_id for a in acks] == ["STA:1"]
    assert store.get(EntityKind.PLATFORM, "STA:1").status == PlatformStatus.OVERDUE
    assert store.get(EntityKind.PLATFORM, "STC:1").status == PlatformStatus.OCCUPIED
    # already overdue: nothing more to do
    assert processor.sweep_overdue(now=T0 + timedelta(minutes=16)) == []
    processor.execute(DepartPlatform("STA:1"))
    assert store.get(EntityKind.PLATFORM, "STA:1").status == PlatformStatus.FREE


def test_mark_overdue_before_departure_is_rejected(processor):
    processor.execute(AssignPlatform("STA:1", "100", T0, T0 + timedelta(minutes=10)))
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(MarkOverdue("STA:1"), at=T0 + timedelta(minutes=1))
    assert exc.value.rule == "platform-status"


# Command construction

def test_command_from_dict():
    cmd = command_from_dict("assign-platform", {"platform": "STA:1", "train": "100",
                                                "arrival": "2026-10-19T10:00:00Z",
                                                "departure": "2026-10-19T10:05:00Z"})
    assert isinstance(cmd, AssignPlatform)
    assert cmd.departure - cmd.arrival == timedelta(minutes=5)
    assert command_from_dict("signal", {"signal": "SIG-1", "state": "yellow"}).state == SignalState.YELLOW
    assert command_from_dict("reroute", {"train": "100", "delay_minutes": 7}).delay_minutes == 7


def test_command_from_dict_rejects_unknown_and_malformed():
    with pytest.raises(InvalidTransition) as exc:
        command_from_dict("teleport", {"train": "100"})
    assert exc.value.rule == "unknown-command"
    with pytest.raises(InvalidTransition) as exc:
        command_from_dict("signal", {"signal": "SIG-1", "state": "purple"})
    assert exc.value.rule == "malformed-command"
    with pytest.raises(InvalidTransition) as exc:
        command_from_dict("hold", {"number": "100"})
    assert exc.value.rule == "malformed-command"


@pytest.mark.parametrize("name, body", [
    ("hold", {"train": ["100"]}),
    ("proceed", {"train": 100}),
    ("move", {"train": "100", "location": {"x": 1}}),
    ("signal", {"signal": None, "state": "green"}),
    ("depart-platform", {"platform": 1}),
    ("hold", {"train": "100", "expected_version": "1"}),
    ("reroute", {"train": "100", "delay_minutes": 7.9}),
    ("reroute", {"train": "100", "delay_minutes": "7"}),
    ("reroute", {"train": "100", "delay_minutes": True}),
    ("reroute", {"train": "100", "delay_minutes": 5, "destination": 3}),
    ("assign-platform", {"platform": "STA:1", "train": "100", "arrival": None, "departure": None}),
    ("assign-platform", {"platform": "STA:1", "train": "100", "arrival": "2026-10-19T10:00:00Z"}),
    ("assign-platform", {"platform": "STA:1", "train": "100", "arrival": "", "departure": "2026-10-19T10:05:00Z"}),
    ("assign-platform", {"platform": "STA:1", "train": "100", "arrival": "soon", "departure": "later"}),
])
def test_command_from_dict_checks_argument_types(name, body):
    with pytest.raises(InvalidTransition) as exc:
        command_from_dict(name, body)
    assert exc.value.rule == "malformed-command"


def test_assign_without_schedule_is_rejected(processor, store):
    with pytest.raises(InvalidTransition) as exc:
        processor.execute(AssignPlatform("STA:1", "100", None, None))
    assert exc.value.rule == "malformed-command"
    assert store.get(EntityKind.PLATFORM, "STA:1").status == PlatformStatus.FREE


def test_describe_drops_version():
    assert describe(Hold("100", expected_version=3)) == {"name": "hold", "args": {"train": "100"}}
