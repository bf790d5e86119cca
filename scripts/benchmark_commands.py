"""Drive a random operator command stream through the core and report throughput.

Usage:
    python scripts/benchmark_commands.py -Sections 30 -Trains 12 -Commands 5000
    python scripts/benchmark_commands.py -Json

Every run ends with a whole-state invariant check; a non-empty violation list
means an accepted command left the railway inconsistent.
"""

from __future__ import annotations
import argparse, random, statistics, json, time, os, sys
from collections import Counter
from datetime import timedelta

# Ensure project root on path
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from railops.core.checker import check_state  # type: ignore
from railops.core.commands import (  # type: ignore
    AssignPlatform, ChangeSignal, ClearDelay, CommandProcessor, DepartPlatform, Hold,
    MoveTrain, Proceed, Reroute, SetMaintenance,
)
from railops.core.entity_store import EntityStore  # type: ignore
from railops.core.errors import RailOpsError  # type: ignore
from railops.core.models import EntityKind, SignalState, utcnow  # type: ignore
from scripts.generate_network import build_platforms, build_sections, build_signals, build_trains  # type: ignore


def random_command(store: EntityStore):
    state = store.snapshot()
    trains = list(state.trains.values())
    t = random.choice(trains)
    roll = random.random()
    if roll < 0.35:
        here = state.section_of(t.location)
        options = list(state.sections[here].connections) if here else list(state.sections)
        options += [p.id for p in state.platforms.values() if p.section in options]
        return MoveTrain(t.number, random.choice(options))
    if roll < 0.45:
        return Reroute(t.number, t.delay_minutes + random.randint(-5, 15))
    if roll < 0.55:
        return Hold(t.number)
    if roll < 0.65:
        return Proceed(t.number)
    if roll < 0.7:
        return ClearDelay(t.number)
    if roll < 0.73:
        return SetMaintenance(t.number)
    if roll < 0.85:
        sig = random.choice(list(state.signals.values()))
        return ChangeSignal(sig.code, random.choice(list(SignalState)))
    p = random.choice(list(state.platforms.values()))
    if random.random() < 0.5:
        now = utcnow()
        return AssignPlatform(p.id, t.number, now, now + timedelta(minutes=random.randint(2, 20)))
    return DepartPlatform(p.id)


def run_once(n_sections: int, n_trains: int, n_commands: int) -> dict:
    sections = build_sections(n_sections, 5)
    store = EntityStore()
    store.load_payload({
        "sections": sections,
        "signals": build_signals(sections),
        "platforms": build_platforms(sections, 4),
        "trains": build_trains(n_trains, sections),
    })
    processor = CommandProcessor(store)
    outcomes: Counter = Counter()
    t0 = time.perf_counter()
    for _ in range(n_commands):
        cmd = random_command(store)
        try:
            processor.execute(cmd)
            outcomes["accepted"] += 1
        except RailOpsError as e:
            outcomes[getattr(e, "rule", e.code)] += 1
    dt = time.perf_counter() - t0
    return {
        "sections": len(store.list(EntityKind.SECTION)),
        "trains": len(store.list(EntityKind.TRAIN)),
        "commands": n_commands,
        "elapsed_s": dt,
        "outcomes": dict(outcomes),
        "violations": [v.message for v in check_state(store.snapshot())],
    }


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument('-Sections', type=int, default=30)
    ap.add_argument('-Trains', type=int, default=12)
    ap.add_argument('-Commands', type=int, default=2000)
    ap.add_argument('-Repeats', type=int, default=3)
    ap.add_argument('-Json', action='store_true')
    args = ap.parse_args()

    random.seed(42)
    rows = []
    for _ in range(args.Repeats):
        row = run_once(args.Sections, args.Trains, args.Commands)
        rows.append(row)
        if args.Json:
            print(json.dumps(row))
        else:
            rate = row['commands'] / row['elapsed_s'] if row['elapsed_s'] else 0.0
            print(f"Commands={row['commands']:<6} elapsed={row['elapsed_s']*1000:8.2f} ms rate={rate:9.0f}/s "
                  f"accepted={row['outcomes'].get('accepted', 0):<5} violations={len(row['violations'])}")
    if not args.Json:
        print('\nRejections by rule (all runs)')
        total: Counter = Counter()
        for r in rows:
            total.update({k: v for k, v in r['outcomes'].items() if k != 'accepted'})
        for rule, n in total.most_common():
            print(f"  {rule:<28} {n}")
        print(f"Mean elapsed: {statistics.fmean(r['elapsed_s'] for r in rows) * 1000:.2f} ms")


if __name__ == '__main__':
    main()
