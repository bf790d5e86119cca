"""Synthetic railway generator: a main line with junctions, yards and stations."""
import argparse, random, json, os, sys
from typing import Dict, List

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

TRAIN_TYPES = ["express", "local", "freight", "special"]
PRIORITIES = ["high", "medium", "low"]


def build_sections(n: int, yard_every: int) -> List[Dict]:
    # main line S1..Sn; every `yard_every`-th section is a junction with a yard spur
    out: List[Dict] = []
    for i in range(1, n + 1):
        conns = [f"S{j}" for j in (i - 1, i + 1) if 1 <= j <= n]
        is_junction = yard_every > 0 and i % yard_every == 0
        if is_junction:
            conns.append(f"Y{i}")
        out.append({"id": f"S{i}", "name": f"Section {i}", "type": "junction" if is_junction else "main", "connections": conns})
        if is_junction:
            out.append({"id": f"Y{i}", "name": f"Yard {i}", "type": "yard", "connections": [f"S{i}"], "is_workshop": random.random() < 0.5})
    return out


def build_signals(sections: List[Dict]) -> List[Dict]:
    main = [s["id"] for s in sections if s["type"] != "yard"]
    return [
        {"code": f"SIG-{a}", "name": f"{a} Starter", "state": "red", "location": f"{a} exit", "section": a, "protects": b,
         "is_automatic": random.random() < 0.6}
        for a, b in zip(main, main[1:])
    ]


def build_platforms(sections: List[Dict], station_every: int) -> List[Dict]:
    out: List[Dict] = []
    main = [s["id"] for s in sections if s["type"] == "main"]
    for k, sid in enumerate(main[::max(1, station_every)]):
        for num in range(1, random.randint(1, 3) + 1):
            out.append({"station_code": f"ST{k+1}", "platform_number": str(num), "station_name": f"Station {k+1}",
                        "section": sid, "capacity": random.choice([12, 18, 24])})
    return out


def build_trains(n: int, sections: List[Dict]) -> List[Dict]:
    # at most one train per main/junction section; yards take the rest
    singles = [s["id"] for s in sections if s["type"] != "yard"]
    yards = [s for s in sections if s["type"] == "yard"]
    random.shuffle(singles)
    trains: List[Dict] = []
    for i in range(n):
        if singles:
            loc = singles.pop()
            status = random.choice(["running", "delayed", "stopped"])
        elif yards:
            yard = random.choice(yards)
            loc = yard["id"]
            status = "maintenance" if yard.get("is_workshop") else "stopped"
        else:
            break
        delay = random.randint(1, 45) if status == "delayed" else 0
        trains.append({
            "number": str(10000 + i),
            "name": f"Train {i+1}",
            "type": random.choice(TRAIN_TYPES),
            "status": status,
            "location": loc,
            "destination": f"Station {random.randint(1, 9)}",
            "delay_minutes": delay,
            "priority": random.choice(PRIORITIES),
        })
    return trains


def main():
    p = argparse.ArgumentParser()
    p.add_argument('-Sections', type=int, default=30)
    p.add_argument('-Trains', type=int, default=12)
    p.add_argument('-YardEvery', type=int, default=5)
    p.add_argument('-StationEvery', type=int, default=4)
    p.add_argument('-Seed', type=int, default=42)
    p.add_argument('-Out', type=str, default='large_railway.json')
    a = p.parse_args()

    random.seed(a.Seed)
    sections = build_sections(a.Sections, a.YardEvery)
    railway = {
        "sections": sections,
        "signals": build_signals(sections),
        "platforms": build_platforms(sections, a.StationEvery),
        "trains": build_trains(a.Trains, sections),
    }
    with open(a.Out, 'w') as f:
        json.dump(railway, f, indent=2)
    print(f"Wrote {len(sections)} sections, {len(railway['trains'])} trains, "
          f"{len(railway['signals'])} signals & {len(railway['platforms'])} platforms -> {a.Out}")


if __name__ == '__main__':
    main()
