from typing import Any, Dict, Iterable, List, Optional

from .models import Platform, PlatformStatus, Priority, Signal, SignalState, Train, TrainStatus

# Dashboard aggregates over snapshot rows (no state of their own)


def train_counts(trains: Iterable[Train]) -> Dict[str, int]:
    trains = list(trains)
    out = {"total": len(trains)}
    for status in TrainStatus:
        out[status.value] = sum(1 for t in trains if t.status == status)
    return out


def signal_counts(signals: Iterable[Signal]) -> Dict[str, int]:
    signals = list(signals)
    out = {"total": len(signals)}
    for state in SignalState:
        out[state.value] = sum(1 for s in signals if s.state == state)
    out["automatic"] = sum(1 for s in signals if s.is_automatic)
    return out


def platform_counts(platforms: Iterable[Platform]) -> Dict[str, int]:
    platforms = list(platforms)
    out = {"total": len(platforms)}
    for status in PlatformStatus:
        out[status.value] = sum(1 for p in platforms if p.status == status)
    return out


def critical_trains(trains: Iterable[Train], delay_threshold: int = 30) -> List[Train]:
    # stopped, badly delayed, or high priority
    return [
        t for t in trains
        if t.status == TrainStatus.STOPPED or t.delay_minutes > delay_threshold or t.priority == Priority.HIGH
    ]


def filter_trains(
    trains: Iterable[Train],
    type: Optional[str] = "all",
    status: Optional[str] = "all",
    search: Optional[str] = "",
) -> List[Train]:
    out = list(trains)
    if type and type != "all":
        out = [t for t in out if t.type.value == type]
    if status and status != "all":
        out = [t for t in out if t.status.value == status]
    if search:
        q = search.lower()
        out = [
            t for t in out
            if q in t.number.lower() or q in t.name.lower()
            or q in (t.location or "").lower() or q in t.destination.lower()
        ]
    return out


def platforms_by_station(platforms: Iterable[Platform]) -> Dict[str, Dict[str, Any]]:
    groups: Dict[str, Dict[str, Any]] = {}
    for p in sorted(platforms, key=lambda p: (p.station_code, p.platform_number)):
        g = groups.setdefault(p.station_code, {"name": p.station_name, "platforms": []})
        g["platforms"].append(p)
    return groups


def dashboard_summary(trains: List[Train], signals: List[Signal], platforms: List[Platform],
                      delay_threshold: int = 30) -> Dict[str, Any]:
    return {
        "trains": train_counts(trains),
        "signals": signal_counts(signals),
        "platforms": platform_counts(platforms),
        "critical_trains": [t.number for t in critical_trains(trains, delay_threshold)],
        "total_delay_minutes": sum(t.delay_minutes for t in trains),
    }
