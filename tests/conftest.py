import copy
from datetime import datetime, timezone

import pytest

from railops.core.commands import CommandProcessor
from railops.core.entity_store import EntityStore
from railops.feed.emitter import ChangeFeed
from railops.store import audit

# A - B - C main line, yard Y off junction B, platforms at A and C.
SMALL_RAILWAY = {
    "sections": [
        {"id": "A", "name": "Station A", "type": "main", "connections": ["B"]},
        {"id": "B", "name": "Junction B", "type": "junction", "connections": ["A", "C", "Y"]},
        {"id": "C", "name": "Station C", "type": "main", "connections": ["B"]},
        {"id": "Y", "name": "Yard Y", "type": "yard", "connections": ["B"]},
    ],
    "trains": [
        {"number": "100", "name": "Express 100", "type": "express", "status": "running", "location": "A",
         "destination": "Station C", "priority": "high"},
        {"number": "200", "name": "Local 200", "type": "local", "status": "delayed", "location": "C",
         "destination": "Station A", "delay_minutes": 5, "priority": "medium"},
        {"number": "300", "name": "Freight 300", "type": "freight", "status": "stopped", "location": "Y",
         "destination": "Port", "delay_minutes": 40, "priority": "low"},
    ],
    "signals": [
        {"code": "SIG-1", "name": "A Starter", "state": "red", "section": "A", "protects": "B", "is_automatic": True},
        {"code": "SIG-2", "name": "B Home", "state": "red", "section": "B", "protects": "C"},
    ],
    "platforms": [
        {"station_code": "STA", "platform_number": "1", "station_name": "Station A", "section": "A"},
        {"station_code": "STA", "platform_number": "2", "station_name": "Station A", "section": "A"},
        {"station_code": "STC", "platform_number": "1", "station_name": "Station C", "section": "C"},
    ],
}

T0 = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _isolate_audit(tmp_path):
    audit.set_audit_path(tmp_path / "audit" / "commands.jsonl")
    yield audit.AUDIT_FILE


@pytest.fixture
def small_railway():
    return copy.deepcopy(SMALL_RAILWAY)


@pytest.fixture
def store(small_railway):
    s = EntityStore()
    s.load_payload(small_railway)
    return s


@pytest.fixture
def feed():
    return ChangeFeed(queue_size=64)


@pytest.fixture
def processor(store, feed):
    return CommandProcessor(store, feed, clock=lambda: T0)
