import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from railops.core.models import Entity, EntityKind, RailwayState, to_dict

DATA_DIR = Path.cwd() / "data"
DB_PATH: Path = DATA_DIR / "railops.db"

# Seed/payload key for each entity kind
PAYLOAD_KEYS = {
    EntityKind.TRAIN: "trains",
    EntityKind.SIGNAL: "signals",
    EntityKind.PLATFORM: "platforms",
    EntityKind.SECTION: "sections",
}


def set_db_path(path: Path) -> None:
    global DB_PATH
    DB_PATH = Path(path)


def _conn() -> sqlite3.Connection:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    with _conn() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS entities (
                kind TEXT NOT NULL,
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                payload TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (kind, id)
            )
            """
        )
        conn.commit()


def save_entity(kind: EntityKind, entity: Entity) -> None:
    with _conn() as conn:
        conn.execute(
            """
            INSERT INTO entities(kind, id, version, payload) VALUES(?, ?, ?, ?)
            ON CONFLICT(kind, id) DO UPDATE SET
                version=excluded.version,
                payload=excluded.payload,
                updated_at=CURRENT_TIMESTAMP
            """,
            (kind.value, entity.id, entity.version, json.dumps(to_dict(entity), ensure_ascii=False)),
        )
        conn.commit()


def save_snapshot(state: RailwayState) -> int:
    """Replace the stored railway with ``state``; returns the number of rows written."""
    rows = [
        (kind.value, e.id, e.version, json.dumps(to_dict(e), ensure_ascii=False))
        for kind in EntityKind
        for e in state.of(kind).values()
    ]
    with _conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM entities")
        cur.executemany("INSERT INTO entities(kind, id, version, payload) VALUES(?, ?, ?, ?)", rows)
        conn.commit()
    return len(rows)


def load_snapshot() -> Optional[Dict[str, List[Dict[str, Any]]]]:
    """Stored railway as a seed payload, or None when nothing has been saved."""
    with _conn() as conn:
        rows = conn.execute("SELECT kind, payload FROM entities ORDER BY kind, id").fetchall()
    if not rows:
        return None
    payload: Dict[str, List[Dict[str, Any]]] = {key: [] for key in PAYLOAD_KEYS.values()}
    for r in rows:
        payload[PAYLOAD_KEYS[EntityKind(r["kind"])]].append(json.loads(r["payload"]))
    return payload


def entity_versions() -> Dict[str, int]:
    with _conn() as conn:
        rows = conn.execute("SELECT kind, id, version FROM entities").fetchall()
        return {f"{r['kind']}/{r['id']}": int(r["version"]) for r in rows}
