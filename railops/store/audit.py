import json
from pathlib import Path
from typing import Any, Dict

AUDIT_DIR = Path.cwd() / "audit"
AUDIT_FILE = AUDIT_DIR / "commands.jsonl"


def set_audit_path(path: Path) -> None:
    global AUDIT_DIR, AUDIT_FILE
    AUDIT_FILE = Path(path)
    AUDIT_DIR = AUDIT_FILE.parent


def write_audit(event: Dict[str, Any]) -> None:
    # append a JSONL entry
    AUDIT_DIR.mkdir(parents=True, exist_ok=True)
    with AUDIT_FILE.open("a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
