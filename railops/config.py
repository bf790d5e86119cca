from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

# Load .env early (no error if missing)
load_dotenv()

DATA_DIR = Path(__file__).parent / "data"


@dataclass(frozen=True)
class RailOpsConfig:
    # Seed railway loaded at startup when no saved snapshot exists
    seed_path: str = os.getenv("RAILOPS_SEED_PATH", str(DATA_DIR / "sample_railway.json"))
    # Optional sqlite snapshot; empty disables persistence
    db_path: str | None = os.getenv("RAILOPS_DB_PATH") or None
    audit_path: str | None = os.getenv("RAILOPS_AUDIT_PATH") or None
    feed_queue_size: int = int(os.getenv("RAILOPS_FEED_QUEUE_SIZE", "256"))
    log_level: str = os.getenv("RAILOPS_LOG_LEVEL", "INFO").upper()
    critical_delay_minutes: int = int(os.getenv("RAILOPS_CRITICAL_DELAY_MINUTES", "30"))

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.db_path)
