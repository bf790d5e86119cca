import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict

from railops.config import DATA_DIR, RailOpsConfig
from railops.core.commands import CommandProcessor, Hold, MoveTrain, Proceed, Reroute
from railops.core.entity_store import EntityStore
from railops.core.errors import RailOpsError
from railops.core.models import EntityKind
from railops.core.summary import dashboard_summary
from railops.feed.emitter import ChangeFeed, event_to_dict


def load_railway(path: Path) -> Dict[str, Any]:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def main() -> None:
    cfg = RailOpsConfig()
    p = argparse.ArgumentParser(description="Run a short operator session against a railway seed.")
    p.add_argument("--seed", default=cfg.seed_path or str(DATA_DIR / "sample_railway.json"))
    p.add_argument("--log-level", default=cfg.log_level)
    a = p.parse_args()
    logging.basicConfig(level=a.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    store = EntityStore()
    store.load_payload(load_railway(a.seed))
    feed = ChangeFeed(queue_size=cfg.feed_queue_size)
    processor = CommandProcessor(store, feed)

    session = [
        Reroute("12345", 10),
        MoveTrain("12345", "B"),
        Hold("12345"),
        Proceed("12345"),
        Proceed("56789"),
        # rejected: C is occupied by 56789
        MoveTrain("12345", "C"),
    ]
    with feed.subscribe() as sub:
        for cmd in session:
            try:
                processor.execute(cmd)
            except RailOpsError as e:
                print(f"{cmd.name} {cmd.train}: rejected ({e})")
        for event in sub.drain():
            print(json.dumps(event_to_dict(event)))

    print("Summary:", json.dumps(dashboard_summary(
        store.list(EntityKind.TRAIN), store.list(EntityKind.SIGNAL), store.list(EntityKind.PLATFORM),
        delay_threshold=cfg.critical_delay_minutes,
    ), indent=2))


if __name__ == "__main__":
    main()
