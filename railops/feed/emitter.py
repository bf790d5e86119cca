from __future__ import annotations

import itertools
import logging
import queue
import threading
from typing import Any, Dict, List, Optional

from railops.core.models import ChangeEvent, to_plain

logger = logging.getLogger(__name__)


class Subscription:
    """One subscriber's bounded inbox.

    When the inbox is full the oldest event is dropped and ``overflowed`` is
    set; the subscriber has lost events and must re-fetch full state.
    """

    def __init__(self, feed: "ChangeFeed", sid: int, maxsize: int) -> None:
        self._feed = feed
        self.id = sid
        self._queue: "queue.Queue[ChangeEvent]" = queue.Queue(maxsize=maxsize)
        self.overflowed = False
        self.closed = False
        self.dropped = 0

    def _offer(self, event: ChangeEvent) -> bool:
        dropped = False
        while True:
            try:
                self._queue.put_nowait(event)
                return dropped
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                    self.overflowed = True
                    dropped = True
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None if nothing arrived within ``timeout`` seconds."""
        try:
            if timeout is not None and timeout <= 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[ChangeEvent]:
        out: List[ChangeEvent] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except queue.Empty:
                return out

    def resync(self) -> None:
        """Acknowledge an overflow after the subscriber re-fetched full state."""
        self.drain()
        self.overflowed = False

    def close(self) -> None:
        self._feed.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class ChangeFeed:
    """Fan-out of applied deltas. Publishing never blocks on subscribers."""

    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subs: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count(1)

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        with self._lock:
            sub = Subscription(self, next(self._ids), maxsize or self.queue_size)
            self._subs[sub.id] = sub
        logger.debug("Subscriber %d attached", sub.id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subs.pop(sub.id, None)
        sub.closed = True
        logger.debug("Subscriber %d detached", sub.id)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def next_seq(self) -> int:
        return next(self._seq)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every subscriber; returns how many received it."""
        with self._lock:
            subs = list(self._subs.values())
        for sub in subs:
            if sub._offer(event):
                logger.warning("Subscriber %d is behind, %d events dropped", sub.id, sub.dropped)
        return len(subs)


def event_to_dict(event: ChangeEvent) -> Dict[str, Any]:
    return {
        "type": "change",
        "seq": event.seq,
        "kind": event.kind.value,
        "id": event.entity_id,
        "before": event.before,
        "after": event.after,
        "at": to_plain(event.at),
        "command": event.command,
        "version": event.version,
    }
