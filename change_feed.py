"""In-process change notification bus.

Two kinds of topics share one cursor space:

* ``session:<id>`` carries row-change events published by the game service
  after each committed write.
* broadcast channels (``lobby:<id>``, ``game:<id>``) carry unpersisted peer
  messages relayed as-is.

Subscribers long-poll with the last sequence number they saw. Retention per
topic is bounded; a cursor that fell out of the window gets ``reset: True``
and the subscriber is expected to refetch its snapshot.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Iterable

logger = logging.getLogger(__name__)

ROW_EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")
ROW_TABLES = ("sessions", "players", "turns", "guesses")


def session_topic(session_id: str) -> str:
    return f"session:{session_id}"


class ChangeFeed:
    RETENTION_PER_TOPIC = 500
    MAX_POLL_SECONDS = 30.0
    MAX_TOPICS = 5000

    def __init__(self):
        self._condition = threading.Condition()
        self._topics: dict[str, deque[dict]] = {}
        self._seq = 0

    @property
    def head(self) -> int:
        with self._condition:
            return self._seq

    def publish_row_change(
        self, session_id: str, table: str, event_type: str, row: dict
    ) -> int:
        if table not in ROW_TABLES:
            raise ValueError(f"Unknown table: {table}")
        if event_type not in ROW_EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        return self._append(
            session_topic(session_id),
            {
                "kind": "row",
                "eventType": event_type,
                "table": table,
                "row": dict(row),
            },
        )

    def broadcast(self, channel: str, message: dict) -> int:
        return self._append(channel, {"kind": "broadcast", "message": dict(message)})

    def poll(
        self,
        topic: str,
        after: int | None,
        *,
        timeout: float = 0.0,
        tables: Iterable[str] | None = None,
    ) -> dict:
        """Return events on ``topic`` newer than ``after``.

        ``after=None`` is the subscribe handshake: it returns the current head
        immediately so the caller can start from there.
        """
        table_filter = set(tables) if tables else None
        deadline = time.monotonic() + max(0.0, min(float(timeout), self.MAX_POLL_SECONDS))

        with self._condition:
            if after is None:
                return {"cursor": self._seq, "events": [], "reset": False}

            while True:
                events, reset, latest = self._collect(topic, int(after), table_filter)
                if events or reset or latest > int(after):
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._condition.wait(remaining)

            cursor = max(latest, int(after), 0)
            if reset:
                cursor = self._seq
            return {"cursor": cursor, "events": events, "reset": reset}

    def drop_topic(self, topic: str) -> None:
        with self._condition:
            self._topics.pop(topic, None)

    def drop_session(self, session_id: str) -> None:
        # Keep the deletion events readable for a while; only trim the backlog.
        with self._condition:
            for name in (session_topic(session_id), f"lobby:{session_id}", f"game:{session_id}"):
                bucket = self._topics.get(name)
                if bucket and len(bucket) > 10:
                    retained = list(bucket)[-10:]
                    bucket.clear()
                    bucket.extend(retained)

    def topic_count(self) -> int:
        with self._condition:
            return len(self._topics)

    def _append(self, topic: str, event: dict) -> int:
        with self._condition:
            self._seq += 1
            event["seq"] = self._seq
            event["topic"] = topic
            event["at"] = time.time()
            bucket = self._topics.get(topic)
            if bucket is None:
                if len(self._topics) >= self.MAX_TOPICS:
                    self._evict_oldest_topic()
                bucket = deque(maxlen=self.RETENTION_PER_TOPIC)
                self._topics[topic] = bucket
            bucket.append(event)
            self._condition.notify_all()
            return self._seq

    def _collect(
        self, topic: str, after: int, table_filter: set[str] | None
    ) -> tuple[list[dict], bool, int]:
        bucket = self._topics.get(topic)
        if not bucket:
            return [], False, after
        oldest = bucket[0]["seq"]
        reset = after < oldest - 1 and len(bucket) == bucket.maxlen
        events = [
            dict(event)
            for event in bucket
            if event["seq"] > after
            and (
                table_filter is None
                or event["kind"] != "row"
                or event["table"] in table_filter
            )
        ]
        return events, reset, bucket[-1]["seq"]

    def _evict_oldest_topic(self) -> None:
        oldest_topic = min(
            self._topics,
            key=lambda name: self._topics[name][-1]["seq"] if self._topics[name] else 0,
        )
        logger.info("Change feed evicting idle topic %s", oldest_topic)
        self._topics.pop(oldest_topic, None)
