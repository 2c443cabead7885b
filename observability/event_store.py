"""
In-memory store for structured call events, queryable by call_id.

Bounded FIFO: once full, the oldest event is evicted for each new one and
counted in `get_stats()["evicted_events"]`.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

# (parsed timestamp, event as emitted)
_Entry = Tuple[datetime, Dict[str, Any]]


def _parse_ts(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    return datetime.now(timezone.utc)


class EventStore:
    """Thread-safe ring buffer of event envelopes (default 10,000)."""

    def __init__(self, max_events: int = 10000):
        self._max_events = max_events
        self._entries: Deque[_Entry] = deque(maxlen=max_events)
        self._evicted = 0
        self._lock = threading.Lock()

    def store(self, event: Dict[str, Any]) -> None:
        entry: _Entry = (_parse_ts(event.get("ts")), dict(event))
        entry[1].setdefault("call_id", "")
        entry[1].setdefault("component", "unknown")
        entry[1].setdefault("event_type", "unknown")
        entry[1].setdefault("severity", "info")
        entry[1].setdefault("correlation_id", entry[1]["call_id"])
        with self._lock:
            if len(self._entries) == self._max_events:
                self._evicted += 1
            self._entries.append(entry)

    def query(
        self,
        call_id: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Events matching every given filter, oldest first.

        `since` and `until` are inclusive; `limit` keeps the oldest matches.
        """
        checks: List[Callable[[_Entry], bool]] = []
        if call_id:
            checks.append(lambda e: e[1]["call_id"] == call_id)
        if event_type:
            checks.append(lambda e: e[1]["event_type"] == event_type)
        if component:
            checks.append(lambda e: e[1]["component"] == component)
        if since:
            checks.append(lambda e: e[0] >= since)
        if until:
            checks.append(lambda e: e[0] <= until)

        with self._lock:
            snapshot = list(self._entries)

        matches: List[Dict[str, Any]] = []
        for entry in snapshot:
            if all(check(entry) for check in checks):
                matches.append(dict(entry[1], ts=entry[0].isoformat()))
                if limit and len(matches) >= limit:
                    break
        return matches

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._evicted = 0

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._entries)
            evicted = self._evicted
        return {
            "total_events": len(entries),
            "max_events": self._max_events,
            "evicted_events": evicted,
            "by_type": dict(Counter(e[1]["event_type"] for e in entries)),
            "oldest_event_ts": entries[0][0].isoformat() if entries else None,
            "newest_event_ts": entries[-1][0].isoformat() if entries else None,
        }


# Process-wide store shared by every EventEmitter
event_store = EventStore()
