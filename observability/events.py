"""
Structured JSON event emission (shared).

Used by the command client, event stream, orchestrator and control plane.
Every event is written as one JSON line to stdout and kept in the in-memory
event store for the control read API. Emission never raises into callers.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .event_store import EventStore, event_store


class Component(str, Enum):
    """Emitting components."""

    CONTROL_PLANE = "control_plane"
    COMMAND_CLIENT = "command_client"
    EVENT_STREAM = "event_stream"
    ORCHESTRATOR = "orchestrator"
    SUBSCRIPTIONS = "subscriptions"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventEmitter:
    """Emits structured call events."""

    def __init__(self, component: Component, store: Optional[EventStore] = None):
        self.component = component
        self.store = store if store is not None else event_store

    def emit(
        self,
        event_type: str,
        call_id: Optional[str],
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "call_id": call_id or "",
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or call_id or "",
        }
        event.update({k: v for k, v in kwargs.items() if v is not None})

        try:
            sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
            sys.stdout.write("\n")
            sys.stdout.flush()
        except (OSError, ValueError):
            # stdout closed or detached; the store still gets the event
            pass

        self.store.store(event)

