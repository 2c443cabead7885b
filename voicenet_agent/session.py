"""
Session lifecycle and the process-wide call -> session index.

A Session exists while an agent is engaged on a call. The orchestrator owns
it; CallSessionRegistry only indexes live sessions so that a later tool result
reaches the stream that is already open.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from logging_setup import get_logger, Component

from .models import Call, PromptConfig, ToolDescriptor

if TYPE_CHECKING:
    from .event_stream import EventStream


logger = get_logger(Component.SESSION_REGISTRY)


class SessionState(str, Enum):
    """Orchestration states per call."""
    IDLE = "idle"
    CREATING_SESSION = "creating_session"
    STREAMING = "streaming"
    ENDING = "ending"
    ENDED = "ended"
    FAILED = "failed"


@dataclass
class Session:
    """Orchestration state bound to one call."""

    call_id: str
    prompt: PromptConfig
    endpoint: str
    tools: Tuple[ToolDescriptor, ...] = ()
    call: Optional[Call] = None
    state: SessionState = SessionState.IDLE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None

    # Set by stop() while the session is still being created
    stop_requested: bool = field(default=False, repr=False)

    # Non-owning handles; the orchestrator manages both
    stream: Optional["EventStream"] = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.call_id:
            raise ValueError("call_id is required")
        # Snapshot: later provider changes never leak into a live session
        self.tools = tuple(self.tools)

    def transition_to(self, new_state: SessionState) -> SessionState:
        """Move to a new state and return the previous one."""
        old_state = self.state
        self.state = new_state
        return old_state

    def end(self, reason: Optional[str]) -> None:
        self.transition_to(SessionState.ENDING)
        self.transition_to(SessionState.ENDED)
        self.ended_at = datetime.now(timezone.utc)
        self.end_reason = reason

    def fail(self, reason: str) -> None:
        self.transition_to(SessionState.FAILED)
        self.ended_at = datetime.now(timezone.utc)
        self.end_reason = reason

    def is_terminal(self) -> bool:
        return self.state in (SessionState.ENDED, SessionState.FAILED)


class CallSessionRegistry:
    """
    call_id -> live Session.

    The lock guards plain dict operations only and is never held across an
    await, so it is safe from both the event loop and server worker threads.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def register(self, session: Session) -> bool:
        """Insert a session; False if the call already has a live one."""
        with self._lock:
            existing = self._sessions.get(session.call_id)
            if existing is not None and existing is not session and not existing.is_terminal():
                return False
            self._sessions[session.call_id] = session
        logger.debug("Session registered", call_id=session.call_id)
        return True

    def get(self, call_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(call_id)

    def remove(self, call_id: str, session: Optional[Session] = None) -> Optional[Session]:
        """
        Drop the entry for call_id. When `session` is given, only drop it if
        it is still the registered one (a newer session may have replaced it).
        """
        with self._lock:
            current = self._sessions.get(call_id)
            if current is None or (session is not None and current is not session):
                return None
            del self._sessions[call_id]
        logger.debug("Session removed", call_id=call_id)
        return current

    def list_sessions(self, state: Optional[SessionState] = None) -> List[Session]:
        with self._lock:
            sessions = list(self._sessions.values())
        if state:
            sessions = [s for s in sessions if s.state == state]
        return sessions

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __contains__(self, call_id: object) -> bool:
        with self._lock:
            return call_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# Global registry
session_registry = CallSessionRegistry()
