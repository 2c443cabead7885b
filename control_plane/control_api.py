"""
Control API.

This module exposes:
- Read API: list sessions, get session details, query a session's events
- Write API: submit a tool result, stop a session
- Media library and dispatch subscription management

Implementation notes:
- Collaborators come from control_plane.runtime via Depends().
- Errors keep the VoiceNetError payload shape as `detail`: code, message, callId.
- Emits auditable events: control.command_received / control.command_applied.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from observability.events import Component as ObsComponent, EventEmitter, Severity
from observability.event_store import event_store
from voicenet_agent.command_client import CommandClient
from voicenet_agent.errors import ErrorCode
from voicenet_agent.models import Outcome
from voicenet_agent.orchestrator import SessionOrchestrator
from voicenet_agent.session import Session, SessionState

from .runtime import get_command_client, get_orchestrator, get_subscription_manager
from .subscriptions import SubscriptionManager


router = APIRouter(prefix="/control", tags=["control"])
emitter = EventEmitter(ObsComponent.CONTROL_PLANE)

_ERROR_STATUS = {
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.NOT_CONNECTED: 409,
    ErrorCode.INVALID_TOOL_RESULT: 422,
    ErrorCode.STREAM_FAULT: 502,
    ErrorCode.COMMAND_FAILED: 502,
}


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"


def _raise_for_outcome(outcome: Outcome) -> None:
    if outcome.ok or outcome.error is None:
        return
    status = _ERROR_STATUS.get(outcome.error.code, 400)
    raise HTTPException(status_code=status, detail=outcome.error.to_payload())


def _not_found(call_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail={
        "code": ErrorCode.SESSION_NOT_FOUND,
        "message": "Session not found",
        "callId": call_id,
    })


def _parse_timestamp(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        # '+' in a query string may arrive as a space
        cleaned = value.replace(" ", "+").replace("Z", "+00:00")
        if "+" not in cleaned and "-" not in cleaned[-6:]:
            cleaned += "+00:00"
        return datetime.fromisoformat(cleaned)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")


# --- Read API ---


class SessionSummary(BaseModel):
    call_id: str
    state: str
    created_at: str
    ended_at: Optional[str] = None
    end_reason: Optional[str] = None


class SessionDetail(SessionSummary):
    endpoint: str
    locale: str
    barge_in: bool
    tools: List[str] = Field(default_factory=list)
    stream_state: Optional[str] = None
    caller_number: Optional[str] = None
    callee_number: Optional[str] = None


def _summary(session: Session) -> SessionSummary:
    return SessionSummary(
        call_id=session.call_id,
        state=session.state.value,
        created_at=session.created_at.isoformat(),
        ended_at=session.ended_at.isoformat() if session.ended_at else None,
        end_reason=session.end_reason,
    )


@router.get("/sessions", response_model=List[SessionSummary])
async def list_sessions(
    state: Optional[str] = Query(None, description="Filter by state (streaming, ending, ...)"),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> List[SessionSummary]:
    """List live sessions."""
    state_filter: Optional[SessionState] = None
    if state:
        try:
            state_filter = SessionState(state.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid state: {state}")

    return [_summary(s) for s in orchestrator.registry.list_sessions(state=state_filter)]


@router.get("/sessions/{call_id}", response_model=SessionDetail)
async def get_session(
    call_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> SessionDetail:
    session = orchestrator.get_session(call_id)
    if session is None:
        raise _not_found(call_id)

    return SessionDetail(
        **_summary(session).model_dump(),
        endpoint=session.endpoint,
        locale=session.prompt.locale,
        barge_in=session.prompt.barge_in,
        tools=[tool.name for tool in session.tools],
        stream_state=session.stream.state.value if session.stream else None,
        caller_number=session.call.from_number if session.call else None,
        callee_number=session.call.to_number if session.call else None,
    )


@router.get("/sessions/{call_id}/events")
async def get_session_events(
    call_id: str,
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    component: Optional[str] = Query(None, description="Filter by component"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Structured events recorded for one call."""
    if orchestrator.get_session(call_id) is None:
        raise _not_found(call_id)

    events = event_store.query(
        call_id=call_id,
        event_type=event_type,
        component=component,
        since=_parse_timestamp(since, "since"),
        until=_parse_timestamp(until, "until"),
        limit=limit,
    )
    return {"call_id": call_id, "events": events, "count": len(events)}


# --- Write API ---


class ToolResultRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_call_id: str = Field(..., min_length=1, alias="toolCallId")
    name: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)


@router.post("/sessions/{call_id}/tool-result")
async def submit_tool_result(
    call_id: str,
    req: ToolResultRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Send a tool result over the call's open stream."""
    correlation_id = req.tool_call_id
    emitter.emit(
        "control.command_received",
        call_id,
        correlation_id=correlation_id,
        command="tool.result",
    )

    outcome = await orchestrator.submit_tool_result(
        call_id, {"toolCallId": req.tool_call_id, "name": req.name, "result": req.result},
    )

    emitter.emit(
        "control.command_applied",
        call_id,
        severity=Severity.INFO if outcome.ok else Severity.ERROR,
        correlation_id=correlation_id,
        command="tool.result",
        result=outcome.status,
        error_code=outcome.error.code if outcome.error else None,
    )
    _raise_for_outcome(outcome)
    return outcome.to_payload()


@router.post("/sessions/{call_id}/stop")
async def stop_session(
    call_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict:
    correlation_id = _new_correlation_id()
    emitter.emit("control.command_received", call_id, correlation_id=correlation_id,
                 command="session.stop")

    outcome = await orchestrator.stop(call_id)

    emitter.emit(
        "control.command_applied",
        call_id,
        severity=Severity.INFO if outcome.ok else Severity.ERROR,
        correlation_id=correlation_id,
        command="session.stop",
        result=outcome.status,
    )
    _raise_for_outcome(outcome)
    return outcome.to_payload()


# --- Media library ---


@router.get("/media/assets")
async def list_media_assets(client: CommandClient = Depends(get_command_client)) -> dict:
    outcome = await client.list_media_assets()
    _raise_for_outcome(outcome)
    assets = outcome.data.get("assets", [])
    return {"assets": assets, "count": len(assets)}


# --- Subscriptions ---


class SubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow_id: str = Field(..., min_length=1, alias="workflowId")
    node_id: str = Field(..., min_length=1, alias="nodeId")
    callback_url: str = Field(..., min_length=1, alias="callbackUrl")
    did: str = Field(..., min_length=1)


@router.post("/subscriptions")
async def register_subscription(
    req: SubscriptionRequest,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> dict:
    outcome = await manager.register(req.workflow_id, req.node_id, req.callback_url, req.did)
    _raise_for_outcome(outcome)
    return outcome.to_payload()


@router.delete("/subscriptions")
async def unregister_subscription(
    workflow_id: str = Query(..., min_length=1, alias="workflowId"),
    node_id: str = Query(..., min_length=1, alias="nodeId"),
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> dict:
    outcome = await manager.unregister(workflow_id, node_id)
    _raise_for_outcome(outcome)
    return outcome.to_payload()
