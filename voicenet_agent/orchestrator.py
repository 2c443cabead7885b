"""
Per-call session orchestration.

For each call: collect tools, create the backend session, open the event
stream and run one task that dispatches stream events in arrival order to the
output sinks (tool call, transfer, end, error). Tool results travel back over
the already-open stream of the same call.

States per call:
    idle -> creating_session -> streaming -> ending -> ended
    failed from creating_session or streaming

Failures are per call: every public operation returns an Outcome and a
failing call never blocks or cancels another call's orchestration.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .command_client import CommandClient
from .config import VoiceNetConfig
from .errors import (
    InvalidToolResult,
    NotConnected,
    SessionCreateError,
    SessionNotFound,
    StreamFault,
    VoiceNetError,
)
from .event_stream import (
    EndEvent,
    ErrorEvent,
    EventStream,
    ReconnectPolicy,
    StreamEvent,
    StreamFaultEvent,
    StreamState,
    ToolCallEvent,
    TransferEvent,
)
from .models import Call, Outcome, PromptConfig, ToolCall, ToolResult
from .session import CallSessionRegistry, Session, SessionState, session_registry
from .tools import ToolExecutor, ToolRegistry


logger = get_logger(LogComponent.ORCHESTRATOR)

Sink = Callable[[Dict[str, Any]], Any]
StreamFactory = Callable[[Session], EventStream]


@dataclass
class SessionSinks:
    """Output sinks; each takes one payload dict and may be sync or async."""

    tool_call: Optional[Sink] = None
    transfer: Optional[Sink] = None
    end: Optional[Sink] = None
    error: Optional[Sink] = None


@dataclass
class OutputCollector:
    """Collects sink payloads into lists, one per output."""

    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    transfers: List[Dict[str, Any]] = field(default_factory=list)
    ended: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def sinks(self) -> SessionSinks:
        return SessionSinks(
            tool_call=self.tool_calls.append,
            transfer=self.transfers.append,
            end=self.ended.append,
            error=self.errors.append,
        )


def item_call_id(item: Mapping[str, Any]) -> Optional[str]:
    """callId from an item: top-level `callId`, else `call.callId`."""
    call_id = item.get("callId")
    if isinstance(call_id, str) and call_id:
        return call_id
    call = item.get("call")
    if isinstance(call, Mapping):
        nested = call.get("callId")
        if isinstance(nested, str) and nested:
            return nested
    return None


class SessionOrchestrator:
    """Owns the sessions of this process."""

    def __init__(
        self,
        client: CommandClient,
        *,
        stream_endpoint: str,
        api_key: str,
        registry: Optional[CallSessionRegistry] = None,
        tools: Optional[ToolRegistry] = None,
        sinks: Optional[SessionSinks] = None,
        default_prompt: Optional[PromptConfig] = None,
        stream_factory: Optional[StreamFactory] = None,
        auto_execute_tools: bool = True,
        keepalive_interval: float = 30.0,
        connect_timeout: float = 10.0,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        stop_timeout: float = 5.0,
        max_finished_sessions: int = 1000,
        emitter: Optional[EventEmitter] = None,
    ):
        self.client = client
        self.stream_endpoint = stream_endpoint
        self.api_key = api_key
        self.registry = registry if registry is not None else session_registry
        self.tools = tools if tools is not None else ToolRegistry()
        self.sinks = sinks or SessionSinks()
        self.default_prompt = default_prompt or PromptConfig()
        self.auto_execute_tools = auto_execute_tools
        self.keepalive_interval = keepalive_interval
        self.connect_timeout = connect_timeout
        self.reconnect_policy = reconnect_policy
        self.stop_timeout = stop_timeout
        self.max_finished_sessions = max_finished_sessions
        self.emitter = emitter or EventEmitter(ObsComponent.ORCHESTRATOR)
        self._stream_factory = stream_factory or self._default_stream

        # Ended and failed sessions stay readable until evicted past max_finished_sessions
        self._sessions: Dict[str, Session] = {}
        self._creating: Dict[str, asyncio.Event] = {}
        self._tool_tasks: Dict[str, Set[asyncio.Task]] = {}

    @classmethod
    def from_config(
        cls, config: VoiceNetConfig, client: CommandClient, **kwargs: Any,
    ) -> "SessionOrchestrator":
        kwargs.setdefault("auto_execute_tools", config.auto_execute_tools)
        kwargs.setdefault("keepalive_interval", config.keepalive_interval_seconds)
        kwargs.setdefault("connect_timeout", config.connect_timeout_seconds)
        return cls(
            client,
            stream_endpoint=config.stream_endpoint,
            api_key=config.api_key,
            **kwargs,
        )

    # --- Entry points ---

    async def handle_item(
        self,
        item: Mapping[str, Any],
        *,
        prompt: Optional[PromptConfig] = None,
        providers: Iterable[Any] = (),
        endpoint: Optional[str] = None,
    ) -> Outcome:
        """
        Route one input item: a `toolResult` goes to the call's open stream,
        anything else starts a session for the call.
        """
        call_id = item_call_id(item)
        if call_id is None:
            error = SessionCreateError("callId is required")
            await self._deliver(self.sinks.error, error.to_payload())
            return Outcome.failure(None, error)

        tool_result = item.get("toolResult")
        if tool_result is not None:
            return await self.submit_tool_result(call_id, tool_result)

        call = None
        if isinstance(item.get("call"), Mapping):
            try:
                call = Call.from_payload(item["call"])
            except ValueError:
                call = None
        return await self.start(call_id, prompt=prompt, providers=providers, call=call,
                                endpoint=endpoint)

    async def process(self, items: Iterable[Mapping[str, Any]], **kwargs: Any) -> List[Outcome]:
        """
        Handle a batch of items. Different calls run concurrently; items of
        the same call run in their input order. Outcomes keep input order.
        """
        indexed = list(enumerate(items))
        groups: "OrderedDict[Optional[str], List[int]]" = OrderedDict()
        for index, item in indexed:
            groups.setdefault(item_call_id(item), []).append(index)

        outcomes: List[Optional[Outcome]] = [None] * len(indexed)

        async def run_group(indexes: List[int]) -> None:
            for index in indexes:
                outcomes[index] = await self.handle_item(indexed[index][1], **kwargs)

        await asyncio.gather(*(run_group(indexes) for indexes in groups.values()))
        return [outcome for outcome in outcomes if outcome is not None]

    async def accept_call(self, call: Call, **kwargs: Any) -> Outcome:
        """Answer an inbound call, then start its session once the answer succeeded."""
        answered = await self.client.answer(call.call_id)
        if not answered.ok:
            logger.warning("Call not answered; session not started", call_id=call.call_id)
            if answered.error is not None:
                await self._deliver(self.sinks.error, answered.error.to_payload())
            return answered
        return await self.start(call.call_id, call=call, **kwargs)

    async def start(
        self,
        call_id: str,
        *,
        prompt: Optional[PromptConfig] = None,
        providers: Iterable[Any] = (),
        call: Optional[Call] = None,
        endpoint: Optional[str] = None,
    ) -> Outcome:
        """Create the backend session and open its stream."""
        session_logger = logger.with_call(call_id)

        existing = self.registry.get(call_id)
        if call_id in self._creating or (existing is not None and not existing.is_terminal()):
            error = SessionCreateError("session already active for this call", call_id)
            session_logger.warning("Duplicate session start rejected")
            await self._deliver(self.sinks.error, error.to_payload())
            return Outcome.failure(call_id, error)

        prompt = prompt or self.default_prompt
        session = Session(
            call_id=call_id,
            prompt=prompt,
            endpoint=endpoint or self.stream_endpoint,
            tools=tuple(self.tools.collect(providers)),
            call=call,
        )
        # Re-insert so eviction order follows the latest start
        self._sessions.pop(call_id, None)
        self._sessions[call_id] = session
        self._prune_finished()

        started = asyncio.Event()
        self._creating[call_id] = started
        try:
            return await self._open_session(session, prompt)
        finally:
            self._creating.pop(call_id, None)
            started.set()

    async def _open_session(self, session: Session, prompt: PromptConfig) -> Outcome:
        call_id = session.call_id
        self._transition(session, SessionState.CREATING_SESSION)
        created = await self.client.create_session(call_id, session.tools, prompt)
        if not created.ok:
            message = created.error.message if created.error else "session create failed"
            details = {"kind": created.error.details.get("kind")} if created.error else {}
            return await self._fail_start(session, SessionCreateError(message, call_id, **details))
        if session.stop_requested:
            return await self._abandon_start(session)

        if not self.registry.register(session):
            return await self._fail_start(
                session, SessionCreateError("session already active for this call", call_id),
            )

        stream = self._stream_factory(session)
        session.stream = stream
        try:
            await stream.connect()
        except StreamFault as e:
            self.registry.remove(call_id, session)
            if session.stop_requested:
                return await self._abandon_start(session)
            return await self._fail_start(session, e)
        except NotConnected:
            # stop() closed the stream before the open completed
            return await self._abandon_start(session)
        if session.stop_requested:
            return await self._abandon_start(session)

        self._transition(session, SessionState.STREAMING)
        session.task = asyncio.get_running_loop().create_task(
            self._run(session), name=f"voicenet-session-{call_id}",
        )
        logger.info(
            "Session streaming",
            call_id=call_id,
            endpoint=session.endpoint,
            tools=[tool.name for tool in session.tools],
        )
        return Outcome.success(
            call_id,
            state=session.state.value,
            endpoint=session.endpoint,
            tools=len(session.tools),
        )

    async def submit_tool_result(
        self, call_id: str, tool_result: Mapping[str, Any] | ToolResult,
    ) -> Outcome:
        """
        Send a tool result over the call's open stream. No registered
        session means SessionNotFound and no network traffic.
        """
        session = self.registry.get(call_id)
        if session is None or session.stream is None:
            error = SessionNotFound(f"no active session for call {call_id}", call_id)
            logger.warning("Tool result for unknown session", call_id=call_id)
            return Outcome.failure(call_id, error)

        try:
            result = (
                tool_result if isinstance(tool_result, ToolResult)
                else ToolResult.from_payload(tool_result, call_id)
            )
        except InvalidToolResult as e:
            return Outcome.failure(call_id, e)

        try:
            await session.stream.send_tool_result(result)
        except (NotConnected, StreamFault) as e:
            logger.warning("Tool result not delivered", call_id=call_id,
                           tool_call_id=result.tool_call_id, code=e.code, error=e.message)
            return Outcome.failure(call_id, e)

        self.emitter.emit(
            "session.tool_result_sent",
            call_id,
            correlation_id=result.tool_call_id,
            tool=result.name,
            ok=result.result.get("ok"),
        )
        return Outcome.success(call_id, toolCallId=result.tool_call_id)

    async def stop(self, call_id: str) -> Outcome:
        """Tear a session down: close its stream and wait for its task."""
        session = self._sessions.get(call_id)
        if session is None or session.is_terminal():
            return Outcome.failure(
                call_id, SessionNotFound(f"no active session for call {call_id}", call_id),
            )

        session.end_reason = "stopped"
        starting = self._creating.get(call_id)
        if starting is not None:
            # start() sees the flag after create/connect and tears down itself
            session.stop_requested = True
            if session.stream is not None:
                await session.stream.close()
            try:
                await asyncio.wait_for(starting.wait(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("Session still creating; it ends once create returns",
                               call_id=call_id)
            return Outcome.success(call_id, state=session.state.value)

        if session.stream is not None:
            await session.stream.close()
        if session.task is not None and not session.task.done():
            try:
                await asyncio.wait_for(asyncio.shield(session.task), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("Session task did not finish; cancelling", call_id=call_id)
                session.task.cancel()
                await asyncio.wait([session.task])
        return Outcome.success(call_id, state=session.state.value)

    async def shutdown(self) -> None:
        """Stop every live session; used on process shutdown."""
        live = [call_id for call_id, s in self._sessions.items() if not s.is_terminal()]
        if live:
            logger.info("Shutting down sessions", count=len(live))
        await asyncio.gather(*(self.stop(call_id) for call_id in live))

    async def wait(self, call_id: str) -> Optional[Session]:
        """Wait until the call's session task has finished."""
        session = self._sessions.get(call_id)
        if session is not None and session.task is not None:
            await asyncio.wait([session.task])
        return session

    def get_session(self, call_id: str) -> Optional[Session]:
        return self._sessions.get(call_id)

    # --- Session task ---

    async def _run(self, session: Session) -> None:
        stream = session.stream
        assert stream is not None
        try:
            if stream.is_open:
                async for event in stream.events():
                    await self._dispatch(session, event)
        except Exception as e:
            logger.exception("Session loop crashed", call_id=session.call_id)
            if not session.is_terminal():
                self._transition(session, SessionState.FAILED)
                session.fail("internal_error")
            await self._deliver(self.sinks.error, {
                "code": "INTERNAL_ERROR",
                "message": str(e) or type(e).__name__,
                "callId": session.call_id,
            })
        finally:
            if not session.is_terminal():
                if stream.state == StreamState.FAULTED:
                    self._transition(session, SessionState.FAILED)
                    session.fail("stream_fault")
                else:
                    self._transition(session, SessionState.ENDING)
                    self._transition(session, SessionState.ENDED)
                    session.end(session.end_reason or "stream_closed")
            self.registry.remove(session.call_id, session)
            self._cancel_tool_tasks(session.call_id)
            await stream.close()
            self._prune_finished()
            logger.info("Session finished", call_id=session.call_id,
                        state=session.state.value, reason=session.end_reason)

    async def _dispatch(self, session: Session, event: StreamEvent) -> None:
        call_id = session.call_id
        if isinstance(event, ToolCallEvent):
            tool_call = event.tool_call
            self.emitter.emit(
                "session.tool_call", call_id,
                correlation_id=tool_call.tool_call_id, tool=tool_call.name,
            )
            await self._deliver(self.sinks.tool_call, tool_call.to_payload(call_id))
            executor = self.tools.get(tool_call.name) if self.auto_execute_tools else None
            if executor is not None:
                self._spawn_tool(session, executor, tool_call)
        elif isinstance(event, TransferEvent):
            await self._deliver(self.sinks.transfer, {"callId": call_id, "target": event.target})
        elif isinstance(event, EndEvent):
            self._transition(session, SessionState.ENDING)
            await self._deliver(self.sinks.end, {"callId": call_id, "reason": event.reason})
            self._transition(session, SessionState.ENDED)
            session.end(event.reason)
            self.registry.remove(call_id, session)
        elif isinstance(event, ErrorEvent):
            # Backend error frames are forwarded only; a local fault ends the session
            if isinstance(event, StreamFaultEvent) and not session.is_terminal():
                self._transition(session, SessionState.FAILED)
                session.fail("stream_fault")
                self.registry.remove(call_id, session)
            await self._deliver(self.sinks.error, {
                "code": event.code, "message": event.message, "callId": call_id,
            })

    # --- Tool execution ---

    def _spawn_tool(self, session: Session, executor: ToolExecutor, tool_call: ToolCall) -> None:
        task = asyncio.get_running_loop().create_task(
            self._execute_tool(session.call_id, executor, tool_call),
            name=f"voicenet-tool-{tool_call.tool_call_id}",
        )
        tasks = self._tool_tasks.setdefault(session.call_id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _execute_tool(self, call_id: str, executor: ToolExecutor, tool_call: ToolCall) -> None:
        try:
            result = await executor.execute(tool_call, call_id)
        except Exception as e:
            logger.exception("Tool executor raised", call_id=call_id, tool=tool_call.name)
            result = ToolResult(
                tool_call_id=tool_call.tool_call_id,
                name=tool_call.name,
                result={"ok": False, "error": str(e) or type(e).__name__},
            )
        outcome = await self.submit_tool_result(call_id, result)
        if not outcome.ok:
            logger.warning("Tool result could not be returned", call_id=call_id,
                           tool=tool_call.name,
                           code=outcome.error.code if outcome.error else None)

    def _cancel_tool_tasks(self, call_id: str) -> None:
        for task in self._tool_tasks.pop(call_id, set()):
            if not task.done():
                task.cancel()

    # --- Helpers ---

    async def _abandon_start(self, session: Session) -> Outcome:
        """stop() arrived while the session was being created."""
        self.registry.remove(session.call_id, session)
        if session.stream is not None:
            await session.stream.close()
        self._transition(session, SessionState.ENDING)
        self._transition(session, SessionState.ENDED)
        session.end("stopped")
        logger.info("Session stopped before streaming", call_id=session.call_id)
        return Outcome.failure(
            session.call_id,
            SessionCreateError("session stopped before streaming", session.call_id),
        )

    def _prune_finished(self) -> None:
        finished = [call_id for call_id, s in self._sessions.items() if s.is_terminal()]
        for call_id in finished[:max(0, len(finished) - self.max_finished_sessions)]:
            del self._sessions[call_id]

    async def _fail_start(self, session: Session, error: VoiceNetError) -> Outcome:
        self._transition(session, SessionState.FAILED)
        session.fail(error.code)
        payload = error.to_payload()
        logger.error("Session start failed", call_id=session.call_id,
                     code=payload["code"], error=error.message)
        await self._deliver(self.sinks.error, payload)
        return Outcome.failure(session.call_id, error)

    def _transition(self, session: Session, new_state: SessionState) -> None:
        if session.state == new_state:
            return
        old_state = session.transition_to(new_state)
        self.emitter.emit(
            "session.state_changed",
            session.call_id,
            severity=Severity.ERROR if new_state == SessionState.FAILED else Severity.INFO,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    async def _deliver(self, sink: Optional[Sink], payload: Dict[str, Any]) -> None:
        """Call a sink; a failing sink is logged and never stops dispatch."""
        if sink is None:
            return
        try:
            result = sink(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Output sink raised", call_id=payload.get("callId"))

    def _default_stream(self, session: Session) -> EventStream:
        return EventStream(
            session.endpoint,
            session.call_id,
            self.api_key,
            keepalive_interval=self.keepalive_interval,
            connect_timeout=self.connect_timeout,
            reconnect_policy=self.reconnect_policy,
        )
