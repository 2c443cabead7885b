"""
Per-call realtime event stream.

One WebSocket per session: subscribe on open, keepalive while streaming,
decode inbound frames into a closed set of events, accept outbound frames
(tool results). Transport errors are terminal unless a ReconnectPolicy says
otherwise; they surface once as a StreamFaultEvent (code STREAM_FAULT).

States:
    idle -> connecting -> subscribed -> streaming -> closing -> closed
    faulted is reachable from any state on transport error
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Union

import aiohttp
from pydantic import BaseModel, Field, ValidationError, field_validator

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .config import VoiceNetConfig
from .errors import ErrorCode, MalformedFrame, NotConnected, StreamFault, describe_exception
from .models import ToolCall, ToolResult


logger = get_logger(LogComponent.EVENT_STREAM)

KEEPALIVE_INTERVAL_SECONDS = 30.0


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"
    FAULTED = "faulted"


_OPEN_STATES = (StreamState.SUBSCRIBED, StreamState.STREAMING)
_TERMINAL_STATES = (StreamState.CLOSED, StreamState.FAULTED)


# --- Events ---


@dataclass(frozen=True)
class ToolCallEvent:
    tool_call: ToolCall


@dataclass(frozen=True)
class TransferEvent:
    target: str


@dataclass(frozen=True)
class EndEvent:
    reason: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    """An `error` frame sent by the backend."""

    code: str
    message: str = ""


@dataclass(frozen=True)
class StreamFaultEvent(ErrorEvent):
    """Local transport failure; the stream is faulted once this is yielded."""

    code: str = ErrorCode.STREAM_FAULT


StreamEvent = Union[ToolCallEvent, TransferEvent, EndEvent, ErrorEvent, StreamFaultEvent]


# --- Inbound wire frames ---


class _ToolCallBody(BaseModel):
    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("args", mode="before")
    @classmethod
    def _decode_args(cls, value: Any) -> Any:
        # Some agents send arguments as a JSON string
        if value is None:
            return {}
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value


class ToolCallFrame(BaseModel):
    type: Literal["tool.call"]
    tool_call: _ToolCallBody = Field(alias="toolCall")

    def to_event(self) -> StreamEvent:
        body = self.tool_call
        return ToolCallEvent(ToolCall(tool_call_id=body.id, name=body.name, args=body.args))


class CallTransferredFrame(BaseModel):
    type: Literal["call.transferred"]
    target: str

    def to_event(self) -> StreamEvent:
        return TransferEvent(target=self.target)


class CallEndedFrame(BaseModel):
    type: Literal["call.ended"]
    reason: Optional[str] = None

    def to_event(self) -> StreamEvent:
        return EndEvent(reason=self.reason)


class ErrorFrame(BaseModel):
    type: Literal["error"]
    code: str = "STREAM_ERROR"
    message: str = ""

    def to_event(self) -> StreamEvent:
        return ErrorEvent(code=self.code, message=self.message)


_FRAME_MODELS = {
    "tool.call": ToolCallFrame,
    "call.transferred": CallTransferredFrame,
    "call.ended": CallEndedFrame,
    "error": ErrorFrame,
}


def decode_frame(raw: Union[str, bytes], call_id: Optional[str] = None) -> Optional[StreamEvent]:
    """
    Decode one inbound frame.

    Returns None for well-formed frames of an unknown type.
    Raises MalformedFrame when the payload is not a JSON object of the
    expected shape.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrame("frame is not valid UTF-8", call_id) from e
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise MalformedFrame("frame is not valid JSON", call_id) from e
    if not isinstance(data, dict):
        raise MalformedFrame("frame is not a JSON object", call_id)

    frame_type = data.get("type")
    if not isinstance(frame_type, str):
        raise MalformedFrame("frame has no type", call_id)
    model = _FRAME_MODELS.get(frame_type)
    if model is None:
        return None
    try:
        frame = model.model_validate(data)
    except ValidationError as e:
        raise MalformedFrame(
            f"invalid {frame_type} frame: {e.error_count()} validation error(s)",
            call_id,
            frameType=frame_type,
        ) from e
    return frame.to_event()


# --- Reconnection ---


class ReconnectPolicy:
    """
    Decides whether a faulted transport is reopened.

    next_delay returns the seconds to wait before attempt `attempt`
    (1-based), or None to give up. The base policy never reconnects.
    """

    def next_delay(self, attempt: int, error: BaseException) -> Optional[float]:
        return None


class NoReconnect(ReconnectPolicy):
    """Every transport error is terminal for the session."""


@dataclass
class ExponentialBackoff(ReconnectPolicy):
    """Reopen and re-subscribe with the same call id, doubling the delay."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def next_delay(self, attempt: int, error: BaseException) -> Optional[float]:
        if attempt > self.max_attempts:
            return None
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


# --- Stream ---


TransportFactory = Callable[[str, Dict[str, str], Dict[str, str]], Awaitable[Any]]


class EventStream:
    """
    Usage:
        stream = EventStream(endpoint, call_id, api_key)
        await stream.connect()
        async for event in stream.events():
            ...
        await stream.close()
    """

    def __init__(
        self,
        endpoint: str,
        call_id: str,
        api_key: str,
        *,
        keepalive_interval: float = KEEPALIVE_INTERVAL_SECONDS,
        connect_timeout: float = 10.0,
        transport_factory: Optional[TransportFactory] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        http: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        emitter: Optional[EventEmitter] = None,
    ):
        self.endpoint = endpoint
        self.call_id = call_id
        self.api_key = api_key
        self.keepalive_interval = keepalive_interval
        self.connect_timeout = connect_timeout
        self.reconnect_policy = reconnect_policy or NoReconnect()
        self.emitter = emitter or EventEmitter(ObsComponent.EVENT_STREAM)
        self.logger = logger.with_call(call_id)

        self.state = StreamState.IDLE
        self.transitions: List[StreamState] = []

        self._transport_factory = transport_factory or self._aiohttp_transport
        self._http = http
        self._owns_http = http is None
        self._sleep = sleep
        self._ws: Any = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._reconnect_attempt = 0

    @classmethod
    def from_config(cls, config: VoiceNetConfig, call_id: str, **kwargs: Any) -> "EventStream":
        kwargs.setdefault("keepalive_interval", config.keepalive_interval_seconds)
        kwargs.setdefault("connect_timeout", config.connect_timeout_seconds)
        return cls(config.stream_endpoint, call_id, config.api_key, **kwargs)

    @property
    def is_open(self) -> bool:
        return self.state in _OPEN_STATES

    # --- Lifecycle ---

    async def connect(self) -> None:
        """
        Open the transport and subscribe to the call.
        Raises StreamFault when the transport cannot be opened in time, and
        NotConnected when close() ran before the open completed.
        """
        if self.state in _OPEN_STATES or self.state == StreamState.CONNECTING:
            return
        if self.state != StreamState.IDLE:
            raise NotConnected(f"stream already {self.state.value}", self.call_id)

        self._set_state(StreamState.CONNECTING)
        try:
            await self._open()
        except StreamFault as e:
            self.logger.error("Stream connect failed", endpoint=self.endpoint, error=e.message)
            self._set_state(StreamState.FAULTED)
            await self._release()
            raise

    async def events(self) -> AsyncIterator[StreamEvent]:
        """
        Yield decoded events in arrival order until the call ends, the peer
        closes, or the transport faults.
        """
        if not self.is_open:
            raise NotConnected(f"stream is {self.state.value}", self.call_id)

        try:
            while self.is_open:
                fault: Optional[BaseException] = None
                try:
                    msg = await self._ws.receive()
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                    fault = e
                    msg = None

                if not self.is_open:
                    # Torn down while we were waiting
                    return

                if msg is not None:
                    if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                        event = self.handle_message(msg.data)
                        if event is None:
                            continue
                        yield event
                        if isinstance(event, EndEvent):
                            # The call is over; shut down without waiting for the peer
                            await self.close()
                            return
                        continue
                    if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                                    aiohttp.WSMsgType.CLOSED):
                        self.logger.info("Stream closed by peer")
                        await self.close()
                        return
                    if msg.type == aiohttp.WSMsgType.ERROR:
                        fault = msg.data if isinstance(msg.data, BaseException) else StreamFault(
                            "transport error", self.call_id,
                        )
                    else:
                        continue

                if await self._recover(fault):
                    continue
                if self.state in _TERMINAL_STATES:
                    return

                message = fault.message if isinstance(fault, StreamFault) else describe_exception(fault)
                self.logger.error("Stream faulted", error=message,
                                  error_type=type(fault).__name__)
                self._set_state(StreamState.FAULTED)
                await self._release()
                yield StreamFaultEvent(message=message)
                return
        finally:
            if self.state not in _TERMINAL_STATES:
                await self.close()

    async def close(self) -> None:
        """Explicit teardown; idempotent. Releases keepalive and transport."""
        if self.state in _TERMINAL_STATES:
            await self._release()
            return
        self._set_state(StreamState.CLOSING)
        await self._release()
        self._set_state(StreamState.CLOSED)

    # --- Inbound ---

    def handle_message(self, data: Union[str, bytes]) -> Optional[StreamEvent]:
        """
        Decode one inbound payload and apply its state effect.

        Malformed payloads are logged and dropped and leave the state as is.
        """
        try:
            event = decode_frame(data, self.call_id)
        except MalformedFrame as e:
            self.logger.warning("Dropped malformed frame", reason=e.message)
            self.emitter.emit(
                "stream.frame_dropped", self.call_id, severity=Severity.WARN, reason=e.message,
            )
            return None

        # Any well-formed frame counts as stream traffic
        self._reconnect_attempt = 0
        if self.state == StreamState.SUBSCRIBED:
            self._set_state(StreamState.STREAMING)
        if isinstance(event, EndEvent):
            self._set_state(StreamState.CLOSING)
        return event

    # --- Outbound ---

    async def send(self, frame: Mapping[str, Any]) -> None:
        if self.state != StreamState.STREAMING or self._ws is None:
            raise NotConnected(f"cannot send while stream is {self.state.value}", self.call_id)
        try:
            await self._ws.send_str(json.dumps(frame))
        except (aiohttp.ClientError, OSError) as e:
            raise StreamFault(describe_exception(e), self.call_id) from e

    async def send_tool_result(self, result: ToolResult) -> None:
        await self.send(result.to_frame(self.call_id))
        self.logger.info("Tool result sent", tool_call_id=result.tool_call_id, tool=result.name)

    # --- Internals ---

    def _set_state(self, new_state: StreamState) -> None:
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        self.transitions.append(new_state)
        self.logger.debug("Stream state changed", from_state=old_state.value,
                          to_state=new_state.value)
        self.emitter.emit(
            "stream.state_changed",
            self.call_id,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    async def _aiohttp_transport(self, url: str, params: Dict[str, str], headers: Dict[str, str]) -> Any:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return await self._http.ws_connect(url, params=params, headers=headers, autoping=True)

    async def _open(self) -> None:
        params = {"callId": self.call_id, "apiKey": self.api_key}
        headers = {"X-API-Key": self.api_key}
        try:
            self._ws = await asyncio.wait_for(
                self._transport_factory(self.endpoint, params, headers),
                timeout=self.connect_timeout,
            )
            await self._abort_if_closed()
            await self._ws.send_str(json.dumps({"type": "subscribe", "callId": self.call_id}))
        except asyncio.TimeoutError as e:
            await self._abort_if_closed()
            raise StreamFault(
                f"stream connect timed out after {self.connect_timeout}s", self.call_id,
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            await self._abort_if_closed()
            raise StreamFault(describe_exception(e), self.call_id) from e

        await self._abort_if_closed()

        self._set_state(StreamState.SUBSCRIBED)
        self.logger.info("Subscribed to call stream", endpoint=self.endpoint)
        self._start_keepalive()

    async def _abort_if_closed(self) -> None:
        """A close() that ran while the transport was opening wins over the open."""
        if self.state != StreamState.CONNECTING:
            await self._release()
            raise NotConnected(f"stream {self.state.value} while connecting", self.call_id)

    async def _recover(self, fault: BaseException) -> bool:
        """Reopen the transport while the reconnect policy allows it."""
        while True:
            self._reconnect_attempt += 1
            delay = self.reconnect_policy.next_delay(self._reconnect_attempt, fault)
            if delay is None:
                return False
            self.logger.warning(
                "Stream transport lost, reconnecting",
                attempt=self._reconnect_attempt,
                delay_s=delay,
                error=describe_exception(fault),
            )
            await self._release()
            await self._sleep(delay)
            if self.state in _TERMINAL_STATES:
                # closed while waiting to reconnect
                return False
            self._set_state(StreamState.CONNECTING)
            try:
                await self._open()
                return True
            except StreamFault as e:
                fault = e
            except NotConnected:
                return False

    def _start_keepalive(self) -> None:
        self._cancel_keepalive()
        if self.keepalive_interval <= 0:
            return
        self._keepalive_task = asyncio.get_running_loop().create_task(self._keepalive())

    def _cancel_keepalive(self) -> Optional[asyncio.Task]:
        task = self._keepalive_task
        self._keepalive_task = None
        if task is not None and not task.done():
            task.cancel()
        return task

    async def _keepalive(self) -> None:
        while True:
            await self._sleep(self.keepalive_interval)
            ws = self._ws
            if self.state != StreamState.STREAMING or ws is None or ws.closed:
                continue
            try:
                await ws.ping()
            except (aiohttp.ClientError, OSError) as e:
                # Missing pongs are not fatal; the reader sees hard errors
                self.logger.warning("Keepalive ping failed", error=describe_exception(e))

    async def _release(self) -> None:
        task = self._cancel_keepalive()
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait([task])

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, OSError) as e:
                self.logger.debug("Error while closing transport", error=describe_exception(e))

        if self._http is not None and self._owns_http:
            if not self._http.closed:
                await self._http.close()
            self._http = None
