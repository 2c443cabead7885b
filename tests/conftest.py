"""Shared fakes and fixtures: a scripted WebSocket, a recording command client."""

import asyncio
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import aiohttp
import pytest

from observability.event_store import event_store
from voicenet_agent.config import reset_config
from voicenet_agent.errors import CommandFailed, FailureKind
from voicenet_agent.event_stream import EventStream
from voicenet_agent.models import Outcome
from voicenet_agent.session import session_registry


class FakeWebSocket:
    """In-memory stand-in for aiohttp's ClientWebSocketResponse."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.pings = 0
        self.closed = False
        self.fail_send = False

    def push(self, frame: Any) -> None:
        data = frame if isinstance(frame, (str, bytes)) else json.dumps(frame)
        self.queue.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data))

    def push_error(self, error: Optional[BaseException] = None) -> None:
        self.queue.put_nowait(SimpleNamespace(
            type=aiohttp.WSMsgType.ERROR, data=error or aiohttp.ClientConnectionError("reset"),
        ))

    def push_close(self) -> None:
        self.queue.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.CLOSE, data=1000))

    async def receive(self):
        return await self.queue.get()

    async def send_str(self, data: str) -> None:
        if self.fail_send:
            raise aiohttp.ClientConnectionError("send failed")
        self.sent.append(json.loads(data))

    async def ping(self) -> None:
        self.pings += 1

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None))


class FakeTransport:
    """Transport factory that hands out FakeWebSockets and records each open."""

    def __init__(self, fail_with: Optional[BaseException] = None):
        self.fail_with = fail_with
        self.opens: List[Dict[str, Any]] = []
        self.sockets: List[FakeWebSocket] = []
        self.by_call: Dict[str, FakeWebSocket] = {}

    async def __call__(self, url: str, params: Dict[str, str], headers: Dict[str, str]):
        self.opens.append({"url": url, "params": dict(params), "headers": dict(headers)})
        if self.fail_with is not None:
            raise self.fail_with
        ws = FakeWebSocket()
        self.sockets.append(ws)
        self.by_call[params["callId"]] = ws
        return ws

    @property
    def ws(self) -> FakeWebSocket:
        return self.sockets[-1]

    def socket_for(self, call_id: str) -> FakeWebSocket:
        """Most recent socket opened for a call."""
        return self.by_call[call_id]


class FakeCommandClient:
    """Records command calls; outcomes are scripted per command name."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.failures: Dict[str, CommandFailed] = {}
        self.create_delay = 0.0

    def fail(self, command: str, message: str = "backend unavailable",
             kind: str = FailureKind.BACKEND_UNAVAILABLE) -> None:
        self.failures[command] = CommandFailed(kind, message)

    def _outcome(self, command: str, call_id: Optional[str], **data: Any) -> Outcome:
        if command in self.failures:
            error = self.failures[command]
            return Outcome.failure(call_id, CommandFailed(error.kind, error.message, call_id))
        return Outcome.success(call_id, **data)

    async def answer(self, call_id, **kwargs):
        self.calls.append(("answer", call_id))
        return self._outcome("answer", call_id, status="answered")

    async def say(self, call_id, text, **kwargs):
        self.calls.append(("say", call_id, text))
        return self._outcome("say", call_id)

    async def transfer(self, call_id, target, **kwargs):
        self.calls.append(("transfer", call_id, target))
        return self._outcome("transfer", call_id)

    async def create_session(self, call_id, tools, prompt, **kwargs):
        self.calls.append(("session.create", call_id, [t.name for t in tools], prompt))
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        return self._outcome("session.create", call_id)

    async def list_media_assets(self, **kwargs):
        self.calls.append(("media.list",))
        return self._outcome("media.list", None, assets=[
            {"id": "a1", "name": "Welcome", "description": "Greeting"},
        ])

    async def register_subscription(self, workflow_id, node_id, callback_url, did, **kwargs):
        self.calls.append(("dispatch.register", workflow_id, node_id, callback_url, did))
        return self._outcome("dispatch.register", None, subscriptionId=f"sub-{node_id}")

    async def unregister_subscription(self, subscription_id, **kwargs):
        self.calls.append(("dispatch.unregister", subscription_id))
        return self._outcome("dispatch.unregister", None)

    def commands(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture(autouse=True)
def reset_globals():
    session_registry.clear()
    event_store.clear()
    reset_config()
    yield
    session_registry.clear()
    event_store.clear()
    reset_config()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def command_client():
    return FakeCommandClient()


@pytest.fixture
def make_stream(transport):
    """Build EventStreams wired to the fake transport, keepalive off."""
    def factory(call_id: str = "c1", **kwargs: Any) -> EventStream:
        kwargs.setdefault("keepalive_interval", 0)
        kwargs.setdefault("transport_factory", transport)
        return EventStream("wss://rt.test/realtime", call_id, "test-key", **kwargs)
    return factory


async def _wait_for(predicate, attempts: int = 300) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.fixture
def wait_for():
    """Poll a predicate on the running loop until it holds."""
    return _wait_for
