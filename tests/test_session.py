"""
Session lifecycle and the call -> session registry.
"""
from voicenet_agent.models import PromptConfig, ToolDescriptor
from voicenet_agent.session import CallSessionRegistry, Session, SessionState

import pytest


def _session(call_id="c1"):
    return Session(call_id=call_id, prompt=PromptConfig(), endpoint="wss://rt.test/realtime")


class TestSession:

    def test_defaults(self):
        session = _session()

        assert session.state == SessionState.IDLE
        assert session.tools == ()
        assert not session.is_terminal()

    def test_requires_call_id(self):
        with pytest.raises(ValueError):
            _session("")

    def test_tools_snapshot(self):
        tools = [ToolDescriptor("lookup")]
        session = Session(call_id="c1", prompt=PromptConfig(), endpoint="wss://x", tools=tools)
        tools.append(ToolDescriptor("other"))

        assert [t.name for t in session.tools] == ["lookup"]

    def test_transition_returns_previous(self):
        session = _session()

        assert session.transition_to(SessionState.CREATING_SESSION) == SessionState.IDLE
        assert session.state == SessionState.CREATING_SESSION

    def test_end_and_fail_are_terminal(self):
        ended = _session()
        ended.end("hangup")
        failed = _session("c2")
        failed.fail("stream_fault")

        assert ended.state == SessionState.ENDED
        assert ended.end_reason == "hangup"
        assert ended.ended_at is not None
        assert failed.state == SessionState.FAILED
        assert failed.is_terminal()


class TestCallSessionRegistry:

    def test_register_get_remove(self):
        registry = CallSessionRegistry()
        session = _session()

        assert registry.register(session)
        assert registry.get("c1") is session
        assert "c1" in registry
        assert len(registry) == 1

        assert registry.remove("c1") is session
        assert registry.get("c1") is None

    def test_live_session_blocks_second(self):
        registry = CallSessionRegistry()
        first = _session()
        first.transition_to(SessionState.STREAMING)
        registry.register(first)

        assert not registry.register(_session())
        assert registry.get("c1") is first

    def test_terminal_session_can_be_replaced(self):
        registry = CallSessionRegistry()
        first = _session()
        first.end("hangup")
        registry.register(first)
        second = _session()

        assert registry.register(second)
        assert registry.get("c1") is second

    def test_remove_only_matching_session(self):
        registry = CallSessionRegistry()
        old = _session()
        new = _session()
        registry.register(new)

        assert registry.remove("c1", old) is None
        assert registry.get("c1") is new

    def test_list_sessions_by_state(self):
        registry = CallSessionRegistry()
        streaming = _session("c1")
        streaming.transition_to(SessionState.STREAMING)
        registry.register(streaming)
        registry.register(_session("c2"))

        assert registry.list_sessions(SessionState.STREAMING) == [streaming]
        assert len(registry.list_sessions()) == 2

        registry.clear()
        assert len(registry) == 0
