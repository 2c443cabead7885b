"""
Data model: calls, tool calls/results, play sources, outcomes.
"""
import pytest

from voicenet_agent.errors import ErrorCode, InvalidToolResult, SessionCreateError, UnsupportedSource
from voicenet_agent.models import (
    BinaryUploadSource,
    Call,
    LibraryAssetSource,
    Outcome,
    ToolCall,
    ToolResult,
    UrlSource,
    play_source_from_params,
)


def test_call_from_payload():
    call = Call.from_payload({"callId": "c1", "from": "+3933", "to": "+3902"})

    assert call.call_id == "c1"
    assert call.from_number == "+3933"
    assert call.to_payload()["to"] == "+3902"
    assert call.to_payload()["timestamp"]


def test_call_requires_call_id():
    with pytest.raises(ValueError):
        Call.from_payload({"from": "+3933"})


def test_tool_call_payload():
    payload = ToolCall("t1", "lookup", {"q": "x"}).to_payload("c1")

    assert payload == {"toolCallId": "t1", "name": "lookup", "args": {"q": "x"}, "callId": "c1"}


def test_tool_result_from_payload():
    result = ToolResult.from_payload({"toolCallId": "t1", "name": "lookup", "result": {"ok": True}})

    assert result == ToolResult("t1", "lookup", {"ok": True})
    assert result.to_frame("c1")["type"] == "tool.result"


@pytest.mark.parametrize("payload", [
    {"name": "lookup", "result": {}},
    {"toolCallId": "", "result": {}},
    {"toolCallId": "t1", "result": "text"},
    "done",
    ["t1"],
    None,
])
def test_tool_result_invalid(payload):
    with pytest.raises(InvalidToolResult):
        ToolResult.from_payload(payload, "c1")


def test_play_source_from_params():
    assert play_source_from_params("url", {"audioUrl": "https://a/b.wav"}) == UrlSource("https://a/b.wav")
    assert play_source_from_params("libraryAsset", {"assetId": "x"}) == LibraryAssetSource("x")
    binary = play_source_from_params("fileBinary", {"data": b"RIFF", "mimeType": "audio/mpeg"})
    assert binary == BinaryUploadSource(b"RIFF", "audio/mpeg")

    with pytest.raises(UnsupportedSource):
        play_source_from_params("tts", {})


def test_outcome_payloads():
    ok = Outcome.success("c1", playId="p1")
    failed = Outcome.failure("c2", SessionCreateError("backend down"))

    assert ok.to_payload() == {"status": "success", "callId": "c1", "playId": "p1"}
    assert failed.error.call_id == "c2"
    assert failed.to_payload() == {
        "status": "error",
        "callId": "c2",
        "code": ErrorCode.SESSION_CREATE_ERROR,
        "message": "backend down",
    }
