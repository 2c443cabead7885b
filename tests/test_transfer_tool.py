"""
transfer_call tool executor.
"""
import pytest

from voicenet_agent.models import ToolCall
from voicenet_agent.transfer_tool import TRANSFER_TOOL_DESCRIPTOR, TransferCallTool


def test_descriptor_requires_target():
    assert TRANSFER_TOOL_DESCRIPTOR["parameters"]["required"] == ["target"]


@pytest.mark.asyncio
async def test_transfer_without_announcement(command_client):
    tool = TransferCallTool(command_client)

    result = await tool.execute(ToolCall("t1", "transfer_call", {"target": " 200 "}), "c1")

    assert command_client.calls == [("transfer", "c1", "200")]
    assert result.tool_call_id == "t1"
    assert result.result == {"ok": True, "status": "transferred", "target": "200"}


@pytest.mark.asyncio
async def test_announcement_precedes_transfer(command_client):
    tool = TransferCallTool(command_client)

    await tool.execute(
        ToolCall("t1", "transfer_call", {"target": "200", "announceText": "Ti passo un collega"}),
        "c1",
    )

    assert command_client.commands() == ["say", "transfer"]
    assert command_client.calls[0] == ("say", "c1", "Ti passo un collega")


@pytest.mark.asyncio
async def test_failed_announcement_skips_transfer(command_client):
    command_client.fail("say", "tts unavailable")
    tool = TransferCallTool(command_client)

    result = await tool.execute(
        ToolCall("t1", "transfer_call", {"target": "200", "announceText": "One moment"}), "c1",
    )

    assert command_client.commands() == ["say"]
    assert result.result == {"ok": False, "error": "tts unavailable"}


@pytest.mark.asyncio
async def test_missing_target(command_client):
    result = await TransferCallTool(command_client).execute(ToolCall("t1", "transfer_call", {}), "c1")

    assert result.result["ok"] is False
    assert command_client.calls == []


@pytest.mark.asyncio
async def test_transfer_failure_reported(command_client):
    command_client.fail("transfer", "target busy")

    result = await TransferCallTool(command_client).execute(
        ToolCall("t1", "transfer_call", {"target": "200"}), "c1",
    )

    assert result.result == {"ok": False, "error": "target busy"}
