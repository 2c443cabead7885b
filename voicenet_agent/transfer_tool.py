"""
`transfer_call` tool: optionally announce, then transfer the call.

The announcement and the transfer are issued strictly in sequence; the
transfer is never dispatched before the announcement's outcome is known.
"""

from __future__ import annotations

from typing import Any, Dict

from logging_setup import get_logger, Component

from .command_client import CommandClient
from .models import ToolCall, ToolResult


logger = get_logger(Component.TOOLS)

TRANSFER_TOOL_NAME = "transfer_call"

TRANSFER_TOOL_DESCRIPTOR: Dict[str, Any] = {
    "type": "function",
    "name": TRANSFER_TOOL_NAME,
    "description": "Transfer the current call to another extension or phone number",
    "parameters": {
        "type": "object",
        "properties": {
            "target": {
                "type": "string",
                "description": "The extension or phone number to transfer to",
            },
            "announceText": {
                "type": "string",
                "description": "Optional text to speak before transferring",
            },
        },
        "required": ["target"],
    },
}


class TransferCallTool:
    name = TRANSFER_TOOL_NAME

    def __init__(self, client: CommandClient):
        self.client = client

    def descriptor(self) -> Dict[str, Any]:
        return TRANSFER_TOOL_DESCRIPTOR

    async def execute(self, tool_call: ToolCall, call_id: str) -> ToolResult:
        target = tool_call.args.get("target")
        if not isinstance(target, str) or not target.strip():
            return self._error(tool_call, "target is required")
        target = target.strip()

        announce_text = tool_call.args.get("announceText")
        if isinstance(announce_text, str) and announce_text.strip():
            said = await self.client.say(call_id, announce_text)
            if not said.ok:
                return self._error(tool_call, said.error.message if said.error else "say failed")

        transferred = await self.client.transfer(call_id, target)
        if not transferred.ok:
            return self._error(
                tool_call, transferred.error.message if transferred.error else "transfer failed",
            )

        logger.info("Call transferred by tool", call_id=call_id, target=target,
                    tool_call_id=tool_call.tool_call_id)
        return ToolResult(
            tool_call_id=tool_call.tool_call_id,
            name=TRANSFER_TOOL_NAME,
            result={"ok": True, "status": "transferred", "target": target},
        )

    def _error(self, tool_call: ToolCall, message: str) -> ToolResult:
        return ToolResult(
            tool_call_id=tool_call.tool_call_id,
            name=TRANSFER_TOOL_NAME,
            result={"ok": False, "error": message},
        )
