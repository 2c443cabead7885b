"""
VoiceNet agent integration.

Bridges a voice-telephony backend to an LLM agent runtime: call control
commands over HTTP, one realtime event stream per call, and a per-call
session orchestrator that routes tool calls, transfers and call end events
to the host and sends tool results back over the open stream.
"""

from .command_client import CommandClient
from .config import VoiceNetConfig, get_config
from .errors import VoiceNetError
from .event_stream import EventStream
from .models import Call, Outcome, PromptConfig, ToolCall, ToolResult
from .orchestrator import OutputCollector, SessionOrchestrator, SessionSinks
from .session import CallSessionRegistry, session_registry
from .tools import ToolRegistry
from .transfer_tool import TransferCallTool

__all__ = [
    "Call",
    "CallSessionRegistry",
    "CommandClient",
    "EventStream",
    "OutputCollector",
    "Outcome",
    "PromptConfig",
    "SessionOrchestrator",
    "SessionSinks",
    "ToolCall",
    "ToolRegistry",
    "ToolResult",
    "TransferCallTool",
    "VoiceNetConfig",
    "VoiceNetError",
    "get_config",
    "session_registry",
]
