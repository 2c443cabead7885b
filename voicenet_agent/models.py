"""
Domain types shared by the command client, stream and orchestrator.

Wire payloads use the backend's camelCase keys; the dataclasses here use
snake_case and convert at the edges (`from_payload` / `to_payload`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from .errors import InvalidToolResult, UnsupportedSource, VoiceNetError


DEFAULT_PROMPT_BASE = "You are a helpful voice assistant. Be concise and friendly."
DEFAULT_LOCALE = "it-IT"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Call:
    """A call as observed on the inbound webhook."""

    call_id: str
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    timestamp: str = field(default_factory=_utc_now_iso)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Call":
        call_id = payload.get("callId")
        if not isinstance(call_id, str) or not call_id:
            raise ValueError("call.callId is required")
        return cls(
            call_id=call_id,
            from_number=payload.get("from"),
            to_number=payload.get("to"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "callId": self.call_id,
            "from": self.from_number,
            "to": self.to_number,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class PromptConfig:
    """Agent prompt settings sent on session creation."""

    prompt_base: str = DEFAULT_PROMPT_BASE
    user_instr: str = ""
    locale: str = DEFAULT_LOCALE
    barge_in: bool = True


@dataclass(frozen=True)
class ToolDescriptor:
    """A function the agent may invoke mid-call."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    type: str = "function"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


@dataclass(frozen=True)
class ToolCall:
    tool_call_id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self, call_id: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "toolCallId": self.tool_call_id,
            "name": self.name,
            "args": self.args,
        }
        if call_id is not None:
            payload["callId"] = call_id
        return payload


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    name: Optional[str]
    result: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], call_id: Optional[str] = None) -> "ToolResult":
        if not isinstance(payload, Mapping):
            raise InvalidToolResult("toolResult must be an object", call_id)
        tool_call_id = payload.get("toolCallId")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            raise InvalidToolResult("toolResult.toolCallId is required", call_id)
        result = payload.get("result", {})
        if not isinstance(result, Mapping):
            raise InvalidToolResult("toolResult.result must be an object", call_id)
        name = payload.get("name")
        return cls(tool_call_id=tool_call_id, name=name if isinstance(name, str) else None,
                   result=dict(result))

    def to_frame(self, call_id: str) -> Dict[str, Any]:
        """Outbound `tool.result` stream frame."""
        return {
            "type": "tool.result",
            "toolCallId": self.tool_call_id,
            "name": self.name,
            "result": self.result,
            "callId": call_id,
        }


# --- Play sources ---


@dataclass(frozen=True)
class UrlSource:
    url: str


@dataclass(frozen=True)
class LibraryAssetSource:
    asset_id: str


@dataclass(frozen=True)
class BinaryUploadSource:
    data: bytes
    mime_type: str = "audio/wav"


PlaySource = Union[UrlSource, LibraryAssetSource, BinaryUploadSource]


def play_source_from_params(source_type: str, params: Mapping[str, Any]) -> PlaySource:
    """
    Build a PlaySource from the `sourceType` parameter convention:
    `url` (audioUrl), `libraryAsset` (assetId), `fileBinary` (data, mimeType).
    """
    if source_type == "url":
        return UrlSource(url=str(params.get("audioUrl", "")))
    if source_type == "libraryAsset":
        return LibraryAssetSource(asset_id=str(params.get("assetId", "")))
    if source_type == "fileBinary":
        return BinaryUploadSource(
            data=params.get("data") or b"",
            mime_type=str(params.get("mimeType", "audio/wav")),
        )
    raise UnsupportedSource(f"Unknown source type: {source_type}")


# --- Outcomes ---


@dataclass
class Outcome:
    """
    Per-item result of a command or session operation.

    Always carries the call id so fan-out results stay attributable.
    """

    call_id: Optional[str]
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[VoiceNetError] = None

    @classmethod
    def success(cls, call_id: Optional[str], **data: Any) -> "Outcome":
        return cls(call_id=call_id, ok=True, data=data)

    @classmethod
    def failure(cls, call_id: Optional[str], error: VoiceNetError) -> "Outcome":
        if error.call_id is None:
            error.call_id = call_id
        return cls(call_id=call_id, ok=False, error=error)

    @property
    def status(self) -> str:
        return "success" if self.ok else "error"

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status, "callId": self.call_id}
        if self.ok:
            payload.update(self.data)
        elif self.error is not None:
            payload.update(self.error.to_payload())
        return payload
