"""
HTTP command channel to the VoiceNet backend.

Every command returns an Outcome; transport and backend failures come back as
CommandFailed outcomes instead of exceptions so one failed call never stops
processing of the others. Mutating commands carry a fresh idempotency key.
Retries are the caller's decision.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from urllib.parse import quote
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import aiohttp

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity

from .config import VoiceNetConfig
from .errors import (
    CommandFailed,
    FailureKind,
    UnsupportedSource,
    classify_exception,
    classify_status,
    describe_exception,
)
from .models import (
    BinaryUploadSource,
    LibraryAssetSource,
    Outcome,
    PlaySource,
    PromptConfig,
    ToolDescriptor,
    UrlSource,
)


logger = get_logger(LogComponent.COMMAND_CLIENT)

IDEMPOTENCY_HEADER = "X-Idempotency-Key"
API_KEY_HEADER = "X-API-Key"

# Process-wide so two clients never hand out the same key either
_attempt_counter = itertools.count(1)


def _call_path(call_id: str, action: str) -> str:
    # Call ids are opaque; a "/" or "?" must not change the route
    return f"/calls/{quote(call_id, safe='')}/{action}"


class CommandClient:
    """
    Issues commands against one backend base URL.

    Usage:
        async with CommandClient(base_url, api_key) as client:
            outcome = await client.answer("c1")
            if not outcome.ok:
                ...
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        http: Optional[aiohttp.ClientSession] = None,
        emitter: Optional[EventEmitter] = None,
        now: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.emitter = emitter or EventEmitter(ObsComponent.COMMAND_CLIENT)
        self._http = http
        self._owns_http = http is None
        self._now = now

    @classmethod
    def from_config(cls, config: VoiceNetConfig, **kwargs: Any) -> "CommandClient":
        return cls(
            config.base_url,
            config.api_key,
            timeout=config.command_timeout_seconds,
            **kwargs,
        )

    async def __aenter__(self) -> "CommandClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http and not self._http.closed:
            await self._http.close()
        if self._owns_http:
            self._http = None

    def new_idempotency_key(self, command: str, call_id: Optional[str]) -> str:
        """Key for one command attempt: kind, call, attempt time and a sequence number."""
        attempt_ms = int(self._now() * 1000)
        return f"{command}-{call_id or 'none'}-{attempt_ms}-{next(_attempt_counter)}"

    # --- Call commands ---

    async def answer(self, call_id: str, *, timeout: Optional[float] = None) -> Outcome:
        outcome = await self._dispatch(
            "answer", call_id, "POST", _call_path(call_id, "answer"), {}, timeout=timeout,
        )
        if outcome.ok:
            outcome.data["status"] = "answered"
        return outcome

    async def play(
        self,
        call_id: str,
        source: PlaySource,
        barge_in: bool = False,
        *,
        timeout: Optional[float] = None,
    ) -> Outcome:
        body: Dict[str, Any] = {"bargeIn": barge_in}
        if isinstance(source, UrlSource):
            body["assetUrl"] = source.url
        elif isinstance(source, LibraryAssetSource):
            body["assetId"] = source.asset_id
        elif isinstance(source, BinaryUploadSource):
            # Upload flow is not available on the backend yet
            error = UnsupportedSource(
                "File upload not yet implemented", call_id, sourceType="fileBinary",
            )
            logger.warning("Play rejected: unsupported source", call_id=call_id,
                           source_type="fileBinary")
            self.emitter.emit(
                "command.failed", call_id, severity=Severity.WARN,
                command="play", code=error.code,
            )
            return Outcome.failure(call_id, error)
        else:
            return Outcome.failure(
                call_id, UnsupportedSource(f"Unknown play source: {type(source).__name__}", call_id),
            )

        outcome = await self._dispatch(
            "play", call_id, "POST", _call_path(call_id, "play"), body, timeout=timeout,
        )
        if outcome.ok:
            response = outcome.data.get("response")
            outcome.data["started"] = True
            outcome.data["playId"] = response.get("playId") if isinstance(response, dict) else None
        return outcome

    async def say(self, call_id: str, text: str, *, timeout: Optional[float] = None) -> Outcome:
        return await self._dispatch(
            "say", call_id, "POST", _call_path(call_id, "say"), {"text": text}, timeout=timeout,
        )

    async def transfer(self, call_id: str, target: str, *, timeout: Optional[float] = None) -> Outcome:
        return await self._dispatch(
            "transfer", call_id, "POST", _call_path(call_id, "transfer"), {"target": target},
            timeout=timeout,
        )

    async def create_session(
        self,
        call_id: str,
        tools: Iterable[ToolDescriptor],
        prompt: PromptConfig,
        *,
        timeout: Optional[float] = None,
    ) -> Outcome:
        body = {
            "callId": call_id,
            "tools": [tool.to_payload() for tool in tools],
            "promptBase": prompt.prompt_base,
            "userInstr": prompt.user_instr,
            "locale": prompt.locale,
            "bargeIn": prompt.barge_in,
        }
        return await self._dispatch(
            "session.create", call_id, "POST", "/session.create", body, timeout=timeout,
        )

    # --- Account-level commands ---

    async def list_media_assets(self, *, timeout: Optional[float] = None) -> Outcome:
        outcome = await self._dispatch(
            "media.list", None, "GET", "/media/assets", None, mutating=False, timeout=timeout,
        )
        if not outcome.ok:
            return outcome
        response = outcome.data.get("response")
        if not isinstance(response, list):
            return Outcome.failure(None, CommandFailed(
                FailureKind.INVALID_RESPONSE, "media asset list is not an array",
            ))
        assets: List[Dict[str, Any]] = [
            {
                "id": asset.get("id"),
                "name": asset.get("name"),
                "description": asset.get("description"),
            }
            for asset in response
            if isinstance(asset, dict)
        ]
        return Outcome.success(None, assets=assets)

    async def register_subscription(
        self,
        workflow_id: str,
        node_id: str,
        callback_url: str,
        did: str,
        *,
        timeout: Optional[float] = None,
    ) -> Outcome:
        body = {
            "workflowId": workflow_id,
            "nodeId": node_id,
            "callbackUrl": callback_url,
            "rule": {"did": did},
            "events": ["incoming-call"],
        }
        outcome = await self._dispatch(
            "dispatch.register", None, "POST", "/integrations/dispatch/register", body,
            timeout=timeout,
        )
        if not outcome.ok:
            return outcome
        response = outcome.data.get("response")
        subscription_id = response.get("subscriptionId") if isinstance(response, dict) else None
        if not subscription_id:
            return Outcome.failure(None, CommandFailed(
                FailureKind.INVALID_RESPONSE, "register response has no subscriptionId",
            ))
        return Outcome.success(None, subscriptionId=subscription_id)

    async def unregister_subscription(
        self, subscription_id: str, *, timeout: Optional[float] = None,
    ) -> Outcome:
        return await self._dispatch(
            "dispatch.unregister", None, "POST", "/integrations/dispatch/unregister",
            {"subscriptionId": subscription_id}, timeout=timeout,
        )

    # --- Transport ---

    def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
        headers: Dict[str, str],
        timeout: float,
    ) -> Tuple[int, Any]:
        """
        Perform one HTTP request and return (status, decoded body).

        Empty bodies decode to {}; non-JSON error bodies come back as text.
        """
        http = self._get_http()
        async with http.request(
            method,
            f"{self.base_url}{path}",
            json=body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            text = await resp.text()
            if not text.strip():
                return resp.status, {}
            if resp.status >= 400:
                try:
                    return resp.status, json.loads(text)
                except ValueError:
                    return resp.status, text
            return resp.status, json.loads(text)

    async def _dispatch(
        self,
        command: str,
        call_id: Optional[str],
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
        *,
        mutating: bool = True,
        timeout: Optional[float] = None,
    ) -> Outcome:
        headers = {API_KEY_HEADER: self.api_key}
        idempotency_key = None
        if mutating:
            idempotency_key = self.new_idempotency_key(command, call_id)
            headers[IDEMPOTENCY_HEADER] = idempotency_key

        effective_timeout = timeout if timeout is not None else self.timeout
        start_ts = time.perf_counter()
        self.emitter.emit(
            "command.sent",
            call_id,
            correlation_id=idempotency_key,
            command=command,
        )

        try:
            status, payload = await self._request(method, path, body, headers, effective_timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            error = CommandFailed(classify_exception(e), describe_exception(e), call_id)
            return self._failed(command, call_id, idempotency_key, error, start_ts, e)

        if status >= 400:
            message = _error_message(payload) or f"backend returned {status}"
            error = CommandFailed(classify_status(status), message, call_id, status=status)
            return self._failed(command, call_id, idempotency_key, error, start_ts)

        latency_ms = int((time.perf_counter() - start_ts) * 1000)
        logger.info(
            "Command completed",
            call_id=call_id,
            command=command,
            status=status,
            latency_ms=latency_ms,
        )
        self.emitter.emit(
            "command.completed",
            call_id,
            correlation_id=idempotency_key,
            command=command,
            status=status,
            latency_ms=latency_ms,
        )
        return Outcome.success(call_id, response=payload)

    def _failed(
        self,
        command: str,
        call_id: Optional[str],
        idempotency_key: Optional[str],
        error: CommandFailed,
        start_ts: float,
        exc: Optional[BaseException] = None,
    ) -> Outcome:
        latency_ms = int((time.perf_counter() - start_ts) * 1000)
        logger.warning(
            "Command failed",
            call_id=call_id,
            command=command,
            kind=error.kind,
            error=error.message,
            error_type=type(exc).__name__ if exc else None,
            latency_ms=latency_ms,
        )
        self.emitter.emit(
            "command.failed",
            call_id,
            severity=Severity.WARN,
            correlation_id=idempotency_key,
            command=command,
            kind=error.kind,
            status=error.status,
            latency_ms=latency_ms,
        )
        return Outcome.failure(call_id, error)


def _error_message(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
        return None
    if isinstance(payload, str) and payload.strip():
        return payload.strip()[:500]
    return None
