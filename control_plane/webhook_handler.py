"""
Inbound call webhook handler.
Verifies the signature, filters and de-duplicates events, and hands accepted
calls to the orchestrator.
"""
import asyncio
import hashlib
import hmac
import json
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Set

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter, Severity
from voicenet_agent.errors import Unauthorized
from voicenet_agent.models import Call
from voicenet_agent.orchestrator import SessionOrchestrator


logger = get_logger(Component.WEBHOOK_SERVER)

SIGNATURE_HEADER = "X-Voice-Signature"
TIMESTAMP_HEADER = "X-Voice-Timestamp"
INCOMING_CALL = "incoming-call"


def sign_payload(secret: str, timestamp: str, body: bytes) -> str:
    """Hex HMAC-SHA256 over "{timestamp}.{body}"."""
    message = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    *,
    tolerance_seconds: float = 300,
    now: Optional[float] = None,
) -> None:
    """
    Raise Unauthorized unless the signature matches and the timestamp lies
    within the tolerance window.
    """
    if not signature or not timestamp:
        raise Unauthorized("missing signature headers")
    try:
        sent_at = float(timestamp)
    except ValueError:
        raise Unauthorized("invalid signature timestamp") from None

    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        raise Unauthorized("signature timestamp outside tolerance")

    expected = sign_payload(secret, timestamp, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise Unauthorized("signature mismatch")


class WebhookHandler:
    """Handles incoming-call webhook events."""

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        *,
        signing_secret: Optional[str] = None,
        tolerance_seconds: float = 300,
        max_seen_events: int = 1024,
        clock: Callable[[], float] = time.time,
        emitter: Optional[EventEmitter] = None,
    ):
        self.orchestrator = orchestrator
        self.signing_secret = signing_secret
        self.tolerance_seconds = tolerance_seconds
        self.max_seen_events = max_seen_events
        self._clock = clock
        self.emitter = emitter or EventEmitter(ObsComponent.CONTROL_PLANE)
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()

    async def handle_webhook(
        self,
        body: bytes,
        signature: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Handle one webhook delivery.
        Raises Unauthorized on a bad signature; returns the response body
        otherwise (a dict with "error" for an unusable payload).
        """
        if self.signing_secret:
            try:
                verify_signature(
                    self.signing_secret, body, signature, timestamp,
                    tolerance_seconds=self.tolerance_seconds, now=self._clock(),
                )
            except Unauthorized as e:
                self.emitter.emit("webhook.rejected", None, severity=Severity.WARN,
                                  reason=e.message)
                raise

        try:
            event = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {"error": "Invalid webhook payload"}
        if not isinstance(event, dict):
            return {"error": "Invalid webhook payload"}

        event_type = event.get("type")
        if event_type != INCOMING_CALL:
            logger.debug("Ignoring webhook event", event_type=event_type)
            return {"message": "Event ignored"}

        try:
            call = Call.from_payload(event.get("call") or {})
        except (AttributeError, ValueError):
            return {"error": "Invalid webhook payload: call.callId is required"}

        event_id = event.get("eventId")
        if not (isinstance(event_id, str) and event_id):
            event_id = None
        if event_id is not None and self._already_seen(event_id):
            logger.info("Duplicate webhook event", event_id=event_id, call_id=call.call_id)
            return {"message": "Duplicate event"}

        self.emitter.emit("webhook.received", call.call_id, correlation_id=event_id,
                          webhook_type=event_type)
        self._schedule(call)
        # Recorded only once the call is scheduled
        if event_id is not None:
            self._remember(event_id)
        return {"call": call.to_payload()}

    async def drain(self) -> None:
        """Wait for accept tasks that are still running."""
        if self._tasks:
            await asyncio.wait(list(self._tasks))

    def _already_seen(self, event_id: str) -> bool:
        if event_id in self._seen:
            self._seen.move_to_end(event_id)
            return True
        return False

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        while len(self._seen) > self.max_seen_events:
            self._seen.popitem(last=False)

    def _schedule(self, call: Call) -> None:
        task = asyncio.get_running_loop().create_task(
            self._accept(call), name=f"voicenet-accept-{call.call_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _accept(self, call: Call) -> None:
        outcome = await self.orchestrator.accept_call(call)
        if not outcome.ok:
            logger.warning(
                "Inbound call not started",
                call_id=call.call_id,
                code=outcome.error.code if outcome.error else None,
            )
