"""
Process-wide collaborators for the HTTP service.

Built lazily from VoiceNetConfig on first use. The FastAPI routes depend on
the getters below, so tests swap them with app.dependency_overrides.
"""
from typing import Any, Dict, Optional

from logging_setup import get_logger, Component
from voicenet_agent.command_client import CommandClient
from voicenet_agent.config import get_config
from voicenet_agent.orchestrator import SessionOrchestrator, SessionSinks
from voicenet_agent.prompts import get_prompt_config
from voicenet_agent.tools import ToolRegistry
from voicenet_agent.transfer_tool import TransferCallTool

from .subscriptions import SubscriptionManager, SubscriptionStore
from .webhook_handler import WebhookHandler


logger = get_logger(Component.CONTROL_PLANE)

_client: Optional[CommandClient] = None
_orchestrator: Optional[SessionOrchestrator] = None
_webhook_handler: Optional[WebhookHandler] = None
_subscriptions: Optional[SubscriptionManager] = None


def _log_output(kind: str):
    def sink(payload: Dict[str, Any]) -> None:
        logger.info("Session output", output=kind, call_id=payload.get("callId"), payload=payload)
    return sink


def logging_sinks() -> SessionSinks:
    """Sinks used when the service runs without a host consuming outputs."""
    return SessionSinks(
        tool_call=_log_output("tool_call"),
        transfer=_log_output("transfer"),
        end=_log_output("end"),
        error=_log_output("error"),
    )


def get_command_client() -> CommandClient:
    global _client
    if _client is None:
        _client = CommandClient.from_config(get_config())
    return _client


def get_orchestrator() -> SessionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        config = get_config()
        client = get_command_client()
        _orchestrator = SessionOrchestrator.from_config(
            config,
            client,
            tools=ToolRegistry([TransferCallTool(client)]),
            sinks=logging_sinks(),
            default_prompt=get_prompt_config(config.prompt_profile),
        )
    return _orchestrator


def get_webhook_handler() -> WebhookHandler:
    global _webhook_handler
    if _webhook_handler is None:
        config = get_config()
        _webhook_handler = WebhookHandler(
            get_orchestrator(),
            signing_secret=config.signing_secret,
            tolerance_seconds=config.signature_tolerance_seconds,
        )
    return _webhook_handler


def get_subscription_manager() -> SubscriptionManager:
    global _subscriptions
    if _subscriptions is None:
        config = get_config()
        _subscriptions = SubscriptionManager(
            get_command_client(), SubscriptionStore(config.subscription_store_path),
        )
    return _subscriptions


async def shutdown_runtime() -> None:
    """Stop every session and close the HTTP client; only touches what was built."""
    if _webhook_handler is not None:
        await _webhook_handler.drain()
    if _orchestrator is not None:
        await _orchestrator.shutdown()
    if _client is not None:
        await _client.aclose()
    reset_runtime()


def reset_runtime() -> None:
    global _client, _orchestrator, _webhook_handler, _subscriptions
    _client = None
    _orchestrator = None
    _webhook_handler = None
    _subscriptions = None
