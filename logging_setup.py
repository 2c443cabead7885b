"""
Shared logging infrastructure for voicenet_agent and the control plane service.

Every record is one JSON object per line, tagged with the emitting component
and, when bound, the call it belongs to. Loggers carry bound context so a
stream or session logs its call id without repeating it at each call site.

Credential-looking fields (API keys, signing secrets, signatures) are redacted
before they reach a handler, including inside nested header dicts.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional


class Component(str, Enum):
    """System components for log tagging."""
    CONTROL_PLANE = "control_plane"
    WEBHOOK_SERVER = "webhook_server"
    COMMAND_CLIENT = "command_client"
    EVENT_STREAM = "event_stream"
    ORCHESTRATOR = "orchestrator"
    TOOLS = "tools"
    SESSION_REGISTRY = "session_registry"
    SUBSCRIPTIONS = "subscriptions"


# LogRecord's own attributes; everything else arrived through `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "taskName", "component", "call_id",
}

_SECRET_MARKERS = ("api_key", "apikey", "x-api-key", "secret", "password", "signature")

# Per-request chatter from the HTTP stack
NOISY_LOGGERS = ("aiohttp.access", "uvicorn.access")


def redact(key: str, value: Any) -> Any:
    """Mask a value whose key looks like a credential; recurse into mappings."""
    if isinstance(value, Mapping):
        return {k: redact(str(k), v) for k, v in value.items()}
    lowered = key.lower()
    if value and any(marker in lowered for marker in _SECRET_MARKERS):
        return "[redacted]"
    return value


class JSONFormatter(logging.Formatter):
    """Render a record as `{timestamp, severity, component, call_id?, message, ...extra}`."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", record.name),
            "message": record.getMessage(),
        }
        call_id = getattr(record, "call_id", None)
        if call_id:
            entry["call_id"] = call_id

        entry.update(
            (key, redact(key, value))
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        )

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines for local runs: `time LEVEL component [call] message`."""

    def __init__(self, include_timestamp: bool = True):
        prefix = "%(asctime)s " if include_timestamp else ""
        super().__init__(prefix + "%(levelname)-7s %(component)s%(call_tag)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        record.component = getattr(record, "component", record.name)
        call_id = getattr(record, "call_id", None)
        record.call_tag = f" [{call_id}]" if call_id else ""
        return super().format(record)


class StructuredLogger:
    """
    Component logger with bound context.

    Usage:
        logger = get_logger(Component.EVENT_STREAM).with_call("c1")
        logger.info("Subscribed", endpoint="wss://...")
        logger.bind(tool_call_id="t1").warning("Tool timed out")

    Keyword arguments on a log call become top-level JSON fields and take
    precedence over bound ones.
    """

    def __init__(
        self,
        component: str | Component,
        call_id: Optional[str] = None,
        logger_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.call_id = call_id
        self.context = dict(context or {})
        self.logger = logging.getLogger(logger_name or f"voicenet.{self.component}")

    def bind(self, **fields: Any) -> "StructuredLogger":
        """New logger carrying extra context on every record."""
        call_id = fields.pop("call_id", self.call_id)
        return StructuredLogger(
            self.component,
            call_id=call_id,
            logger_name=self.logger.name,
            context={**self.context, **fields},
        )

    def with_call(self, call_id: str) -> "StructuredLogger":
        return self.bind(call_id=call_id)

    def _log(self, level: int, message: str, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        exc_info = fields.pop("exc_info", None)
        extra = {"component": self.component, **self.context, **fields}
        extra.setdefault("call_id", self.call_id)
        # stacklevel 3 points file/line at the caller of info()/error()
        self.logger.log(level, message, exc_info=exc_info, stacklevel=3, extra=extra)

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, **fields)

    def critical(self, message: str, **fields: Any) -> None:
        self._log(logging.CRITICAL, message, **fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Error record with the active exception's traceback."""
        fields.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **fields)


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Configure the root logger once at process start.

    Replaces existing root handlers with a single stdout handler. Loggers
    named in `quiet` are raised to WARNING.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else TextFormatter(include_timestamp))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(component: str | Component, call_id: Optional[str] = None) -> StructuredLogger:
    return StructuredLogger(component, call_id=call_id)
