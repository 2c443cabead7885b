"""
VoiceNet agent configuration.

Loads backend address, credentials and timing from environment variables.
`.env_local` / `.env.local` in the project root are loaded first without
overriding variables that are already set.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


DEFAULT_BASE_URL = "https://api.voicenet.local"


def _parse_float_env(key: str, default: float) -> float:
    """
    Parse a numeric environment variable, stripping comments and whitespace.

    "30  # seconds" -> 30.0, unset or garbage -> default
    """
    value = os.environ.get(key)
    if not value:
        return default
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def derive_stream_endpoint(base_url: str) -> str:
    """
    Derive the realtime stream URL from the backend base URL.

    https://host -> wss://host/realtime, http://host -> ws://host/realtime
    """
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + "/realtime"


@dataclass
class VoiceNetConfig:
    """Backend and orchestration configuration."""

    api_key: str
    base_url: str = DEFAULT_BASE_URL

    # Inbound webhook verification; verification is skipped when unset
    signing_secret: Optional[str] = None
    signature_tolerance_seconds: int = 300

    # Explicit stream endpoint; derived from base_url when unset
    runtime_base: Optional[str] = None

    command_timeout_seconds: float = 10.0
    connect_timeout_seconds: float = 10.0
    keepalive_interval_seconds: float = 30.0

    prompt_profile: str = "default"
    subscription_store_path: str = ".voicenet_subscriptions.json"
    auto_execute_tools: bool = True

    @property
    def stream_endpoint(self) -> str:
        return self.runtime_base or derive_stream_endpoint(self.base_url)

    @classmethod
    def from_env(cls) -> "VoiceNetConfig":
        """Load configuration from environment variables."""
        return cls(
            api_key=os.environ["VOICENET_API_KEY"],
            base_url=os.environ.get("VOICENET_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            signing_secret=os.environ.get("VOICENET_SIGNING_SECRET") or None,
            signature_tolerance_seconds=int(
                _parse_float_env("VOICENET_SIGNATURE_TOLERANCE_SECONDS", 300)
            ),
            runtime_base=os.environ.get("VOICENET_RUNTIME_BASE") or None,
            command_timeout_seconds=_parse_float_env("VOICENET_COMMAND_TIMEOUT_SECONDS", 10.0),
            connect_timeout_seconds=_parse_float_env("VOICENET_CONNECT_TIMEOUT_SECONDS", 10.0),
            keepalive_interval_seconds=_parse_float_env("VOICENET_KEEPALIVE_INTERVAL_SECONDS", 30.0),
            prompt_profile=os.environ.get("VOICENET_PROMPT_PROFILE", "default"),
            subscription_store_path=os.environ.get(
                "VOICENET_SUBSCRIPTION_STORE", ".voicenet_subscriptions.json"
            ),
            auto_execute_tools=_parse_bool_env("VOICENET_AUTO_EXECUTE_TOOLS", True),
        )


def load_env_files(root: Optional[Path] = None) -> None:
    """Best-effort local dev convenience; never overrides the real environment."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        path = root / name
        if path.exists():
            load_dotenv(path, override=False)


def get_config() -> VoiceNetConfig:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = VoiceNetConfig.from_env()
    return _config


def reset_config() -> None:
    """Forget the cached config (tests, reloads)."""
    global _config
    _config = None


# Global config instance (lazy loaded)
_config: Optional[VoiceNetConfig] = None
