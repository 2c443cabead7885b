"""
Tests for VoiceNet configuration.

Verifies:
- Configuration loading from environment
- Required fields validation
- Default values and stream endpoint derivation
"""
import pytest

from voicenet_agent import config as config_module
from voicenet_agent.config import VoiceNetConfig, derive_stream_endpoint, load_env_files


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "VOICENET_API_KEY", "VOICENET_BASE_URL", "VOICENET_SIGNING_SECRET",
        "VOICENET_RUNTIME_BASE", "VOICENET_COMMAND_TIMEOUT_SECONDS",
        "VOICENET_CONNECT_TIMEOUT_SECONDS", "VOICENET_KEEPALIVE_INTERVAL_SECONDS",
        "VOICENET_SIGNATURE_TOLERANCE_SECONDS", "VOICENET_PROMPT_PROFILE",
        "VOICENET_SUBSCRIPTION_STORE", "VOICENET_AUTO_EXECUTE_TOOLS",
    ):
        monkeypatch.delenv(key, raising=False)
    config_module.reset_config()
    yield
    config_module.reset_config()


def test_config_from_env_all_fields(monkeypatch):
    monkeypatch.setenv("VOICENET_API_KEY", "key-1")
    monkeypatch.setenv("VOICENET_BASE_URL", "https://voice.example.com/")
    monkeypatch.setenv("VOICENET_SIGNING_SECRET", "whsec")
    monkeypatch.setenv("VOICENET_RUNTIME_BASE", "wss://rt.example.com/stream")
    monkeypatch.setenv("VOICENET_COMMAND_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("VOICENET_CONNECT_TIMEOUT_SECONDS", "3.5")
    monkeypatch.setenv("VOICENET_KEEPALIVE_INTERVAL_SECONDS", "15  # seconds")
    monkeypatch.setenv("VOICENET_SIGNATURE_TOLERANCE_SECONDS", "60")
    monkeypatch.setenv("VOICENET_PROMPT_PROFILE", "reception")
    monkeypatch.setenv("VOICENET_SUBSCRIPTION_STORE", "/tmp/subs.json")
    monkeypatch.setenv("VOICENET_AUTO_EXECUTE_TOOLS", "false")

    config = VoiceNetConfig.from_env()

    assert config.api_key == "key-1"
    assert config.base_url == "https://voice.example.com"
    assert config.signing_secret == "whsec"
    assert config.stream_endpoint == "wss://rt.example.com/stream"
    assert config.command_timeout_seconds == 5.0
    assert config.connect_timeout_seconds == 3.5
    assert config.keepalive_interval_seconds == 15.0
    assert config.signature_tolerance_seconds == 60
    assert config.prompt_profile == "reception"
    assert config.subscription_store_path == "/tmp/subs.json"
    assert config.auto_execute_tools is False


def test_config_from_env_defaults(monkeypatch):
    monkeypatch.setenv("VOICENET_API_KEY", "key-1")

    config = VoiceNetConfig.from_env()

    assert config.base_url == "https://api.voicenet.local"
    assert config.signing_secret is None
    assert config.stream_endpoint == "wss://api.voicenet.local/realtime"
    assert config.command_timeout_seconds == 10.0
    assert config.keepalive_interval_seconds == 30.0
    assert config.signature_tolerance_seconds == 300
    assert config.prompt_profile == "default"
    assert config.auto_execute_tools is True


def test_config_missing_api_key():
    with pytest.raises(KeyError):
        VoiceNetConfig.from_env()


def test_config_garbage_number_falls_back(monkeypatch):
    monkeypatch.setenv("VOICENET_API_KEY", "key-1")
    monkeypatch.setenv("VOICENET_COMMAND_TIMEOUT_SECONDS", "soon")

    assert VoiceNetConfig.from_env().command_timeout_seconds == 10.0


@pytest.mark.parametrize("base_url,expected", [
    ("https://api.example.com", "wss://api.example.com/realtime"),
    ("http://localhost:8080/", "ws://localhost:8080/realtime"),
])
def test_derive_stream_endpoint(base_url, expected):
    assert derive_stream_endpoint(base_url) == expected


def test_get_config_is_cached(monkeypatch):
    monkeypatch.setenv("VOICENET_API_KEY", "key-1")
    monkeypatch.setattr(config_module, "load_env_files", lambda root=None: None)

    first = config_module.get_config()
    monkeypatch.setenv("VOICENET_API_KEY", "key-2")

    assert config_module.get_config() is first
    config_module.reset_config()
    assert config_module.get_config().api_key == "key-2"


def test_env_file_does_not_override(monkeypatch, tmp_path):
    (tmp_path / ".env_local").write_text("VOICENET_API_KEY=from-file\nVOICENET_BASE_URL=http://file\n")
    monkeypatch.setenv("VOICENET_API_KEY", "from-env")

    load_env_files(tmp_path)

    config = VoiceNetConfig.from_env()
    assert config.api_key == "from-env"
    assert config.base_url == "http://file"
