"""Unit tests for configuration loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from echolink.config import (
    EchoLinkConfig,
    IceServerConfig,
    LiveKitConfig,
    TranslationConfig,
    TraversalConfig,
)

ENV_VARS = (
    "LIVEKIT_URL",
    "LIVEKIT_API_KEY",
    "LIVEKIT_API_SECRET",
    "ICE_SERVERS",
    "ICE_TRANSPORT_POLICY",
    "ICE_CANDIDATE_POOL_SIZE",
    "ECHOLINK_LOG_LEVEL",
    "TRANSLATION_ENABLED",
    "TRANSLATION_TARGET_LANGUAGE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    config = EchoLinkConfig()

    assert config.livekit.url == "ws://localhost:7880"
    assert config.traversal.transport_policy == "all"
    assert config.traversal.candidate_pool_size == 0
    assert all(not server.is_turn for server in config.traversal.ice_servers)
    assert config.session.registration_attempts == 3
    assert config.speech.auto_resume is True
    assert config.translation.enabled is False
    assert config.log_level == "INFO"


def test_ice_server_accepts_single_url_string() -> None:
    server = IceServerConfig(urls="stun:stun.example.com:3478")
    assert server.urls == ["stun:stun.example.com:3478"]


def test_ice_server_rejects_unknown_scheme() -> None:
    with pytest.raises(ValidationError, match="ICE server URL"):
        IceServerConfig(urls=["http://stun.example.com"])


def test_turn_server_requires_credentials() -> None:
    with pytest.raises(ValidationError, match="username and credential"):
        IceServerConfig(urls=["turn:turn.example.com:3478"], username="user")

    server = IceServerConfig(
        urls=["turns:turn.example.com:5349"], username="user", credential="pw"
    )
    assert server.is_turn


def test_relay_only_requires_turn_server() -> None:
    with pytest.raises(ValidationError, match="relay-only"):
        TraversalConfig(transport_policy="relay-only")

    config = TraversalConfig(
        transport_policy="relay-only",
        ice_servers=[
            {"urls": ["turn:turn.example.com:3478"], "username": "u", "credential": "c"}
        ],
    )
    assert config.transport_policy == "relay-only"


def test_candidate_pool_size_bounds() -> None:
    with pytest.raises(ValidationError):
        TraversalConfig(candidate_pool_size=-1)
    with pytest.raises(ValidationError):
        TraversalConfig(candidate_pool_size=256)


def test_livekit_url_scheme() -> None:
    with pytest.raises(ValidationError, match="LiveKit url"):
        LiveKitConfig(url="localhost:7880")


def test_translation_language_normalised() -> None:
    config = TranslationConfig(target_language="UR")
    assert config.target_language == "ur"

    with pytest.raises(ValidationError, match="ISO 639-1"):
        TranslationConfig(target_language="urdu")


def test_log_level_validation() -> None:
    assert EchoLinkConfig(log_level="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError, match="log_level"):
        EchoLinkConfig(log_level="LOUD")


def test_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "echolink.yaml"
    path.write_text(
        """
livekit:
  url: "wss://rtc.example.com"
  room_prefix: "demo"
traversal:
  transport_policy: "relay-only"
  ice_servers:
    - urls: ["turn:turn.example.com:3478"]
      username: "u"
      credential: "c"
session:
  negotiation_timeout_seconds: 12
""",
        encoding="utf-8",
    )

    config = EchoLinkConfig.from_yaml(path)

    assert config.livekit.url == "wss://rtc.example.com"
    assert config.livekit.room_prefix == "demo"
    assert config.traversal.transport_policy == "relay-only"
    assert config.session.negotiation_timeout_seconds == 12


def test_from_yaml_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        EchoLinkConfig.from_yaml(tmp_path / "missing.yaml")


def test_from_yaml_with_defaults_missing_file(tmp_path: Path) -> None:
    config = EchoLinkConfig.from_yaml_with_defaults(tmp_path / "missing.yaml")
    assert config == EchoLinkConfig()


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LIVEKIT_URL", "wss://override.example.com")
    monkeypatch.setenv("LIVEKIT_API_KEY", "key")
    monkeypatch.setenv("LIVEKIT_API_SECRET", "secret-2")
    monkeypatch.setenv(
        "ICE_SERVERS",
        '[{"urls": ["stun:a.example.com:3478"]},'
        ' {"urls": ["turn:b.example.com:3478"], "username": "u", "credential": "c"}]',
    )
    monkeypatch.setenv("ICE_TRANSPORT_POLICY", "relay-only")
    monkeypatch.setenv("ICE_CANDIDATE_POOL_SIZE", "4")
    monkeypatch.setenv("ECHOLINK_LOG_LEVEL", "debug")
    monkeypatch.setenv("TRANSLATION_ENABLED", "true")
    monkeypatch.setenv("TRANSLATION_TARGET_LANGUAGE", "es")

    config = EchoLinkConfig.from_yaml_with_defaults(None)

    assert config.livekit.url == "wss://override.example.com"
    assert config.livekit.api_key == "key"
    assert config.livekit.api_secret == "secret-2"
    assert [server.urls[0] for server in config.traversal.ice_servers] == [
        "stun:a.example.com:3478",
        "turn:b.example.com:3478",
    ]
    assert config.traversal.transport_policy == "relay-only"
    assert config.traversal.candidate_pool_size == 4
    assert config.log_level == "DEBUG"
    assert config.translation.enabled is True
    assert config.translation.target_language == "es"


def test_env_overrides_win_over_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "echolink.yaml"
    path.write_text('livekit:\n  url: "ws://from-yaml:7880"\n', encoding="utf-8")
    monkeypatch.setenv("LIVEKIT_URL", "ws://from-env:7880")

    assert EchoLinkConfig.from_yaml(path).livekit.url == "ws://from-env:7880"


def test_env_overrides_fill_empty_yaml_sections(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "echolink.yaml"
    path.write_text("livekit:\ntraversal:\n", encoding="utf-8")
    monkeypatch.setenv("LIVEKIT_URL", "ws://from-env:7880")
    monkeypatch.setenv("ICE_TRANSPORT_POLICY", "all")

    config = EchoLinkConfig.from_yaml(path)

    assert config.livekit.url == "ws://from-env:7880"
    assert config.traversal.transport_policy == "all"


def test_invalid_ice_servers_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ICE_SERVERS", "stun:not-json")
    with pytest.raises(ValueError, match="ICE_SERVERS"):
        EchoLinkConfig.from_yaml_with_defaults(None)

    monkeypatch.setenv("ICE_SERVERS", '{"urls": ["stun:a.example.com"]}')
    with pytest.raises(ValueError, match="JSON list"):
        EchoLinkConfig.from_yaml_with_defaults(None)
