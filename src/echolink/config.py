"""Configuration schema for EchoLink.

Defines Pydantic models for loading and validating session configuration
from YAML files and environment variables.
"""

import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

ICE_URL_SCHEMES = ("stun:", "stuns:", "turn:", "turns:")


class IceServerConfig(BaseModel):
    """A single traversal server descriptor (STUN or TURN)."""

    urls: list[str] = Field(..., min_length=1, description="STUN/TURN endpoint URLs")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("urls", mode="before")
    @classmethod
    def coerce_urls(cls, v: Any) -> Any:
        """Accept a single URL string as well as a list."""
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        """Validate that every URL uses a STUN/TURN scheme."""
        for url in v:
            if not url.startswith(ICE_URL_SCHEMES):
                raise ValueError(
                    f"ICE server URL must start with one of {list(ICE_URL_SCHEMES)}, got '{url}'"
                )
        return v

    @model_validator(mode="after")
    def validate_turn_credentials(self) -> "IceServerConfig":
        """TURN endpoints need both a username and a credential."""
        if self.is_turn and (not self.username or not self.credential):
            raise ValueError("TURN servers require both username and credential")
        return self

    @property
    def is_turn(self) -> bool:
        """Whether any URL in this descriptor is a TURN relay."""
        return any(url.startswith(("turn:", "turns:")) for url in self.urls)


def _default_ice_servers() -> list[IceServerConfig]:
    return [
        IceServerConfig(urls=["stun:stun.l.google.com:19302"]),
        IceServerConfig(urls=["stun:global.stun.twilio.com:3478"]),
    ]


class TraversalConfig(BaseModel):
    """NAT traversal configuration handed to the WebRTC stack.

    Example usage:
        ```yaml
        traversal:
          transport_policy: "relay-only"
          ice_servers:
            - urls: ["stun:stun.l.google.com:19302"]
            - urls: ["turn:turn.example.com:3478"]
              username: "echolink"
              credential: "secret"
        ```
    """

    ice_servers: list[IceServerConfig] = Field(
        default_factory=_default_ice_servers,
        description="Fallback traversal servers (STUN, optionally TURN)",
    )
    transport_policy: Literal["all", "relay-only"] = Field(
        default="all",
        description="ICE candidate policy: all candidates or TURN relay only",
    )
    candidate_pool_size: int = Field(
        default=0,
        ge=0,
        le=255,
        description="Number of ICE candidates to pre-gather",
    )

    @model_validator(mode="after")
    def validate_relay_policy(self) -> "TraversalConfig":
        """Relay-only policy is unusable without a TURN server."""
        if self.transport_policy == "relay-only" and not any(
            server.is_turn for server in self.ice_servers
        ):
            raise ValueError("transport_policy 'relay-only' requires at least one TURN server")
        return self


class LiveKitConfig(BaseModel):
    """LiveKit signaling/relay service configuration."""

    url: str = Field(
        default="ws://localhost:7880",
        description="LiveKit server URL",
    )
    api_key: str = Field(default="devkey", description="LiveKit API key")
    api_secret: str = Field(default="secret", description="LiveKit API secret")
    room_prefix: str = Field(
        default="echolink",
        min_length=1,
        description="Prefix for session rooms ({prefix}-{session_id})",
    )
    empty_timeout_seconds: int = Field(
        default=300,
        ge=10,
        description="Seconds before an empty session room is closed by the server",
    )
    token_ttl_hours: int = Field(
        default=6,
        ge=1,
        le=24,
        description="Validity of participant access tokens",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate LiveKit URL scheme."""
        valid_schemes = ("ws://", "wss://", "http://", "https://")
        if not v.startswith(valid_schemes):
            raise ValueError(f"LiveKit url must start with one of {list(valid_schemes)}, got '{v}'")
        return v


class SessionConfig(BaseModel):
    """Session establishment limits."""

    registration_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Host id registrations to try (fresh id each time) before giving up",
    )
    negotiation_timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="How long a guest waits for the remote media stream",
    )


class SpeechConfig(BaseModel):
    """Speech capture configuration."""

    language: str = Field(default="en-US", description="Recognition language (BCP 47)")
    auto_resume: bool = Field(
        default=True,
        description="Restart recognition when the engine ends on its own",
    )
    restart_backoff_seconds: float = Field(
        default=0.25,
        ge=0.0,
        le=10.0,
        description="Delay before the first restart; doubles while no speech is recognised",
    )
    max_restart_backoff_seconds: float = Field(
        default=5.0,
        ge=0.0,
        le=60.0,
        description="Upper bound for the restart delay",
    )


class TranslationConfig(BaseModel):
    """Transcript translation lookup configuration."""

    enabled: bool = Field(default=False, description="Translate final remote utterances")
    api_url: str = Field(
        default="https://api.mymemory.translated.net/get",
        description="Translation lookup endpoint",
    )
    source_language: str = Field(default="en", description="Source language (ISO 639-1)")
    target_language: str = Field(default="ur", description="Target language (ISO 639-1)")
    timeout_seconds: float = Field(default=5.0, gt=0.0, le=60.0)

    @field_validator("source_language", "target_language")
    @classmethod
    def validate_language(cls, v: str) -> str:
        """Validate language code format."""
        if len(v) != 2 or not v.isalpha():
            raise ValueError(f"Translation language must be 2-letter ISO 639-1 code, got '{v}'")
        return v.lower()


class EchoLinkConfig(BaseModel):
    """Root EchoLink configuration."""

    livekit: LiveKitConfig = Field(default_factory=LiveKitConfig)
    traversal: TraversalConfig = Field(default_factory=TraversalConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    translation: TranslationConfig = Field(default_factory=TranslationConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "EchoLinkConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "EchoLinkConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(apply_env_overrides({}))


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    # An empty YAML section ("livekit:") loads as None
    section = data.get(name) or {}
    data[name] = section
    return section


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides to raw configuration data.

    Args:
        data: Raw configuration mapping (modified in place)

    Returns:
        The same mapping, for chaining

    Raises:
        ValueError: If ICE_SERVERS is not a JSON list
    """
    if livekit_url := os.getenv("LIVEKIT_URL"):
        _section(data, "livekit")["url"] = livekit_url

    if livekit_api_key := os.getenv("LIVEKIT_API_KEY"):
        _section(data, "livekit")["api_key"] = livekit_api_key

    if livekit_api_secret := os.getenv("LIVEKIT_API_SECRET"):
        _section(data, "livekit")["api_secret"] = livekit_api_secret

    if ice_servers := os.getenv("ICE_SERVERS"):
        try:
            servers = json.loads(ice_servers)
        except json.JSONDecodeError as e:
            raise ValueError(f"ICE_SERVERS must be a JSON list of server descriptors: {e}") from e
        if not isinstance(servers, list):
            raise ValueError("ICE_SERVERS must be a JSON list of server descriptors")
        _section(data, "traversal")["ice_servers"] = servers

    if transport_policy := os.getenv("ICE_TRANSPORT_POLICY"):
        _section(data, "traversal")["transport_policy"] = transport_policy

    if pool_size := os.getenv("ICE_CANDIDATE_POOL_SIZE"):
        _section(data, "traversal")["candidate_pool_size"] = pool_size

    if log_level := os.getenv("ECHOLINK_LOG_LEVEL"):
        data["log_level"] = log_level

    if translation_enabled := os.getenv("TRANSLATION_ENABLED"):
        _section(data, "translation")["enabled"] = translation_enabled.lower() in (
            "true",
            "1",
            "yes",
        )

    if target_language := os.getenv("TRANSLATION_TARGET_LANGUAGE"):
        _section(data, "translation")["target_language"] = target_language

    return data
