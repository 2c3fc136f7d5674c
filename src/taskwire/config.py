"""Configuration management for taskwire."""

from __future__ import annotations

from urllib.parse import urlencode, urlsplit, urlunsplit

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskwire.errors import ConfigurationError

WS_PATH = "/ws"
_WS_SCHEMES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


class Settings(BaseSettings):
    """Client settings."""

    model_config = SettingsConfigDict(
        env_prefix="TASKWIRE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Endpoints
    api_base_url: str = Field(default="http://localhost:8080", description="Base URL of the task service API")
    ws_url: str | None = Field(default=None, description="Socket endpoint; derived from api_base_url when unset")
    client_id: str = Field(default="webui", description="Client id announced on the socket query string")

    # Real-time channel
    reconnect_interval_seconds: float = Field(default=3.0, description="Fixed delay between reconnect attempts")
    max_reconnect_attempts: int = Field(default=10, description="Reconnect attempts before going offline")
    heartbeat_interval_seconds: float = Field(default=30.0, description="Interval between ping frames")
    completion_expiry_seconds: float = Field(default=1.0, description="How long a completed stream id is remembered")

    # Request layer
    request_timeout_seconds: float = Field(default=30.0, description="Timeout for conversation fetches")

    log_level: str = Field(default="INFO", description="Log level")

    @field_validator(
        "reconnect_interval_seconds",
        "heartbeat_interval_seconds",
        "completion_expiry_seconds",
        "request_timeout_seconds",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("max_reconnect_attempts")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    def resolve_ws_url(self) -> str:
        """Return the socket endpoint, falling back to the API's origin."""
        if self.ws_url:
            return self.ws_url
        parts = urlsplit(self.api_base_url)
        scheme = _WS_SCHEMES.get(parts.scheme, "ws")
        query = urlencode({"client_id": self.client_id})
        return urlunsplit((scheme, parts.netloc, WS_PATH, query, ""))


def load_settings(**overrides: object) -> Settings:
    """Load settings from the environment, applying keyword overrides.

    Raises:
        ConfigurationError: When any value fails validation.
    """
    try:
        return Settings(**{key: value for key, value in overrides.items() if value is not None})
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
