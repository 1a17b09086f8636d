"""Runtime settings loaded from environment variables and an optional .env file.

Every field maps to an AGENT_RUNTIME_* variable, e.g. AGENT_RUNTIME_API_KEY or
AGENT_RUNTIME_MAX_RETRIES. Library code never reads settings implicitly: the
CLI builds clients and executors from a RuntimeSettings instance and passes
the pieces down.
"""

from typing import Annotated

from pydantic import BeforeValidator, Field
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from agent_runtime.backoff import RetryConfig
from agent_runtime.schemas.prompt import ProviderInfo
from agent_runtime.stream import StreamConfig


def _parse_comma_separated(value: object) -> list[str]:
    """Accept ``"a,b,c"`` from the environment or an already-parsed list."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value  # type: ignore[return-value]


# NoDecode stops pydantic-settings from JSON-decoding the raw env value first.
CommaSeparatedStrs = Annotated[list[str], NoDecode, BeforeValidator(_parse_comma_separated)]


class RuntimeSettings(BaseSettings):
    """Provider credentials, retry curve and stream limits."""

    # Bearer token for the Responses API. Required when the provider needs auth.
    api_key: str | None = None

    base_url: str = "https://api.openai.com/v1"

    # Sent as OpenAI-Organization when set.
    organization: str | None = None

    model: str = "gpt-5"

    log_level: str = "INFO"

    # Retry curve shared by stream acquisition and whole-turn retries.
    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: float = Field(default=1000, ge=0)
    max_delay_ms: float = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2, ge=1)
    jitter_percent: float = Field(default=0.1, ge=0)

    stream_buffer_size: int = Field(default=1000, ge=1)
    stream_idle_timeout_ms: float = Field(default=30000, gt=0)
    enable_backpressure: bool = True

    # Connect/read timeout for the HTTP client, in seconds.
    request_timeout_seconds: float = 300.0

    # Client-side request pacing. Either one enables the limiter.
    requests_per_minute: int | None = Field(default=None, gt=0)
    requests_per_hour: int | None = Field(default=None, gt=0)

    # ws:// URL of an external tool bridge. Bridge tools are off when unset.
    bridge_url: str | None = None

    enable_web_search: bool = False

    # Registry tools hidden from the model, e.g. "shell,apply_patch".
    disabled_tools: CommaSeparatedStrs = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="AGENT_RUNTIME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            base_url=self.base_url,
            requests_per_minute=self.requests_per_minute,
            requests_per_hour=self.requests_per_hour,
        )

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            jitter_percent=self.jitter_percent,
        )

    def stream_config(self) -> StreamConfig:
        return StreamConfig(
            max_buffer_size=self.stream_buffer_size,
            idle_timeout_ms=self.stream_idle_timeout_ms,
            enable_backpressure=self.enable_backpressure,
        )
