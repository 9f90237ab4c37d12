"""Settings via pydantic-settings with CONDUIT_ env prefix.

The provider key is read from the unprefixed OPENROUTER_API_KEY so the
same .env works for other OpenRouter tooling.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONDUIT_", env_file=".env")

    # Provider
    openrouter_api_key: str = Field("", validation_alias="OPENROUTER_API_KEY")
    api_base_url: str = "https://openrouter.ai/api/v1"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    app_referer: str = ""  # sent as HTTP-Referer for OpenRouter attribution
    app_title: str = "Conduit"

    # LLM
    model: str = "anthropic/claude-sonnet-4.5"
    reasoning_effort: Literal["", "low", "medium", "high"] = ""

    # Tool loop
    max_iterations: int = 10  # Max request/response cycles per run
    tool_timeout: int = 60  # seconds, per tool call
    code_run_timeout: int = 15  # seconds, run_code subprocess
    workspace_dir: str = "/tmp/conduit-workspace"

    # Default agent
    default_agent_id: str = "default"
    default_agent_prompt: str = "You are a helpful assistant."
    default_agent_can_run_code: bool = False

    # Sessions
    session_queue_size: int = 1000

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.code_run_timeout > self.tool_timeout:
            raise ValueError(
                f"code_run_timeout ({self.code_run_timeout}) must be <= "
                f"tool_timeout ({self.tool_timeout})"
            )
        return self
