"""Settings via pydantic-settings with ERGON_ env prefix.

Provider credentials use validation_alias to read the same unprefixed env
vars (ANTHROPIC_API_KEY, OPENAI_API_KEY, ...) that the vendor SDKs use.
The nested ``policy`` block is frozen: it is read once per agent and never
mutated from inside the loop.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ergon.agent.policy import PolicyConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ERGON_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    agent_id: str = "ergon-default"
    log_level: str = "info"

    # Provider
    provider: Literal["anthropic", "openai"] = "anthropic"
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    api_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "http://localhost:11434/v1"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Loop
    max_iterations: int = 25
    provider_max_attempts: int = 3
    provider_backoff_base: float = 1.0  # seconds, doubled per attempt
    provider_backoff_max: float = 30.0
    prefer_streaming: bool = True
    concurrent_run_mode: Literal["queue", "reject"] = "queue"

    # Token budget / compaction
    context_window: int = 200_000
    compaction_threshold: float = 0.8
    keep_recent_messages: int = 10
    memory_flush_window: int = 20
    memory_flush_enabled: bool = True
    summary_max_tokens: int = 2048

    # Tool output pruning (provider request only, history untouched)
    tool_pruning_enabled: bool = True
    tool_soft_trim_chars: int = 4000
    tool_soft_trim_head: int = 1500
    tool_soft_trim_tail: int = 1500
    keep_last_tool_results: int = 4

    # Context assembly (chars per section)
    instructions: str = ""
    persona: str = ""
    instructions_max_chars: int = 8000
    persona_max_chars: int = 4000
    memory_max_chars: int = 6000
    memory_top_k: int = 5

    # Tools
    workspace_dir: str = "/tmp/ergon-workspace"
    tool_timeout: float = 300.0
    tool_output_max_chars: int = 20_000
    safe_path: str = "/usr/local/bin:/usr/bin:/bin"
    web_fetch_max_chars: int = 10_000
    web_fetch_hourly_limit: int = 60

    # Storage
    db_url: str = "sqlite+aiosqlite:///ergon.db"

    policy: PolicyConfig = Field(default_factory=PolicyConfig)

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if not 0.0 < self.compaction_threshold <= 1.0:
            raise ValueError(
                f"compaction_threshold must be in (0, 1], got {self.compaction_threshold}"
            )
        for name in (
            "max_iterations",
            "provider_max_attempts",
            "context_window",
            "tool_output_max_chars",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.keep_recent_messages < 0:
            raise ValueError("keep_recent_messages must be >= 0")
        if self.tool_timeout <= 0:
            raise ValueError("tool_timeout must be > 0")
        return self
