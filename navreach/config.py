"""Configuration management for the NavReach engine."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.navreach/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Locally selected default model."""

    provider: str = "openrouter"
    model: str = "openai/gpt-4o-mini"
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_seconds: float = 60.0
    reasoning_effort: str = ""


class AgentConfig(BaseModel):
    """Agent loop limits and heuristics."""

    default_max_iterations: int = 10
    max_iterations_cap: int = 200
    infinite_iteration_ceiling: int = 500
    max_consecutive_tool_failures: int = 3
    max_identical_tool_calls: int = 3
    stall_check_iterations: int = 3
    max_stall_corrections: int = 2
    completion_phrases: list[str] = [
        "complete",
        "completed",
        "finished",
        "accomplished",
        "all done",
        "task done",
    ]
    promissory_patterns: list[str] = [
        r"\bi will\b",
        r"\bi'll\b",
        r"\blet me\b(?! know)",
        r"\bi'm going to\b",
        r"\bi am going to\b",
        r"\bnext,? i\b",
    ]


class GatewayConfig(BaseModel):
    """Model gateway recovery behavior."""

    rate_limit_backoff_seconds: float = 5.0
    max_rate_limit_retries: int = 5
    transient_retries: int = 2


class PacingConfig(BaseModel):
    """Delays applied after side-effecting tool calls."""

    enabled: bool = True
    delays_ms: dict[str, int] = {
        "navigation": 1200,
        "site_action": 1400,
        "interaction": 700,
        "scroll": 600,
        "inspection": 350,
        "control": 0,
        "default": 600,
    }
    speed_multipliers: dict[str, float] = {
        "slow": 2.0,
        "normal": 1.0,
        "fast": 0.5,
    }
    site_action_prefixes: list[str] = [
        "x_",
        "linkedin_",
        "reddit_",
        "instagram_",
        "bluesky_",
    ]
    navigation_tools: list[str] = ["browser_navigate", "browser_go_back", "browser_reload"]
    interaction_tools: list[str] = ["browser_click", "browser_type", "browser_click_coordinates"]
    scroll_tools: list[str] = ["browser_scroll"]
    inspection_tools: list[str] = [
        "browser_snapshot",
        "browser_get_page_content",
        "browser_get_visible_text",
        "browser_find_elements",
    ]


class UsageConfig(BaseModel):
    """Per-user daily action quota."""

    enabled: bool = True
    usage_type: str = "ai_actions"
    daily_limit: int = 100
    unmetered_statuses: list[str] = ["active", "trialing"]
    timezone: str = "UTC"


class RemoteConfig(BaseModel):
    """Remote data service (PostgREST-style) connection."""

    url: str = ""
    anon_key: str = ""
    timeout_seconds: float = 20.0


class PlaybookConfig(BaseModel):
    """Playbook execution options."""

    control_tool_name: str = "report_node_status"


class WorkflowsConfig(BaseModel):
    """Slash-command workflow alias location."""

    path: str = ".agent/workflows"


class ChannelConfig(BaseModel):
    """Output channel sizing."""

    max_pending_events: int = 1000


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for the NavReach engine."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    pacing: PacingConfig = Field(default_factory=PacingConfig)
    usage: UsageConfig = Field(default_factory=UsageConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    playbook: PlaybookConfig = Field(default_factory=PlaybookConfig)
    workflows: WorkflowsConfig = Field(default_factory=WorkflowsConfig)
    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="NAVREACH_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; env vars are applied by BaseSettings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_workflows_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workflow alias directory, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workflows.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
