"""Configuration management for Watch AI."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.watch-ai/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.watch-ai/conversations.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_IGNORE_NAMES = ["node_modules", ".git", ".next", "dist", "build", ".cache"]


class ModelConfig(BaseModel):
    """Model endpoint configuration."""

    provider: str = "openrouter"
    model: str = "google/gemini-2.5-flash-preview"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    temperature: float | None = None
    max_tokens: int = 5000
    timeout: float = 120.0
    referer: str = "http://localhost:3000"
    title: str = "Watch AI"


class AgentConfig(BaseModel):
    """Agent loop limits."""

    max_rounds: int = 15
    context_messages: int = 10
    max_error_retries: int = 1


class CommandToolConfig(BaseModel):
    """run_command tool configuration."""

    timeout: int = 60
    max_output_chars: int = 10000
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "read_file",
        "write_file",
        "edit_file",
        "delete_file",
        "list_dir",
        "search_text",
        "file_search",
        "run_command",
        "get_diagnostics",
        "view_outline",
    ]
    ignore_names: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_NAMES))
    search_max_results: int = 20
    file_search_max_results: int = 10
    list_max_depth: int = 3
    max_read_bytes: int = 1_000_000
    command: CommandToolConfig = Field(default_factory=CommandToolConfig)


class ApprovalConfig(BaseModel):
    """Human approval settings for run_command."""

    autopilot: bool = False


class SessionConfig(BaseModel):
    """Conversation store configuration."""

    path: str = str(DEFAULT_DB_PATH)
    history_limit: int = 50


class WorkspaceConfig(BaseModel):
    """Workspace root configuration."""

    path: str = "."


class WebConfig(BaseModel):
    """Web server configuration."""

    host: str = "127.0.0.1"
    port: int = 3001
    terminal_enabled: bool = True
    shell: str = ""


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Watch AI."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="WATCH_AI_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
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
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; environment variables fill what YAML leaves unset."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> Path:
        """Save configuration to YAML file."""
        config_path = Path(path).expanduser() if path else self.resolve_default_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        return config_path

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.path).expanduser()
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
