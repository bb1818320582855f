"""
Configuration management for llm_toolloop.
Handles loading, saving, and accessing configuration from a JSON file and environment variables.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from .constants import (
    BACKOFF_BASE,
    BACKOFF_MAX,
    CONFIG_FILE,
    DEFAULT_MAX_TOOL_CALLS_PER_TURN,
    DEFAULT_MODEL,
    DEFAULT_OLLAMA_HOST,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOOL_TIMEOUT,
    HEARTBEAT_INTERVAL,
    HEARTBEAT_TIMEOUT,
    INITIALIZE_TIMEOUT,
    LIST_TOOLS_TIMEOUT,
    SESSION_WAIT_TIMEOUT,
)

logger = logging.getLogger(__name__)

ENV_OLLAMA_HOST = "LLM_TOOLLOOP_OLLAMA_HOST"
ENV_MODEL = "LLM_TOOLLOOP_MODEL"
ENV_MAX_TOOL_CALLS = "LLM_TOOLLOOP_MAX_TOOL_CALLS"


@dataclass
class LLMConfig:
    """LLM-specific configuration."""
    host: str = DEFAULT_OLLAMA_HOST
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT


@dataclass
class ToolsConfig:
    """Tool loop policy and transport timeouts."""
    max_tool_calls_per_turn: int = DEFAULT_MAX_TOOL_CALLS_PER_TURN
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    initialize_timeout: float = INITIALIZE_TIMEOUT
    list_tools_timeout: float = LIST_TOOLS_TIMEOUT
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    heartbeat_timeout: float = HEARTBEAT_TIMEOUT
    session_wait_timeout: float = SESSION_WAIT_TIMEOUT
    backoff_base: float = BACKOFF_BASE
    backoff_max: float = BACKOFF_MAX


@dataclass
class MCPConfig:
    """MCP configuration."""
    enabled: bool = True
    auto_connect: bool = True
    servers: list = field(default_factory=list)


@dataclass
class AppConfig:
    """Main application configuration."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    mcp: MCPConfig = field(default_factory=MCPConfig)


def _known_fields(cls: type, data: Any) -> dict:
    """Drop keys the dataclass does not declare so old files still load."""
    if not isinstance(data, dict):
        raise TypeError(f"expected an object for {cls.__name__}")
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


class ConfigManager:
    """
    Manages application configuration backed by a JSON file.

    Environment variables take precedence over file values; they are
    reapplied on ``reload``.
    """

    def __init__(self, config_file: Optional[Path] = None) -> None:
        self._config_file = Path(config_file) if config_file else CONFIG_FILE
        self._config: AppConfig = AppConfig()
        self._ensure_config_dir()
        self._load_config()
        self._load_env_vars()

    @property
    def path(self) -> Path:
        return self._config_file

    def _ensure_config_dir(self) -> None:
        self._config_file.parent.mkdir(parents=True, exist_ok=True)

    def _load_config(self) -> None:
        """Load configuration from the JSON file, creating it if absent."""
        if not self._config_file.exists():
            self._config = AppConfig()
            self._save_config()
            return

        try:
            with open(self._config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)

            config = AppConfig()
            if 'llm' in data:
                config.llm = LLMConfig(**_known_fields(LLMConfig, data['llm']))
            if 'tools' in data:
                config.tools = ToolsConfig(**_known_fields(ToolsConfig, data['tools']))
            if 'mcp' in data:
                config.mcp = MCPConfig(**_known_fields(MCPConfig, data['mcp']))
            self._config = config
        except (json.JSONDecodeError, TypeError, OSError) as e:
            logger.warning("Failed to load config file %s: %s", self._config_file, e)
            self._config = AppConfig()

    def _load_env_vars(self) -> None:
        host = os.environ.get(ENV_OLLAMA_HOST)
        if host:
            self._config.llm.host = host
        model = os.environ.get(ENV_MODEL)
        if model:
            self._config.llm.model = model
        max_calls = os.environ.get(ENV_MAX_TOOL_CALLS)
        if max_calls:
            try:
                self._config.tools.max_tool_calls_per_turn = int(max_calls)
            except ValueError:
                logger.warning("Ignoring non-integer %s=%r", ENV_MAX_TOOL_CALLS, max_calls)

    def _save_config(self) -> None:
        data = {
            'llm': asdict(self._config.llm),
            'tools': asdict(self._config.tools),
            'mcp': asdict(self._config.mcp),
        }
        with open(self._config_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def llm(self) -> LLMConfig:
        return self._config.llm

    @property
    def tools(self) -> ToolsConfig:
        return self._config.tools

    @property
    def mcp(self) -> MCPConfig:
        return self._config.mcp

    def update_llm(self, **kwargs: Any) -> None:
        """Update LLM configuration and persist it. Unknown keys are ignored."""
        for key, value in kwargs.items():
            if hasattr(self._config.llm, key):
                setattr(self._config.llm, key, value)
        self._save_config()

    def update_tools(self, **kwargs: Any) -> None:
        """Update tool loop configuration and persist it. Unknown keys are ignored."""
        for key, value in kwargs.items():
            if hasattr(self._config.tools, key):
                setattr(self._config.tools, key, value)
        self._save_config()

    def save(self) -> None:
        self._save_config()

    def reload(self) -> None:
        """Reload configuration from file and reapply the environment."""
        self._load_config()
        self._load_env_vars()

    def reset(self) -> None:
        """Reset configuration to defaults."""
        self._config = AppConfig()
        self._save_config()


_config_manager: Optional[ConfigManager] = None


def get_config() -> ConfigManager:
    """Get the shared configuration manager, creating it on first use."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager
