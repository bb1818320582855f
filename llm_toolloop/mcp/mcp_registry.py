"""
MCP server registry for llm_toolloop.
Keeps the list of configured tool servers and persists it as JSON.
"""
import json
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..constants import MCP_CONFIG_FILE
from ..utils import server_name_from_url

logger = logging.getLogger(__name__)


@dataclass
class MCPServerConfig:
    """Configuration for one tool server."""
    name: str
    endpoint: str
    auth_token: Optional[str] = None
    enabled: bool = True
    auto_connect: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        self.endpoint = self.endpoint.strip()
        if not self.name or not self.name.strip():
            self.name = server_name_from_url(self.endpoint)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MCPServerConfig':
        """
        Create from a mapping.

        Accepts both ``auth_token`` and the camelCase ``authToken`` key.
        """
        return cls(
            name=data.get("name") or "",
            endpoint=data.get("endpoint") or data.get("url") or "",
            auth_token=data.get("auth_token", data.get("authToken")),
            enabled=data.get("enabled", True),
            auto_connect=data.get("auto_connect", True),
            description=data.get("description", ""),
        )


class MCPRegistry:
    """
    Registry of tool server configurations.

    Servers are keyed by name; changes are written through to the
    JSON file immediately.
    """

    def __init__(self, config_file: Optional[Path] = None) -> None:
        self._servers: Dict[str, MCPServerConfig] = {}
        self._config_file = Path(config_file) if config_file else MCP_CONFIG_FILE
        self._config_file.parent.mkdir(parents=True, exist_ok=True)
        self._load_config()

    def _load_config(self) -> None:
        if not self._config_file.exists():
            self._save_config()
            return

        try:
            with open(self._config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            servers = data.get("servers", [])
            if isinstance(servers, dict):
                servers = list(servers.values())
            for server_data in servers:
                config = MCPServerConfig.from_dict(server_data)
                if config.endpoint:
                    self._servers[config.name] = config
        except (json.JSONDecodeError, AttributeError, TypeError) as e:
            logger.warning("Failed to load MCP server config %s: %s", self._config_file, e)

    def _save_config(self) -> None:
        data = {"servers": [server.to_dict() for server in self._servers.values()]}
        with open(self._config_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)

    def register(self, config: MCPServerConfig) -> None:
        """Add or replace a server configuration."""
        self._servers[config.name] = config
        self._save_config()

    def unregister(self, name: str) -> bool:
        """
        Remove a server configuration.

        Returns:
            True if the server was registered
        """
        if name in self._servers:
            del self._servers[name]
            self._save_config()
            return True
        return False

    def get(self, name: str) -> Optional[MCPServerConfig]:
        return self._servers.get(name)

    def find_by_endpoint(self, endpoint: str) -> Optional[MCPServerConfig]:
        for server in self._servers.values():
            if server.endpoint == endpoint:
                return server
        return None

    def list_servers(self, enabled_only: bool = False) -> List[MCPServerConfig]:
        servers = list(self._servers.values())
        if enabled_only:
            servers = [s for s in servers if s.enabled]
        return servers

    def get_auto_connect_servers(self) -> List[MCPServerConfig]:
        return [s for s in self._servers.values() if s.enabled and s.auto_connect]

    def set_enabled(self, name: str, enabled: bool) -> bool:
        if name not in self._servers:
            return False
        self._servers[name].enabled = enabled
        self._save_config()
        return True
