"""Tool server configuration loaded from YAML.

Example ``.orion/config.yaml``::

    mcp_servers:
      filesystem:
        type: stdio
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "/srv/docs"]
      search:
        type: http
        url: https://tools.internal/mcp
        bearer_token: ${SEARCH_TOOL_TOKEN}
        call_timeout_seconds: 10
"""

import logging
import os
import re
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from orion.errors import ConfigError

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SERVER_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class _ServerBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    description: str = ""
    connect_timeout_seconds: float | None = Field(default=None, gt=0)
    call_timeout_seconds: float | None = Field(default=None, gt=0)


class StdioServerConfig(_ServerBase):
    type: Literal["stdio"]
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None


class HttpServerConfig(_ServerBase):
    type: Literal["http", "sse"]
    url: str = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    bearer_token: str = ""


ServerConfig = Annotated[StdioServerConfig | HttpServerConfig, Field(discriminator="type")]
_server_adapter: TypeAdapter[StdioServerConfig | HttpServerConfig] = TypeAdapter(ServerConfig)


class ToolServerSettings(BaseModel):
    """Canonical, validated view of every configured server."""

    servers: dict[str, StdioServerConfig | HttpServerConfig] = Field(default_factory=dict)

    def enabled(self) -> dict[str, StdioServerConfig | HttpServerConfig]:
        return {name: cfg for name, cfg in self.servers.items() if cfg.enabled}


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_REF.sub(lambda match: os.environ.get(match.group(1), ""), value)
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    return value


def parse_tool_servers(raw: object) -> ToolServerSettings:
    if raw is None:
        return ToolServerSettings()
    if not isinstance(raw, dict):
        raise ConfigError("tool server config must be a mapping")
    section = raw.get("mcp_servers") or {}
    if not isinstance(section, dict):
        raise ConfigError("mcp_servers must be a mapping of server id to config")
    servers: dict[str, StdioServerConfig | HttpServerConfig] = {}
    errors: list[str] = []
    for server_id, entry in section.items():
        name = str(server_id)
        if not _SERVER_ID.match(name) or "__" in name:
            errors.append(f"{name}: invalid server id")
            continue
        try:
            servers[name] = _server_adapter.validate_python(_expand_env(entry))
        except ValidationError as exc:
            detail = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            errors.append(f"{name}: {detail}")
    if errors:
        raise ConfigError("invalid tool server config: " + " | ".join(errors))
    return ToolServerSettings(servers=servers)


def load_tool_servers(path: str | Path) -> ToolServerSettings:
    config_path = Path(path)
    if not config_path.exists():
        logger.warning("Tool server config not found path=%s; no servers configured", config_path)
        return ToolServerSettings()
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"tool server config is not valid YAML: {exc}") from exc
    settings = parse_tool_servers(raw)
    skipped = [name for name, cfg in settings.servers.items() if not cfg.enabled]
    if skipped:
        logger.info("Skipping disabled tool servers: %s", ", ".join(sorted(skipped)))
    return settings
