"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SYSTEM_PROMPT = (
    "You are Alcove, a friendly and capable assistant. "
    "Answer truthfully, be concise, and use the available tools when they help. "
    "If you need a quick decision from the user, ask with the feedback_yes_no tool."
)


@dataclass
class AIConfig:
    default_model: str = ""
    temperature: float = 0.7
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    user_name: str = ""
    user_country: str = ""
    user_language: str = ""
    mcp_server: str | None = None


@dataclass
class ProviderConfig:
    id: str
    base_url: str
    api_key: str | None = None
    api_key_env: str | None = None
    models: list[str] = field(default_factory=list)


@dataclass
class McpServerConfig:
    name: str
    url: str
    auth_token: str | None = None


@dataclass
class AppSettings:
    host: str = "127.0.0.1"
    port: int = 8080
    data_dir: Path = field(default_factory=lambda: Path.home() / ".alcove")


@dataclass
class AppConfig:
    ai: AIConfig = field(default_factory=AIConfig)
    app: AppSettings = field(default_factory=AppSettings)
    providers: list[ProviderConfig] = field(default_factory=list)
    mcp_servers: list[McpServerConfig] = field(default_factory=list)

    def provider_for_model(self, model_id: str) -> ProviderConfig | None:
        for provider in self.providers:
            if model_id in provider.models:
                return provider
        return None

    def mcp_server_names(self) -> list[str]:
        return [srv.name for srv in self.mcp_servers]

    @property
    def active_mcp_server(self) -> str | None:
        if self.ai.mcp_server:
            return self.ai.mcp_server
        return self.mcp_servers[0].name if self.mcp_servers else None


def resolve_api_key(provider: ProviderConfig) -> str | None:
    """Look up the credential for a provider: inline value first, then its environment variable."""
    if provider.api_key:
        return provider.api_key
    env_name = provider.api_key_env or f"{provider.id.upper().replace('-', '_')}_API_KEY"
    return os.environ.get(env_name) or None


def normalize_mcp_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if url.endswith("/sse"):
        url = url[: -len("/sse")]
    return url


def _get_config_path(data_dir: Path | None = None) -> Path:
    if data_dir:
        return data_dir / "config.yaml"
    return Path.home() / ".alcove" / "config.yaml"


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    ai_raw = raw.get("ai", {}) or {}
    temperature_raw = ai_raw.get("temperature", os.environ.get("ALCOVE_TEMPERATURE", 0.7))
    try:
        temperature = float(temperature_raw)
    except (TypeError, ValueError):
        raise ValueError(f"ai.temperature must be a number, got {temperature_raw!r} ({path})")

    ai = AIConfig(
        default_model=ai_raw.get("default_model") or os.environ.get("ALCOVE_MODEL", ""),
        temperature=temperature,
        system_prompt=ai_raw.get("system_prompt") or os.environ.get("ALCOVE_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        user_name=ai_raw.get("user_name") or os.environ.get("ALCOVE_USER_NAME", ""),
        user_country=ai_raw.get("user_country", ""),
        user_language=ai_raw.get("user_language", ""),
        mcp_server=ai_raw.get("mcp_server"),
    )

    providers: list[ProviderConfig] = []
    for prov in raw.get("providers", []) or []:
        if not prov.get("id") or not prov.get("base_url"):
            raise ValueError(f"Each provider needs 'id' and 'base_url'. Check the providers section in {path}.")
        providers.append(
            ProviderConfig(
                id=prov["id"],
                base_url=prov["base_url"],
                api_key=prov.get("api_key"),
                api_key_env=prov.get("api_key_env"),
                models=list(prov.get("models", [])),
            )
        )

    if not ai.default_model and providers and providers[0].models:
        ai.default_model = providers[0].models[0]

    mcp_servers: list[McpServerConfig] = []
    for srv in raw.get("mcp_servers", []) or []:
        if not srv.get("name") or not srv.get("url"):
            raise ValueError(f"Each MCP server needs 'name' and 'url'. Check the mcp_servers section in {path}.")
        mcp_servers.append(
            McpServerConfig(
                name=srv["name"],
                url=normalize_mcp_url(srv["url"]),
                auth_token=srv.get("auth_token"),
            )
        )

    names = [srv.name for srv in mcp_servers]
    if len(names) != len(set(names)):
        raise ValueError(f"MCP server names must be unique ({path}).")
    if ai.mcp_server and ai.mcp_server not in names:
        raise ValueError(f"ai.mcp_server '{ai.mcp_server}' is not one of the configured MCP servers ({path}).")

    app_raw = raw.get("app", {}) or {}
    data_dir = Path(os.path.expanduser(app_raw.get("data_dir", "~/.alcove")))
    app_settings = AppSettings(
        host=app_raw.get("host", "127.0.0.1"),
        port=int(app_raw.get("port", 8080)),
        data_dir=data_dir,
    )

    app_settings.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        app_settings.data_dir.chmod(stat.S_IRWXU)  # 0700
        if path.exists():
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
    except OSError:
        pass  # May fail on Windows or non-owned files

    return AppConfig(ai=ai, app=app_settings, providers=providers, mcp_servers=mcp_servers)
