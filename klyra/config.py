"""Agent configuration: defaults, named profiles and JSON persistence."""

from __future__ import annotations

import copy
import json
import os
import sys
from dataclasses import dataclass, field
from typing import Any

# Each entry: attribute name, JSON key, value kind.
_SHARED_FIELDS: tuple[tuple[str, str, str], ...] = (
    ("provider", "provider", "str"),
    ("model", "model", "str"),
    ("model_routes", "model_routes", "map"),
    ("base_urls", "base_urls", "map"),
    ("reasoning", "reasoning", "str"),
    ("stream", "stream", "bool"),
    ("max_steps", "max_steps", "int"),
    ("max_messages", "max_messages", "int"),
    ("max_context", "max_context_tokens", "int"),
    ("max_instructions", "max_instruction_bytes", "int"),
    ("max_output", "max_output_tokens", "int"),
    ("approval_mode", "approval_mode", "str"),
    ("sandbox", "sandbox", "str"),
    ("mode", "mode", "str"),
    ("context_files", "context_files", "list"),
    ("context_cockpit", "context_cockpit", "bool"),
    ("context_cockpit_inject", "context_cockpit_inject", "bool"),
    ("context_cockpit_tokens", "context_cockpit_tokens", "int"),
    ("context_cockpit_max_files", "context_cockpit_max_files", "int"),
    ("context_cockpit_max_cards", "context_cockpit_max_cards", "int"),
    ("context_cockpit_diff", "context_cockpit_diff", "bool"),
    ("context_retrieval", "context_retrieval", "bool"),
    ("context_retrieval_tokens", "context_retrieval_tokens", "int"),
    ("context_retrieval_chunks", "context_retrieval_chunks", "int"),
    ("context_embeddings", "context_embeddings", "bool"),
    ("context_reranker", "context_reranker", "bool"),
    ("context_recipes", "context_recipes", "bool"),
    ("negative_context", "negative_context", "bool"),
    ("skills", "skills", "bool"),
    ("mcp_servers", "mcp_servers", "servers"),
    ("store_responses", "store_responses", "bool"),
    ("disabled_tools", "disabled_tools", "list"),
)

_CONFIG_FIELDS = _SHARED_FIELDS + (("profiles", "profiles", "profiles"),)

_CONTAINER_KINDS = frozenset({"map", "list", "servers", "profiles"})
_MERGED_ON_PROFILE = frozenset({"base_urls", "mcp_servers"})


@dataclass
class MCPServer:
    """An external tool server started by command."""

    command: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool | None = None


@dataclass
class Profile:
    """A named set of overrides applied on top of the base configuration."""

    provider: str = ""
    model: str = ""
    model_routes: dict[str, str] | None = None
    base_urls: dict[str, str] | None = None
    reasoning: str = ""
    stream: bool | None = None
    max_steps: int = 0
    max_messages: int = 0
    max_context: int = 0
    max_instructions: int = 0
    max_output: int = 0
    approval_mode: str = ""
    sandbox: str = ""
    mode: str = ""
    context_files: list[str] | None = None
    context_cockpit: bool | None = None
    context_cockpit_inject: bool | None = None
    context_cockpit_tokens: int = 0
    context_cockpit_max_files: int = 0
    context_cockpit_max_cards: int = 0
    context_cockpit_diff: bool | None = None
    context_retrieval: bool | None = None
    context_retrieval_tokens: int = 0
    context_retrieval_chunks: int = 0
    context_embeddings: bool | None = None
    context_reranker: bool | None = None
    context_recipes: bool | None = None
    negative_context: bool | None = None
    skills: bool | None = None
    mcp_servers: dict[str, MCPServer] | None = None
    store_responses: bool | None = None
    disabled_tools: list[str] | None = None


def _default_profiles() -> dict[str, Profile]:
    return {
        "local": Profile(provider="mock", model="mock-agent"),
        "ollama": Profile(
            provider="ollama",
            max_steps=20,
            max_context=16000,
            max_output=4096,
            approval_mode="ask",
            sandbox="workspace-write",
        ),
        "anthropic": Profile(
            provider="anthropic",
            max_steps=20,
            max_context=32000,
            max_output=4096,
            approval_mode="ask",
            sandbox="workspace-write",
        ),
        "gemini": Profile(
            provider="gemini",
            max_steps=20,
            max_context=32000,
            max_output=4096,
            approval_mode="ask",
            sandbox="workspace-write",
        ),
        "coding": Profile(
            provider="openai",
            reasoning="low",
            max_steps=20,
            max_output=4096,
            approval_mode="ask",
            sandbox="workspace-write",
        ),
        "deep": Profile(
            provider="openai",
            reasoning="medium",
            max_steps=30,
            max_context=64000,
            max_output=8192,
            approval_mode="ask",
        ),
    }


@dataclass
class Config:
    """Complete agent configuration; a fresh instance holds the defaults."""

    provider: str = "mock"
    model: str = "mock-agent"
    model_routes: dict[str, str] = field(default_factory=dict)
    base_urls: dict[str, str] = field(default_factory=dict)
    reasoning: str = ""
    stream: bool = True
    max_steps: int = 20
    max_messages: int = 40
    max_context: int = 24000
    max_instructions: int = 12000
    max_output: int = 4096
    approval_mode: str = "auto"
    sandbox: str = "workspace-write"
    mode: str = "edit"
    context_files: list[str] = field(default_factory=list)
    context_cockpit: bool = True
    context_cockpit_inject: bool = True
    context_cockpit_tokens: int = 1200
    context_cockpit_max_files: int = 60
    context_cockpit_max_cards: int = 10
    context_cockpit_diff: bool = True
    context_retrieval: bool = True
    context_retrieval_tokens: int = 1000
    context_retrieval_chunks: int = 10
    context_embeddings: bool = True
    context_reranker: bool = False
    context_recipes: bool = True
    negative_context: bool = True
    skills: bool = True
    mcp_servers: dict[str, MCPServer] = field(default_factory=dict)
    store_responses: bool = False
    disabled_tools: list[str] = field(default_factory=lambda: ["write_file"])
    profiles: dict[str, Profile] = field(default_factory=_default_profiles)

    def save(self, path: str | None = None) -> None:
        """Write the configuration as indented JSON, creating parent directories."""
        _write_json(path, self.to_dict())

    def with_profile(self, name: str) -> Config:
        """Return a copy of this configuration with the named profile applied."""
        cfg = copy.deepcopy(self)
        cfg._apply_defaults()
        name = name.strip()
        if not name:
            return cfg
        profile = cfg.profiles.get(name)
        if profile is None:
            raise ValueError(f'profile "{name}" not found')

        provider_changed = bool(profile.provider) and profile.provider != cfg.provider
        if profile.provider:
            cfg.provider = profile.provider
        if profile.model:
            cfg.model = profile.model
        elif provider_changed:
            cfg.model = ""

        for attr, _, kind in _SHARED_FIELDS:
            if attr in ("provider", "model"):
                continue
            value = getattr(profile, attr)
            if kind == "str":
                if value:
                    setattr(cfg, attr, value)
            elif kind == "int":
                if value > 0:
                    setattr(cfg, attr, value)
            elif value is not None:
                if attr in _MERGED_ON_PROFILE:
                    getattr(cfg, attr).update(copy.deepcopy(value))
                else:
                    setattr(cfg, attr, copy.deepcopy(value))
        return cfg

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready mapping using the configuration file's keys."""
        out: dict[str, Any] = {}
        for attr, key, kind in _CONFIG_FIELDS:
            value = getattr(self, attr)
            if (kind in _CONTAINER_KINDS or attr == "reasoning") and not value:
                continue
            out[key] = _dump(value, kind)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Build a configuration from defaults overlaid with a JSON mapping.

        Keys present in ``data`` replace defaults; mappings are merged into
        the default mappings and null leaves scalar defaults unchanged.
        """
        if not isinstance(data, dict):
            raise ValueError("configuration must be a JSON object")
        cfg = cls()
        for attr, key, kind in _CONFIG_FIELDS:
            if key not in data:
                continue
            raw = data[key]
            if raw is None:
                if kind == "list":
                    setattr(cfg, attr, [])
                elif kind in _CONTAINER_KINDS:
                    setattr(cfg, attr, {})
                continue
            value = _parse(raw, kind, key)
            if kind in ("map", "servers", "profiles"):
                getattr(cfg, attr).update(value)
            else:
                setattr(cfg, attr, value)
        return cfg

    def _apply_defaults(self) -> None:
        defaults = Config()
        if not self.provider:
            self.provider = defaults.provider
        if self.base_urls is None:
            self.base_urls = {}
        if self.mcp_servers is None:
            self.mcp_servers = {}
        if not self.model and self.provider == "mock":
            self.model = defaults.model
        for attr in (
            "max_steps",
            "max_messages",
            "max_context",
            "max_instructions",
            "max_output",
            "context_cockpit_tokens",
            "context_cockpit_max_files",
            "context_cockpit_max_cards",
            "context_retrieval_tokens",
            "context_retrieval_chunks",
        ):
            if getattr(self, attr) <= 0:
                setattr(self, attr, getattr(defaults, attr))
        for attr in ("approval_mode", "sandbox", "mode"):
            if not getattr(self, attr):
                setattr(self, attr, getattr(defaults, attr))
        if not self.profiles:
            self.profiles = defaults.profiles


def default_config() -> Config:
    """The built-in default configuration."""
    return Config()


def _user_config_dir() -> str | None:
    if sys.platform == "win32":
        return os.environ.get("APPDATA") or None
    home = os.environ.get("HOME", "")
    if sys.platform == "darwin":
        return os.path.join(home, "Library", "Application Support") if home else None
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return xdg if os.path.isabs(xdg) else None
    return os.path.join(home, ".config") if home else None


def default_path() -> str:
    """Location of the configuration file in the user's config directory."""
    directory = _user_config_dir()
    if directory:
        return os.path.join(directory, "agentcli", "config.json")
    return os.path.join(".", ".agentcli", "config.json")


def load(path: str | None = None) -> Config:
    """Read a configuration file; a missing file yields the defaults."""
    if path is None or not path.strip():
        path = default_path()
    try:
        with open(path, encoding="utf-8") as handle:
            raw = handle.read()
    except FileNotFoundError:
        return Config()
    try:
        data = json.loads(raw)
        cfg = Config() if data is None else Config.from_dict(data)
    except ValueError as exc:
        raise ValueError(f"read {path}: {exc}") from exc
    cfg._apply_defaults()
    return cfg


def write_default(path: str | None = None) -> str:
    """Write the default configuration to ``path`` and return the path used."""
    return _write_json(path, Config().to_dict())


def _write_json(path: str | None, payload: dict[str, Any]) -> str:
    if path is None or not path.strip():
        path = default_path()
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
    return path


def _type_error(where: str, expected: str) -> ValueError:
    return ValueError(f"{where}: expected {expected}")


def _parse(value: Any, kind: str, where: str) -> Any:
    if kind == "str":
        if not isinstance(value, str):
            raise _type_error(where, "string")
        return value
    if kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise _type_error(where, "integer")
        return value
    if kind == "bool":
        if not isinstance(value, bool):
            raise _type_error(where, "boolean")
        return value
    if kind == "list":
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise _type_error(where, "list of strings")
        return list(value)
    if not isinstance(value, dict):
        raise _type_error(where, "object")
    if kind == "map":
        if not all(isinstance(item, str) for item in value.values()):
            raise _type_error(where, "object of strings")
        return dict(value)
    if kind == "servers":
        return {name: _server_from_dict(item, f"{where}.{name}") for name, item in value.items()}
    return {name: _profile_from_dict(item, f"{where}.{name}") for name, item in value.items()}


def _dump(value: Any, kind: str) -> Any:
    if kind == "map":
        return dict(sorted(value.items()))
    if kind == "list":
        return list(value)
    if kind == "servers":
        return {name: _server_to_dict(value[name]) for name in sorted(value)}
    if kind == "profiles":
        return {name: _profile_to_dict(value[name]) for name in sorted(value)}
    return value


def _server_from_dict(data: Any, where: str) -> MCPServer:
    if data is None:
        return MCPServer()
    if not isinstance(data, dict):
        raise _type_error(where, "object")
    server = MCPServer()
    if data.get("command") is not None:
        server.command = _parse(data["command"], "str", f"{where}.command")
    if data.get("args") is not None:
        server.args = _parse(data["args"], "list", f"{where}.args")
    if data.get("env") is not None:
        server.env = _parse(data["env"], "map", f"{where}.env")
    if data.get("enabled") is not None:
        server.enabled = _parse(data["enabled"], "bool", f"{where}.enabled")
    return server


def _server_to_dict(server: MCPServer) -> dict[str, Any]:
    out: dict[str, Any] = {"command": server.command}
    if server.args:
        out["args"] = list(server.args)
    if server.env:
        out["env"] = dict(sorted(server.env.items()))
    if server.enabled is not None:
        out["enabled"] = server.enabled
    return out


def _profile_from_dict(data: Any, where: str) -> Profile:
    if data is None:
        return Profile()
    if not isinstance(data, dict):
        raise _type_error(where, "object")
    profile = Profile()
    for attr, key, kind in _SHARED_FIELDS:
        raw = data.get(key)
        if raw is None:
            continue
        setattr(profile, attr, _parse(raw, kind, f"{where}.{key}"))
    return profile


def _profile_to_dict(profile: Profile) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for attr, key, kind in _SHARED_FIELDS:
        value = getattr(profile, attr)
        if value is None:
            continue
        if kind in ("str", "int") and not value:
            continue
        if kind in _CONTAINER_KINDS and not value:
            continue
        out[key] = _dump(value, kind)
    return out