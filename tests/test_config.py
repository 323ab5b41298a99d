import json
import os

import pytest

from klyra.config import (
    Config,
    MCPServer,
    Profile,
    default_config,
    default_path,
    load,
    write_default,
)


def test_with_profile_applies_overrides():
    cfg = default_config()
    cfg.model = "base-model"
    cfg.profiles["custom"] = Profile(
        provider="openai",
        model="custom-model",
        reasoning="low",
        max_steps=12,
        approval_mode="ask",
        store_responses=True,
    )
    got = cfg.with_profile("custom")
    assert got.provider == "openai"
    assert got.model == "custom-model"
    assert got.max_steps == 12
    assert got.approval_mode == "ask"
    assert got.store_responses is True


def test_with_profile_clears_inherited_model_when_provider_changes():
    got = default_config().with_profile("coding")
    assert got.provider == "openai"
    assert got.model == ""


def test_with_profile_keeps_model_when_provider_unchanged():
    cfg = default_config()
    cfg.model = "my-mock"
    cfg.profiles["same"] = Profile(provider="mock", max_steps=5)
    got = cfg.with_profile("same")
    assert got.model == "my-mock"
    assert got.max_steps == 5


def test_with_profile_empty_name_returns_copy():
    cfg = default_config()
    got = cfg.with_profile("   ")
    assert got == cfg
    got.base_urls["x"] = "y"
    assert "x" not in cfg.base_urls


def test_with_profile_unknown_raises():
    with pytest.raises(ValueError, match='profile "nope" not found'):
        default_config().with_profile("nope")


def test_load_missing_returns_default(tmp_path):
    cfg = load(str(tmp_path / "missing.json"))
    assert cfg.provider == "mock"
    assert cfg.max_steps == 20
    assert cfg.max_context == 24000
    assert cfg.stream and cfg.context_cockpit and cfg.context_cockpit_inject
    assert cfg.context_retrieval and cfg.context_recipes and cfg.negative_context and cfg.skills
    assert cfg.context_cockpit_max_cards == 10
    assert cfg.context_retrieval_tokens == 1000
    assert cfg.context_retrieval_chunks == 10
    assert cfg.context_embeddings is True
    assert cfg.context_reranker is False
    assert cfg.disabled_tools == ["write_file"]


def test_load_old_config_defaults_new_context_booleans_on(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"provider":"mock","model":"mock-agent"}', encoding="utf-8")
    cfg = load(str(path))
    assert cfg.stream and cfg.context_cockpit and cfg.context_cockpit_inject
    assert cfg.context_cockpit_diff and cfg.context_retrieval and cfg.context_embeddings
    assert cfg.context_reranker is False
    assert cfg.context_recipes and cfg.negative_context and cfg.skills


def test_load_respects_explicit_false_and_fills_zero_limits(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"stream": false, "skills": false, "max_steps": 0, "mode": ""}', encoding="utf-8")
    cfg = load(str(path))
    assert cfg.stream is False
    assert cfg.skills is False
    assert cfg.max_steps == 20
    assert cfg.mode == "edit"


def test_load_merges_profiles_with_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"profiles": {"extra": {"provider": "openai", "stream": false}}}', encoding="utf-8")
    cfg = load(str(path))
    assert cfg.profiles["extra"].provider == "openai"
    assert cfg.profiles["extra"].stream is False
    assert cfg.profiles["coding"].reasoning == "low"


def test_load_invalid_json_raises(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="read "):
        load(str(path))


def test_load_wrong_type_raises(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"max_steps": "ten"}', encoding="utf-8")
    with pytest.raises(ValueError, match="max_steps"):
        load(str(path))


def test_with_profile_applies_context_cockpit_overrides():
    cfg = default_config()
    cfg.profiles["small"] = Profile(
        stream=False,
        context_cockpit=False,
        context_cockpit_inject=False,
        context_cockpit_tokens=700,
        context_cockpit_max_files=25,
        context_cockpit_max_cards=8,
        context_cockpit_diff=False,
        context_retrieval=False,
        context_retrieval_tokens=900,
        context_retrieval_chunks=6,
        context_embeddings=False,
        context_reranker=False,
        context_recipes=False,
        negative_context=False,
        skills=False,
    )
    got = cfg.with_profile("small")
    flags = [
        got.stream,
        got.context_cockpit,
        got.context_cockpit_inject,
        got.context_cockpit_diff,
        got.context_retrieval,
        got.context_embeddings,
        got.context_reranker,
        got.context_recipes,
        got.negative_context,
        got.skills,
    ]
    assert flags == [False] * 10
    assert got.context_cockpit_tokens == 700
    assert got.context_cockpit_max_files == 25
    assert got.context_cockpit_max_cards == 8
    assert got.context_retrieval_tokens == 900
    assert got.context_retrieval_chunks == 6


def test_with_profile_merges_mcp_servers():
    cfg = default_config()
    cfg.mcp_servers["base"] = MCPServer(command="base-cmd")
    cfg.profiles["mcp"] = Profile(
        mcp_servers={"demo": MCPServer(command="demo-cmd", args=["--stdio"], enabled=False)}
    )
    got = cfg.with_profile("mcp")
    assert got.mcp_servers["base"].command == "base-cmd"
    assert got.mcp_servers["demo"].command == "demo-cmd"
    assert got.mcp_servers["demo"].enabled is False


def test_with_profile_merges_base_urls_and_replaces_lists():
    cfg = default_config()
    cfg.base_urls["openai"] = "http://localhost:1"
    cfg.profiles["p"] = Profile(base_urls={"ollama": "http://localhost:2"}, disabled_tools=[])
    got = cfg.with_profile("p")
    assert got.base_urls == {"openai": "http://localhost:1", "ollama": "http://localhost:2"}
    assert got.disabled_tools == []
    assert cfg.base_urls == {"openai": "http://localhost:1"}


def test_write_default(tmp_path):
    path = str(tmp_path / "nested" / "config.json")
    written = write_default(path)
    assert written == path
    text = open(path, encoding="utf-8").read()
    assert text.endswith("\n")
    data = json.loads(text)
    assert data["provider"] == "mock"
    assert data["disabled_tools"] == ["write_file"]
    assert "reasoning" not in data


def test_save_and_load_round_trip(tmp_path):
    cfg = default_config()
    cfg.provider = "openai"
    cfg.model = "gpt"
    cfg.reasoning = "high"
    cfg.context_files = ["a.py", "b.py"]
    cfg.model_routes = {"plan": "small"}
    cfg.mcp_servers["srv"] = MCPServer(command="run", args=["-x"], env={"A": "1"}, enabled=True)
    cfg.profiles["mine"] = Profile(stream=False, max_steps=3)
    path = str(tmp_path / "cfg.json")
    cfg.save(path)
    assert load(path) == cfg


def test_to_dict_uses_file_keys():
    data = default_config().to_dict()
    assert data["max_context_tokens"] == 24000
    assert data["max_instruction_bytes"] == 12000
    assert data["max_output_tokens"] == 4096
    assert data["profiles"]["deep"] == {
        "provider": "openai",
        "reasoning": "medium",
        "max_steps": 30,
        "max_context_tokens": 64000,
        "max_output_tokens": 8192,
        "approval_mode": "ask",
    }


def test_from_dict_overlays_defaults():
    cfg = Config.from_dict({"sandbox": "read-only", "base_urls": {"x": "http://localhost"}})
    assert cfg.sandbox == "read-only"
    assert cfg.base_urls == {"x": "http://localhost"}
    assert cfg.max_steps == 20


def test_default_path_uses_xdg_config_home(tmp_path, monkeypatch):
    monkeypatch.setattr("sys.platform", "linux")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert default_path() == os.path.join(str(tmp_path), "agentcli", "config.json")