from pathlib import Path

import yaml

import watch_ai.config as config_module
from watch_ai.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: openai\n  model: gpt-4o-mini\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: openrouter\n"
            "  model: anthropic/claude-3.5-sonnet\n"
            "agent:\n"
            "  max_rounds: 7\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.provider == "openrouter"
    assert cfg.model.model == "anthropic/claude-3.5-sonnet"
    assert cfg.agent.max_rounds == 7
    assert cfg.agent.context_messages == 10


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("approval:\n  autopilot: true\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.approval.autopilot is True


def test_defaults_when_no_file_exists(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.agent.max_rounds == 15
    assert cfg.tools.search_max_results == 20
    assert cfg.tools.command.timeout == 60
    assert cfg.approval.autopilot is False
    assert cfg.web.port == 3001
    assert cfg.session.history_limit == 50


def test_environment_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("WATCH_AI_AGENT__MAX_ROUNDS", "4")
    monkeypatch.setenv("WATCH_AI_WEB__PORT", "8080")

    cfg = Config.load()

    assert cfg.agent.max_rounds == 4
    assert cfg.web.port == 8080


def test_save_round_trips_through_yaml(tmp_path: Path):
    cfg = Config()
    cfg.approval.autopilot = True
    cfg.tools.command.blocked = ["shutdown"]

    path = cfg.save(tmp_path / "nested" / "config.yaml")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert data["approval"]["autopilot"] is True
    reloaded = Config.from_yaml(path)
    assert reloaded.tools.command.blocked == ["shutdown"]


def test_resolved_workspace_path_anchors_relative_paths(tmp_path: Path):
    cfg = Config()
    cfg.workspace.path = "project"
    assert cfg.resolved_workspace_path(tmp_path) == (tmp_path / "project").resolve()

    cfg.workspace.path = str(tmp_path / "abs")
    assert cfg.resolved_workspace_path("/elsewhere") == (tmp_path / "abs").resolve()
