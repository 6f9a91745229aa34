from pathlib import Path

import pytest

import watch_ai.config as config_module
from watch_ai.config import Config, get_config, set_config


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path: Path, workspace: Path, monkeypatch):
    """Global config pointed at a temp workspace, database and config file."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "home" / "config.yaml")
    old_cfg = get_config().model_copy(deep=True)
    cfg = Config()
    cfg.workspace.path = str(workspace)
    cfg.session.path = str(tmp_path / "conversations.db")
    set_config(cfg)
    try:
        yield cfg
    finally:
        set_config(old_cfg)
