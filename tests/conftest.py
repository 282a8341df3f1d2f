"""Shared fixtures: every test gets its own project directory and state root."""

from pathlib import Path

import pytest

from loophook.lib.config import LoopHookConfig

ENV_VARS = (
    "LOOPHOOK_STATE_DIR",
    "LOOPHOOK_CONFIG",
    "LOOPHOOK_BACKGROUND_TASKS_DIR",
    "LOOPHOOK_LOG_LEVEL",
    "CLAUDE_PROJECT_DIR",
    "CI",
    "CLAUDE_CODE_NON_INTERACTIVE",
    "GITHUB_ACTIONS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def config(project_dir: Path) -> LoopHookConfig:
    return LoopHookConfig(project_dir=project_dir, state_dir=project_dir / ".loophook")
