"""
Configuration: the explicit settings struct threaded into every component.

Sources, lowest to highest precedence:
1. Built-in defaults (the pydantic field defaults below)
2. ``loophook.yml`` found in the project directory or one of its parents
   (or the file named by LOOPHOOK_CONFIG)
3. Environment overrides (LOOPHOOK_STATE_DIR)

Example ``loophook.yml``:

    modes:
      max_iterations: 15
      min_confidence: 60
    goals:
      auto_verify: true
      goals:
        - name: coverage
          command: ./scripts/coverage-score.sh
          target: 80
          timeout_secs: 120
    background:
      auto_clear: true
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from loophook.lib.paths import get_state_root

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "loophook.yml"


class ModeDefaults(BaseModel):
    """Defaults applied when a mode is activated."""

    max_iterations: int = Field(default=10, ge=1)
    completion_promise: str = "TASK COMPLETE"
    min_confidence: int = Field(default=50, ge=0, le=100)
    require_dual_condition: bool = True
    session_hours: float = Field(default=24, gt=0)


class GoalConfig(BaseModel):
    """One scoring command checked against a numeric target."""

    name: str
    # Working directory relative to the project root
    workspace: str | None = None
    # Must print a score (0-100) as its last stdout line and exit 0
    command: str
    target: float
    # Falls back to default_goal_timeout_secs (60s)
    timeout_secs: float | None = Field(default=None, gt=0)
    enabled: bool = True
    description: str | None = None


class GoalsConfig(BaseModel):
    goals: list[GoalConfig] = Field(default_factory=list)
    check_interval_secs: float = 30
    max_iterations: int = 100
    # Run goals automatically when a mode claims completion
    auto_verify: bool = True


class BackgroundConfig(BaseModel):
    # Mark notifications delivered as part of the read that returns them
    auto_clear: bool = True
    result_preview_chars: int = 200


class LoopHookConfig(BaseModel):
    project_dir: Path
    state_dir: Path
    mode_defaults: ModeDefaults = Field(default_factory=ModeDefaults)
    goals: GoalsConfig = Field(default_factory=GoalsConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
    default_goal_timeout_secs: float = 60

    @classmethod
    def for_directory(cls, project_dir: Path, **overrides: Any) -> LoopHookConfig:
        """Defaults-only config rooted at ``project_dir`` (no file lookup)."""
        overrides.setdefault("state_dir", get_state_root(project_dir))
        return cls(project_dir=project_dir, **overrides)


def find_config_file(project_dir: Path) -> Path | None:
    """Find loophook.yml by searching the project directory and its parents."""
    explicit = os.environ.get("LOOPHOOK_CONFIG")
    if explicit:
        path = Path(explicit)
        return path if path.is_file() else None

    for directory in [project_dir, *project_dir.parents]:
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def load_config_file(path: Path) -> dict[str, Any]:
    """Load raw YAML config. Returns empty dict on any read/parse failure."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load config %s: %s", path, e)
        return {}

    if not isinstance(data, dict):
        logger.warning("Config %s is not a mapping; ignoring", path)
        return {}
    return data


def load_config(project_dir: Path) -> LoopHookConfig:
    """Build the effective config for a project directory.

    Never raises: an invalid file falls back to defaults with a warning.
    """
    raw: dict[str, Any] = {}
    config_path = find_config_file(project_dir)
    if config_path is not None:
        raw = load_config_file(config_path)

    fields: dict[str, Any] = {}
    if "modes" in raw:
        fields["mode_defaults"] = raw["modes"]
    if "goals" in raw:
        goals = raw["goals"]
        # Accept a bare list as shorthand for {goals: [...]}
        fields["goals"] = {"goals": goals} if isinstance(goals, list) else goals
    if "background" in raw:
        fields["background"] = raw["background"]
    if "default_goal_timeout_secs" in raw:
        fields["default_goal_timeout_secs"] = raw["default_goal_timeout_secs"]

    try:
        return LoopHookConfig.for_directory(project_dir, **fields)
    except ValidationError as e:
        logger.warning("Invalid config %s, using defaults: %s", config_path, e)
        return LoopHookConfig.for_directory(project_dir)
