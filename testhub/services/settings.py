from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from testhub.constants import (
    DEFAULT_COMMAND,
    DEFAULT_ENV,
    DEFAULT_ENV_PASSTHROUGH,
    DEFAULT_PROGRESS_RULES_PATH,
)
from testhub.schemas import ProgressRule
from testhub.services.output_parser import CompiledRule, compile_rules

LOGGER = logging.getLogger("testhub.settings")

CONFIG_ENV_VAR = "TESTHUB_CONFIG"
DEFAULT_CONFIG_PATH = Path("testhub.json")


class OrchestratorSettings(BaseModel):
    command: List[str] = Field(default_factory=lambda: list(DEFAULT_COMMAND), min_length=1)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_ENV))
    env_passthrough: List[str] = Field(default_factory=lambda: list(DEFAULT_ENV_PASSTHROUGH))
    runner: Literal["subprocess", "docker"] = "subprocess"
    docker_image: str = "mcr.microsoft.com/playwright:v1.47.0-jammy"
    chunk_size: int = Field(default=4096, ge=1)
    tail_max_bytes: int = Field(default=64 * 1024, ge=1)
    max_line_length: int = Field(default=64 * 1024, ge=1)
    max_retained_jobs: int = Field(default=200, ge=1)
    sync_timeout_seconds: float = Field(default=900.0, gt=0)
    subscriber_queue_size: int = Field(default=256, ge=2)
    progress_rules_path: Optional[str] = None
    log_level: str = "INFO"

    def redacted(self) -> Dict[str, Any]:
        payload = self.model_dump()
        payload["env"] = {key: "***" for key in self.env}
        return payload


def _default_config() -> Dict[str, Any]:
    return OrchestratorSettings().model_dump()


def load_settings(path: Optional[Path] = None) -> OrchestratorSettings:
    """Read settings from a JSON file, filling in defaults for missing keys."""
    config_path = path or Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH))
    if not config_path.exists():
        LOGGER.info("No settings file at %s; using defaults", config_path)
        return OrchestratorSettings()
    with config_path.open("r", encoding="utf-8") as handle:
        try:
            raw = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Settings file {config_path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"Settings file {config_path} must contain a JSON object.")
    config = _default_config()
    for key, value in raw.items():
        if key not in config:
            LOGGER.warning("Ignoring unknown setting %r in %s", key, config_path)
            continue
        config[key] = value
    try:
        return OrchestratorSettings.model_validate(config)
    except ValidationError as exc:
        raise ValueError(f"Invalid settings in {config_path}: {exc}") from exc


def load_progress_rules(settings: OrchestratorSettings) -> List[CompiledRule]:
    rules_path = Path(settings.progress_rules_path) if settings.progress_rules_path else DEFAULT_PROGRESS_RULES_PATH
    try:
        with rules_path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except FileNotFoundError as exc:
        raise ValueError(f"Progress rule table missing: {rules_path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Progress rule table {rules_path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, list):
        raise ValueError(f"Progress rule table {rules_path} must be a JSON list.")
    try:
        rules = [ProgressRule.model_validate(item) for item in raw]
    except ValidationError as exc:
        raise ValueError(f"Invalid progress rule in {rules_path}: {exc}") from exc
    compiled = compile_rules(rules)
    LOGGER.debug("Loaded %d progress rules from %s", len(compiled), rules_path)
    return compiled


def build_environment(settings: OrchestratorSettings, source: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Only passthrough names and declared values reach the test process."""
    ambient = os.environ if source is None else source
    env = {name: ambient[name] for name in settings.env_passthrough if name in ambient}
    env.update(settings.env)
    return env


_settings: Optional[OrchestratorSettings] = None


def get_settings() -> OrchestratorSettings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
