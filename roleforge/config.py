"""Runtime settings: defaults, then ``config.json`` in the data dir, then env vars.

Environment variables use the ``ROLEFORGE_`` prefix and the upper-cased
setting name, e.g. ``ROLEFORGE_MAX_DIRECTOR_PASSES=3``. Structured settings
(``temporal_decay``, ``conditional_rules``) are read from env as JSON.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from roleforge.models import ConditionalRule, DecayConfig, Sampler

logger = logging.getLogger(__name__)

ENV_PREFIX = "ROLEFORGE_"
# Stored values for these keys are merged into the defaults, not replacing them.
_MERGED_KEYS = ("temporal_decay", "llm_sampler", "role_samplers")

_SETTINGS_DEFAULTS: dict[str, Any] = {
    "world_agent_enabled": True,
    "summarization_enabled": True,
    "summarization_round_interval": 5,
    "max_director_passes": 2,
    "role_max_attempts": 3,
    "history_window_messages": 20,
    "persona_name": "user",
    "memory_top_k": 5,
    "memory_min_similarity": 0.3,
    "memory_max_top_k": 12,
    "memory_max_query_chars": 2000,
    "temporal_decay": {"enabled": False, "mode": "time", "floor": 0.3},
    "conditional_rules": [],
    "lore_token_budget": 2048,
    "lore_scan_depth": 4,
    "llm_provider_url": "http://localhost:5001",
    "llm_api_key": "",
    "llm_provider_format": "koboldcpp",
    "llm_model": "",
    "llm_timeout": 120.0,
    "llm_sampler": {"max_tokens": 512, "temperature": 0.7, "top_p": 0.9},
    "role_samplers": {
        "director": {"max_tokens": 400, "temperature": 0.4},
        "world": {"max_tokens": 400, "temperature": 0.3},
        "character": {"max_tokens": 300, "temperature": 0.8},
        "summarizer": {"max_tokens": 600, "temperature": 0.3},
    },
}


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    world_agent_enabled: bool
    summarization_enabled: bool
    summarization_round_interval: int = Field(ge=0)
    max_director_passes: int = Field(ge=1)
    role_max_attempts: int = Field(ge=1)
    history_window_messages: int = Field(ge=0)
    persona_name: str
    memory_top_k: int = Field(ge=0)
    memory_min_similarity: float
    memory_max_top_k: int = Field(ge=0)
    memory_max_query_chars: int = Field(ge=1)
    temporal_decay: DecayConfig
    conditional_rules: list[ConditionalRule]
    lore_token_budget: int = Field(ge=0)
    lore_scan_depth: int = Field(ge=0)
    llm_provider_url: str
    llm_api_key: str
    llm_provider_format: Literal["koboldcpp", "openai"]
    llm_model: str
    llm_timeout: float
    llm_sampler: Sampler
    role_samplers: dict[str, dict[str, Any]]

    @property
    def effective_top_k(self) -> int:
        return min(self.memory_top_k, self.memory_max_top_k)

    def sampler_for(self, role: str) -> Sampler:
        """The base sampler with the role's overrides applied."""
        override = self.role_samplers.get(role) or {}
        return Sampler.model_validate({**self.llm_sampler.model_dump(), **override})


def default_settings(**overrides: Any) -> Settings:
    data = json.loads(json.dumps(_SETTINGS_DEFAULTS))
    data.update(overrides)
    return Settings.model_validate(data)


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, default in _SETTINGS_DEFAULTS.items():
        raw = env.get(ENV_PREFIX + key.upper())
        if raw is None:
            continue
        if isinstance(default, (dict, list)):
            try:
                values[key] = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring %s%s: not valid JSON", ENV_PREFIX, key.upper())
                continue
        else:
            values[key] = raw
    return values


def load_settings(data_dir: Path | None = None, env: Mapping[str, str] | None = None) -> Settings:
    """Read settings, returning defaults merged with stored and environment values."""
    data = json.loads(json.dumps(_SETTINGS_DEFAULTS))
    if data_dir is not None:
        path = _config_path(data_dir)
        if path.is_file():
            stored = json.loads(path.read_text())
            for key, value in stored.items():
                if key not in data:
                    logger.warning("Unknown setting %r in %s", key, path)
                    continue
                if key in _MERGED_KEYS and isinstance(value, dict):
                    data[key].update(value)
                else:
                    data[key] = value
    data.update(_from_env(os.environ if env is None else env))
    return Settings.model_validate(data)


def save_settings(data_dir: Path, updates: dict[str, Any]) -> Settings:
    """Merge *updates* into the stored config and return the resulting settings."""
    path = _config_path(data_dir)
    stored = json.loads(path.read_text()) if path.is_file() else {}
    stored.update(updates)
    data_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(stored, indent=2))
    return load_settings(data_dir, env={})
