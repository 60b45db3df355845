"""Read/write persisted local configuration."""

from __future__ import annotations

import json
import os
from pathlib import Path

from newsai.core.settings import PATHS
from newsai.schemas.config import AppConfig

ENV_OVERRIDES = {
    "EXTERNAL_API_URL": "base_url",
    "EXTERNAL_API_AUTH_KEY": "api_key",
}


def apply_env_overrides(config: AppConfig) -> AppConfig:
    updates: dict[str, str] = {}
    for env_name, field in ENV_OVERRIDES.items():
        value = os.environ.get(env_name, "").strip()
        if value:
            updates[field] = value
    if not updates:
        return config
    rendering = config.rendering.model_copy(update=updates)
    return config.model_copy(update={"rendering": rendering})


def load_config(path: Path = PATHS.config_path) -> AppConfig:
    if not path.exists():
        return apply_env_overrides(AppConfig())
    data = json.loads(path.read_text(encoding="utf-8"))
    return apply_env_overrides(AppConfig.model_validate(data))


def save_config(config: AppConfig, path: Path = PATHS.config_path) -> AppConfig:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(config.model_dump(mode="json"), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    return config
