"""Configuration loading helpers for celebwire."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from .models import PipelineConfig

CONFIG_FILENAME = "celebwire.yaml"

ENV_HOME = "CELEBWIRE_HOME"
ENV_API_KEYS = "CELEBWIRE_API_KEYS"
ENV_MONGO_URI = "CELEBWIRE_MONGO_URI"
ENV_REDIS_URL = "CELEBWIRE_REDIS_URL"


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    state_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get(ENV_HOME)
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.state_dir = (self.data_dir / "state").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.state_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO, env overrides and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._cache: PipelineConfig | None = None

    def load(self) -> PipelineConfig:
        if self._cache is not None:
            return self._cache
        path = self.locator.config_path()
        payload = _read_file(path) if path.exists() else {}
        self._apply_env_overrides(payload)
        config = PipelineConfig.model_validate(payload)
        if not path.exists():
            self.save(config)
        self._cache = config
        return config

    def save(self, config: PipelineConfig) -> None:
        payload = config.model_dump(mode="json")
        # Secrets supplied through the environment are not written back to disk.
        if os.environ.get(ENV_API_KEYS):
            payload["credentials"]["api_keys"] = []
        _write_file(self.locator.config_path(), payload)
        self._cache = config

    def reload(self) -> PipelineConfig:
        self._cache = None
        return self.load()

    def state_path(self) -> Path:
        config = self.load()
        return config.storage.resolved_state_path(self.locator.project_root)

    @staticmethod
    def _apply_env_overrides(payload: dict) -> None:
        keys = os.environ.get(ENV_API_KEYS)
        if keys:
            payload.setdefault("credentials", {})["api_keys"] = keys
        mongo_uri = os.environ.get(ENV_MONGO_URI)
        if mongo_uri:
            payload.setdefault("storage", {})["mongo_uri"] = mongo_uri
        redis_url = os.environ.get(ENV_REDIS_URL)
        if redis_url is not None:
            payload.setdefault("cache", {})["redis_url"] = redis_url or None


__all__ = ["CONFIG_FILENAME", "ConfigLocator", "ConfigRepository"]
