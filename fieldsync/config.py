# fieldsync/config.py
import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "FIELDSYNC_"


class Config:
    """Central configuration: defaults, optional JSON file, then FIELDSYNC_* env vars."""

    DEFAULT_CONFIG = {
        "database": {
            "url": "sqlite:///./fieldsync_cache.db",
        },
        "remote": {
            "base_url": "http://localhost:54321",
            "api_key": "",
            "timeout": 60,
        },
        "ingest": {
            "chunk_size": 250,
            "min_chunk_size": 50,
            "replace_missing": True,
        },
        "matching": {
            # uncalibrated; tune against real re-exports
            "min_overlap": 3,
            "min_score": 0.58,
        },
        "mapping": {
            "sample_limit": 200,
            "example_limit": 5,
        },
        "logging": {
            "level": "INFO",
        },
    }

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        self.config_path = config_path or os.environ.get(ENV_PREFIX + "CONFIG")
        self._config = self._load_config()
        if overrides:
            self._config = self._deep_merge(self._config, overrides)

    def _load_config(self) -> Dict[str, Any]:
        config = json.loads(json.dumps(self.DEFAULT_CONFIG))
        if self.config_path and os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r") as f:
                    config = self._deep_merge(config, json.load(f))
            except (OSError, ValueError) as e:
                logger.warning("Error loading config %s: %s. Using defaults.", self.config_path, e)
        return self._apply_env(config)

    def _deep_merge(self, base: dict, update: dict) -> dict:
        for key, value in update.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                base[key] = self._deep_merge(base[key], value)
            else:
                base[key] = value
        return base

    def _apply_env(self, config: dict) -> dict:
        # FIELDSYNC_INGEST__CHUNK_SIZE=100 -> ingest.chunk_size
        for name, raw in os.environ.items():
            if not name.startswith(ENV_PREFIX) or "__" not in name:
                continue
            section, _, key = name[len(ENV_PREFIX):].lower().partition("__")
            if section not in config or key not in config[section]:
                continue
            current = config[section][key]
            config[section][key] = _coerce(raw, current)
        return config

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get a value using dot notation, e.g. ``config.get('ingest.chunk_size')``."""
        value = self._config
        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, key_path: str, value: Any) -> None:
        keys = key_path.split(".")
        config = self._config
        for key in keys[:-1]:
            config = config.setdefault(key, {})
        config[keys[-1]] = value


def _coerce(raw: str, current: Any) -> Any:
    if isinstance(current, bool):
        return raw.lower() in ("1", "true", "yes")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def setup_logging(config: Config) -> None:
    level = str(config.get("logging.level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
