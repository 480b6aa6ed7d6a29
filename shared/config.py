"""
Settings for the orchestration services.

Two layers: process settings from the environment (``.env`` is read at
import time) and the pipeline file ``config/orchestration.yaml``, read by
dotted path. Any pipeline value can be overridden with an environment
variable named ``PIPELINE_FLAG_<PATH>``, e.g.
``PIPELINE_FLAG_REVIEW_CONFIDENCE_THRESHOLD=0.7``.
"""

import json
import os
from typing import Any

import yaml

from dotenv import load_dotenv

BACKEND_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
DEFAULT_PIPELINE_PATH = os.path.join(BACKEND_ROOT, "config", "orchestration.yaml")
PIPELINE_FLAG_PREFIX = "PIPELINE_FLAG_"


def _flag(raw: str) -> bool:
    return raw.lower() == "true"


# setting key -> (environment variable, default, parser)
ENV_SETTINGS: dict[str, tuple[str, str, Any]] = {
    "database_url": ("DATABASE_URL", "sqlite:///./orchestration.db", str),
    "redis_url": ("REDIS_URL", "redis://localhost:6379/0", str),
    "debug": ("DEBUG", "false", _flag),
    "log_level": ("LOG_LEVEL", "INFO", str),
    "allowed_origins": ("ALLOWED_ORIGINS", '["*"]', json.loads),
    "scheduler_enabled": ("SCHEDULER_ENABLED", "true", _flag),
    "notification_queue": ("NOTIFICATION_QUEUE", "orchestration:notifications", str),
    "redelivery_queue": ("REDELIVERY_QUEUE", "orchestration:completion_redelivery", str),
}


class ServiceConfig:
    """Process settings plus the pipeline tuning file."""

    def __init__(self) -> None:
        load_dotenv(dotenv_path=os.path.join(BACKEND_ROOT, ".env"), override=False)
        self.config: dict[str, Any] = {}
        self.pipeline_config: dict[str, Any] = {}
        self.pipeline_config_path = os.getenv("ORCHESTRATION_CONFIG_PATH", DEFAULT_PIPELINE_PATH)
        self.reload()

    def load_from_env(self) -> None:
        self.config = {
            key: parse(os.getenv(variable, default)) for key, (variable, default, parse) in ENV_SETTINGS.items()
        }

    def get(self, key: str, default: Any = None) -> Any:
        return self.config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.config[key] = value

    def reload(self) -> None:
        self.load_from_env()
        self.load_pipeline_config()

    def load_pipeline_config(self) -> None:
        """Read the pipeline file; a missing file means every value falls back to its default."""
        try:
            with open(os.path.abspath(self.pipeline_config_path), "r", encoding="utf-8") as stream:
                self.pipeline_config = yaml.safe_load(stream) or {}
        except FileNotFoundError:
            self.pipeline_config = {}

    def get_pipeline_value(self, path: str, default: Any = None) -> Any:
        """Look up ``retry.max_attempts`` style paths, honouring ``PIPELINE_FLAG_`` overrides."""
        override = os.getenv(PIPELINE_FLAG_PREFIX + path.replace(".", "_").upper())
        if override is not None:
            return self._coerce_env_value(override, default)

        node: Any = self.pipeline_config
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return default if node is None else node

    def set_pipeline_config(self, pipeline_config: dict[str, Any]) -> None:
        self.pipeline_config = pipeline_config

    def provider_settings(self, capability: str) -> dict[str, Any]:
        """``providers.defaults`` overlaid with the capability's own block."""
        return {
            **(self.get_pipeline_value("providers.defaults", {}) or {}),
            **(self.get_pipeline_value(f"providers.{capability}", {}) or {}),
        }

    @staticmethod
    def _coerce_env_value(raw: str, default: Any) -> Any:
        # YAML scalars: "5" -> 5, "0.7" -> 0.7, "true" -> True, "[archive]" -> ["archive"]
        if not raw.strip():
            return default
        try:
            return yaml.safe_load(raw)
        except yaml.YAMLError:
            return raw


config = ServiceConfig()
