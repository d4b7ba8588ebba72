import os
import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger("storybook-admin")

ENV_PREFIX = "STORYBOOK_"
DEFAULT_CONFIG_PATH = "/opt/storybook/config/app_config.json"
LOCAL_CONFIG_PATH = "./config.json"


class AppConfig:
    """Admin console settings: environment, then config file, then defaults"""

    _defaults = {
        "s3_bucket_name": None,  # required for uploads and blob snapshots
        "s3_public_base_url": None,
        "aws_region": None,
        "broker_url": "redis://localhost:6379/0",
        "pipeline_topic": "tiny-tales-books-topic",
        "pipeline_task_name": "tiny_tales.pipeline.process_book",
        "pipeline_output_formats": "pdf,html,epub",
        "snapshot_local_dir": os.path.join("..", "tiny-tales-pipeline", "output", "data"),
        "poll_interval_seconds": 3,
        "status_api_url": "http://localhost:8000/pipeline/status",
        "declared_topics": None,  # comma separated; defaults to pipeline_topic
    }

    _config_cache: Dict[str, Any] = None

    @classmethod
    def get_value(cls, key: str, default: Any = None) -> Any:
        env_value = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
        if env_value is not None:
            return env_value

        file_values = cls._file_values()
        if key in file_values:
            return file_values[key]

        if cls._defaults.get(key) is not None:
            return cls._defaults[key]
        return default

    @classmethod
    def get_float(cls, key: str, default: float = 0.0) -> float:
        value = cls.get_value(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid numeric value for {key}: {value!r}, using {default}")
            return default

    @classmethod
    def get_list(cls, key: str) -> List[str]:
        """Comma separated values (or a JSON list from the config file)."""
        value = cls.get_value(key)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        return [item.strip() for item in str(value).split(",") if item.strip()]

    @classmethod
    def reset(cls) -> None:
        """Forget the parsed config file so the next lookup re-reads it."""
        cls._config_cache = None

    @classmethod
    def _file_values(cls) -> Dict[str, Any]:
        if cls._config_cache is None:
            cls._config_cache = cls._read_config_file()
        return cls._config_cache

    @staticmethod
    def _read_config_file() -> Dict[str, Any]:
        config_path = os.environ.get(f"{ENV_PREFIX}CONFIG_PATH", DEFAULT_CONFIG_PATH)
        if not os.path.exists(config_path) and os.path.exists(LOCAL_CONFIG_PATH):
            config_path = LOCAL_CONFIG_PATH
        if not os.path.exists(config_path):
            logger.info("No configuration file found, using defaults")
            return {}

        try:
            with open(config_path, "r") as f:
                values = json.load(f)
        except (OSError, ValueError) as e:
            # defaults still apply
            logger.error(f"Error loading configuration from {config_path}: {e}")
            return {}
        logger.info(f"Loaded configuration from {config_path}")
        return values
