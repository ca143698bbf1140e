"""Load and save the JSON config file."""

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from engram.config.schema import Config


def get_config_path() -> Path:
    """Default config location: ~/.engram/config.json."""
    return Path.home() / ".engram" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file, environment overrides applied on top.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object (defaults when the file is missing or broken).
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Config(**data)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Write configuration to file."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
