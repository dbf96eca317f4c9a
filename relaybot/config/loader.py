"""Configuration loading utilities."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from relaybot.config.schema import Config


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".relaybot" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            data = _migrate_config(data)
            return Config.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True, exclude_none=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def _migrate_config(data: dict[str, Any]) -> dict[str, Any]:
    """Migrate old config formats to current."""
    routing = data.get("routing")
    if isinstance(routing, dict):
        # Move routing.bindings -> bindings
        legacy_bindings = routing.pop("bindings", None)
        if isinstance(legacy_bindings, list) and "bindings" not in data:
            data["bindings"] = legacy_bindings
        # Move routing.queue -> messages.queue
        legacy_queue = routing.pop("queue", None)
        if isinstance(legacy_queue, dict):
            messages = data.setdefault("messages", {})
            if isinstance(messages, dict) and "queue" not in messages:
                messages["queue"] = legacy_queue
        if not routing:
            data.pop("routing", None)
    return data
