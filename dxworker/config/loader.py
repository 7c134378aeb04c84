"""Configuration loading utilities."""

import json
import os
from pathlib import Path
from typing import Any

from loguru import logger

from dxworker.config.schema import Config


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".distributex" / "config.json"


def get_env_path() -> Path:
    """Get the default .env file path."""
    return Path.home() / ".distributex" / ".env"


def _load_dotenv(env_path: Path) -> dict[str, str]:
    """Parse a simple .env file into a dict (no shell expansion)."""
    values: dict[str, str] = {}
    if not env_path.exists():
        return values
    for line in env_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        # Strip optional surrounding quotes
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        values[key] = value
    return values


def _inject_env(env_path: Path) -> None:
    """Load .env values into os.environ (existing vars take precedence)."""
    for key, value in _load_dotenv(env_path).items():
        os.environ.setdefault(key, value)


def load_config(
    config_path: Path | None = None,
    env_path: Path | None = None,
    **overrides: Any,
) -> Config:
    """
    Load configuration from file + environment.

    Resolution order (highest priority wins):
      1. Explicit overrides (CLI flags)
      2. Real environment variables (e.g. export DISTRIBUTEX_POLL_INTERVAL=5)
      3. ~/.distributex/.env file
      4. ~/.distributex/config.json

    Args:
        config_path: Optional path to config file. Uses default if not provided.
        env_path: Optional path to .env file. Uses default if not provided.
        **overrides: Top-level field values that win over every other source.
            ``None`` values are ignored.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    # Inject .env into os.environ before Pydantic reads env vars
    _inject_env(env_path or get_env_path())

    data: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path) as f:
                raw = json.load(f)
            if isinstance(raw, dict):
                data = convert_keys(raw)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load config from {path}: {e}; using defaults")

    # File values must not shadow the environment, so only keep keys that
    # have no matching DISTRIBUTEX_* variable.
    env_keys = {k.upper() for k in os.environ}
    data = {
        k: v for k, v in data.items()
        if f"DISTRIBUTEX_{k.upper()}" not in env_keys
    }
    data.update({k: v for k, v in overrides.items() if v is not None})

    return Config(**data)


# ── Key conversion helpers ──


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
