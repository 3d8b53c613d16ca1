"""
Utility functions for greconcile.
"""

import os
import json
from pathlib import Path
from typing import Any

import greconcile


def get_config_dir() -> Path:
    """Get and create the config directory."""
    config_dir = Path(greconcile.CONFIG_DIR).expanduser()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Get the config file path."""
    return Path(greconcile.CONFIG_FILE).expanduser()


def get_log_path() -> Path:
    """Get the log file path."""
    log_path = Path(greconcile.LOG_FILE).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return log_path


def load_config() -> dict[str, Any]:
    """Load configuration from file."""
    config_path = get_config_path()
    if config_path.exists():
        with open(config_path, "r") as f:
            return json.load(f)
    return {"version": greconcile.__version__}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to file."""
    config_path = get_config_path()
    get_config_dir()  # Ensure directory exists
    with open(config_path, "w") as f:
        json.dump(config, f, indent=2)


def env_flag(name: str) -> bool | None:
    """Read an on/off flag from the environment.

    Only the literal value "1" switches a flag on. Returns None when the
    variable is not set at all so callers can fall back to the config file.
    """
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip() == "1"


def get_default_models() -> dict[str, dict[str, str]]:
    """Get default model family patterns."""
    return {
        "claude": {
            "pattern": "*claude*",
            "family": "claude",
        },
        "gemini": {
            "pattern": "*gemini*",
            "family": "gemini",
        },
        "gpt": {
            "pattern": "*gpt*",
            "family": "gpt",
        },
    }


def get_default_endpoints() -> list[str]:
    """Get the gateway endpoints in order of preference."""
    return [
        "https://daily-cloudcode-pa.sandbox.googleapis.com",
        "https://autopush-cloudcode-pa.sandbox.googleapis.com",
        "https://cloudcode-pa.googleapis.com",
    ]
