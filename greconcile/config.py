"""
Configuration management for greconcile.
"""

import fnmatch
from typing import Any, Optional

from greconcile.utils import (
    env_flag,
    load_config,
    save_config,
    get_default_endpoints,
    get_default_models,
)

KEEP_THINKING_ENV = "ANTIGRAVITY_KEEP_THINKING"
DEBUG_TOOLS_ENV = "ANTIGRAVITY_DEBUG_TOOLS"


class Config:
    """Configuration manager for greconcile."""

    def __init__(self):
        self._config = load_config()
        self._ensure_defaults()

    def _ensure_defaults(self):
        """Ensure default values exist."""
        defaults = {
            "version": "1.0.0",
            "proxy": {
                "log_level": "INFO",
            },
            "thinking": {
                "keep_thinking": False,
                "signature_ttl_seconds": 3600,
                "max_signatures_per_session": 512,
            },
            "gateway": {
                "endpoints": get_default_endpoints(),
                "project_id": None,
            },
            "models": get_default_models(),
        }

        for key, value in defaults.items():
            if key not in self._config:
                self._config[key] = value
            elif isinstance(value, dict) and isinstance(self._config[key], dict):
                for subkey, subvalue in value.items():
                    if subkey not in self._config[key]:
                        self._config[key][subkey] = subvalue

    def save(self) -> None:
        """Save configuration to file."""
        save_config(self._config)

    def _section(self, name: str) -> dict[str, Any]:
        if not isinstance(self._config.get(name), dict):
            self._config[name] = {}
        return self._config[name]

    @property
    def log_level(self) -> str:
        return self._config.get("proxy", {}).get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        self._section("proxy")["log_level"] = value

    @property
    def keep_thinking(self) -> bool:
        """Opt-in trust-based thinking path for the signature-strict family.

        ANTIGRAVITY_KEEP_THINKING wins over the config file when it is set.
        """
        from_env = env_flag(KEEP_THINKING_ENV)
        if from_env is not None:
            return from_env
        return bool(self._config.get("thinking", {}).get("keep_thinking", False))

    @keep_thinking.setter
    def keep_thinking(self, value: bool) -> None:
        self._section("thinking")["keep_thinking"] = bool(value)

    @property
    def signature_ttl_seconds(self) -> int:
        return int(self._config.get("thinking", {}).get("signature_ttl_seconds", 3600))

    @signature_ttl_seconds.setter
    def signature_ttl_seconds(self, value: int) -> None:
        self._section("thinking")["signature_ttl_seconds"] = int(value)

    @property
    def max_signatures_per_session(self) -> int:
        return int(self._config.get("thinking", {}).get("max_signatures_per_session", 512))

    @property
    def debug_tools(self) -> bool:
        return debug_tools_enabled()

    @property
    def endpoints(self) -> list[str]:
        endpoints = self._config.get("gateway", {}).get("endpoints")
        if isinstance(endpoints, list) and endpoints:
            return [str(e) for e in endpoints]
        return get_default_endpoints()

    @endpoints.setter
    def endpoints(self, value: list[str]) -> None:
        self._section("gateway")["endpoints"] = list(value)

    @property
    def project_id(self) -> Optional[str]:
        return self._config.get("gateway", {}).get("project_id")

    @project_id.setter
    def project_id(self, value: Optional[str]) -> None:
        self._section("gateway")["project_id"] = value

    @property
    def models(self) -> dict[str, dict[str, str]]:
        return self._config.get("models", get_default_models())

    def set_family_pattern(self, name: str, pattern: str, family: str) -> None:
        """Set a model family pattern."""
        self._section("models")[name] = {
            "pattern": pattern,
            "family": family,
        }

    def get_model_family(self, model_name: str) -> Optional[str]:
        """
        Get the model family configured for a given model name.

        Args:
            model_name: The model name to look up

        Returns:
            family name ("claude", "gemini", "gpt") or None
        """
        for config in self.models.values():
            pattern = config.get("pattern", "")
            if pattern and fnmatch.fnmatch(model_name.lower(), pattern.lower()):
                return config.get("family")
        return None

    def to_dict(self) -> dict[str, Any]:
        """Return config as dictionary."""
        return self._config.copy()


def keep_thinking_enabled() -> bool:
    """Keep-thinking policy as seen by the rewriting engine.

    ANTIGRAVITY_KEEP_THINKING when set, otherwise the saved setting.
    """
    from_env = env_flag(KEEP_THINKING_ENV)
    if from_env is not None:
        return from_env
    return Config().keep_thinking


def configured_model_family(model_name: str) -> Optional[str]:
    """Family from the config file's model patterns, if one matches."""
    return Config().get_model_family(model_name)


def debug_tools_enabled() -> bool:
    return env_flag(DEBUG_TOOLS_ENV) is True
