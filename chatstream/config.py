"""Configuration management for chatstream."""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

API_KEY_ENV = "CHATSTREAM_API_KEY"
CONFIG_PATH_ENV = "CHATSTREAM_CONFIG"


class Configuration:
    """Manages configuration and environment variables for chatstream."""

    def __init__(self, config_path: str | os.PathLike[str] | None = None) -> None:
        """Initialize configuration from YAML and environment variables.

        Args:
            config_path: Explicit YAML file. Defaults to ``$CHATSTREAM_CONFIG``
                or the ``config.yaml`` shipped beside this module.
        """
        self.load_env()  # Load .env for the API key
        self.config_path = self._resolve_path(config_path)
        self._config = self._load_yaml_config()

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _resolve_path(config_path: str | os.PathLike[str] | None) -> Path:
        if config_path is not None:
            return Path(config_path)
        if env_path := os.getenv(CONFIG_PATH_ENV):
            return Path(env_path)
        return Path(__file__).parent / "config.yaml"

    def _load_yaml_config(self) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(self.config_path, encoding="utf-8") as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    def _section(self, name: str, required_keys: list[str]) -> dict[str, Any]:
        section = self._config.get(name, {})
        if not isinstance(section, dict):
            raise ValueError(f"'{name}' must be a mapping in config.yaml")
        for key in required_keys:
            if key not in section:
                raise ValueError(
                    f"{name}.{key} must be explicitly configured in config.yaml"
                )
        return dict(section)

    @property
    def llm_api_key(self) -> str | None:
        """Get the API key for the endpoint.

        Returns:
            The key from ``CHATSTREAM_API_KEY``, or None when unset. Local
            endpoints need no credential.
        """
        return os.getenv(API_KEY_ENV) or None

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary.

        Returns:
            The complete configuration dictionary.
        """
        return self._config

    def get_llm_config(self) -> dict[str, Any]:
        """Get endpoint and generation defaults from YAML.

        Returns:
            LLM configuration dictionary with validated values.

        Raises:
            ValueError: If required parameters are missing or invalid.
        """
        llm_config = self._section("llm", [
            "endpoint", "model", "temperature", "top_p", "max_tokens",
            "connect_timeout", "read_timeout",
        ])

        if not llm_config["endpoint"]:
            raise ValueError("llm.endpoint must not be empty")
        llm_config["model"] = llm_config["model"] or ""

        temperature = llm_config["temperature"]
        top_p = llm_config["top_p"]
        max_tokens = llm_config["max_tokens"]
        connect_timeout = llm_config["connect_timeout"]
        read_timeout = llm_config["read_timeout"]

        if not 0 <= temperature <= 2:
            raise ValueError("llm.temperature must be between 0 and 2")
        if not 0 < top_p <= 1:
            raise ValueError("llm.top_p must be in (0, 1]")
        if not isinstance(max_tokens, int) or max_tokens < 1:
            raise ValueError("llm.max_tokens must be a positive integer")
        if connect_timeout <= 0:
            raise ValueError("llm.connect_timeout must be positive")
        if read_timeout is not None and read_timeout <= 0:
            raise ValueError("llm.read_timeout must be positive or null")

        return llm_config

    def get_storage_config(self) -> dict[str, Any]:
        """Get conversation storage configuration from YAML.

        Returns:
            Storage configuration dictionary with validated values.

        Raises:
            ValueError: If required parameters are missing or invalid.
        """
        storage_config = self._section("storage", ["path", "fsync", "lock_timeout"])

        if not storage_config["path"]:
            raise ValueError("storage.path must not be empty")
        if not isinstance(storage_config["fsync"], bool):
            raise ValueError("storage.fsync must be true or false")
        if storage_config["lock_timeout"] <= 0:
            raise ValueError("storage.lock_timeout must be positive")

        storage_config["path"] = str(Path(storage_config["path"]).expanduser())
        return storage_config

    def get_conversation_config(self) -> dict[str, Any]:
        """Get conversation defaults from YAML.

        Returns:
            Conversation configuration dictionary with validated values.
        """
        conversation_config = self._section(
            "conversation", ["default_title", "system_prompt", "title_max_length"]
        )

        if not conversation_config["default_title"]:
            raise ValueError("conversation.default_title must not be empty")
        max_length = conversation_config["title_max_length"]
        if not isinstance(max_length, int) or max_length < 1:
            raise ValueError("conversation.title_max_length must be a positive integer")
        conversation_config["system_prompt"] = conversation_config["system_prompt"] or ""

        return conversation_config

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML.

        Returns:
            Logging configuration dictionary.
        """
        return self._config.get("logging", {})
