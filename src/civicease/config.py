"""Central Configuration System for CivicEase.

This module is the single source of truth for application configuration.
Every other module that needs settings imports from here.

The configuration system supports:
- Multi-source configuration (environment variables > config file > defaults)
- API key lookup (GEMINI_API_KEY env var > system keyring)
- Graceful degradation when the config file is missing or malformed

Example:
    >>> from civicease.config import get_config, get_api_key
    >>>
    >>> cfg = get_config()
    >>> print(cfg.ai.model_name)
    gemini-1.5-pro
    >>> print(cfg.library_path)
    /home/me/.civicease/civicease_library_v1.json

Config File Format (YAML):
    ```yaml
    ai:
      model_name: gemini-1.5-pro
      temperature: 0.2
      max_output_tokens: 4096
      timeout_seconds: 60

    storage:
      data_dir: ~/.civicease
      library_file: civicease_library_v1.json
      quota_bytes: 5242880   # null for no limit
      max_upload_bytes: 20971520
      preview_max_dim: 512

    debug: false
    verbose: false
    ```
"""

from __future__ import annotations

import functools
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any

import keyring
import keyring.errors
import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

# Configure module logger - never log secrets
logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(Exception):
    """Base exception for configuration errors."""

    pass


class ConfigFileError(ConfigError):
    """Config file exists but cannot be read or parsed."""

    pass


class APIKeyError(ConfigError):
    """Base exception for API key related issues."""

    pass


class APIKeyNotFoundError(APIKeyError):
    """No API key in any configured source."""

    pass


class APIKeyInvalidError(APIKeyError):
    """API key fails basic format checks (length, whitespace).

    This does NOT mean the provider rejected the key.
    """

    pass


# =============================================================================
# Enums
# =============================================================================


class KeySource(str, Enum):
    """Where the API key was found.

    Attributes:
        ENVIRONMENT: The GEMINI_API_KEY environment variable.
        KEYRING: The system keyring (Keychain, Credential Manager, Secret Service).
        NONE: No key configured.
    """

    ENVIRONMENT = "environment"
    KEYRING = "keyring"
    NONE = "none"


# =============================================================================
# Configuration Models
# =============================================================================


class AIConfig(BaseModel):
    """Gemini settings.

    Attributes:
        model_name: Gemini model used for analysis and chat.
        temperature: Sampling temperature. Kept low; analyses should be sober.
        max_output_tokens: Maximum tokens in a model response.
        timeout_seconds: Per-request timeout.
    """

    model_name: str = Field(default="gemini-1.5-pro", description="Gemini model identifier.")
    temperature: float = Field(
        default=0.2, ge=0.0, le=2.0, description="Sampling temperature (0=deterministic)."
    )
    max_output_tokens: int = Field(
        default=4096, ge=100, le=32000, description="Maximum tokens in model response."
    )
    timeout_seconds: int = Field(
        default=60, ge=5, le=600, description="Request timeout in seconds."
    )


class StorageConfig(BaseModel):
    """Where and how the library is kept.

    Attributes:
        data_dir: Base directory for the library, logs and previews.
        library_file: File name of the serialized library inside data_dir.
        quota_bytes: Largest library blob accepted. None disables the limit.
        max_upload_bytes: Largest image accepted for analysis.
        preview_max_dim: Longest edge of preview thumbnails, in pixels.
    """

    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".civicease",
        description="Base data directory.",
    )
    library_file: str = Field(
        default="civicease_library_v1.json", description="Library file name."
    )
    quota_bytes: int | None = Field(
        default=5 * 1024 * 1024, ge=1024, description="Library size limit in bytes."
    )
    max_upload_bytes: int = Field(
        default=20 * 1024 * 1024, ge=1024, description="Upload size limit in bytes."
    )
    preview_max_dim: int = Field(
        default=512, ge=64, le=4096, description="Preview thumbnail size in pixels."
    )

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Path:
        """Expand ~ and resolve path."""
        if isinstance(v, (str, Path)):
            return Path(v).expanduser().resolve()
        return v


class AppConfig(BaseSettings):
    """Top-level application configuration.

    Configuration priority (highest wins):
    1. Environment variables (CIVICEASE_*, nested with ``__``)
    2. Config file (YAML)
    3. In-code defaults

    Attributes:
        ai: Gemini settings.
        storage: Library storage settings.
        debug: Enable debug logging.
        verbose: Enable info logging.
    """

    ai: AIConfig = Field(default_factory=AIConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    debug: bool = Field(default=False, description="Enable debug mode.")
    verbose: bool = Field(default=False, description="Enable verbose output.")

    model_config = {
        "env_prefix": "CIVICEASE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Config file values arrive as init kwargs; environment wins over them.
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @property
    def library_path(self) -> Path:
        return self.storage.data_dir / self.storage.library_file

    @property
    def log_dir(self) -> Path:
        return self.storage.data_dir / "logs"


# =============================================================================
# API Key Management
# =============================================================================


class APIKeyManager:
    """Retrieves the Gemini API key.

    Sources tried in order:
    1. Environment variable GEMINI_API_KEY
    2. System keyring

    Keys are wrapped in SecretStr so they never end up in logs or reprs.

    Security Rules:
    - NEVER log the actual key value
    - NEVER include key in exception messages
    - NEVER store key in plain text

    Example:
        >>> manager = APIKeyManager()
        >>> key = manager.get_key()
        >>> if key:
        ...     print(f"Key source: {manager.get_key_source()}")
    """

    KEYRING_SERVICE = "civicease"
    KEYRING_USERNAME = "gemini"
    ENV_VAR_NAME = "GEMINI_API_KEY"

    def __init__(self) -> None:
        self._cached_key: SecretStr | None = None
        self._key_source: KeySource = KeySource.NONE

    def get_key(self) -> SecretStr | None:
        """Retrieve the API key, or None if no source has a valid one."""
        if self._cached_key is not None:
            return self._cached_key

        key = self._read_from_environment()
        if key and self.validate_key_format(key):
            self._cached_key = SecretStr(key)
            self._key_source = KeySource.ENVIRONMENT
            logger.debug("API key loaded from environment variable")
            return self._cached_key

        key = self._read_from_keyring()
        if key and self.validate_key_format(key):
            self._cached_key = SecretStr(key)
            self._key_source = KeySource.KEYRING
            logger.debug("API key loaded from system keyring")
            return self._cached_key

        self._key_source = KeySource.NONE
        logger.debug("No API key found in any source")
        return None

    def get_key_source(self) -> KeySource:
        return self._key_source

    def store_key(self, key: str) -> None:
        """Store the API key in the system keyring.

        Raises:
            APIKeyInvalidError: If key fails format validation.
            ConfigError: If the keyring refuses the write.
        """
        key = key.strip()
        if not self.validate_key_format(key):
            raise APIKeyInvalidError(
                "API key format validation failed. "
                "Key must be 20-100 characters with no whitespace."
            )
        try:
            keyring.set_password(self.KEYRING_SERVICE, self.KEYRING_USERNAME, key)
        except keyring.errors.KeyringError as e:
            raise ConfigError(f"Failed to store key in keyring: {type(e).__name__}") from e

        self._cached_key = None
        self._key_source = KeySource.NONE
        logger.info("API key stored in system keyring")

    def delete_key(self) -> bool:
        """Remove the key from the system keyring.

        Returns:
            True if a key was deleted, False if none was stored.
        """
        try:
            keyring.delete_password(self.KEYRING_SERVICE, self.KEYRING_USERNAME)
        except keyring.errors.PasswordDeleteError:
            return False
        except keyring.errors.KeyringError as e:
            raise ConfigError(f"Failed to delete key from keyring: {type(e).__name__}") from e

        self._cached_key = None
        self._key_source = KeySource.NONE
        logger.info("API key deleted from system keyring")
        return True

    def validate_key_format(self, key: str) -> bool:
        """Basic sanity check: 20-100 characters, no whitespace."""
        if not key or not (20 <= len(key) <= 100):
            return False
        return not any(c.isspace() for c in key)

    def _read_from_environment(self) -> str | None:
        value = os.environ.get(self.ENV_VAR_NAME)
        return value.strip() if value else None

    def _read_from_keyring(self) -> str | None:
        try:
            return keyring.get_password(self.KEYRING_SERVICE, self.KEYRING_USERNAME)
        except keyring.errors.KeyringError as e:
            logger.debug(f"Keyring unavailable: {type(e).__name__}")
            return None


# =============================================================================
# Module-Level Functions
# =============================================================================


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from file, environment, and defaults.

    If no config file is found, uses defaults only (not an error).
    If the config file is malformed, logs a warning and uses defaults.

    Args:
        path: Optional path to config file. If None, searches default locations.

    Returns:
        Fully-populated AppConfig instance.
    """
    config_data: dict[str, Any] = {}

    search_paths = [
        path,
        Path("./civicease.yaml"),
        Path("./civicease.yml"),
        Path.home() / ".civicease" / "config.yaml",
        Path.home() / ".civicease" / "config.yml",
    ]

    config_file: Path | None = None
    for search_path in search_paths:
        if search_path is not None and search_path.exists():
            config_file = search_path
            break

    if config_file is not None:
        try:
            config_data = _read_config_file(config_file)
        except ConfigFileError as e:
            logger.warning(f"{e}. Using defaults.")

    try:
        return AppConfig(**config_data)
    except ValidationError as e:
        logger.warning(f"Invalid config values in {config_file}: {e.error_count()} errors. Using defaults.")
        return AppConfig()


def _read_config_file(config_file: Path) -> dict[str, Any]:
    try:
        content = config_file.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigFileError(f"Failed to read config file {config_file}: {type(e).__name__}") from e

    if not content.strip():
        return {}

    try:
        loaded = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigFileError(f"Failed to parse config file {config_file}: {e}") from e

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigFileError(f"Config file {config_file} has unexpected format")
    return loaded


@functools.lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Get the cached configuration singleton."""
    return load_config()


def get_api_key() -> SecretStr:
    """Get the Gemini API key.

    Raises:
        APIKeyNotFoundError: If no API key is configured in any source.
    """
    key = APIKeyManager().get_key()
    if key is None:
        raise APIKeyNotFoundError(
            "No API key found. Set the GEMINI_API_KEY environment variable "
            "or run 'civicease config set-key'."
        )
    return key


def reset_config() -> None:
    """Clear the configuration cache (used by tests)."""
    get_config.cache_clear()
