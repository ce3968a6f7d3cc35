"""Configuration system for wisdom-oauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.wisdom-oauth] section (project-level)
3. ./wisdom-oauth.toml (project-level, explicit)
4. ~/.config/wisdom-oauth/config.toml (user-level, overrides project)
5. WISDOM_CONFIG_FILE (explicit file)
6. Environment variables (highest priority)

Environment variables use WISDOM_ prefix with nested delimiter __.
Example: WISDOM_SERVICE__BASE_PATH, WISDOM_STORAGE__BACKEND
"""

from __future__ import annotations

import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger("wisdom_oauth")

_PYPROJECT_SECTION = "wisdom-oauth"


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("wisdom-oauth.toml")
    if project_toml.exists():
        files.append(project_toml)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "wisdom-oauth" / "config.toml"
    else:
        user_config = Path("~/.config/wisdom-oauth/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("WISDOM_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring invalid config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get(_PYPROJECT_SECTION, {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {"client_id"}

_REDACTED = "********"


class WisdomServiceSettings(BaseSettings):
    """Wisdom service endpoint and OAuth client settings.

    Environment prefix: WISDOM_SERVICE__
    Example: WISDOM_SERVICE__BASE_PATH=https://c.ai.ansible.redhat.com
    Example: WISDOM_SERVICE__CLIENT_ID=your-client-id
    """

    model_config = SettingsConfigDict(
        env_prefix="WISDOM_SERVICE__",
        extra="ignore",
    )

    base_path: str = Field(
        default="https://c.ai.ansible.redhat.com",
        description="Base URL of the Wisdom service (authorize, token and profile endpoints)",
    )
    client_id: str = Field(
        default="",
        description="OAuth2 client ID registered with the Wisdom service",
    )
    login_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Maximum seconds to wait for the login redirect",
    )
    grace_time_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Seconds before token expiry at which the token is refreshed",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for each HTTP request to the Wisdom service",
    )

    @field_validator("base_path")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base path so endpoint paths can be appended."""
        return v.rstrip("/")


class StorageSettings(BaseSettings):
    """Secret storage settings.

    Environment prefix: WISDOM_STORAGE__
    Example: WISDOM_STORAGE__BACKEND=memory
    """

    model_config = SettingsConfigDict(
        env_prefix="WISDOM_STORAGE__",
        extra="ignore",
    )

    backend: Literal["memory", "keyring"] = Field(
        default="keyring",
        description="Secret storage backend: memory or keyring",
    )
    service_name: str = Field(
        default="wisdom-oauth",
        description="Keyring service name",
    )
    auth_id: str = Field(
        default="auth-wisdom",
        description="Provider id used to namespace the stored records",
    )


class CallbackSettings(BaseSettings):
    """Loopback redirect server settings used by the command line.

    Environment prefix: WISDOM_CALLBACK__
    """

    model_config = SettingsConfigDict(
        env_prefix="WISDOM_CALLBACK__",
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = Field(default=0, ge=0, le=65535, description="0 picks a free port")


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: WISDOM_LOG__
    Example: WISDOM_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="WISDOM_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class WisdomSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: WISDOM_

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.wisdom-oauth] section
    3. ./wisdom-oauth.toml (project-level)
    4. ~/.config/wisdom-oauth/config.toml (user-level, overrides project)
    5. WISDOM_CONFIG_FILE
    6. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="WISDOM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    service: WisdomServiceSettings = Field(default_factory=WisdomServiceSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    callback: CallbackSettings = Field(default_factory=CallbackSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        # Explicit keyword data takes precedence over TOML files
        merged = _deep_merge(_load_toml_config(), data)
        super().__init__(**merged)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Give environment variables priority over TOML and keyword data."""
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["wisdom-oauth Configuration", "=" * 60]

        sections = [
            ("Wisdom Service", "service"),
            ("Secret Storage", "storage"),
            ("Callback Server", "callback"),
            ("Logging", "log"),
        ]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr in sections},
        )

        for display_name, attr_name in sections:
            section_data = all_data.get(attr_name, {})
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in section_data.items():
                lines.append(f"  {field_name:24} = {field_value}")
            section_cls = type(getattr(self, attr_name))
            lines.extend(
                f"  {rn:24} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> WisdomSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return WisdomSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> WisdomSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
