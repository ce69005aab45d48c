"""
Configuration loader: reads binstall.yml into typed settings.

Settings come from three layers, later ones winning:

    binstall.yml  <  environment (BINSTALL_CACHE, BINSTALL_VERSION)  <  CLI flags

The file is optional. When present it is validated against Pydantic
models and turned into the provider/store objects the installer needs.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from binstall.core.services.install.execution.cache_store import FileCacheStore, get_cache_dir
from binstall.core.services.install.execution.provider import (
    DEFAULT_COMMAND,
    DEFAULT_VERSION,
    SUPPORTED_BUILD_FLAGS,
    CommandProvider,
)

logger = logging.getLogger(__name__)

CONFIG_FILE = "binstall.yml"


class ConfigError(Exception):
    """Raised when the settings file is invalid or unreadable."""


class ProviderSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: list[str] = Field(default_factory=lambda: list(DEFAULT_COMMAND), min_length=1)
    default_version: str = DEFAULT_VERSION
    supported_build_flags: list[str] = Field(default_factory=lambda: list(SUPPORTED_BUILD_FLAGS))
    timeout: float = Field(default=900.0, gt=0)


class InstallSettings(BaseModel):
    """Validated contents of binstall.yml (plus environment overrides)."""

    model_config = ConfigDict(extra="forbid")

    version: str | None = None
    binary_name: str | None = None
    cache_dir: Path | None = None
    check_timeout: float | None = Field(default=None, gt=0)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)

    def make_provider(self) -> CommandProvider:
        return CommandProvider(
            self.provider.command,
            default_version=self.provider.default_version,
            supported_build_flags=self.provider.supported_build_flags,
            timeout=self.provider.timeout,
        )

    def make_store(self) -> FileCacheStore:
        return FileCacheStore(self.cache_dir or get_cache_dir())


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for binstall.yml from *start_dir* (default: cwd) upward."""
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_settings(path: Path | None = None, *, search: bool = True) -> InstallSettings:
    """Load settings from *path* (or a discovered file) and the environment.

    Args:
        path: Explicit settings file. Must exist if given.
        search: Look for binstall.yml upward from the cwd when *path*
            is None.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    data: dict = {}

    if path is None and search:
        path = find_config_file()

    if path is not None:
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        logger.debug("Loading settings from %s", path)
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Expected a YAML mapping in {path}, got {type(raw).__name__}")
        data = raw

    env_cache = os.environ.get("BINSTALL_CACHE")
    if env_cache:
        data["cache_dir"] = env_cache
    env_version = os.environ.get("BINSTALL_VERSION")
    if env_version:
        data["version"] = env_version

    try:
        return InstallSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid binstall configuration: {e}") from e
