"""
Install models: options, target, and cache entry records.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class InstallOptions(BaseModel):
    """Options for a single install run.

    Recognised keys are declared below. Anything else is kept as an
    extra field and forwarded opaquely to the artifact provider.
    """

    model_config = ConfigDict(extra="allow", arbitrary_types_allowed=True)

    force_reinstall: bool = False
    rename: Callable[[str], str] | None = None
    version: str | None = None

    # Health check overrides
    timeout: float | None = None
    env: dict[str, str] | None = None

    # Provider-facing
    build_flags: list[str] = Field(default_factory=list)

    @property
    def extra(self) -> dict[str, Any]:
        """Unrecognised options, passed through to the provider."""
        return dict(self.model_extra or {})


class InstallTarget(BaseModel):
    """Where the binary lands. Computed once per run."""

    model_config = ConfigDict(frozen=True)

    binary_name: str
    cwd: Path
    install_path: Path


class CacheEntry(BaseModel):
    """A stored cache entry as reported by the cache store."""

    model_config = ConfigDict(frozen=True)

    key: str
    path: Path
    integrity: str = ""
    size: int = 0
    time: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def identity(self) -> str | None:
        """The ``id`` recorded in the entry metadata, if any."""
        value = self.metadata.get("id")
        return str(value) if value is not None else None
