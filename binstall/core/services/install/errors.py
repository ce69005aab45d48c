"""
Install errors: classified, machine-readable failures.

Every error raised by the install service carries a stable ``code``.
Errors attached to ``:fail`` progress events additionally carry the
``phase`` (event tag) that produced them, so callers can tell a cache
problem from a build problem from a health-check problem.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class InstallError(Exception):
    """Base error carrying a code, optional hint, and context."""

    default_code = "ERR_INSTALL"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        hint: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.hint = hint
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.args[0] if self.args else "",
        }
        phase = getattr(self, "phase", None)
        if phase:
            payload["phase"] = phase
        if self.hint is not None:
            payload["hint"] = self.hint
        if self.context:
            payload["context"] = {k: str(v) for k, v in self.context.items()}
        return payload


# ── Argument errors (raised synchronously) ──────────────────────


class TooManyArgumentsError(InstallError, ValueError):
    default_code = "ERR_TOO_MANY_ARGS"


class InvalidOptionError(InstallError, TypeError):
    default_code = "ERR_INVALID_ARG_TYPE"


# ── Runtime errors ──────────────────────────────────────────────


class InstallPathIsDirectoryError(InstallError, IsADirectoryError):
    """A directory already occupies the path the binary must be written to."""

    default_code = "EISDIR"

    def __init__(self, path: str, **kwargs: Any) -> None:
        super().__init__(
            f"Tried to create a binary at {path}, but a directory already exists there.",
            context={"path": path},
            **kwargs,
        )
        self.path = path


class CacheMissError(InstallError, KeyError):
    default_code = "ENOENT"

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0]) if self.args else ""


class InvalidCacheError(InstallError):
    default_code = "EINVALIDCACHE"


class ArchiveError(InstallError):
    default_code = "ERR_ARCHIVE"


class HealthCheckError(InstallError):
    default_code = "ERR_CHECK_FAILED"

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.stderr = stderr


class ProviderError(InstallError):
    default_code = "ERR_PROVIDER_FAILED"


def tag_error(exc: BaseException, phase: str) -> BaseException:
    """Record on *exc* the phase that reported it and return it."""
    try:
        exc.phase = phase  # type: ignore[attr-defined]
    except AttributeError:
        # Exceptions with __slots__ and no __dict__ cannot be tagged
        pass
    return exc
