"""
L1 Domain: cache identity and install target derivation.

Pure functions: given a version and the host platform, compute the
identity a cache entry must carry to be reusable, and the path the
binary is installed to.
"""

from __future__ import annotations

import os
import platform
from collections.abc import Callable
from pathlib import Path, PurePath

from binstall.core.models.install import InstallTarget
from binstall.core.services.install.data.constants import ARCH_MAP, DEFAULT_BINARY_STEM
from binstall.core.services.install.errors import InvalidOptionError


def host_os() -> str:
    """Return the normalised OS name (``linux``, ``darwin``, ``win32``...)."""
    system = platform.system().lower()
    if system.startswith("win"):
        return "win32"
    return system or "unknown"


def host_arch() -> str:
    """Return the normalised CPU architecture (``x64``, ``arm64``...)."""
    machine = platform.machine().lower()
    return ARCH_MAP.get(machine, machine or "unknown")


def default_binary_name(os_name: str | None = None, stem: str = DEFAULT_BINARY_STEM) -> str:
    """Platform-conventional executable name for the installed binary."""
    os_name = os_name or host_os()
    return f"{stem}.exe" if os_name == "win32" else stem


def cache_identity(
    version: str,
    *,
    os_name: str | None = None,
    arch: str | None = None,
) -> str:
    """Compose the identity stored alongside a cache entry.

    Two installs whose version, OS, or architecture differ never share
    an identity, so their cache entries are never considered compatible.

    Example::

        >>> cache_identity("0.15.4", os_name="linux", arch="x64")
        '0.15.4-linux-x64'
    """
    return f"{version}-{os_name or host_os()}-{arch or host_arch()}"


def resolve_binary_name(
    rename: Callable[[str], str] | None = None,
    *,
    os_name: str | None = None,
    stem: str = DEFAULT_BINARY_STEM,
) -> str:
    """Apply the caller's rename function to the default binary name.

    Raises:
        InvalidOptionError: If the renamed value is empty or is not a
            plain file name (contains a directory component).
    """
    default = default_binary_name(os_name, stem)
    if rename is None:
        return default

    name = os.path.normpath(str(rename(default)))
    if not name or name in (".", "..") or PurePath(name).name != name:
        raise InvalidOptionError(
            f"Expected `rename` to return a plain file name, but got {name!r}.",
            context={"default": default},
        )
    return name


def resolve_target(cwd: Path, binary_name: str) -> InstallTarget:
    """Build the immutable install target for a run."""
    cwd = Path(cwd).resolve()
    return InstallTarget(
        binary_name=binary_name,
        cwd=cwd,
        install_path=cwd / binary_name,
    )
