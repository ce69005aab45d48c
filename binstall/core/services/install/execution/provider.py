"""
L4 Execution: Artifact providers.

A provider produces the binary at the install target (by download or
build). The orchestrator consumes it as an async iterator of progress
events: exhausting the iterator means success, raising means failure,
and cancelling the consuming task cancels the work.

``CommandProvider`` runs a configured command, e.g. a ``curl`` download
or a build script, with ``{version}``, ``{os}``, ``{arch}``,
``{bin_name}`` and ``{bin_path}`` placeholders resolved.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator, Sequence
from typing import Protocol, runtime_checkable

from binstall.core.models.event import ProgressEvent
from binstall.core.models.install import InstallOptions, InstallTarget
from binstall.core.services.install.domain.identity import host_arch, host_os
from binstall.core.services.install.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "0.15.4"
SUPPORTED_BUILD_FLAGS: tuple[str, ...] = ()
DEFAULT_COMMAND: tuple[str, ...] = (
    "sh",
    "-c",
    "curl -fsSL --max-time 600 "
    "\"https://github.com/purescript/purescript/releases/download/v{version}/{os}64.tar.gz\" "
    "| tar -xzf - -O purescript/purs > \"{bin_name}\" && chmod 755 \"{bin_name}\"",
)

_OS_ASSET_NAMES = {"darwin": "macos", "win32": "win", "linux": "linux"}


@runtime_checkable
class ArtifactProvider(Protocol):
    """Produces the target executable at ``target.install_path``.

    ``run`` may be started speculatively and closed after its first
    event, so nothing may be written to the target before that event.
    """

    default_version: str
    supported_build_flags: tuple[str, ...]

    def run(self, options: InstallOptions, target: InstallTarget) -> AsyncIterator[ProgressEvent]:
        ...


class CommandProvider:
    """Provide the binary by running a command in the target directory.

    Args:
        command: argv template. Placeholders are filled per run.
        default_version: Version used when the options name none.
        supported_build_flags: Flags callers may append via the
            ``build_flags`` option.
        timeout: Seconds before the command is killed.
    """

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_COMMAND,
        *,
        default_version: str = DEFAULT_VERSION,
        supported_build_flags: Sequence[str] = SUPPORTED_BUILD_FLAGS,
        timeout: float = 900.0,
    ) -> None:
        if not command:
            raise ValueError("CommandProvider needs a non-empty command")
        self.command = tuple(command)
        self.default_version = default_version
        self.supported_build_flags = tuple(supported_build_flags)
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"<CommandProvider command={self.command[0]!r} default_version={self.default_version!r}>"

    def build_command(self, options: InstallOptions, target: InstallTarget) -> list[str]:
        """Resolve placeholders and append validated build flags.

        Raises:
            ProviderError: ``ERR_UNSUPPORTED_BUILD_FLAG`` for a flag not
                listed in ``supported_build_flags``.
        """
        unsupported = [f for f in options.build_flags if f not in self.supported_build_flags]
        if unsupported:
            raise ProviderError(
                f"Unsupported build flag(s): {', '.join(unsupported)}.",
                code="ERR_UNSUPPORTED_BUILD_FLAG",
                hint=f"Supported: {', '.join(self.supported_build_flags) or '(none)'}",
            )

        os_name = host_os()
        values = {
            "version": options.version or self.default_version,
            "os": _OS_ASSET_NAMES.get(os_name, os_name),
            "arch": host_arch(),
            "bin_name": target.binary_name,
            "bin_path": str(target.install_path),
        }
        return [part.format(**values) for part in self.command] + list(options.build_flags)

    async def run(self, options: InstallOptions, target: InstallTarget) -> AsyncIterator[ProgressEvent]:
        cmd = self.build_command(options, target)
        yield ProgressEvent(id="provide", command=cmd)

        logger.info("Providing %s via %s", target.binary_name, cmd[0])
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(target.cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProviderError(f"Cannot run {cmd[0]}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ProviderError(f"Command timed out ({self.timeout}s)", code="ETIMEDOUT") from None
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            raise ProviderError(
                f"Command failed (exit {proc.returncode})",
                context={"stderr": stderr.decode("utf-8", "replace")[-2000:]},
            )
        if not os.path.isfile(target.install_path):
            raise ProviderError(
                f"Command succeeded but no binary was produced at {target.install_path}.",
            )

        yield ProgressEvent(
            id="provide:complete",
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )
