"""
L4 Execution: Binary health check.

Runs the installed binary with a version probe. Only execution success
matters: output is captured for diagnostics but never inspected.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path

from binstall.core.services.install.data.constants import CHECK_TIMEOUT, VERSION_PROBE_FLAG
from binstall.core.services.install.errors import HealthCheckError

logger = logging.getLogger(__name__)


async def check_binary(
    path: Path,
    *,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
    probe_flag: str = VERSION_PROBE_FLAG,
) -> dict[str, object]:
    """Execute ``<path> --version`` and require a clean exit.

    Args:
        path: The installed binary.
        timeout: Seconds before the probe is killed (default 8).
        env: Extra environment variables for the probe.
        probe_flag: The single argument passed to the binary.

    Returns:
        ``{"ok": True, "stdout": "...", "elapsed_ms": N}``

    Raises:
        HealthCheckError: ``ERR_CHECK_FAILED`` on nonzero exit, signal,
            or spawn failure; ``ETIMEDOUT`` when the timeout elapses.
    """
    timeout = CHECK_TIMEOUT if timeout is None else timeout
    cmd = [str(path), probe_flag]

    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)

    logger.debug("Probing %s (timeout=%ss)", cmd, timeout)
    start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=full_env,
        )
    except OSError as e:
        raise HealthCheckError(
            f"Cannot execute {path}: {e}",
            context={"path": str(path)},
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        raise HealthCheckError(
            f"Command timed out ({timeout}s): {' '.join(cmd)}",
            code="ETIMEDOUT",
            context={"path": str(path), "timeout": timeout},
        ) from None
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    elapsed_ms = int((time.monotonic() - start) * 1000)
    stderr_text = stderr.decode("utf-8", "replace")[-2000:]

    if proc.returncode != 0:
        raise HealthCheckError(
            f"Command failed (exit {proc.returncode}): {' '.join(cmd)}",
            returncode=proc.returncode,
            stderr=stderr_text,
            context={"path": str(path)},
        )

    return {
        "ok": True,
        "stdout": stdout.decode("utf-8", "replace")[-2000:],
        "elapsed_ms": elapsed_ms,
    }


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
