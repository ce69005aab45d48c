"""
Shared test fixtures: in-memory cache store, scripted providers, and
archive/binary helpers.
"""

from __future__ import annotations

import asyncio
import contextlib
import gzip
import io
import os
import tarfile
from pathlib import Path
from typing import Any

import pytest

from binstall.core.models.event import ProgressEvent
from binstall.core.models.install import CacheEntry
from binstall.core.services.install.errors import CacheMissError

GOOD_SCRIPT = b'#!/bin/sh\necho "fake 1.0.0"\n'
CRASH_SCRIPT = b"#!/bin/sh\necho boom >&2\nexit 3\n"
# Records its pid next to itself, then outlives any reasonable timeout
SLEEPY_SCRIPT = b'#!/bin/sh\necho $$ > "$(dirname "$0")/check.pid"\nexec sleep 30\n'


def write_script(path: Path, body: bytes = GOOD_SCRIPT) -> Path:
    path.write_bytes(body)
    path.chmod(0o755)
    return path


async def read_pid(path: Path, timeout: float = 5.0) -> int:
    """Wait for a pid file written by ``SLEEPY_SCRIPT``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        try:
            return int(path.read_text().strip())
        except (OSError, ValueError):
            await asyncio.sleep(0.01)
    raise AssertionError(f"{path} was never written")


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def make_archive(files: dict[str, bytes], *, dirs: tuple[str, ...] = ()) -> bytes:
    """Build a gzipped tar holding *files* (and bare *dirs*)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return gzip.compress(buf.getvalue())


class MemoryCacheStore:
    """In-memory ``CacheStore`` that records every call.

    Blobs are materialised under *blob_dir* so restores can read a path.
    Set ``fail`` to a set of method names that should raise ``OSError``,
    and ``hang`` to method names that block until cancelled. Cancelled
    methods are recorded in ``cancelled``.
    """

    def __init__(self, blob_dir: Path) -> None:
        self.blob_dir = blob_dir
        self.blob_dir.mkdir(parents=True, exist_ok=True)
        self.entries: dict[str, tuple[bytes, dict[str, Any]]] = {}
        self.calls: list[str] = []
        self.fail: set[str] = set()
        self.hang: set[str] = set()
        self.cancelled: set[str] = set()

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise OSError(f"{name} failed")

    async def _block(self, name: str) -> None:
        if name not in self.hang:
            return
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled.add(name)
            raise

    def seed(self, key: str, data: bytes, metadata: dict[str, Any]) -> None:
        self.entries[key] = (data, metadata)

    async def info(self, key: str) -> CacheEntry:
        self._check("info")
        await self._block("info")
        if key not in self.entries:
            raise CacheMissError(f"No cache entry for {key!r}.")
        data, metadata = self.entries[key]
        path = self.blob_dir / "blob"
        path.write_bytes(data)
        return CacheEntry(key=key, path=path, size=len(data), metadata=metadata)

    async def put(self, key: str, data: bytes, *, metadata: dict[str, Any]) -> str:
        self._check("put")
        self.entries[key] = (data, metadata)
        return "sha256-fake"

    async def remove(self, key: str) -> None:
        self._check("remove")
        self.entries.pop(key, None)

    async def verify(self) -> dict[str, Any]:
        self._check("verify")
        return {"ok": True, "verified": len(self.entries), "removed": 0, "reclaimed_bytes": 0}

    @contextlib.asynccontextmanager
    async def reserve_temp(self):
        self._check("reserve_temp")
        await self._block("reserve_temp")
        yield self.blob_dir


class ScriptProvider:
    """Provider that writes a shell script to the install path.

    Args:
        body: Script contents to write.
        error: Raised after the first event instead of writing.
        error_before_start: Raised before the first event.
        hang: Block forever after the first event (for cancellation tests).
        produce: Write the script. When false the run succeeds without
            leaving a binary behind.
    """

    default_version = "1.0.0"
    supported_build_flags = ("--fast",)

    def __init__(
        self,
        body: bytes = GOOD_SCRIPT,
        *,
        error: Exception | None = None,
        error_before_start: Exception | None = None,
        hang: bool = False,
        produce: bool = True,
    ) -> None:
        self.body = body
        self.error = error
        self.error_before_start = error_before_start
        self.hang = hang
        self.produce = produce
        self.started = 0
        self.completed = 0
        self.cancelled = asyncio.Event()

    async def run(self, options, target):
        self.started += 1
        if self.error_before_start is not None:
            raise self.error_before_start
        yield ProgressEvent(id="download", version=options.version or self.default_version)

        if self.hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.set()
                raise
        if self.error is not None:
            raise self.error

        await asyncio.sleep(0)
        if self.produce:
            write_script(target.install_path, self.body)
        self.completed += 1
        yield ProgressEvent(id="download:complete")


@pytest.fixture
def store(tmp_path: Path) -> MemoryCacheStore:
    return MemoryCacheStore(tmp_path / "_store")


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Directory the binary is installed into."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def provider() -> ScriptProvider:
    return ScriptProvider()


@pytest.fixture
def script_provider():
    """Factory for providers with custom behaviour."""
    return ScriptProvider


@pytest.fixture
def archive_factory():
    return make_archive


@pytest.fixture
def script_writer():
    return write_script
