"""
L5 Orchestration: Cache-aware install state machine.

Decides, per run, whether to restore the binary from the cache or to
produce it from scratch:

    forced? ──yes──────────────────────────────────────────▶ build
      │no
    lookup + speculative provider warm-up + directory check
      │miss ───────────────────────────────────────────────▶ build
      │identity mismatch ──────────────────────────────────▶ build (purge)
    restore (gunzip + untar one file)  ──fail──────────────▶ build (purge)
    check-binary (--version)           ──fail──────────────▶ build (purge)
      │ok
    complete

The build path runs the provider while purging/verifying the cache,
then packs, compresses and stores the fresh binary. A failed cache
write is reported but does not fail the install.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, cast

import aiofiles.os
from pydantic import ValidationError

from binstall.core.models.event import EventTag, ProgressEvent
from binstall.core.models.install import CacheEntry, InstallOptions, InstallTarget
from binstall.core.services.install.data.constants import CACHE_KEY
from binstall.core.services.install.domain.identity import (
    cache_identity,
    resolve_binary_name,
    resolve_target,
)
from binstall.core.services.install.errors import (
    InstallPathIsDirectoryError,
    InvalidCacheError,
    InvalidOptionError,
    TooManyArgumentsError,
    tag_error,
)
from binstall.core.services.install.execution.archive import (
    compress_async,
    pack_file_async,
    restore_from_file_async,
)
from binstall.core.services.install.execution.cache_store import CacheStore, FileCacheStore
from binstall.core.services.install.execution.health_check import check_binary
from binstall.core.services.install.execution.provider import ArtifactProvider, CommandProvider
from binstall.core.services.install.orchestration.run import InstallRun

logger = logging.getLogger(__name__)


def install(
    *args: Any,
    cwd: str | Path | None = None,
    store: CacheStore | None = None,
    provider: ArtifactProvider | None = None,
) -> InstallRun:
    """Install the binary into *cwd*, reusing the cache when possible.

    Args:
        *args: Zero or one options mapping (see ``InstallOptions``).
        cwd: Directory the binary is written to (default: process cwd).
        store: Cache store (default: ``FileCacheStore`` at the cache dir).
        provider: Artifact provider (default: ``CommandProvider()``).

    Returns:
        An ``InstallRun``: iterate it for progress events, call
        ``cancel()`` on it to abort.

    Raises:
        TooManyArgumentsError: More than one positional argument.
        InvalidOptionError: Malformed options. Raised before any
            asynchronous work starts.
    """
    options = validate_options(*args)
    provider = provider if provider is not None else CommandProvider()
    store = store if store is not None else FileCacheStore()

    binary_name = resolve_binary_name(options.rename)
    target = resolve_target(Path(cwd) if cwd is not None else Path.cwd(), binary_name)
    identity = cache_identity(options.version or provider.default_version)

    installation = Installation(options, target, identity, store=store, provider=provider)
    return InstallRun(installation.drive, name=f"install:{binary_name}")


def validate_options(*args: Any) -> InstallOptions:
    """Check the positional arguments of ``install`` and build options."""
    if len(args) > 1:
        raise TooManyArgumentsError(
            f"Expected 0 or 1 argument ([<Mapping>]), but got {len(args)} arguments.",
        )
    if not args:
        return InstallOptions()

    config = args[0]
    if isinstance(config, InstallOptions):
        return config
    if not isinstance(config, Mapping):
        raise InvalidOptionError(
            f"Expected a mapping to set install options, but got {config!r} "
            f"({type(config).__name__}).",
        )

    force = config.get("force_reinstall")
    if force is not None and not isinstance(force, bool):
        raise InvalidOptionError(
            f"Expected `force_reinstall` option to be a bool, but got {force!r} "
            f"({type(force).__name__}).",
        )
    rename = config.get("rename")
    if rename is not None and not callable(rename):
        raise InvalidOptionError(
            f"Expected `rename` option to be a function, but got {rename!r} "
            f"({type(rename).__name__}).",
        )

    try:
        return InstallOptions.model_validate(dict(config))
    except ValidationError as e:
        raise InvalidOptionError(f"Invalid install options: {e}") from e


class Installation:
    """One run of the install state machine. Driven by an ``InstallRun``."""

    def __init__(
        self,
        options: InstallOptions,
        target: InstallTarget,
        identity: str,
        *,
        store: CacheStore,
        provider: ArtifactProvider,
    ) -> None:
        self.options = options
        self.target = target
        self.identity = identity
        self.store = store
        self.provider = provider
        self._run: InstallRun | None = None

    @property
    def run(self) -> InstallRun:
        if self._run is None:
            raise RuntimeError("Installation is not being driven")
        return self._run

    def _emit(self, tag: str, **payload: Any) -> None:
        self.run.emit(ProgressEvent(id=tag, **payload))

    async def drive(self, run: InstallRun) -> None:
        self._run = run
        if self.options.force_reinstall:
            logger.info("Forced reinstall: skipping the cache lookup")
            await self.build(broken_cache_found=False)
            return
        await self.search_cache()

    # ── Cache path ───────────────────────────────────────────────

    async def search_cache(self) -> None:
        entry, _, _ = await asyncio.gather(
            self.store.info(CACHE_KEY),
            self._warm_up_provider(),
            self._check_install_path(),
            return_exceptions=True,
        )
        if self.run.closed:
            return

        if isinstance(entry, BaseException):
            logger.info("No usable cache entry: %s", entry)
            self._emit(EventTag.SEARCH_CACHE, found=False)
            await self.build(broken_cache_found=False)
            return

        entry = cast(CacheEntry, entry)
        if entry.identity != self.identity:
            logger.info(
                "Cached binary is for %s, need %s: rebuilding",
                entry.identity, self.identity,
            )
            self._emit(EventTag.SEARCH_CACHE, found=False)
            await self.build(broken_cache_found=True)
            return

        self._emit(EventTag.SEARCH_CACHE, found=True, path=str(entry.path))
        await self.restore(entry)

    async def restore(self, entry: CacheEntry) -> None:
        self._emit(EventTag.RESTORE_CACHE)
        try:
            file_count = await restore_from_file_async(entry.path, self.target.install_path)
            if file_count != 1:
                raise InvalidCacheError(
                    f"Expected a cached binary archive {entry.path} to contain 1 file, "
                    f"but found {file_count}.",
                    context={"path": str(entry.path), "file_count": file_count},
                )
        except Exception as e:
            logger.info("Cache restore failed: %s", e)
            self._emit(EventTag.RESTORE_CACHE_FAIL, error=tag_error(e, EventTag.RESTORE_CACHE))
            await self.build(broken_cache_found=True)
            return

        self._emit(EventTag.RESTORE_CACHE_COMPLETE)
        self._emit(EventTag.CHECK_BINARY)
        try:
            await check_binary(
                self.target.install_path,
                timeout=self.options.timeout,
                env=self.options.env,
            )
        except Exception as e:
            logger.info("Restored binary failed its health check: %s", e)
            self._emit(EventTag.CHECK_BINARY_FAIL, error=tag_error(e, EventTag.CHECK_BINARY))
            await self.build(broken_cache_found=True)
            return

        self._emit(EventTag.CHECK_BINARY_COMPLETE)
        self.run.complete()

    async def _warm_up_provider(self) -> None:
        """Start the provider speculatively and cancel it after one tick.

        Errors the provider raises before its first suspension point
        (e.g. option validation) end the run.
        """
        warm = self.run.spawn(self._first_provider_step(), name="install:warm-up")
        await asyncio.sleep(0)
        if warm.done():
            if not warm.cancelled() and warm.exception() is not None:
                self.run.fail(warm.exception())  # type: ignore[arg-type]
            return
        warm.cancel()
        await asyncio.wait([warm])

    async def _first_provider_step(self) -> None:
        events = self.provider.run(self.options, self.target)
        try:
            await events.__anext__()
        except StopAsyncIteration:
            pass
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _check_install_path(self) -> None:
        path = self.target.install_path
        try:
            is_dir = await aiofiles.os.path.isdir(path)
        except OSError:
            return
        if is_dir:
            self.run.fail(InstallPathIsDirectoryError(str(path)))

    # ── Build path ───────────────────────────────────────────────

    async def build(self, *, broken_cache_found: bool) -> None:
        logger.info("Providing %s (broken cache: %s)", self.target.binary_name, broken_cache_found)
        cleaning = self.run.spawn(
            self._clean_cache(broken_cache_found), name="install:clean-cache",
        )

        try:
            async for event in self.provider.run(self.options, self.target):
                self.run.emit(event)
        except Exception as e:
            logger.info("Provider failed: %s", e)
            await asyncio.wait([cleaning])
            self.run.fail(e)
            return

        await self.write_cache(cleaning)

    async def _clean_cache(self, broken_cache_found: bool) -> None:
        """Best-effort purge and verification; failures are ignored."""
        if broken_cache_found:
            try:
                await self.store.remove(CACHE_KEY)
            except Exception as e:
                logger.debug("Ignoring cache purge failure: %s", e)
        try:
            await self.store.verify()
        except Exception as e:
            logger.debug("Ignoring cache verification failure: %s", e)

    async def _ensure_cache_writable(self, cleaning: asyncio.Task[None]) -> None:
        await asyncio.wait([cleaning])
        # Confirm the cache directory is usable before paying for compression
        async with self.store.reserve_temp():
            pass

    async def write_cache(self, cleaning: asyncio.Task[None]) -> None:
        payload: dict[str, Any] = {}
        try:
            payload["original_size"] = (await aiofiles.os.stat(self.target.install_path)).st_size
        except OSError:
            pass
        self._emit(EventTag.WRITE_CACHE, **payload)

        packing = self.run.spawn(
            pack_file_async(self.target.cwd, self.target.binary_name), name="install:pack",
        )
        reserving = self.run.spawn(
            self._ensure_cache_writable(cleaning), name="install:reserve-cache",
        )
        try:
            archive, _ = await asyncio.gather(packing, reserving)
            compressed = await compress_async(archive, size_hint=len(archive))
            await self.store.put(CACHE_KEY, compressed, metadata={"id": self.identity})
        except Exception as e:
            await _settle(packing, reserving)
            logger.warning("Could not cache %s: %s", self.target.binary_name, e)
            self._emit(EventTag.WRITE_CACHE_FAIL, error=tag_error(e, EventTag.WRITE_CACHE))
            self.run.complete()
            return

        logger.info("Cached %s as %s", self.target.binary_name, self.identity)
        self._emit(EventTag.WRITE_CACHE_COMPLETE)
        self.run.complete()


async def _settle(*tasks: asyncio.Task[Any]) -> None:
    """Cancel whichever of *tasks* is still pending and wait for all of them."""
    for task in tasks:
        task.cancel()
    await asyncio.wait(tasks)
    for task in tasks:
        if not task.cancelled():
            # Mark secondary failures as retrieved; the first one is reported
            task.exception()
