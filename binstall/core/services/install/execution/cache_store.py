"""
L4 Execution: Content-addressed binary cache store.

``CacheStore`` is the interface the orchestrator consumes; it is
injected so tests can swap in an in-memory store. ``FileCacheStore``
is the on-disk implementation::

    <root>/
      index/<sha256(key)>.json    {key, integrity, size, time, metadata}
      content/<sha256(blob)>      blob bytes
      tmp/                        scratch scopes (reserve_temp)

Writes are atomic (temp file + rename). Concurrent writers to the same
key are not coordinated: the last writer wins.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import os
import shutil
import tempfile
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from binstall.core.models.install import CacheEntry
from binstall.core.services.install.errors import CacheMissError

logger = logging.getLogger(__name__)

_DEFAULT_CACHE_DIR = Path.home() / ".cache" / "binstall"
_INTEGRITY_PREFIX = "sha256-"


def get_cache_dir() -> Path:
    """Return the cache directory (``BINSTALL_CACHE`` or the default)."""
    return Path(os.environ.get("BINSTALL_CACHE", str(_DEFAULT_CACHE_DIR)))


@runtime_checkable
class CacheStore(Protocol):
    """Key → blob store with per-entry metadata and integrity checks."""

    async def info(self, key: str) -> CacheEntry:
        """Return the entry for *key*. Raises ``CacheMissError`` if absent."""
        ...

    async def put(self, key: str, data: bytes, *, metadata: dict[str, Any]) -> str:
        """Store *data* under *key*; return its integrity string."""
        ...

    async def remove(self, key: str) -> None:
        ...

    async def verify(self) -> dict[str, Any]:
        """Drop corrupt entries and garbage; return a summary."""
        ...

    def reserve_temp(self) -> contextlib.AbstractAsyncContextManager[Path]:
        """Scope a scratch directory inside the store."""
        ...


class FileCacheStore:
    """Filesystem-backed :class:`CacheStore`.

    Args:
        root: Cache directory. Created lazily on first write.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root is not None else get_cache_dir()

    def __repr__(self) -> str:
        return f"<FileCacheStore root={str(self.root)!r}>"

    # ── Layout ───────────────────────────────────────────────────

    @property
    def index_dir(self) -> Path:
        return self.root / "index"

    @property
    def content_dir(self) -> Path:
        return self.root / "content"

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    def _index_path(self, key: str) -> Path:
        return self.index_dir / f"{hashlib.sha256(key.encode('utf-8')).hexdigest()}.json"

    def _content_path(self, digest: str) -> Path:
        return self.content_dir / digest

    # ── Async interface ─────────────────────────────────────────

    async def info(self, key: str) -> CacheEntry:
        return await asyncio.to_thread(self.info_sync, key)

    async def put(self, key: str, data: bytes, *, metadata: dict[str, Any]) -> str:
        return await asyncio.to_thread(self.put_sync, key, data, metadata=metadata)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self.remove_sync, key)

    async def verify(self) -> dict[str, Any]:
        return await asyncio.to_thread(self.verify_sync)

    @contextlib.asynccontextmanager
    async def reserve_temp(self) -> AsyncIterator[Path]:
        path = await asyncio.to_thread(self._make_temp)
        try:
            yield path
        finally:
            await asyncio.to_thread(shutil.rmtree, path, True)

    # ── Sync implementation ─────────────────────────────────────

    def info_sync(self, key: str) -> CacheEntry:
        index_path = self._index_path(key)
        try:
            record = json.loads(index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise CacheMissError(f"No cache entry for {key!r}.", context={"key": key}) from None
        except (OSError, json.JSONDecodeError) as e:
            raise CacheMissError(
                f"Unreadable cache index for {key!r}: {e}",
                context={"key": key, "index": str(index_path)},
            ) from e

        if not isinstance(record, dict) or record.get("key") != key:
            raise CacheMissError(f"Cache index for {key!r} is malformed.", context={"key": key})

        digest = str(record.get("integrity", "")).removeprefix(_INTEGRITY_PREFIX)
        blob = self._content_path(digest)
        if not digest or not blob.is_file():
            raise CacheMissError(
                f"Cache content for {key!r} is missing.",
                context={"key": key, "path": str(blob)},
            )

        return CacheEntry(
            key=key,
            path=blob,
            integrity=record["integrity"],
            size=int(record.get("size", 0)),
            time=float(record.get("time", 0.0)),
            metadata=dict(record.get("metadata") or {}),
        )

    def put_sync(self, key: str, data: bytes, *, metadata: dict[str, Any]) -> str:
        digest = hashlib.sha256(data).hexdigest()
        integrity = f"{_INTEGRITY_PREFIX}{digest}"

        blob = self._content_path(digest)
        if not blob.is_file():
            _atomic_write(blob, data)

        record = {
            "key": key,
            "integrity": integrity,
            "size": len(data),
            "time": time.time(),
            "metadata": metadata,
        }
        _atomic_write(
            self._index_path(key),
            (json.dumps(record, indent=2, sort_keys=True) + "\n").encode("utf-8"),
        )
        logger.debug("Cached %s (%d bytes, %s)", key, len(data), integrity)
        return integrity

    def remove_sync(self, key: str) -> None:
        """Delete the index entry for *key*. Content is reclaimed by ``verify``."""
        self._index_path(key).unlink(missing_ok=True)
        logger.debug("Removed cache entry %s", key)

    def verify_sync(self) -> dict[str, Any]:
        """Check every entry against its digest and collect garbage.

        Returns::

            {"ok": True, "verified": 1, "removed": 0, "reclaimed_bytes": 0}
        """
        verified = 0
        removed = 0
        reclaimed = 0
        live: set[str] = set()

        if self.index_dir.is_dir():
            for index_path in sorted(self.index_dir.glob("*.json")):
                digest = _read_digest(index_path)
                blob = self._content_path(digest) if digest else None
                if blob is not None and blob.is_file() and _sha256_file(blob) == digest:
                    live.add(digest)
                    verified += 1
                    continue
                index_path.unlink(missing_ok=True)
                removed += 1

        if self.content_dir.is_dir():
            for blob in self.content_dir.iterdir():
                if blob.name in live:
                    continue
                reclaimed += blob.stat().st_size if blob.is_file() else 0
                if blob.is_dir():
                    shutil.rmtree(blob, ignore_errors=True)
                else:
                    blob.unlink(missing_ok=True)

        if self.tmp_dir.is_dir():
            shutil.rmtree(self.tmp_dir, ignore_errors=True)

        logger.debug(
            "Verified cache %s: %d ok, %d removed, %d bytes reclaimed",
            self.root, verified, removed, reclaimed,
        )
        return {
            "ok": True,
            "verified": verified,
            "removed": removed,
            "reclaimed_bytes": reclaimed,
        }

    def status(self) -> dict[str, Any]:
        """Summarise stored entries.

        Returns::

            {
                "cache_dir": "/home/user/.cache/binstall",
                "entries": [{"key": "...", "size": N, "metadata": {...}}],
                "total_size_mb": 1.2,
            }
        """
        entries: list[dict[str, Any]] = []
        total = 0
        if self.index_dir.is_dir():
            for index_path in sorted(self.index_dir.glob("*.json")):
                try:
                    record = json.loads(index_path.read_text(encoding="utf-8"))
                except (OSError, json.JSONDecodeError):
                    continue
                if not isinstance(record, dict):
                    continue
                size = int(record.get("size", 0))
                total += size
                entries.append({
                    "key": record.get("key"),
                    "size": size,
                    "integrity": record.get("integrity"),
                    "metadata": record.get("metadata") or {},
                })
        return {
            "cache_dir": str(self.root),
            "entries": entries,
            "total_size_mb": round(total / (1024 * 1024), 1),
        }

    def clear(self) -> dict[str, Any]:
        """Remove the whole store directory."""
        if self.root.exists():
            shutil.rmtree(self.root)
        return {"ok": True, "cleared": str(self.root)}

    def _make_temp(self) -> Path:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(dir=self.tmp_dir))


# ── Private helpers ─────────────────────────────────────────────


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name[:16]}_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


def _read_digest(index_path: Path) -> str:
    try:
        record = json.loads(index_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return ""
    if not isinstance(record, dict):
        return ""
    return str(record.get("integrity", "")).removeprefix(_INTEGRITY_PREFIX)


def _sha256_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            hasher.update(chunk)
    return hasher.hexdigest()
