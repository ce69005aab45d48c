"""
L4 Execution: Archive codec for the binary cache.

Streaming tar pack/unpack plus gzip compression. Pure data transforms:
nothing here knows about cache keys or identities.

Both directions are strict: a malformed container raises instead of
being skipped over.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import shutil
import stat
import tarfile
import tempfile
import zlib
from pathlib import Path
from typing import BinaryIO

from binstall.core.services.install.data.constants import (
    COMPRESS_LARGE_THRESHOLD,
    COMPRESS_LEVEL_LARGE,
    COMPRESS_LEVEL_SMALL,
    MAX_READ_SIZE,
)
from binstall.core.services.install.errors import ArchiveError

logger = logging.getLogger(__name__)

# Decode failures surfaced as ArchiveError
_DECODE_ERRORS = (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError)


class _ByteSink:
    """Write-only file object that keeps every chunk in memory."""

    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.size = 0

    def write(self, data: bytes) -> int:
        self.chunks.append(bytes(data))
        self.size += len(data)
        return len(data)

    def flush(self) -> None:
        pass

    def getvalue(self) -> bytes:
        return b"".join(self.chunks)


# ── Pack ────────────────────────────────────────────────────────


def pack_files(
    cwd: Path,
    names: list[str],
    *,
    max_read_size: int = MAX_READ_SIZE,
    no_dir_recurse: bool = True,
) -> bytes:
    """Pack *names* (relative to *cwd*) into an uncompressed tar stream.

    Symbolic links are followed, so a linked binary is stored as the
    regular file it points to.

    Args:
        cwd: Directory the entry names are relative to.
        names: Entry names to add, in order.
        max_read_size: Reject any regular file larger than this.
        no_dir_recurse: Add directories as bare entries without
            descending into them.

    Returns:
        The complete archive bytes.

    Raises:
        ArchiveError: ``EFBIG`` when a file exceeds ``max_read_size``.
        OSError: If an entry cannot be read.
    """
    sink = _ByteSink()
    with tarfile.open(  # type: ignore[call-overload]
        fileobj=sink, mode="w|", format=tarfile.PAX_FORMAT, dereference=True,
    ) as tar:
        for name in names:
            path = Path(cwd) / name
            st = path.stat()
            if stat.S_ISREG(st.st_mode) and st.st_size > max_read_size:
                raise ArchiveError(
                    f"Refusing to archive {path}: {st.st_size} bytes exceeds "
                    f"the {max_read_size} byte limit.",
                    code="EFBIG",
                    context={"path": str(path), "size": st.st_size},
                )
            tar.add(str(path), arcname=name, recursive=not no_dir_recurse)

    logger.debug("Packed %d entries (%d bytes)", len(names), sink.size)
    return sink.getvalue()


# ── Unpack ──────────────────────────────────────────────────────


def unpack_single_file(stream: BinaryIO, dest: Path) -> int:
    """Extract every regular-file entry of a tar *stream* to *dest*.

    Each file entry is renamed on the fly to *dest*, so a well-formed
    archive leaves exactly one file there. Directories, links, and
    other entry types are skipped and not counted.

    Returns:
        The number of file entries found. Callers decide whether a
        count other than one is acceptable.

    Raises:
        ArchiveError: If the stream is not a valid (compressed) tar.
        OSError: On write failures at *dest*.
    """
    dest = Path(dest)
    file_count = 0

    try:
        with tarfile.open(fileobj=stream, mode="r|", errorlevel=2) as tar:
            for member in tar:
                if not member.isfile():
                    continue
                file_count += 1
                source = tar.extractfile(member)
                if source is None:
                    raise ArchiveError(f"Archive entry {member.name!r} has no data.")
                _write_atomic(source, dest, mode=member.mode & 0o777 or 0o755)
    except _DECODE_ERRORS as e:
        raise ArchiveError(f"Corrupt archive: {e}") from e

    return file_count


def _write_atomic(source: BinaryIO, dest: Path, *, mode: int) -> None:
    """Copy *source* to *dest* via a temp file in the same directory."""
    fd, tmp_path = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "wb") as out:
            shutil.copyfileobj(source, out)
        tmp.chmod(mode)
        os.replace(tmp, dest)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


# ── Compression ─────────────────────────────────────────────────


def compression_level(size_hint: int | None) -> int:
    """Pick a gzip level from the known uncompressed size."""
    if size_hint is not None and size_hint >= COMPRESS_LARGE_THRESHOLD:
        return COMPRESS_LEVEL_LARGE
    return COMPRESS_LEVEL_SMALL


def compress(data: bytes, *, size_hint: int | None = None) -> bytes:
    """Gzip *data*. ``mtime=0`` keeps output deterministic."""
    return gzip.compress(data, compresslevel=compression_level(size_hint), mtime=0)


def restore_from_file(blob_path: Path, dest: Path) -> int:
    """Decompress a cached blob and unpack its file entries to *dest*."""
    try:
        with gzip.open(blob_path, "rb") as stream:
            return unpack_single_file(stream, dest)  # type: ignore[arg-type]
    except _DECODE_ERRORS as e:
        raise ArchiveError(f"Corrupt archive {blob_path}: {e}") from e


# ── Async wrappers ──────────────────────────────────────────────


async def pack_file_async(cwd: Path, name: str, *, max_read_size: int = MAX_READ_SIZE) -> bytes:
    """Pack the single file *name* without blocking the event loop."""
    return await asyncio.to_thread(pack_files, cwd, [name], max_read_size=max_read_size)


async def compress_async(data: bytes, *, size_hint: int | None = None) -> bytes:
    return await asyncio.to_thread(compress, data, size_hint=size_hint)


async def restore_from_file_async(blob_path: Path, dest: Path) -> int:
    return await asyncio.to_thread(restore_from_file, blob_path, dest)
