"""
L0 Data: install constants.

Single source of truth for values shared across the install layers.
"""

from __future__ import annotations

# Fixed logical slot for "the binary cache". Not versioned by itself:
# compatibility is decided by the identity stored in the entry metadata.
CACHE_KEY = "binstall:binary"

# Reject implausibly large files while packing the cache archive.
MAX_READ_SIZE = 30 * 1024 * 1024

# Binary health check
VERSION_PROBE_FLAG = "--version"
CHECK_TIMEOUT = 8.0

# Gzip levels, picked from the uncompressed size hint
COMPRESS_LEVEL_SMALL = 9
COMPRESS_LEVEL_LARGE = 6
COMPRESS_LARGE_THRESHOLD = 8 * 1024 * 1024

# Normalised machine names used in the cache identity
ARCH_MAP: dict[str, str] = {
    "x86_64": "x64",
    "amd64": "x64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
}

# Executable stem; ".exe" is appended on Windows
DEFAULT_BINARY_STEM = "purs"
