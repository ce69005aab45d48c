"""
Binary install service: package re-exports.

    from binstall.core.services.install import install, CACHE_KEY

Each symbol lives in its single-responsibility module inside the
appropriate layer (data → domain → execution → orchestration).
"""

# ── L0: Data ──
from binstall.core.services.install.data.constants import (  # noqa: F401
    CACHE_KEY,
    CHECK_TIMEOUT,
    MAX_READ_SIZE,
)

# ── L1: Domain ──
from binstall.core.services.install.domain.identity import (  # noqa: F401
    cache_identity,
    default_binary_name,
)

# ── Errors ──
from binstall.core.services.install.errors import (  # noqa: F401
    ArchiveError,
    CacheMissError,
    HealthCheckError,
    InstallError,
    InstallPathIsDirectoryError,
    InvalidCacheError,
    InvalidOptionError,
    ProviderError,
    TooManyArgumentsError,
)

# ── L4: Execution ──
from binstall.core.services.install.execution.cache_store import (  # noqa: F401
    CacheStore,
    FileCacheStore,
)
from binstall.core.services.install.execution.provider import (  # noqa: F401
    DEFAULT_VERSION,
    SUPPORTED_BUILD_FLAGS,
    ArtifactProvider,
    CommandProvider,
)

# ── L5: Orchestration ──
from binstall.core.services.install.orchestration.orchestrator import install  # noqa: F401
from binstall.core.services.install.orchestration.run import InstallRun  # noqa: F401
