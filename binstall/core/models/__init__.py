"""
Domain models: Pydantic types for the installer.

All models are re-exported here for convenient access:

    from binstall.core.models import ProgressEvent, InstallOptions, CacheEntry
"""

from binstall.core.models.event import EventTag, ProgressEvent
from binstall.core.models.install import CacheEntry, InstallOptions, InstallTarget

__all__ = [
    # event.py
    "EventTag",
    "ProgressEvent",
    # install.py
    "CacheEntry",
    "InstallOptions",
    "InstallTarget",
]
