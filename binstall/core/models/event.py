"""
Progress events: the ordered narrative of an install run.

An install emits a totally ordered sequence of tagged events, ending in
exactly one terminal signal (completion or error). Provider events are
relayed verbatim, so the tag set is open: ``EventTag`` lists only the
tags the orchestrator itself emits.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict


class EventTag(StrEnum):
    """Tags emitted by the install orchestrator."""

    SEARCH_CACHE = "search-cache"
    RESTORE_CACHE = "restore-cache"
    RESTORE_CACHE_COMPLETE = "restore-cache:complete"
    RESTORE_CACHE_FAIL = "restore-cache:fail"
    CHECK_BINARY = "check-binary"
    CHECK_BINARY_COMPLETE = "check-binary:complete"
    CHECK_BINARY_FAIL = "check-binary:fail"
    WRITE_CACHE = "write-cache"
    WRITE_CACHE_COMPLETE = "write-cache:complete"
    WRITE_CACHE_FAIL = "write-cache:fail"


class ProgressEvent(BaseModel):
    """A single tagged progress record.

    ``id`` is the tag; any payload (``found``, ``path``, ``original_size``,
    provider-specific fields) rides along as extra fields and is readable
    as attributes. ``:fail`` events carry the tagged exception in ``error``.
    """

    model_config = ConfigDict(extra="allow", arbitrary_types_allowed=True, frozen=True)

    id: str
    error: BaseException | None = None

    @property
    def payload(self) -> dict[str, Any]:
        """Extra fields beyond ``id`` and ``error``."""
        return dict(self.model_extra or {})

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation (errors rendered via ``to_dict`` or ``str``)."""
        data: dict[str, Any] = {"id": self.id, **self.payload}
        if self.error is not None:
            to_dict = getattr(self.error, "to_dict", None)
            if callable(to_dict):
                data["error"] = to_dict()
            else:
                data["error"] = {
                    "code": getattr(self.error, "code", type(self.error).__name__),
                    "message": str(self.error),
                    "phase": getattr(self.error, "phase", None),
                }
        return data
