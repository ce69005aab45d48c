"""L5 Orchestration: the cache-aware install state machine."""
