"""L4 Execution: side-effecting primitives (archive, cache store, probes, providers)."""
