"""L1 Domain: pure derivations (identity, names)."""
