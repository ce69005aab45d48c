"""L0 Data: static constants."""
