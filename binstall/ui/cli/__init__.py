"""Click command groups registered on the ``binstall`` CLI."""
