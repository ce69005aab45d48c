"""Core layer: configuration, models, observability and services."""
