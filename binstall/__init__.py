"""
binstall: cache-aware installer for a single platform binary.
"""

__version__ = "0.1.0"
