# src/davchat/__init__.py
"""End-to-end encrypted pairwise chat synchronized through a WebDAV store."""

__version__ = "0.1.0"
