"""Shielded note protocol: commitments, deposit finalization and note discovery."""

__version__ = "0.1.0"
