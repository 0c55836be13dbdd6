"""Luvora messaging channel manager."""

__version__ = "0.1.0"
