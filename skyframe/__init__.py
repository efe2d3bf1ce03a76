"""Skyframe: keeps a context-aware background photo fresh on an ambient display."""

__version__ = "0.1.0"
