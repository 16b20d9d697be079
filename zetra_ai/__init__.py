"""ZETRA copilot reply engine."""

__version__ = "0.1.0"
