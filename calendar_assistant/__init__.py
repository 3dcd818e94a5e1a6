"""Conversational calendar assistant with conflict-aware scheduling."""

__version__ = "0.1.0"
