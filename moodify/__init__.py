"""Moodify Auto-DJ core: taste graph, skip tracking and autonomous queue steering."""

__version__ = "0.4.0"
