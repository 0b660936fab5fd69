"""Tracksentry: real-time tracker detection and enforcement engine."""

__version__ = "0.4.0"
