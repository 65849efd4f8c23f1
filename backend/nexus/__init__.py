"""Nexus Range - target VM fleet management."""

__version__ = "1.0.0"
