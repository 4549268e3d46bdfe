"""Manga chapter intake, moderation and publication."""

__version__ = "0.1.0"
