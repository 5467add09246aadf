"""Offline-resilient Last.fm scrobbler for BluOS players."""

__version__ = "2.0.0"
