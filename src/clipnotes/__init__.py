"""Clipnotes: timestamped video notes with a semantic index."""

__version__ = "0.1.0"
