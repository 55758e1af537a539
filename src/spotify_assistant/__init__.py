"""Pluggable persistence core for the Spotify assistant."""

__version__ = "0.1.0"
