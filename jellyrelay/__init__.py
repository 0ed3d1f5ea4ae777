"""Relay Jellyfin remote-control sessions to a local mpv player."""

__version__ = "0.1.0"
