"""Shared plumbing: config, Jellyfin REST and socket clients, directive decoding."""
