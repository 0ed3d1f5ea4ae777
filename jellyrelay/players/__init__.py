"""
Players: local playback engines driven by the relay.

A player owns one external process and exposes play/stop, setters and
queries, plus callbacks for property changes and process exit.  mpv is the
only engine; it is controlled over its JSON IPC socket.
"""
