"""
Persisted playback preferences (last volume and mute state).

Stored as JSON in $XDG_CONFIG_HOME/jellyrelay/state.json (falls back to
~/.config/jellyrelay/state.json).  Writes are atomic (temp file + rename)
so a crash mid-write never corrupts the file.  A missing or unreadable
file yields the defaults.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DEFAULT_VOLUME = 100
DEFAULT_MUTED = False


def default_store_path() -> str:
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(base, "jellyrelay", "state.json")


class PrefsStore:
    """Volume/mute remembered across player runs and service restarts."""

    def __init__(self, path: str | None = None):
        self.path = path or default_store_path()
        self.volume = DEFAULT_VOLUME
        self.muted = DEFAULT_MUTED

    def load(self):
        """Load from disk, keeping defaults for anything missing or malformed."""
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return self
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read preferences %s: %s", self.path, e)
            return self
        if not isinstance(data, dict):
            return self
        volume = data.get("volume")
        if isinstance(volume, (int, float)) and not isinstance(volume, bool):
            self.volume = max(0, min(100, int(round(volume))))
        muted = data.get("muted")
        if isinstance(muted, bool):
            self.muted = muted
        logger.info("Preferences loaded: volume=%d muted=%s", self.volume, self.muted)
        return self

    def update(self, volume: int | None = None, muted: bool | None = None) -> bool:
        """Apply new values and save if anything changed.  Returns True when saved."""
        changed = False
        if volume is not None:
            volume = max(0, min(100, int(round(volume))))
            if volume != self.volume:
                self.volume = volume
                changed = True
        if muted is not None and muted != self.muted:
            self.muted = muted
            changed = True
        if changed:
            try:
                self.save()
            except OSError as e:
                logger.warning("Could not save preferences %s: %s", self.path, e)
                return False
        return changed

    def save(self):
        """Atomically write the current values to disk."""
        data = {
            "volume": self.volume,
            "muted": self.muted,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        d = os.path.dirname(self.path)
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        return self.path
