"""
Shared configuration loader for jellyrelay.

Loads a single JSON config file.  Search order:
  1. path passed with --config, or $JELLYRELAY_CONFIG
  2. /etc/jellyrelay/config.json      (system install)
  3. config.json                      (CWD, handy for local dev)
  4. ~/.config/jellyrelay/config.json (per-user)

Secrets (JELLYFIN_TOKEN, JELLYFIN_PASSWORD) stay in environment variables,
typically loaded by systemd EnvironmentFile.

Usage:
    from jellyrelay.lib.config import cfg, cfg_duration

    server      = cfg("jellyfin", "server")
    mpv_binary  = cfg("mpv", "binary", default="mpv")
    keep_alive  = cfg_duration("timing", "keep_alive", default=15)
"""

import json
import logging
import os
import re
import socket

logger = logging.getLogger(__name__)

_config: dict | None = None
_explicit_path: str | None = None

_SEARCH_PATHS = [
    "/etc/jellyrelay/config.json",
    "config.json",
    os.path.join(os.path.expanduser("~"), ".config", "jellyrelay", "config.json"),
]

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, None: 1}


class ConfigError(Exception):
    """Configuration is missing a required value or holds an invalid one."""


def parse_duration(value) -> float:
    """Parse a duration into seconds.

    Accepts numbers (seconds) and strings like "500ms", "15s", "1m", "2h"
    or a bare "30".
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"Negative duration: {value!r}")
        return float(value)
    if isinstance(value, str):
        m = _DURATION_RE.match(value.lower())
        if m:
            return float(m.group(1)) * _DURATION_UNITS[m.group(2)]
    raise ConfigError(f"Invalid duration: {value!r}")


def default_device_id() -> str:
    """Hostname reduced to a stable identifier: 'Living Room.lan' -> 'living-room-lan'."""
    slug = re.sub(r"[^a-z0-9]+", "-", socket.gethostname().lower()).strip("-")
    return slug or "jellyrelay"


def set_config_path(path: str | None):
    """Use *path* instead of the search list on the next load."""
    global _explicit_path, _config
    _explicit_path = path
    _config = None


def _candidate_paths() -> list[str]:
    explicit = _explicit_path or os.getenv("JELLYRELAY_CONFIG")
    if explicit:
        return [explicit]
    return list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    jf = config.get("jellyfin") or {}
    if not jf.get("server"):
        logger.warning("Config %s: missing jellyfin.server", path)
    if not jf.get("user_id"):
        logger.warning("Config %s: missing jellyfin.user_id", path)
    device = config.get("device") or {}
    if not device.get("id"):
        logger.info("Config %s: no device.id, using hostname '%s'", path, default_device_id())
    mpv = config.get("mpv") or {}
    args = mpv.get("args")
    if args is not None and not isinstance(args, (list, str)):
        logger.warning("Config %s: mpv.args should be a list or comma separated string", path)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _candidate_paths():
        try:
            with open(path) as f:
                loaded = json.load(f)
        except FileNotFoundError:
            if path == _explicit_path:
                raise ConfigError(f"Config file not found: {path}")
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            if path == _explicit_path:
                raise ConfigError(f"Invalid JSON in {path}: {e}")
            continue
        if not isinstance(loaded, dict):
            logger.error("Config %s is not a JSON object, ignoring", path)
            continue
        _config = loaded
        logger.info("Config loaded from %s", path)
        _validate(_config, path)
        return _config

    logger.warning("No config.json found, using defaults and command line options")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("jellyfin")                   → config["jellyfin"]
    cfg("jellyfin", "server")         → config["jellyfin"]["server"]
    cfg("mpv", "binary", default="mpv") → config["mpv"]["binary"] or "mpv"
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        found = val.get(key)
        return found if found is not None else default
    return default


def cfg_duration(section: str, key: str, *, default: float) -> float:
    """Read a duration value in seconds, see parse_duration()."""
    return parse_duration(cfg(section, key, default=default))


def cfg_list(section: str, key: str) -> list[str]:
    """Read a list value; a comma separated string is split."""
    val = cfg(section, key, default=[])
    if isinstance(val, str):
        return [part.strip() for part in val.split(",") if part.strip()]
    return [str(v) for v in val]


def override(section: str, key: str, value):
    """Apply a command line override on top of the loaded file.  None is ignored."""
    if value is None:
        return
    config = load_config()
    section_val = config.get(section)
    if not isinstance(section_val, dict):
        section_val = {}
        config[section] = section_val
    section_val[key] = value


def require_settings():
    """Raise ConfigError unless the values needed to reach the server are present."""
    server = cfg("jellyfin", "server")
    if not server:
        raise ConfigError("jellyfin.server is required (config file or --server)")
    if not str(server).startswith(("http://", "https://")):
        raise ConfigError(f"jellyfin.server must be an http(s) URL, got {server!r}")
    if not cfg("jellyfin", "user_id"):
        raise ConfigError("jellyfin.user_id is required (config file or --user-id)")
    for key in ("keep_alive", "progress_interval", "reconnect_backoff",
                "capabilities_interval", "report_debounce"):
        val = cfg("timing", key)
        if val is not None:
            parse_duration(val)
