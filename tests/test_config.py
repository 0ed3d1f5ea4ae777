"""Tests for the JSON config loader."""

import json

import pytest

from jellyrelay.lib import config
from jellyrelay.lib.config import ConfigError, parse_duration


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return str(path)


class TestParseDuration:
    @pytest.mark.parametrize("value,seconds", [
        (15, 15.0),
        (2.5, 2.5),
        ("30", 30.0),
        ("15s", 15.0),
        ("500ms", 0.5),
        ("1m", 60.0),
        ("2h", 7200.0),
        (" 5 S ", 5.0),
    ])
    def test_valid(self, value, seconds):
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["soon", "-5s", "", -1, True, None, [15]])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_duration(value)


class TestLoading:
    def test_explicit_path(self, tmp_path):
        path = write_config(tmp_path, {"jellyfin": {"server": "http://jf:8096"}})
        config.set_config_path(path)
        assert config.cfg("jellyfin", "server") == "http://jf:8096"

    def test_env_path(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"mpv": {"binary": "/opt/mpv"}})
        monkeypatch.setenv("JELLYRELAY_CONFIG", path)
        config.set_config_path(None)
        assert config.cfg("mpv", "binary") == "/opt/mpv"

    def test_missing_explicit_path(self, tmp_path):
        config.set_config_path(str(tmp_path / "nope.json"))
        with pytest.raises(ConfigError):
            config.load_config()

    def test_invalid_explicit_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        config.set_config_path(str(path))
        with pytest.raises(ConfigError):
            config.load_config()

    def test_search_list_skips_missing_files(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"device": {"name": "Den"}})
        monkeypatch.setattr(config, "_SEARCH_PATHS", [str(tmp_path / "absent.json"), path])
        config.set_config_path(None)
        assert config.cfg("device", "name") == "Den"

    def test_nothing_found_uses_defaults(self):
        config.set_config_path(None)
        assert config.load_config() == {}
        assert config.cfg("mpv", "binary", default="mpv") == "mpv"


class TestAccessors:
    @pytest.fixture(autouse=True)
    def loaded(self, tmp_path):
        config.set_config_path(write_config(tmp_path, {
            "jellyfin": {"server": "http://jf:8096", "user_id": None},
            "mpv": {"args": "--no-video, --fs"},
            "timing": {"keep_alive": "20s"},
            "flat": "value",
        }))

    def test_cfg(self):
        assert config.cfg("jellyfin")["server"] == "http://jf:8096"
        assert config.cfg("flat") == "value"
        assert config.cfg("flat", "key", default=1) == 1
        assert config.cfg("jellyfin", "user_id", default="fallback") == "fallback"
        assert config.cfg("missing", default={}) == {}

    def test_cfg_duration(self):
        assert config.cfg_duration("timing", "keep_alive", default=15) == 20.0
        assert config.cfg_duration("timing", "progress_interval", default=30) == 30.0

    def test_cfg_list(self):
        assert config.cfg_list("mpv", "args") == ["--no-video", "--fs"]
        assert config.cfg_list("mpv", "missing") == []

    def test_override(self):
        config.override("jellyfin", "server", "https://other")
        config.override("jellyfin", "token", None)
        config.override("device", "name", "Den")
        assert config.cfg("jellyfin", "server") == "https://other"
        assert config.cfg("jellyfin", "token") is None
        assert config.cfg("device", "name") == "Den"


class TestRequireSettings:
    def test_complete(self):
        config.override("jellyfin", "server", "http://jf:8096")
        config.override("jellyfin", "user_id", "u1")
        config.require_settings()

    def test_missing_server(self):
        config.override("jellyfin", "user_id", "u1")
        with pytest.raises(ConfigError, match="server"):
            config.require_settings()

    def test_server_not_http(self):
        config.override("jellyfin", "server", "jf.local:8096")
        config.override("jellyfin", "user_id", "u1")
        with pytest.raises(ConfigError, match="http"):
            config.require_settings()

    def test_missing_user(self):
        config.override("jellyfin", "server", "http://jf:8096")
        with pytest.raises(ConfigError, match="user_id"):
            config.require_settings()

    def test_bad_timing(self):
        config.override("jellyfin", "server", "http://jf:8096")
        config.override("jellyfin", "user_id", "u1")
        config.override("timing", "keep_alive", "often")
        with pytest.raises(ConfigError):
            config.require_settings()
