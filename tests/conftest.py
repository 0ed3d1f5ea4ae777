"""Shared test fixtures for jellyrelay tests."""

import asyncio

import pytest
import pytest_asyncio

from jellyrelay.lib import config
from jellyrelay.lib.jellyfin_api import LookupFailure
from jellyrelay.lib.prefs import PrefsStore
from jellyrelay.players.mpv import NotRunning, PlayerUnavailable
from jellyrelay.shim import PlaybackShim

# Video, 2 audio, 3 subtitles interleaved the way Jellyfin lists them
STREAMS = [
    {"Type": "Video", "Index": 0, "Codec": "h264"},
    {"Type": "Audio", "Index": 1, "Language": "eng"},
    {"Type": "Subtitle", "Index": 2, "Language": "eng"},
    {"Type": "Audio", "Index": 3, "Language": "jpn"},
    {"Type": "Subtitle", "Index": 4, "Language": "jpn"},
    {"Type": "Subtitle", "Index": 5, "Language": "fre"},
]


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Never read a real config.json or write real preferences."""
    monkeypatch.setattr(config, "_SEARCH_PATHS", [])
    monkeypatch.setattr(config, "_explicit_path", None)
    monkeypatch.setattr(config, "_config", {})
    monkeypatch.delenv("JELLYRELAY_CONFIG", raising=False)
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    monkeypatch.delenv("JELLYFIN_TOKEN", raising=False)
    monkeypatch.delenv("JELLYFIN_PASSWORD", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


class FakePlayer:
    """In-memory stand-in for MpvController."""

    def __init__(self):
        self.on_exit = None
        self.on_property_change = None
        self.initial_volume = None
        self.initial_mute = None
        self.running = False
        self.plays = []
        self.exits = []
        self.fail_next_play = False
        self.volume = 100
        self.muted = False
        self.paused = False
        self.position = 0.0
        self.aid = None
        self.sid = None
        self.fullscreen = False

    async def play(self, url, *, title=None, start_position=None, audio_index=None,
                   subtitle_index=None):
        await self.stop()
        if self.fail_next_play:
            self.fail_next_play = False
            raise PlayerUnavailable("mpv exited during startup (code 2)")
        self.plays.append({
            "url": url,
            "title": title,
            "start_position": start_position,
            "audio_index": audio_index,
            "subtitle_index": subtitle_index,
        })
        self.running = True
        self.paused = False
        self.position = start_position or 0.0
        self.aid = audio_index
        self.sid = subtitle_index if isinstance(subtitle_index, int) else None

    async def stop(self):
        if self.running:
            await self.exit(0)

    async def exit(self, code):
        """Simulate the process ending with *code*."""
        self.running = False
        self.exits.append(code)
        if self.on_exit:
            await self.on_exit(code)

    def _require(self):
        if not self.running:
            raise NotRunning("mpv is not running")

    async def set_pause(self, paused):
        self._require()
        self.paused = paused

    async def seek(self, seconds):
        self._require()
        self.position = seconds

    async def set_volume(self, volume):
        self._require()
        self.volume = max(0, min(100, int(round(volume))))
        return self.volume

    async def adjust_volume(self, delta):
        self._require()
        return await self.set_volume(self.volume + delta)

    async def set_mute(self, muted):
        self._require()
        self.muted = muted

    async def set_audio_track(self, index):
        self._require()
        self.aid = index

    async def set_subtitle_track(self, sid):
        self._require()
        self.sid = sid

    async def set_fullscreen(self, fullscreen):
        self._require()
        self.fullscreen = fullscreen

    async def toggle_fullscreen(self):
        self._require()
        self.fullscreen = not self.fullscreen

    async def query_position(self):
        self._require()
        return self.position

    async def query_paused(self):
        self._require()
        return self.paused

    async def query_muted(self):
        self._require()
        return self.muted

    async def query_volume(self):
        self._require()
        return self.volume

    async def query_audio_track(self):
        self._require()
        return self.aid

    async def query_subtitle_track(self):
        self._require()
        return self.sid


class FakeApi:
    """Records reports; every item id resolves unless listed in `missing`."""

    device_name = "test-box"
    device_id = "test-box"

    def __init__(self):
        self.missing = set()
        self.started = []
        self.progress = []
        self.stopped = []
        self.capabilities = 0
        self.closed = False

    async def start(self):
        pass

    async def close(self):
        self.closed = True

    async def get_item(self, item_id):
        if item_id in self.missing:
            raise LookupFailure(f"GET Items/{item_id} failed with 404: Not Found", status=404)
        return {
            "Id": item_id,
            "Name": f"Item {item_id}",
            "MediaSources": [{"Id": f"{item_id}-src", "MediaStreams": list(STREAMS)}],
        }

    def build_stream_url(self, item_id, **kwargs):
        return f"http://jf.test/Items/{item_id}/Download"

    async def announce_capabilities(self):
        self.capabilities += 1

    async def report_playback_start(self, payload):
        self.started.append(payload)

    async def report_playback_progress(self, payload):
        self.progress.append(payload)

    async def report_playback_stopped(self, payload):
        self.stopped.append(payload)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def fake_player():
    return FakePlayer()


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def shim(fake_api, fake_player, clock, tmp_path):
    relay = PlaybackShim(
        fake_api, fake_player,
        prefs=PrefsStore(str(tmp_path / "state.json")),
        progress_interval=3600,
        capabilities_interval=3600,
        report_debounce=2,
        clock=clock,
    )
    yield relay
    relay._cancel_progress_timer()
    for task in list(relay._background):
        task.cancel()
    await asyncio.sleep(0)


async def settle():
    """Let spawned report tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


async def drain(relay):
    """Handle everything the relay queued for itself."""
    while not relay._queue.empty():
        await relay.handle_directive(relay._queue.get_nowait())
