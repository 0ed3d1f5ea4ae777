# jellyrelay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PlaybackShim: keeps one mpv instance and the Jellyfin session in agreement.

Directives from the Jellyfin socket (and plays the shim issues itself, such
as auto-advance) go through a single queue and are handled one at a time,
so playlist, index and playback context only ever change in one task.
Player exits are handled inside MpvController.stop(), which means a Play
that replaces the current item resumes only after the previous item's stop
report and bookkeeping are done.

States: idle → starting → playing → idle
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass

from .lib.config import cfg_duration
from .lib.directives import (
    GeneralCommandDirective,
    PlayDirective,
    PlaystateDirective,
    seconds_to_ticks,
)
from .lib.event_channel import ConnectionExhausted, EventChannel
from .lib.jellyfin_api import JellyfinApiError, LookupFailure, select_media_source
from .lib.prefs import PrefsStore
from .lib.tracks import TrackIndexMap
from .lib.watchdog import sd_notify, watchdog_loop
from .players.mpv import PlayerError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
VOLUME_STEP = 5

# Commands that bring a stopped player back on the last playlist position
RESTART_COMMANDS = {"Play", "Unpause", "Seek"}

# time-pos only refreshes the cached position; the progress timer reports it
REPORTING_PROPERTIES = {"pause", "volume", "mute"}


@dataclass
class PlaybackContext:
    item_id: str
    media_source_id: str
    play_session_id: str
    position: float = 0.0
    paused: bool = False
    muted: bool = False
    volume: int | None = None
    audio_index: int | None = None
    subtitle_index: int | None = None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
class PlaybackShim:
    """Relays Jellyfin remote-control directives to a supervised mpv."""

    def __init__(self, api, player, *, channel=None, prefs=None, username=None,
                 password=None, progress_interval=None, capabilities_interval=None,
                 report_debounce=None, clock=time.monotonic):
        self.api = api
        self.player = player
        self.channel = channel
        self.prefs = prefs or PrefsStore()
        self.username = username
        self.password = password
        self.progress_interval = progress_interval if progress_interval is not None else \
            cfg_duration("timing", "progress_interval", default=30)
        self.capabilities_interval = capabilities_interval if capabilities_interval is not None else \
            cfg_duration("timing", "capabilities_interval", default=300)
        self.report_debounce = report_debounce if report_debounce is not None else \
            cfg_duration("timing", "report_debounce", default=2)
        self._clock = clock

        self.state = "idle"
        self.playlist: list[str] = []
        self.playlist_index = 0
        self.context: PlaybackContext | None = None
        self.track_map: TrackIndexMap | None = None

        self._play_session_id: str | None = None
        self._resume_position = 0.0
        self._suppress_advance = False
        self._generation = 0
        self._last_emit = float("-inf")

        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer_task: asyncio.Task | None = None
        self._progress_task: asyncio.Task | None = None
        self._capabilities_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._shutting_down = False
        self._done = asyncio.Event()

        player.on_exit = self._on_player_exit
        player.on_property_change = self._on_property_change

    # -- lifecycle ----------------------------------------------------------

    async def run(self):
        """Connect and relay until shutdown().

        Raises AuthenticationFailed if login is rejected and ConnectionExhausted
        if the Jellyfin socket cannot be kept up.
        """
        logger.info("Starting Jellyfin → mpv relay as %s (%s)",
                    self.api.device_name, self.api.device_id)
        self.prefs.load()
        self.player.initial_volume = self.prefs.volume
        self.player.initial_mute = self.prefs.muted

        await self.api.start()
        if self.username and self.password:
            logger.info("Authenticating as %s", self.username)
            try:
                await self.api.authenticate_by_name(self.username, self.password)
            except JellyfinApiError:
                await self.api.close()
                raise

        if self.channel is None:
            self.channel = EventChannel(self.api.websocket_url(), headers=self.api.headers())
        self.channel.set_message_handler(self.enqueue)
        self._consumer_task = asyncio.create_task(self._consume())
        self.channel.start()

        try:
            await self.channel.wait_ready()
        except ConnectionExhausted:
            if self._shutting_down:
                await self._done.wait()
                return
            await self.shutdown()
            raise

        sd_notify("READY=1")
        sd_notify("STATUS=Connected, idle")
        self._capabilities_task = asyncio.create_task(self._capabilities_loop())
        self._watchdog_task = asyncio.create_task(watchdog_loop())

        closed = asyncio.create_task(self.channel.wait_closed())
        stopped = asyncio.create_task(self._done.wait())
        try:
            await asyncio.wait({closed, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (closed, stopped):
                if not task.done():
                    task.cancel()
        if closed.done() and not closed.cancelled() and closed.exception() is not None:
            logger.error("Jellyfin socket gave up: %s", closed.exception())
            await self.shutdown()
            raise closed.exception()
        await self._done.wait()

    async def shutdown(self):
        """Stop everything and release run().  Safe to call more than once."""
        if self._shutting_down:
            await self._done.wait()
            return
        self._shutting_down = True
        logger.info("Shutting down")
        sd_notify("STOPPING=1")

        self._cancel_progress_timer()
        for task in (self._capabilities_task, self._watchdog_task, self._consumer_task):
            if task and not task.done():
                task.cancel()
        self.player.on_property_change = None

        if self.channel is not None:
            await self.channel.close()
        for task in (self._capabilities_task, self._watchdog_task, self._consumer_task):
            if task:
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._suppress_advance = True
        try:
            await self.player.stop()
        except PlayerError as e:
            logger.warning("Error stopping mpv: %s", e)
        self.player.on_exit = None

        for task in list(self._background):
            task.cancel()
        await self.api.close()
        self._done.set()
        logger.info("Shutdown complete")

    # -- directive queue ----------------------------------------------------

    async def enqueue(self, directive):
        """Queue a directive for the consumer task."""
        if self._shutting_down:
            return
        self._queue.put_nowait(directive)

    async def _consume(self):
        while True:
            directive = await self._queue.get()
            try:
                await self.handle_directive(directive)
            except (PlayerError, JellyfinApiError) as e:
                logger.warning("%s failed: %s", _describe(directive), e)
            except Exception:
                logger.exception("%s failed", _describe(directive))
            finally:
                self._queue.task_done()

    async def handle_directive(self, directive):
        logger.info("Handling %s", _describe(directive))
        if isinstance(directive, PlayDirective):
            await self._handle_play(directive)
        elif isinstance(directive, PlaystateDirective):
            await self.handle_command(
                directive.command,
                volume=directive.volume,
                index=directive.index,
                seek_position=directive.seek_position,
            )
        elif isinstance(directive, GeneralCommandDirective):
            await self.handle_command(
                directive.name,
                volume=directive.int_arg("Volume"),
                index=directive.int_arg("Index"),
                seek_position=directive.seconds_arg("SeekPositionTicks"),
                fullscreen=directive.bool_arg("Fullscreen"),
            )

    # -- play transitions ---------------------------------------------------

    async def _handle_play(self, directive: PlayDirective):
        if directive.generation is not None and directive.generation != self._generation:
            logger.info("Dropping stale auto-advance, playlist was replaced")
            return
        if directive.generation is None:
            self._generation += 1
            self._play_session_id = directive.play_session_id or uuid.uuid4().hex
        elif directive.play_session_id:
            self._play_session_id = directive.play_session_id

        if directive.play_command != "PlayNow":
            logger.warning("%s is not supported, replacing the playlist instead",
                           directive.play_command)
        await self._stop_player()
        self.playlist = list(directive.item_ids)
        index = directive.chosen_index()
        logger.info("Playlist of %d item(s), starting at %d", len(self.playlist), index + 1)
        await self._start_item(
            index,
            start_position=directive.start_position,
            media_source_id=directive.media_source_id,
            audio_index=directive.audio_index,
            subtitle_index=directive.subtitle_index,
        )

    async def _start_item(self, index: int, *, start_position=None, media_source_id=None,
                          audio_index=None, subtitle_index=None) -> bool:
        """Look up playlist[index] and start mpv on it.  Returns True once playing."""
        self.playlist_index = index
        item_id = self.playlist[index]
        self.state = "starting"

        try:
            item = await self.api.get_item(item_id)
        except LookupFailure as e:
            logger.warning("Could not fetch item %s: %s", item_id, e)
            self.state = "idle"
            return False

        source = select_media_source(item, media_source_id)
        source_id = str(source.get("Id") or item_id)
        track_map = TrackIndexMap.from_media_source(source)
        logger.debug("Item %s has %d streams", item_id, len(track_map))
        for line in track_map.describe():
            logger.debug("  %s", line)

        sid = None
        if subtitle_index is not None:
            sid = "no" if subtitle_index < 0 else track_map.subtitle_to_mpv(subtitle_index)

        url = self.api.build_stream_url(
            item_id, media_source_id=source_id, start_position=start_position,
            audio_index=audio_index,
            subtitle_index=subtitle_index if subtitle_index is not None and subtitle_index >= 0 else None)

        try:
            await self.player.play(
                url, title=item.get("Name"), start_position=start_position,
                audio_index=audio_index, subtitle_index=sid)
        except PlayerError as e:
            logger.error("Could not start mpv for %s: %s", item_id, e)
            self.state = "idle"
            return False
        if not self.player.running:
            logger.warning("mpv exited right after starting %s", item_id)
            self.state = "idle"
            return False

        self.track_map = track_map
        self.context = PlaybackContext(
            item_id=item_id,
            media_source_id=source_id,
            play_session_id=self._play_session_id or uuid.uuid4().hex,
            position=start_position or 0.0,
            muted=self.prefs.muted,
            volume=self.prefs.volume,
            audio_index=audio_index,
            subtitle_index=subtitle_index,
        )
        self.state = "playing"
        logger.info("Playing %s (%d/%d)", item.get("Name") or item_id, index + 1, len(self.playlist))
        sd_notify(f"STATUS=Playing {item.get('Name') or item_id}")

        try:
            await self.api.report_playback_start(self._payload(self.context))
        except JellyfinApiError as e:
            logger.warning("Failed to report playback start: %s", e)
        self._start_progress_timer()
        return True

    async def _stop_player(self):
        """Stop mpv without triggering auto-advance for the resulting exit."""
        if self.player.running:
            self._suppress_advance = True
        await self.player.stop()

    async def _play_next(self):
        if not self.playlist or self.playlist_index + 1 >= len(self.playlist):
            logger.info("Next: end of playlist, stopping")
            await self._stop_player()
            return
        await self._switch_to(self.playlist_index + 1)

    async def _play_previous(self):
        if not self.playlist:
            await self._stop_player()
            return
        if self.playlist_index == 0:
            logger.info("Previous: at start of playlist, restarting first item")
        await self._switch_to(max(0, self.playlist_index - 1))

    async def _switch_to(self, index: int, start_position=None):
        await self._stop_player()
        await self._start_item(index, start_position=start_position)

    # -- commands -----------------------------------------------------------

    async def handle_command(self, name, *, volume=None, index=None, seek_position=None,
                             fullscreen=None):
        """Apply one Playstate or GeneralCommand by name."""
        if not self.player.running:
            if name in RESTART_COMMANDS and self.playlist:
                position = seek_position if name == "Seek" else self._resume_position
                logger.info("%s while stopped, restarting item %d at %.1fs",
                            name, self.playlist_index + 1, position or 0.0)
                await self._start_item(self.playlist_index, start_position=position)
                return
            logger.warning("Ignoring %s, mpv is not running", name)
            return

        try:
            changed = await self._apply_command(name, volume=volume, index=index,
                                                seek_position=seek_position,
                                                fullscreen=fullscreen)
        except PlayerError as e:
            logger.warning("%s failed: %s", name, e)
            return
        if changed:
            await self.report_progress()

    async def _apply_command(self, name, *, volume, index, seek_position, fullscreen) -> bool:
        """Run the command against mpv.  Returns True if playback state changed."""
        player = self.player
        ctx = self.context

        if name == "PlayPause":
            paused = not await player.query_paused()
            await player.set_pause(paused)
            if ctx:
                ctx.paused = paused
        elif name == "Pause":
            await player.set_pause(True)
            if ctx:
                ctx.paused = True
        elif name in ("Unpause", "Play"):
            await player.set_pause(False)
            if ctx:
                ctx.paused = False
        elif name == "Stop":
            await self._stop_player()
            return False
        elif name == "Seek":
            if seek_position is None:
                logger.warning("Seek without a position")
                return False
            await player.seek(seek_position)
            if ctx:
                ctx.position = seek_position
        elif name == "SetVolume":
            if volume is None:
                logger.warning("SetVolume without a usable volume")
                return False
            applied = await player.set_volume(volume)
            if ctx:
                ctx.volume = applied
        elif name in ("VolumeUp", "VolumeDown"):
            applied = await player.adjust_volume(VOLUME_STEP if name == "VolumeUp" else -VOLUME_STEP)
            if ctx:
                ctx.volume = applied
        elif name in ("Mute", "Unmute"):
            await player.set_mute(name == "Mute")
            if ctx:
                ctx.muted = name == "Mute"
        elif name == "ToggleMute":
            muted = not await player.query_muted()
            await player.set_mute(muted)
            if ctx:
                ctx.muted = muted
        elif name == "SetAudioStreamIndex":
            if index is None:
                return False
            await player.set_audio_track(index)
            if ctx:
                ctx.audio_index = index
        elif name == "SetSubtitleStreamIndex":
            if index is None:
                return False
            if index < 0:
                await player.set_subtitle_track(None)
            else:
                sid = self.track_map.subtitle_to_mpv(index) if self.track_map else None
                if sid is None:
                    logger.warning("Cannot map subtitle stream index %d to an mpv track", index)
                    return False
                await player.set_subtitle_track(sid)
            if ctx:
                ctx.subtitle_index = index
        elif name in ("NextTrack", "PlayNext"):
            await self._play_next()
            return False
        elif name == "PreviousTrack":
            await self._play_previous()
            return False
        elif name == "SetFullscreen":
            if fullscreen is None:
                return False
            await player.set_fullscreen(fullscreen)
            return False
        elif name == "ToggleFullscreen":
            await player.toggle_fullscreen()
            return False
        else:
            logger.debug("Unhandled command: %s", name)
            return False
        return True

    # -- player events ------------------------------------------------------

    async def _on_player_exit(self, code):
        self._cancel_progress_timer()
        ctx, self.context = self.context, None
        self.track_map = None
        self.state = "idle"
        if ctx is not None:
            self._resume_position = ctx.position
            try:
                await self.api.report_playback_stopped(self._stop_payload(ctx))
            except JellyfinApiError as e:
                logger.warning("Failed to report playback stop: %s", e)
        sd_notify("STATUS=Connected, idle")

        suppressed, self._suppress_advance = self._suppress_advance, False
        if suppressed:
            logger.debug("mpv stopped by the relay, not advancing")
            return
        if code != 0:
            logger.warning("mpv exited with code %s, not advancing", code)
            return

        # Finished on its own: a later Play starts from the beginning
        self._resume_position = 0.0
        if self.playlist_index + 1 < len(self.playlist):
            logger.info("Item finished, advancing to %d/%d",
                        self.playlist_index + 2, len(self.playlist))
            await self.enqueue(PlayDirective(
                item_ids=list(self.playlist),
                start_index=self.playlist_index + 1,
                play_session_id=self._play_session_id,
                generation=self._generation,
            ))
        elif self.playlist:
            logger.info("End of playlist reached")

    async def _on_property_change(self, name, value):
        ctx = self.context
        number = value if isinstance(value, (int, float)) and not isinstance(value, bool) else None
        if name == "time-pos":
            if ctx and number is not None:
                ctx.position = float(number)
            return
        if name == "pause" and isinstance(value, bool):
            if ctx:
                ctx.paused = value
        elif name == "volume" and number is not None:
            if ctx:
                ctx.volume = int(round(number))
            self.prefs.update(volume=number)
        elif name == "mute" and isinstance(value, bool):
            if ctx:
                ctx.muted = value
            self.prefs.update(muted=value)

        if name in REPORTING_PROPERTIES and ctx is not None:
            self._debounced_report()

    def _debounced_report(self):
        now = self._clock()
        if now - self._last_emit < self.report_debounce:
            return
        self._last_emit = now
        # Never awaited here: this runs on mpv's reader task, which the
        # report's own queries depend on.
        task = asyncio.create_task(self.report_progress())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- reporting ----------------------------------------------------------

    def _queue_payload(self) -> list[dict]:
        return [{"Id": item_id, "PlaylistItemId": f"playlistItem{i}"}
                for i, item_id in enumerate(self.playlist)]

    def _payload(self, ctx: PlaybackContext) -> dict:
        payload = {
            "ItemId": ctx.item_id,
            "MediaSourceId": ctx.media_source_id,
            "PlaySessionId": ctx.play_session_id,
            "PositionTicks": seconds_to_ticks(ctx.position),
            "IsPaused": ctx.paused,
            "IsMuted": ctx.muted,
            "CanSeek": True,
            "PlayMethod": "DirectPlay",
            "NowPlayingQueue": self._queue_payload(),
        }
        if ctx.volume is not None:
            payload["VolumeLevel"] = ctx.volume
        if ctx.audio_index is not None:
            payload["AudioStreamIndex"] = ctx.audio_index
        if ctx.subtitle_index is not None:
            payload["SubtitleStreamIndex"] = ctx.subtitle_index
        return payload

    def _stop_payload(self, ctx: PlaybackContext) -> dict:
        return {
            "ItemId": ctx.item_id,
            "MediaSourceId": ctx.media_source_id,
            "PlaySessionId": ctx.play_session_id,
            "PositionTicks": seconds_to_ticks(ctx.position),
            "NowPlayingQueue": self._queue_payload(),
        }

    async def report_progress(self):
        """Query mpv and post one progress report.  Best-effort."""
        ctx = self.context
        if ctx is None or not self.player.running:
            return
        payload = {
            "ItemId": ctx.item_id,
            "MediaSourceId": ctx.media_source_id,
            "PlaySessionId": ctx.play_session_id,
            "CanSeek": True,
            "PlayMethod": "DirectPlay",
            "NowPlayingQueue": self._queue_payload(),
        }

        position = await self._query(self.player.query_position)
        payload["PositionTicks"] = seconds_to_ticks(position if position is not None else ctx.position)
        paused = await self._query(self.player.query_paused)
        if paused is not None:
            payload["IsPaused"] = paused
        muted = await self._query(self.player.query_muted)
        if muted is not None:
            payload["IsMuted"] = muted
        volume = await self._query(self.player.query_volume)
        if volume is not None:
            payload["VolumeLevel"] = volume
        aid = await self._query(self.player.query_audio_track)
        if aid is not None:
            payload["AudioStreamIndex"] = aid
        sid = await self._query(self.player.query_subtitle_track)
        if sid is not None:
            mapped = self.track_map.subtitle_from_mpv(sid) if self.track_map else None
            if mapped is None:
                logger.debug("No stream index for mpv sid=%d, reporting it as is", sid)
            payload["SubtitleStreamIndex"] = mapped if mapped is not None else sid
        elif ctx.subtitle_index == -1:
            payload["SubtitleStreamIndex"] = -1

        try:
            await self.api.report_playback_progress(payload)
        except JellyfinApiError as e:
            logger.warning("Failed to report progress: %s", e)

    async def _query(self, method):
        try:
            return await method()
        except PlayerError as e:
            logger.debug("mpv query %s failed: %s", method.__name__, e)
            return None

    def _start_progress_timer(self):
        self._cancel_progress_timer()
        self._progress_task = asyncio.create_task(self._progress_loop())

    def _cancel_progress_timer(self):
        task, self._progress_task = self._progress_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _progress_loop(self):
        while True:
            await self.report_progress()
            await asyncio.sleep(self.progress_interval)

    async def _capabilities_loop(self):
        while True:
            try:
                await self.api.announce_capabilities()
                logger.info("Capabilities announced")
            except JellyfinApiError as e:
                logger.warning("Failed to announce capabilities: %s", e)
            await asyncio.sleep(self.capabilities_interval)


def _describe(directive) -> str:
    if isinstance(directive, PlayDirective):
        kind = "auto-advance" if directive.generation is not None else "Play"
        return f"{kind} {directive.choose_item_id()}"
    if isinstance(directive, PlaystateDirective):
        return f"Playstate {directive.command}"
    if isinstance(directive, GeneralCommandDirective):
        return f"GeneralCommand {directive.name}"
    return repr(directive)
