# jellyrelay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
MpvController: supervises one mpv process over its JSON IPC socket.

Each play() spawns a fresh mpv with --input-ipc-server pointing into a
private temp directory, connects to the socket and keeps a reader task on
it.  Replies are matched to requests by request_id; messages without one
are events.  A second task waits for the process to exit and runs the
teardown (reader, socket, pending requests, temp dir) exactly once per run,
then hands the exit code to on_exit.

Callbacks wired by the owner:

    controller.on_property_change = async def (name, value)
    controller.on_exit            = async def (exit_code)

Track indices are passed to mpv as given (--aid / --sid); translating
Jellyfin stream positions is the caller's job.
"""

import asyncio
import json
import logging
import os
import shutil
import subprocess
import tempfile

from ..lib.config import cfg, cfg_duration, cfg_list

log = logging.getLogger(__name__)

OBSERVED_PROPERTIES = ("time-pos", "pause", "volume", "mute")

# mpv lines can be long (track-list, metadata)
IPC_READ_LIMIT = 1 << 20


class PlayerError(Exception):
    """Base exception for player controller errors."""

    pass


class PlayerUnavailable(PlayerError):
    """mpv could not be started or its IPC socket never came up."""

    pass


class PlayerStopped(PlayerError):
    """The process went away while a request was outstanding."""

    pass


class NotRunning(PlayerError):
    """A command was issued while no player is running."""

    pass


class CommandTimeout(PlayerError):
    """mpv did not answer a request in time.  The process is left alone."""

    pass


class CommandFailed(PlayerError):
    """mpv answered a request with an error status."""

    pass


async def log_output(stream: asyncio.StreamReader, level: int):
    """Forward mpv's terminal output to the log, one line per record, until EOF."""
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Line longer than the stream limit; the buffer was discarded
            continue
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            log.log(level, "mpv: %s", text)


class MpvController:
    """One supervised mpv instance at a time."""

    def __init__(self, binary=None, extra_args=None, *, startup_timeout=None,
                 command_timeout=None, quit_timeout=None):
        self.binary = binary or cfg("mpv", "binary", default="mpv")
        self.extra_args = list(extra_args) if extra_args is not None else cfg_list("mpv", "args")
        self.startup_timeout = startup_timeout if startup_timeout is not None else \
            cfg_duration("mpv", "startup_timeout", default=5)
        self.command_timeout = command_timeout if command_timeout is not None else \
            cfg_duration("mpv", "command_timeout", default=2)
        self.quit_timeout = quit_timeout if quit_timeout is not None else \
            cfg_duration("mpv", "quit_timeout", default=2)

        # Applied to every new process; the owner keeps these current
        self.initial_volume: int | None = None
        self.initial_mute: bool | None = None

        self.on_property_change = None
        self.on_exit = None

        self.process: asyncio.subprocess.Process | None = None
        self._ipc_reader: asyncio.StreamReader | None = None
        self._ipc_writer: asyncio.StreamWriter | None = None
        self._ipc_dir: str | None = None
        self._reader_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._next_request_id = 1
        self._torn_down = True
        self._output_tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self.process is not None and not self._torn_down

    # ── Lifecycle ──

    def build_command(self, media_url, socket_path, *, title=None, start_position=None,
                      audio_index=None, subtitle_index=None) -> list[str]:
        cmd = [
            self.binary,
            "--no-input-terminal",
            "--msg-level=all=warn",
            f"--input-ipc-server={socket_path}",
        ]
        if title:
            cmd.append(f"--title={title}")
        if start_position:
            cmd.append(f"--start={start_position:.3f}")
        if audio_index is not None:
            cmd.append(f"--aid={audio_index}")
        if subtitle_index is not None:
            cmd.append(f"--sid={subtitle_index}")
        if self.initial_volume is not None:
            cmd.append(f"--volume={self.initial_volume}")
        if self.initial_mute is not None:
            cmd.append(f"--mute={'yes' if self.initial_mute else 'no'}")
        cmd.extend(self.extra_args)
        cmd.append(str(media_url))
        return cmd

    async def _spawn(self, cmd: list[str]) -> asyncio.subprocess.Process:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdin=subprocess.DEVNULL, stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE)
        for stream, level in ((process.stdout, logging.DEBUG), (process.stderr, logging.WARNING)):
            task = asyncio.create_task(log_output(stream, level))
            self._output_tasks.add(task)
            task.add_done_callback(self._output_tasks.discard)
        return process

    async def play(self, media_url, *, title=None, start_position=None,
                   audio_index=None, subtitle_index=None):
        """Start mpv on *media_url*, replacing any running instance.

        subtitle_index may be "no" to start with subtitles off.  Raises
        PlayerUnavailable if the process or its IPC socket does not come up
        within startup_timeout.
        """
        await self.stop()
        self._exit_task = None

        self._ipc_dir = tempfile.mkdtemp(prefix="jellyrelay-mpv-")
        socket_path = os.path.join(self._ipc_dir, "mpv.sock")
        cmd = self.build_command(
            media_url, socket_path, title=title, start_position=start_position,
            audio_index=audio_index, subtitle_index=subtitle_index)

        try:
            self.process = await self._spawn(cmd)
        except OSError as e:
            self._remove_ipc_dir()
            self.process = None
            raise PlayerUnavailable(f"Could not start {self.binary}: {e}") from e

        try:
            await self._connect_ipc(socket_path)
        except (PlayerUnavailable, asyncio.CancelledError):
            await self._abort_start()
            raise

        self._torn_down = False
        self._reader_task = asyncio.create_task(self._read_ipc_events(self._ipc_reader))
        self._exit_task = asyncio.create_task(self._watch_exit(self.process))
        for i, name in enumerate(OBSERVED_PROPERTIES, start=1):
            await self._write({"command": ["observe_property", i, name]})
        log.info("mpv started (pid %s): %s", self.process.pid, title or media_url)

    async def _connect_ipc(self, socket_path: str):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while True:
            if self.process.returncode is not None:
                raise PlayerUnavailable(
                    f"mpv exited during startup (code {self.process.returncode})")
            if os.path.exists(socket_path):
                try:
                    self._ipc_reader, self._ipc_writer = await asyncio.open_unix_connection(
                        socket_path, limit=IPC_READ_LIMIT)
                    return
                except (ConnectionRefusedError, FileNotFoundError):
                    pass
            if loop.time() >= deadline:
                raise PlayerUnavailable(
                    f"Could not connect to mpv IPC within {self.startup_timeout:.1f}s")
            await asyncio.sleep(0.1)

    async def _abort_start(self):
        process = self.process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        await self._close_ipc()
        self._remove_ipc_dir()
        self.process = None

    async def stop(self):
        """Ask mpv to quit, escalating to SIGTERM and SIGKILL.

        Returns once teardown and the on_exit callback have completed, also
        when the process had already exited on its own.  No-op when nothing
        was started.
        """
        exit_task = self._exit_task
        if exit_task is None or exit_task is asyncio.current_task():
            return

        process = self.process
        if process is not None and process.returncode is None:
            await self._write({"command": ["quit"]})
            if not await self._wait_process(process, self.quit_timeout):
                log.warning("mpv did not quit within %.1fs, sending SIGTERM", self.quit_timeout)
                self._signal(process, "terminate")
                if not await self._wait_process(process, 2):
                    log.warning("mpv ignored SIGTERM, killing")
                    self._signal(process, "kill")
                    await process.wait()

        await asyncio.shield(exit_task)

    async def _wait_process(self, process, timeout: float) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _signal(self, process, method: str):
        try:
            getattr(process, method)()
        except ProcessLookupError:
            pass

    async def _watch_exit(self, process):
        code = await process.wait()
        log.info("mpv exited with code %s", code)
        await self._teardown()
        if self.on_exit:
            try:
                await self.on_exit(code)
            except Exception:
                log.exception("mpv exit handler failed")

    async def _teardown(self):
        """Release everything tied to the current run.  Runs once per run."""
        if self._torn_down:
            return
        self._torn_down = True

        reader_task, self._reader_task = self._reader_task, None
        if reader_task and reader_task is not asyncio.current_task():
            reader_task.cancel()
            try:
                await reader_task
            except asyncio.CancelledError:
                pass
        await self._close_ipc()

        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(PlayerStopped("mpv stopped"))

        self._remove_ipc_dir()
        self.process = None

    def _remove_ipc_dir(self):
        if self._ipc_dir:
            shutil.rmtree(self._ipc_dir, ignore_errors=True)
            self._ipc_dir = None

    # ── IPC communication ──

    async def _write(self, obj) -> bool:
        if not self._ipc_writer:
            return False
        try:
            self._ipc_writer.write(json.dumps(obj).encode() + b"\n")
            await self._ipc_writer.drain()
            return True
        except (ConnectionError, OSError) as e:
            log.debug("mpv IPC send error: %s", e)
            return False

    async def _close_ipc(self):
        if self._ipc_writer:
            try:
                self._ipc_writer.close()
                await self._ipc_writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._ipc_reader = None
        self._ipc_writer = None

    async def _read_ipc_events(self, reader: asyncio.StreamReader):
        """Background task: routes replies to their requests and events to callbacks."""
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break  # EOF, mpv closed the socket
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    log.debug("Skipping non-JSON IPC line: %r", line[:200])
                    continue
                if not isinstance(msg, dict):
                    continue
                if "request_id" in msg and msg.get("event") is None:
                    self._resolve(msg)
                elif msg.get("event") == "property-change":
                    await self._dispatch_property(msg.get("name"), msg.get("data"))
        except (ConnectionError, OSError, ValueError) as e:
            log.debug("IPC reader ended: %s", e)

    def _resolve(self, msg: dict):
        fut = self._pending.get(msg.get("request_id"))
        if fut is None or fut.done():
            return
        error = msg.get("error", "success")
        if error == "success":
            fut.set_result(msg.get("data"))
        else:
            fut.set_exception(CommandFailed(str(error)))

    async def _dispatch_property(self, name, value):
        if not self.on_property_change or name not in OBSERVED_PROPERTIES:
            return
        try:
            await self.on_property_change(name, value)
        except Exception:
            log.exception("Property handler failed for %s", name)

    async def command(self, *args):
        """Send one IPC command and return mpv's data field.

        Raises NotRunning, CommandTimeout, CommandFailed or PlayerStopped.
        """
        if not self.running or not self._ipc_writer:
            raise NotRunning("mpv is not running")
        request_id = self._next_request_id
        self._next_request_id += 1
        fut = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            if not await self._write({"command": list(args), "request_id": request_id}):
                raise PlayerStopped("mpv IPC socket is closed")
            try:
                return await asyncio.wait_for(fut, self.command_timeout)
            except asyncio.TimeoutError:
                raise CommandTimeout(
                    f"mpv {args[0]} timed out after {self.command_timeout:.1f}s") from None
        finally:
            self._pending.pop(request_id, None)

    async def get_property(self, name):
        return await self.command("get_property", name)

    async def set_property(self, name, value):
        await self.command("set_property", name, value)

    # ── Commands ──

    async def set_pause(self, paused: bool):
        await self.set_property("pause", bool(paused))

    async def seek(self, seconds: float):
        await self.command("seek", max(0.0, float(seconds)), "absolute")

    async def set_volume(self, volume) -> int:
        """Set volume, clamped to 0..100.  Returns the applied value."""
        volume = max(0, min(100, int(round(volume))))
        await self.set_property("volume", volume)
        return volume

    async def adjust_volume(self, delta) -> int:
        current = await self.query_volume()
        return await self.set_volume((current or 0) + delta)

    async def set_mute(self, muted: bool):
        await self.set_property("mute", bool(muted))

    async def set_audio_track(self, index: int):
        await self.set_property("aid", index)

    async def set_subtitle_track(self, sid: int | None):
        """Select subtitle *sid*; None turns subtitles off."""
        await self.set_property("sid", "no" if sid is None else sid)

    async def set_fullscreen(self, fullscreen: bool):
        await self.set_property("fullscreen", bool(fullscreen))

    async def toggle_fullscreen(self):
        await self.command("cycle", "fullscreen")

    # ── Queries ──

    async def query_position(self) -> float | None:
        value = await self.get_property("time-pos")
        return float(value) if isinstance(value, (int, float)) else None

    async def query_paused(self) -> bool:
        return bool(await self.get_property("pause"))

    async def query_muted(self) -> bool:
        return bool(await self.get_property("mute"))

    async def query_volume(self) -> int | None:
        value = await self.get_property("volume")
        return int(round(value)) if isinstance(value, (int, float)) else None

    async def query_audio_track(self) -> int | None:
        return _track_id(await self.get_property("aid"))

    async def query_subtitle_track(self) -> int | None:
        return _track_id(await self.get_property("sid"))


def _track_id(value) -> int | None:
    # mpv reports "no" / false when no track of that kind is selected
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None
