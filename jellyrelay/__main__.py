# jellyrelay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
jellyrelay service entry point.

    jellyrelay --server https://jf.example --user-id abc123 --token ...
    python -m jellyrelay --config /etc/jellyrelay/config.json --verbose

Command line options override the config file; secrets may also come from
JELLYFIN_TOKEN / JELLYFIN_PASSWORD.

Exit status: 0 on clean shutdown, 78 on configuration errors, 1 when the
Jellyfin connection or login fails for good.
"""

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys

from . import __version__
from .lib import config
from .lib.config import ConfigError, cfg, default_device_id
from .lib.event_channel import ConnectionExhausted
from .lib.jellyfin_api import CLIENT_NAME, JellyfinApi, JellyfinApiError
from .players.mpv import MpvController
from .shim import PlaybackShim

logger = logging.getLogger("jellyrelay")

EXIT_CONFIG = 78
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jellyrelay",
        description="Play Jellyfin remote-control sessions in mpv")
    parser.add_argument("--config", help="Path to config.json")
    parser.add_argument("--server", help="Jellyfin server URL (http/https)")
    parser.add_argument("--user-id", help="Jellyfin user id")
    parser.add_argument("--token", help="Access token (or $JELLYFIN_TOKEN)")
    parser.add_argument("--username", help="Log in with this user instead of a token")
    parser.add_argument("--password", help="Password for --username (or $JELLYFIN_PASSWORD)")
    parser.add_argument("--device-id", help="Device id shown to Jellyfin (default: hostname)")
    parser.add_argument("--device-name", help="Device name shown to Jellyfin")
    parser.add_argument("--mpv-binary", help="mpv executable")
    parser.add_argument("--mpv-arg", action="append", dest="mpv_args", metavar="ARG",
                        help="Extra mpv argument (repeatable)")
    parser.add_argument("--keep-alive", help="Socket keep-alive interval, e.g. 15s")
    parser.add_argument("--progress-interval", help="Progress report interval, e.g. 30s")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_overrides(args):
    """Load the config file and layer command line options on top."""
    config.set_config_path(args.config)
    config.load_config()
    config.override("jellyfin", "server", args.server)
    config.override("jellyfin", "user_id", args.user_id)
    config.override("jellyfin", "username", args.username)
    config.override("device", "id", args.device_id)
    config.override("device", "name", args.device_name)
    config.override("mpv", "binary", args.mpv_binary)
    config.override("mpv", "args", args.mpv_args)
    config.override("timing", "keep_alive", args.keep_alive)
    config.override("timing", "progress_interval", args.progress_interval)
    config.require_settings()


def build_shim(args) -> PlaybackShim:
    token = args.token or os.getenv("JELLYFIN_TOKEN")
    username = cfg("jellyfin", "username")
    password = args.password or os.getenv("JELLYFIN_PASSWORD")
    if not token and not (username and password):
        raise ConfigError("Provide --token (or JELLYFIN_TOKEN), or --username with a password")

    api = JellyfinApi(
        cfg("jellyfin", "server"),
        user_id=cfg("jellyfin", "user_id"),
        device_id=cfg("device", "id", default=default_device_id()),
        device_name=cfg("device", "name", default=socket.gethostname()),
        client_name=cfg("client", "name", default=CLIENT_NAME),
        client_version=cfg("client", "version", default=__version__),
        token=token,
    )
    return PlaybackShim(
        api, MpvController(),
        username=username if not token else None,
        password=password if not token else None,
    )


async def serve(shim: PlaybackShim):
    loop = asyncio.get_running_loop()

    def handle_signal():
        logger.info("Signal received, shutting down")
        asyncio.ensure_future(shim.shutdown())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal)
    try:
        await shim.run()
    finally:
        await shim.shutdown()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        apply_overrides(args)
        shim = build_shim(args)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG

    try:
        asyncio.run(serve(shim))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG
    except (ConnectionExhausted, JellyfinApiError) as e:
        logger.error("Fatal: %s", e)
        return EXIT_FAILURE
    return 0


if __name__ == "__main__":
    sys.exit(main())
