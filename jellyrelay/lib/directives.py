"""
Decoding of remote-control messages pushed over the Jellyfin socket.

The server wraps everything in {"MessageType": ..., "Data": ...}.  Three
message types carry directives for this device:

  Play            ItemIds, StartIndex, StartPositionTicks, MediaSourceId,
                  AudioStreamIndex, SubtitleStreamIndex, PlaySessionId
  Playstate       Command, SeekPositionTicks, Volume, Index
  GeneralCommand  Name, Arguments (values may be numbers or numeric strings)

Everything else is ignored.  Numeric fields accept either form; anything
else reads as missing.
"""

import json
import logging
import math
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

TICKS_PER_SECOND = 10_000_000

PLAY = "Play"
PLAYSTATE = "Playstate"
GENERAL_COMMAND = "GeneralCommand"
KEEP_ALIVE = "KeepAlive"
FORCE_KEEP_ALIVE = "ForceKeepAlive"


class DirectiveError(ValueError):
    """A directive message is missing required data."""


def ticks_to_seconds(ticks) -> float | None:
    """100ns ticks → seconds.  Returns None for missing or non-numeric input."""
    value = as_number(ticks)
    if value is None:
        return None
    return value / TICKS_PER_SECOND


def seconds_to_ticks(seconds: float) -> int:
    return int(round(seconds * TICKS_PER_SECOND))


def as_number(value) -> float | None:
    """Accept ints, finite floats and numeric strings; everything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float) and math.isfinite(value):
        return value
    return None


def as_int(value) -> int | None:
    number = as_number(value)
    return None if number is None else int(round(number))


def as_bool(value) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return None


@dataclass
class PlayDirective:
    item_ids: list[str]
    start_index: int | None = None
    start_position: float | None = None   # seconds
    media_source_id: str | None = None
    audio_index: int | None = None
    subtitle_index: int | None = None
    play_session_id: str | None = None
    play_command: str = "PlayNow"
    # Playlist generation for plays the relay queues itself (auto-advance)
    generation: int | None = None

    def chosen_index(self) -> int:
        """Start index when it is in range, otherwise the first item."""
        if self.start_index is not None and 0 <= self.start_index < len(self.item_ids):
            return self.start_index
        return 0

    def choose_item_id(self) -> str:
        if not self.item_ids:
            raise DirectiveError("Play directive does not include any items")
        return self.item_ids[self.chosen_index()]


@dataclass
class PlaystateDirective:
    command: str
    seek_position: float | None = None    # seconds
    volume: int | None = None
    index: int | None = None


@dataclass
class GeneralCommandDirective:
    name: str
    arguments: dict = field(default_factory=dict)

    def int_arg(self, key: str) -> int | None:
        return as_int(self.arguments.get(key))

    def bool_arg(self, key: str) -> bool | None:
        return as_bool(self.arguments.get(key))

    def seconds_arg(self, key: str) -> float | None:
        return ticks_to_seconds(self.arguments.get(key))


Directive = PlayDirective | PlaystateDirective | GeneralCommandDirective


def _data_dict(data) -> dict | None:
    """The Data field is usually an object but some servers send it JSON-encoded."""
    if isinstance(data, dict):
        return data
    if isinstance(data, str):
        try:
            decoded = json.loads(data)
        except json.JSONDecodeError:
            return None
        if isinstance(decoded, dict):
            return decoded
    return None


def parse_play(data: dict) -> PlayDirective:
    raw_items = data.get("ItemIds")
    if isinstance(raw_items, list):
        item_ids = [str(i) for i in raw_items if i is not None]
    elif raw_items is not None:
        item_ids = [str(raw_items)]
    else:
        item_ids = []
    if not item_ids:
        raise DirectiveError("Play directive without ItemIds")
    start_index = data.get("StartIndex")
    if start_index is None:
        start_index = data.get("StartPlaylistIndex")
    media_source_id = data.get("MediaSourceId")
    play_session_id = data.get("PlaySessionId")
    return PlayDirective(
        item_ids=item_ids,
        start_index=as_int(start_index),
        start_position=ticks_to_seconds(data.get("StartPositionTicks")),
        media_source_id=str(media_source_id) if media_source_id else None,
        audio_index=as_int(data.get("AudioStreamIndex")),
        subtitle_index=as_int(data.get("SubtitleStreamIndex")),
        play_session_id=str(play_session_id) if play_session_id else None,
        play_command=str(data.get("PlayCommand") or "PlayNow"),
    )


def parse_playstate(data: dict) -> PlaystateDirective:
    command = data.get("Command")
    if not command:
        raise DirectiveError("Playstate directive without Command")
    return PlaystateDirective(
        command=str(command),
        seek_position=ticks_to_seconds(data.get("SeekPositionTicks")),
        volume=as_int(data.get("Volume")),
        index=as_int(data.get("Index")),
    )


def parse_general_command(data: dict) -> GeneralCommandDirective:
    name = data.get("Name")
    if not name:
        raise DirectiveError("GeneralCommand directive without Name")
    arguments = data.get("Arguments")
    return GeneralCommandDirective(
        name=str(name),
        arguments=arguments if isinstance(arguments, dict) else {},
    )


_PARSERS = {
    PLAY: parse_play,
    PLAYSTATE: parse_playstate,
    GENERAL_COMMAND: parse_general_command,
}


def parse_directive(message_type: str, data) -> Directive | None:
    """Decode one envelope.  Returns None for message types that carry no directive.

    Raises DirectiveError when a directive type arrives with unusable data.
    """
    parser = _PARSERS.get(message_type)
    if parser is None:
        return None
    payload = _data_dict(data)
    if payload is None:
        raise DirectiveError(f"{message_type} message without a data object")
    return parser(payload)
