"""
Track index translation between Jellyfin and mpv.

Jellyfin addresses a track by its position in the media source's
MediaStreams list (video, audio and subtitle streams mixed together).
mpv numbers the tracks of each kind on its own, starting at 1
(sid=1, sid=2, ...).  Only subtitles are translated; audio indices are
passed through untouched.
"""

import logging

logger = logging.getLogger(__name__)

SUBTITLE = "Subtitle"


class TrackIndexMap:
    """Read-only view of one media source's stream list."""

    def __init__(self, streams: list | None = None):
        self.streams = [s for s in (streams or []) if isinstance(s, dict)]

    @classmethod
    def from_media_source(cls, media_source: dict) -> "TrackIndexMap":
        streams = media_source.get("MediaStreams")
        return cls(streams if isinstance(streams, list) else [])

    def __len__(self):
        return len(self.streams)

    def _is_subtitle(self, stream: dict) -> bool:
        return str(stream.get("Type")) == SUBTITLE

    def subtitle_to_mpv(self, position: int) -> int | None:
        """Jellyfin stream position → mpv sid, or None if it is not a subtitle."""
        if not 0 <= position < len(self.streams):
            logger.warning("Subtitle stream index %d out of range (%d streams)",
                           position, len(self.streams))
            return None
        stream = self.streams[position]
        if not self._is_subtitle(stream):
            logger.warning("MediaStreams[%d] is not a subtitle (type=%s)",
                           position, stream.get("Type"))
            return None
        sid = 1 + sum(1 for s in self.streams[:position] if self._is_subtitle(s))
        logger.debug("Subtitle MediaStreams[%d] (%s) → mpv sid=%d",
                     position, stream.get("Language") or "unknown", sid)
        return sid

    def subtitle_from_mpv(self, sid: int) -> int | None:
        """mpv sid → Jellyfin stream position, or None if there is no such subtitle."""
        count = 0
        for i, stream in enumerate(self.streams):
            if self._is_subtitle(stream):
                count += 1
                if count == sid:
                    return i
        return None

    def describe(self) -> list[str]:
        """One line per stream, for the debug log."""
        return [
            f"[{i}] Type={s.get('Type')} Index={s.get('Index')} "
            f"Lang={s.get('Language') or ''} Codec={s.get('Codec') or ''} "
            f"Title={s.get('DisplayTitle') or ''}"
            for i, s in enumerate(self.streams)
        ]
