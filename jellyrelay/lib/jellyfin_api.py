"""
Jellyfin REST client, limited to what a remote-controlled player needs.

    api = JellyfinApi(server, user_id=..., device_id=..., device_name=...)
    await api.start()
    token = await api.authenticate_by_name("alice", "secret")   # or token=...
    item = await api.get_item(item_id)
    url = api.build_stream_url(item_id, media_source_id=..., start_position=12.5)
    await api.report_playback_start({...})
    await api.close()

Every request carries the MediaBrowser authorization header and, once a
token is known, X-Emby-Token.  Non-2xx responses raise JellyfinApiError
subclasses; transport errors are wrapped the same way.
"""

import asyncio
import logging
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit

import aiohttp

from .directives import seconds_to_ticks

logger = logging.getLogger(__name__)

CLIENT_NAME = "Jellyfin MPV Relay"

SUPPORTED_COMMANDS = [
    "Play",
    "PlayState",
    "PlayNext",
    "SetAudioStreamIndex",
    "SetSubtitleStreamIndex",
    "SetVolume",
    "Mute",
    "Unmute",
    "ToggleMute",
    "ToggleFullscreen",
    "SetFullscreen",
    "VolumeUp",
    "VolumeDown",
]


class JellyfinApiError(Exception):
    """Base exception for Jellyfin REST failures."""

    def __init__(self, message, status: int | None = None):
        super().__init__(message)
        self.status = status


class AuthenticationFailed(JellyfinApiError):
    """Username/password login was rejected or returned no token."""


class LookupFailure(JellyfinApiError):
    """Item metadata could not be fetched."""


class ReportFailure(JellyfinApiError):
    """A start/progress/stop/capabilities report was not accepted."""


def capabilities() -> dict:
    return {
        "PlayableMediaTypes": ["Video", "Audio"],
        "SupportedCommands": list(SUPPORTED_COMMANDS),
        "SupportsMediaControl": True,
        "SupportsPersistentIdentifier": True,
    }


class JellyfinApi:
    """Thin aiohttp wrapper around the session/playback endpoints."""

    def __init__(self, server: str, *, user_id: str, device_id: str, device_name: str,
                 client_name: str = CLIENT_NAME, client_version: str = "0.0.0",
                 token: str | None = None, timeout: float = 10.0):
        if not server.endswith("/"):
            server += "/"
        self.server = server
        self.user_id = user_id
        self.device_id = device_id
        self.device_name = device_name
        self.client_name = client_name
        self.client_version = client_version
        self.token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def start(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"User-Agent": f"{self.client_name.replace(' ', '')}/{self.client_version}"},
            )

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None

    # ── Addressing ──

    def url(self, path: str, params: dict | None = None) -> str:
        url = urljoin(self.server, path.lstrip("/"))
        if params:
            clean = {k: v for k, v in params.items() if v is not None}
            if clean:
                url += "?" + urlencode(clean)
        return url

    @property
    def authorization(self) -> str:
        return (
            f'MediaBrowser Client="{self.client_name}", '
            f'Device="{self.device_name}", '
            f'DeviceId="{self.device_id}", '
            f'Version="{self.client_version}", '
            f'UserId="{self.user_id}"'
        )

    def headers(self) -> dict:
        headers = {"X-Emby-Authorization": self.authorization}
        if self.token:
            headers["X-Emby-Token"] = self.token
        return headers

    def websocket_url(self) -> str:
        """ws(s)://server/socket with the identity in the query string."""
        parts = urlsplit(self.server)
        scheme = "wss" if parts.scheme == "https" else "ws"
        path = parts.path.rstrip("/") + "/socket"
        query = urlencode({
            k: v for k, v in {
                "api_key": self.token,
                "deviceId": self.device_id,
                "deviceName": self.device_name,
                "client": self.client_name,
                "version": self.client_version,
                "userId": self.user_id,
            }.items() if v
        })
        return urlunsplit((scheme, parts.netloc, path, query, ""))

    def build_stream_url(self, item_id: str, *, media_source_id: str | None = None,
                         start_position: float | None = None, audio_index: int | None = None,
                         subtitle_index: int | None = None) -> str:
        """Direct download URL mpv can open without custom headers."""
        return self.url(f"Items/{item_id}/Download", {
            "api_key": self.token,
            "mediaSourceId": media_source_id,
            "startTimeTicks": seconds_to_ticks(start_position) if start_position else None,
            "audioStreamIndex": audio_index,
            "subtitleStreamIndex": subtitle_index,
        })

    # ── Requests ──

    async def _request(self, method: str, path: str, *, error_cls=JellyfinApiError,
                       params: dict | None = None, json_body=None):
        if self._session is None:
            await self.start()
        context = f"{method} {path}"
        try:
            async with self._session.request(
                    method, self.url(path, params), json=json_body,
                    headers=self.headers()) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    raise error_cls(f"{context} failed with {resp.status}: {body[:200]}",
                                    status=resp.status)
                if resp.content_type == "application/json":
                    return await resp.json()
                return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise error_cls(f"{context} failed: {e}") from e

    async def authenticate_by_name(self, username: str, password: str) -> str:
        """Log in and remember the access token.  Returns the token."""
        result = await self._request(
            "POST", "Users/AuthenticateByName", error_cls=AuthenticationFailed,
            json_body={"Username": username, "Pw": password})
        token = result.get("AccessToken") if isinstance(result, dict) else None
        if not token:
            raise AuthenticationFailed("Authentication succeeded but no token returned")
        self.token = token
        user = result.get("User") if isinstance(result, dict) else None
        if isinstance(user, dict) and user.get("Id") and not self.user_id:
            self.user_id = user["Id"]
        logger.info("Authenticated as %s", username)
        return token

    async def get_item(self, item_id: str) -> dict:
        item = await self._request(
            "GET", f"Items/{item_id}", error_cls=LookupFailure,
            params={"fields": "MediaSources,MediaStreams"})
        if not isinstance(item, dict):
            raise LookupFailure(f"Unexpected payload for item {item_id}")
        return item

    async def announce_capabilities(self):
        logger.debug("Announcing capabilities")
        await self._request("POST", "Sessions/Capabilities/Full",
                            error_cls=ReportFailure, json_body=capabilities())

    async def report_playback_start(self, payload: dict):
        await self._request("POST", "Sessions/Playing",
                            error_cls=ReportFailure, json_body=payload)

    async def report_playback_progress(self, payload: dict):
        await self._request("POST", "Sessions/Playing/Progress",
                            error_cls=ReportFailure, json_body=payload)

    async def report_playback_stopped(self, payload: dict):
        await self._request("POST", "Sessions/Playing/Stopped",
                            error_cls=ReportFailure, json_body=payload)


def select_media_source(item: dict, requested_id: str | None) -> dict:
    """The requested media source if the item has it, else the first one.

    Items without MediaSources are treated as their own source.
    """
    sources = [s for s in (item.get("MediaSources") or []) if isinstance(s, dict)]
    if requested_id:
        for source in sources:
            if str(source.get("Id")) == requested_id:
                return source
    if sources:
        return sources[0]
    return item
