"""Tests for the Jellyfin REST client against a local aiohttp server."""

from urllib.parse import parse_qs, urlsplit

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from jellyrelay.lib.jellyfin_api import (
    AuthenticationFailed,
    JellyfinApi,
    LookupFailure,
    ReportFailure,
    capabilities,
    select_media_source,
)


class FakeJellyfin:
    def __init__(self):
        self.requests = []
        self.progress_status = 204

    def app(self):
        app = web.Application()
        app.router.add_post("/Users/AuthenticateByName", self.authenticate)
        app.router.add_get("/Items/{item_id}", self.item)
        app.router.add_post("/Sessions/Capabilities/Full", self.record)
        app.router.add_post("/Sessions/Playing", self.record)
        app.router.add_post("/Sessions/Playing/Progress", self.progress)
        app.router.add_post("/Sessions/Playing/Stopped", self.record)
        return app

    async def _log(self, request):
        body = await request.json() if request.can_read_body else None
        self.requests.append((request.method, request.path, dict(request.query),
                              request.headers, body))
        return body

    async def authenticate(self, request):
        body = await self._log(request)
        if body.get("Pw") != "hunter2":
            return web.json_response({"error": "bad credentials"}, status=401)
        return web.json_response({"AccessToken": "tok-123", "User": {"Id": "user-1"}})

    async def item(self, request):
        await self._log(request)
        if request.match_info["item_id"] == "missing":
            return web.Response(status=404, text="Not Found")
        return web.json_response({"Id": request.match_info["item_id"], "Name": "Film"})

    async def record(self, request):
        await self._log(request)
        return web.Response(status=204)

    async def progress(self, request):
        await self._log(request)
        return web.Response(status=self.progress_status)


@pytest_asyncio.fixture
async def jellyfin():
    fake = FakeJellyfin()
    server = TestServer(fake.app())
    await server.start_server()
    fake.base_url = str(server.make_url("/"))
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def api(jellyfin):
    client = JellyfinApi(jellyfin.base_url, user_id="user-1", device_id="box-1",
                         device_name="Living Room", client_version="1.2.3")
    await client.start()
    yield client
    await client.close()


class TestAddressing:
    def test_authorization_header(self):
        api = JellyfinApi("http://jf.local:8096", user_id="u1", device_id="d1",
                          device_name="Box", client_version="0.1.0")
        assert api.authorization == (
            'MediaBrowser Client="Jellyfin MPV Relay", Device="Box", '
            'DeviceId="d1", Version="0.1.0", UserId="u1"'
        )
        assert "X-Emby-Token" not in api.headers()
        api.token = "abc"
        assert api.headers()["X-Emby-Token"] == "abc"

    def test_websocket_url(self):
        api = JellyfinApi("https://jf.example/jellyfin", user_id="u1", device_id="d1",
                          device_name="Box", token="abc")
        url = urlsplit(api.websocket_url())
        assert url.scheme == "wss"
        assert url.path == "/jellyfin/socket"
        query = parse_qs(url.query)
        assert query["api_key"] == ["abc"]
        assert query["deviceId"] == ["d1"]
        assert query["userId"] == ["u1"]

    def test_stream_url(self):
        api = JellyfinApi("http://jf.local:8096/", user_id="u1", device_id="d1",
                          device_name="Box", token="abc")
        url = urlsplit(api.build_stream_url("item9", media_source_id="src9",
                                            start_position=1.5, audio_index=1))
        assert url.path == "/Items/item9/Download"
        query = parse_qs(url.query)
        assert query["api_key"] == ["abc"]
        assert query["mediaSourceId"] == ["src9"]
        assert query["startTimeTicks"] == ["15000000"]
        assert query["audioStreamIndex"] == ["1"]
        assert "subtitleStreamIndex" not in query

    def test_capabilities(self):
        caps = capabilities()
        assert caps["PlayableMediaTypes"] == ["Video", "Audio"]
        assert "SetSubtitleStreamIndex" in caps["SupportedCommands"]
        assert caps["SupportsMediaControl"] is True


class TestRequests:
    @pytest.mark.asyncio
    async def test_authenticate_stores_token(self, api, jellyfin):
        token = await api.authenticate_by_name("alice", "hunter2")
        assert token == "tok-123"
        assert api.token == "tok-123"

        await api.get_item("abc")
        headers = jellyfin.requests[-1][3]
        assert headers["X-Emby-Token"] == "tok-123"
        assert 'DeviceId="box-1"' in headers["X-Emby-Authorization"]

    @pytest.mark.asyncio
    async def test_authenticate_rejected(self, api):
        with pytest.raises(AuthenticationFailed) as exc:
            await api.authenticate_by_name("alice", "wrong")
        assert exc.value.status == 401

    @pytest.mark.asyncio
    async def test_get_item_requests_streams(self, api, jellyfin):
        item = await api.get_item("abc")
        assert item["Name"] == "Film"
        method, path, query, _, _ = jellyfin.requests[-1]
        assert (method, path) == ("GET", "/Items/abc")
        assert "MediaStreams" in query["fields"]

    @pytest.mark.asyncio
    async def test_missing_item_is_lookup_failure(self, api):
        with pytest.raises(LookupFailure) as exc:
            await api.get_item("missing")
        assert exc.value.status == 404

    @pytest.mark.asyncio
    async def test_reports_post_json(self, api, jellyfin):
        await api.report_playback_start({"ItemId": "a", "PositionTicks": 0})
        await api.report_playback_progress({"ItemId": "a", "PositionTicks": 10})
        await api.report_playback_stopped({"ItemId": "a", "PositionTicks": 20})
        await api.announce_capabilities()

        paths = [r[1] for r in jellyfin.requests]
        assert paths == ["/Sessions/Playing", "/Sessions/Playing/Progress",
                         "/Sessions/Playing/Stopped", "/Sessions/Capabilities/Full"]
        assert jellyfin.requests[1][4] == {"ItemId": "a", "PositionTicks": 10}
        assert jellyfin.requests[3][4]["SupportsPersistentIdentifier"] is True

    @pytest.mark.asyncio
    async def test_rejected_report(self, api, jellyfin):
        jellyfin.progress_status = 500
        with pytest.raises(ReportFailure):
            await api.report_playback_progress({"ItemId": "a"})

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        api = JellyfinApi("http://127.0.0.1:9", user_id="u", device_id="d",
                          device_name="Box", timeout=2)
        try:
            with pytest.raises(LookupFailure):
                await api.get_item("abc")
        finally:
            await api.close()


class TestMediaSource:
    ITEM = {"Id": "i", "MediaSources": [{"Id": "s1"}, {"Id": "s2"}]}

    def test_requested_source(self):
        assert select_media_source(self.ITEM, "s2")["Id"] == "s2"

    def test_unknown_source_falls_back_to_first(self):
        assert select_media_source(self.ITEM, "nope")["Id"] == "s1"

    def test_item_without_sources(self):
        item = {"Id": "i", "MediaStreams": []}
        assert select_media_source(item, None) is item
