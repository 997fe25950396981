"""Pytest configuration and a stand-in upstream platform served in-process."""

import dataclasses
import gzip
import json
import zlib
from typing import Dict, List

import pytest
import zstandard
from aiohttp import web

from app import create_app
from config import Settings
from youtube_extractor import YouTubeExtractor


def watch_page_html(player_response: dict) -> str:
    """Builds a watch page embedding the player response the way the real page does."""
    return (
        "<html><head><title>watch</title></head><body>"
        f"<script>var ytInitialPlayerResponse = {json.dumps(player_response)};"
        "var meta = {\"a\": 1};</script>"
        "</body></html>"
    )


def compress(data: bytes, encoding: str) -> bytes:
    if encoding == "gzip":
        return gzip.compress(data)
    if encoding == "deflate":
        return zlib.compress(data)
    return zstandard.ZstdCompressor().compress(data)


def live_player_response(hls_url: str) -> dict:
    return {
        "playabilityStatus": {"status": "OK"},
        "streamingData": {"hlsManifestUrl": hls_url},
    }


class FakeUpstream:
    """Records every request it receives and answers from the dictionaries below."""

    def __init__(self):
        self.requests: List[dict] = []
        self.player_responses: Dict[str, dict] = {}
        self.player_api_status = 200
        self.watch_pages: Dict[str, str] = {}
        self.watch_encoding = None
        self.live_pages: Dict[str, tuple] = {}
        self.playlists: Dict[str, str] = {}
        self.segments: Dict[str, bytes] = {}

    def _record(self, request, body=None):
        self.requests.append({
            "method": request.method,
            "path": request.path,
            "query": dict(request.query),
            "headers": dict(request.headers),
            "body": body,
        })

    def requests_to(self, path: str) -> List[dict]:
        return [r for r in self.requests if r["path"] == path]

    async def player(self, request):
        body = await request.json()
        self._record(request, body)
        if self.player_api_status != 200:
            return web.Response(status=self.player_api_status, text="server error")
        default = {"playabilityStatus": {"status": "ERROR", "reason": "Video unavailable"}}
        return web.json_response(self.player_responses.get(body.get("videoId"), default))

    async def watch(self, request):
        self._record(request)
        page = self.watch_pages.get(request.query.get("v", ""), "<html><body>nothing here</body></html>")
        if self.watch_encoding is None:
            return web.Response(text=page, content_type="text/html")
        return web.Response(
            body=compress(page.encode("utf-8"), self.watch_encoding),
            content_type="text/html",
            headers={"Content-Encoding": self.watch_encoding},
        )

    async def live(self, request):
        self._record(request)
        kind, value = self.live_pages.get(request.path, ("missing", None))
        if kind == "redirect":
            raise web.HTTPFound(value)
        if kind == "status":
            return web.Response(status=value, text="unavailable")
        if kind == "html":
            return web.Response(text=value, content_type="text/html")
        raise web.HTTPNotFound()

    async def playlist(self, request):
        self._record(request)
        name = request.match_info["name"]
        if name not in self.playlists:
            raise web.HTTPNotFound()
        return web.Response(
            text=self.playlists[name],
            headers={"Content-Type": "application/vnd.apple.mpegurl"},
        )

    async def segment(self, request):
        self._record(request)
        name = request.match_info["name"]
        if name not in self.segments:
            raise web.HTTPNotFound(headers={"Access-Control-Allow-Origin": "https://upstream.example"})
        data = self.segments[name]
        headers = {
            "Content-Type": "video/MP2T",
            "Accept-Ranges": "bytes",
            "Access-Control-Allow-Origin": "https://upstream.example",
        }
        range_header = request.headers.get("Range")
        if range_header and range_header.startswith("bytes="):
            start, _, end = range_header[len("bytes="):].partition("-")
            start = int(start)
            end = int(end) if end else len(data) - 1
            headers["Content-Range"] = f"bytes {start}-{end}/{len(data)}"
            return web.Response(status=206, body=data[start:end + 1], headers=headers)
        return web.Response(body=data, headers=headers)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/youtubei/v1/player", self.player)
        app.router.add_get("/watch", self.watch)
        app.router.add_get("/hls/{name}", self.playlist)
        app.router.add_get("/media/{name}", self.segment)
        app.router.add_get("/{channel:.+}/live", self.live)
        return app


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def upstream_server(aiohttp_server, upstream):
    return await aiohttp_server(upstream.app())


@pytest.fixture
def settings(upstream_server) -> Settings:
    return Settings(upstream_base_url=str(upstream_server.make_url("")))


@pytest.fixture
async def client(aiohttp_client, settings):
    return await aiohttp_client(create_app(settings))


@pytest.fixture
async def make_extractor(settings):
    """Builds extractors against the fake upstream, closing their sessions afterwards."""
    created = []

    def factory(**overrides) -> YouTubeExtractor:
        extractor = YouTubeExtractor(dataclasses.replace(settings, **overrides))
        created.append(extractor)
        return extractor

    yield factory
    for extractor in created:
        await extractor.close()
