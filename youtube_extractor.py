import asyncio
import gzip
import inspect
import json
import logging
import re
import zlib
from functools import partial
from typing import Any, Dict, NamedTuple, Optional
from urllib.parse import parse_qs, quote, urlparse

import aiohttp
import zstandard
from aiohttp import ClientTimeout

from config import Settings
from errors import StreamNotFound, UpstreamError
from http_client import create_session

logger = logging.getLogger(__name__)

VIDEO_ID_RE = re.compile(r'^[A-Za-z0-9_-]{11}$')
CHANNEL_ID_RE = re.compile(r'^UC[A-Za-z0-9_-]{22}$')
PLAYER_RESPONSE_RE = re.compile(r'ytInitialPlayerResponse\s*=\s*')
HLS_FIELD_RE = re.compile(r'"hlsManifestUrl"\s*:\s*"([^"]+)"')

# Tried in order against a channel live page body.
VIDEO_ID_PAGE_PATTERNS = [
    re.compile(r'<link rel="canonical" href="[^"]*/watch\?v=([A-Za-z0-9_-]{11})"'),
    re.compile(r'"videoId"\s*:\s*"([A-Za-z0-9_-]{11})"'),
]


def is_video_id(identifier: str) -> bool:
    """An 11-character identifier without a leading '@' is a video id, anything else a channel."""
    return len(identifier) == 11 and not identifier.startswith('@')


def dig(document: Any, *path: str) -> Any:
    """Reads a nested field, returning None when any step is missing or not an object."""
    current = document
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def unescape_json_url(raw: str) -> str:
    return raw.replace('\\u0026', '&').replace('\\/', '/')


class Extraction(NamedTuple):
    value: Optional[str]
    diagnostic: str = StreamNotFound.OFFLINE


async def first_success(attempts) -> Extraction:
    """Runs (name, callable) attempts in order and returns the first Extraction with a value.

    An attempt raising UpstreamError is skipped; if no attempt got as far as a
    definitive answer, the last UpstreamError is re-raised.
    """
    upstream_error = None
    diagnostics = []
    for name, attempt in attempts:
        try:
            result = attempt()
            if inspect.isawaitable(result):
                result = await result
        except UpstreamError as e:
            logger.warning(f"⚠️ Attempt '{name}' failed upstream: {e}")
            upstream_error = e
            continue
        if result.value:
            logger.info(f"✅ Attempt '{name}' succeeded")
            return result
        logger.info(f"Attempt '{name}' found nothing ({result.diagnostic})")
        diagnostics.append(result.diagnostic)

    if not diagnostics and upstream_error is not None:
        raise upstream_error
    informative = [d for d in diagnostics if d != StreamNotFound.FORMAT_UNRECOGNISED]
    if informative:
        return Extraction(None, informative[0])
    return Extraction(None, StreamNotFound.FORMAT_UNRECOGNISED)


class YouTubeExtractor:
    """Resolves channel references to live video ids and video ids to HLS manifests"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.identity = settings.identity
        self.session = None
        self._strategies = {
            "innertube": self._manifest_from_innertube,
            "watch_page": self._manifest_from_watch_page,
        }

    async def _get_session(self):
        if self.session is None or self.session.closed:
            timeout = ClientTimeout(total=self.settings.manifest_timeout)
            self.session = create_session(self.settings.proxies, timeout, purpose="lookup")
        return self.session

    async def _handle_response_content(self, response: aiohttp.ClientResponse) -> str:
        """Handles manual decompression of the response body (zstd, gzip, deflate)."""
        content_encoding = (response.headers.get('Content-Encoding') or '').lower()
        raw_body = await response.read()
        charset = response.charset or 'utf-8'

        try:
            if content_encoding == 'zstd':
                dctx = zstandard.ZstdDecompressor()
                # stream_reader copes with frames that omit the content size.
                with dctx.stream_reader(raw_body) as reader:
                    return reader.read().decode(charset, errors='replace')
            if content_encoding == 'gzip':
                return gzip.decompress(raw_body).decode(charset, errors='replace')
            if content_encoding == 'deflate':
                return zlib.decompress(raw_body).decode(charset, errors='replace')
            return raw_body.decode(charset, errors='replace')
        except (zstandard.ZstdError, OSError, zlib.error, LookupError) as e:
            raise UpstreamError(f"Could not decode body from {response.url}: {e}") from e

    async def _fetch_page(self, url: str, headers: dict):
        """GETs an upstream HTML page and returns (final_url, text) after redirects."""
        request_headers = dict(headers)
        request_headers['Accept-Encoding'] = 'gzip, deflate, zstd'
        session = await self._get_session()
        logger.info(f"Fetching upstream page: {url}")
        try:
            async with session.get(url, headers=request_headers, auto_decompress=False) as response:
                if not 200 <= response.status < 300:
                    raise UpstreamError(f"Upstream returned HTTP {response.status} for {url}", response.status)
                text = await self._handle_response_content(response)
                return str(response.url), text
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Upstream request failed for {url}: {e!r}") from e

    # --- Identifier resolution ---

    def channel_live_url(self, ref: str) -> str:
        root = self.settings.upstream_root
        if ref.startswith('@'):
            return f"{root}/{quote(ref, safe='@')}/live"
        if CHANNEL_ID_RE.match(ref):
            return f"{root}/channel/{ref}/live"
        return f"{root}/@{quote(ref)}/live"

    @staticmethod
    def _video_id_from_watch_url(final_url: str) -> Extraction:
        parsed = urlparse(final_url)
        if parsed.path.rstrip('/') != '/watch':
            return Extraction(None)
        candidates = parse_qs(parsed.query).get('v', [])
        if candidates and VIDEO_ID_RE.match(candidates[0]):
            return Extraction(candidates[0])
        return Extraction(None)

    @staticmethod
    def _video_id_from_page(page: str) -> Extraction:
        for pattern in VIDEO_ID_PAGE_PATTERNS:
            match = pattern.search(page)
            if match:
                return Extraction(match.group(1))
        return Extraction(None)

    async def resolve_channel(self, ref: str) -> str:
        """Turns a channel handle or id into the id of its current live video."""
        url = self.channel_live_url(ref)
        try:
            final_url, page = await self._fetch_page(url, self.identity.desktop_headers(with_consent=True))
        except UpstreamError as e:
            # An unknown or unreachable channel has no live video to offer: always 404.
            diagnostic = StreamNotFound.OFFLINE if e.status == 404 else StreamNotFound.UNREACHABLE
            logger.warning(f"⚠️ Channel page for {ref} unavailable: {e}")
            raise StreamNotFound(f"Channel {ref} not found", diagnostic) from e
        result = await first_success([
            ("redirect", partial(self._video_id_from_watch_url, final_url)),
            ("page_scan", partial(self._video_id_from_page, page)),
        ])
        if not result.value:
            raise StreamNotFound(f"Channel {ref} has no live broadcast", result.diagnostic)
        logger.info(f"📺 Channel {ref} is live with video {result.value}")
        return result.value

    # --- Manifest location ---

    @staticmethod
    def _parse_player_response(page: str) -> Optional[Dict[str, Any]]:
        match = PLAYER_RESPONSE_RE.search(page)
        if not match:
            return None
        try:
            data, _ = json.JSONDecoder().raw_decode(page, match.end())
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    async def _manifest_from_watch_page(self, video_id: str) -> Extraction:
        url = f"{self.settings.upstream_root}/watch?v={video_id}"
        _, page = await self._fetch_page(url, self.identity.desktop_headers(with_consent=True))

        player_response = self._parse_player_response(page)
        hls_url = dig(player_response, "streamingData", "hlsManifestUrl")
        if isinstance(hls_url, str) and hls_url:
            return Extraction(hls_url)

        match = HLS_FIELD_RE.search(page)
        if match:
            return Extraction(unescape_json_url(match.group(1)))

        if player_response is None:
            logger.warning(f"⚠️ No player response found in watch page for {video_id}; page format may have changed.")
            return Extraction(None, StreamNotFound.FORMAT_UNRECOGNISED)
        status = dig(player_response, "playabilityStatus", "status")
        if status and status != "OK":
            return Extraction(None, StreamNotFound.UNPLAYABLE)
        return Extraction(None, StreamNotFound.OFFLINE)

    async def _manifest_from_innertube(self, video_id: str) -> Extraction:
        url = f"{self.settings.upstream_root}/youtubei/v1/player?prettyPrint=false"
        payload = {
            "videoId": video_id,
            "context": self.identity.mobile_context(),
            "contentCheckOk": True,
            "racyCheckOk": True,
        }
        session = await self._get_session()
        logger.info(f"Querying player API for {video_id}")
        try:
            async with session.post(url, json=payload, headers=self.identity.mobile_headers()) as response:
                if not 200 <= response.status < 300:
                    raise UpstreamError(f"Player API returned HTTP {response.status}", response.status)
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Player API request failed: {e!r}") from e

        try:
            data = json.loads(body)
        except ValueError:
            logger.warning(f"⚠️ Player API returned non-JSON for {video_id}; API format may have changed.")
            return Extraction(None, StreamNotFound.FORMAT_UNRECOGNISED)
        if not isinstance(data, dict):
            return Extraction(None, StreamNotFound.FORMAT_UNRECOGNISED)

        status = dig(data, "playabilityStatus", "status")
        if status is not None and status != "OK":
            reason = dig(data, "playabilityStatus", "reason") or status
            logger.info(f"Video {video_id} not playable: {reason}")
            return Extraction(None, StreamNotFound.UNPLAYABLE)

        hls_url = dig(data, "streamingData", "hlsManifestUrl")
        if isinstance(hls_url, str) and hls_url:
            return Extraction(hls_url)
        if "playabilityStatus" not in data and "streamingData" not in data:
            logger.warning(f"⚠️ Player API response for {video_id} has none of the expected fields.")
            return Extraction(None, StreamNotFound.FORMAT_UNRECOGNISED)
        return Extraction(None, StreamNotFound.OFFLINE)

    async def locate_manifest(self, video_id: str) -> str:
        """Returns the master HLS manifest URL for a live video."""
        attempts = [
            (name, partial(self._strategies[name], video_id))
            for name in self.settings.extraction_methods
        ]
        result = await first_success(attempts)
        if not result.value:
            raise StreamNotFound(
                f"Live stream not found or ended for {video_id}", result.diagnostic
            )
        return result.value

    async def extract(self, identifier: str) -> Dict[str, Any]:
        """Main flow: channel reference (if any) to video id to master manifest URL."""
        video_id = identifier if is_video_id(identifier) else await self.resolve_channel(identifier)
        manifest_url = await self.locate_manifest(video_id)
        logger.info(f"Resolved manifest for {video_id}: {manifest_url}")
        return {
            "video_id": video_id,
            "destination_url": manifest_url,
            "request_headers": self.identity.desktop_headers(),
        }

    # --- Direct MP4 delivery ---

    async def find_mp4_url(self, video_id: str) -> str:
        """Returns a progressive MP4 format URL from the watch page player response."""
        url = f"{self.settings.upstream_root}/watch?v={video_id}"
        _, page = await self._fetch_page(url, self.identity.desktop_headers(with_consent=True))
        player_response = self._parse_player_response(page)
        if player_response is None:
            raise StreamNotFound(f"Video data not found for {video_id}", StreamNotFound.FORMAT_UNRECOGNISED)

        formats = dig(player_response, "streamingData", "formats")
        for fmt in formats if isinstance(formats, list) else []:
            if not isinstance(fmt, dict):
                continue
            if "video/mp4" in (fmt.get("mimeType") or "") and fmt.get("url"):
                return fmt["url"]
        raise StreamNotFound(f"No standard MP4 found for {video_id}")

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
