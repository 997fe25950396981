import asyncio
import logging
import re
import urllib.parse

import aiohttp
from aiohttp import ClientTimeout

from config import Settings
from errors import UpstreamError
from http_client import create_session

logger = logging.getLogger(__name__)

MASTER_PARAMETER = "variant"
VARIANT_PARAMETER = "url"

# A whole line (terminator excluded) that is nothing but an absolute http(s) URL.
ABSOLUTE_URL_LINE = re.compile(r'^https?://\S+$', re.IGNORECASE)


def build_proxy_url(proxy_base: str, parameter_name: str, target_url: str) -> str:
    encoded_url = urllib.parse.quote(target_url, safe='')
    return f"{proxy_base}?{parameter_name}={encoded_url}"


def rewrite_playlist_text(manifest_content: str, proxy_base: str, parameter_name: str) -> str:
    """Rewrites every bare absolute-URL line to go through the proxy.

    Lines are split on '\\n' only and a trailing '\\r' is kept with its line, so the
    line count and every other line come out byte-for-byte unchanged.
    """
    rewritten_lines = []
    for line in manifest_content.split('\n'):
        body, ending = (line[:-1], '\r') if line.endswith('\r') else (line, '')
        if ABSOLUTE_URL_LINE.match(body):
            body = build_proxy_url(proxy_base, parameter_name, body)
        rewritten_lines.append(body + ending)
    return '\n'.join(rewritten_lines)


class PlaylistRewriter:
    """Fetches master and variant playlists and points their URLs back at the proxy"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.session = None

    async def _get_session(self):
        if self.session is None or self.session.closed:
            timeout = ClientTimeout(total=self.settings.manifest_timeout)
            self.session = create_session(self.settings.proxies, timeout, purpose="playlist")
        return self.session

    async def fetch_playlist(self, source_url: str) -> str:
        session = await self._get_session()
        headers = self.settings.identity.desktop_headers()
        try:
            async with session.get(source_url, headers=headers) as resp:
                if not 200 <= resp.status < 300:
                    raise UpstreamError(f"Playlist fetch failed with HTTP {resp.status}: {source_url}", resp.status)
                return await resp.text(errors='replace')
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Playlist fetch failed for {source_url}: {e!r}") from e

    async def rewrite_playlist(self, source_url: str, proxy_base: str, parameter_name: str) -> str:
        manifest_content = await self.fetch_playlist(source_url)
        rewritten = rewrite_playlist_text(manifest_content, proxy_base, parameter_name)
        logger.info(f"🔄 Rewrote playlist {source_url} with '{parameter_name}' links")
        return rewritten

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
