import asyncio
import logging
import urllib.parse
from dataclasses import dataclass
from urllib.parse import urlparse

import aiohttp
from aiohttp import web
from aiohttp import ClientTimeout
from dotenv import load_dotenv

from config import Settings, load_settings
from errors import BadRequest, StreamNotFound, UpstreamError
from http_client import create_session
from playlist_rewriter import MASTER_PARAMETER, VARIANT_PARAMETER, PlaylistRewriter
from youtube_extractor import YouTubeExtractor, is_video_id

load_dotenv() # Loads variables from the .env file

logging.basicConfig(
    level=logging.INFO,
    format='%(levelname)s:%(name)s:%(message)s'
)

logger = logging.getLogger(__name__)

HLS_CONTENT_TYPE = 'application/vnd.apple.mpegurl'
NO_CACHE = 'no-cache, no-store, must-revalidate'
CHUNK_SIZE = 8192

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
}

HOP_BY_HOP_HEADERS = {
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailer', 'transfer-encoding', 'upgrade',
}

USAGE = (
    "Live HLS proxy\n"
    "Usage:\n"
    "  /<video_id>          11-character video id\n"
    "  /@<handle>           channel handle (current live broadcast)\n"
    "  /<channel_id>        channel id (UC...)\n"
    "Playlists returned here link back to this server with ?variant= and ?url= parameters.\n"
    "  ?variant=<URL>, ?url=<URL>  must be absolute http(s) URLs, percent-encoded\n"
)

LEGACY_USAGE = "Usage: /api?v=VIDEO_ID&type=m3u8 (or type=mp4)"


@dataclass(frozen=True)
class MasterRequest:
    identifier: str


@dataclass(frozen=True)
class VariantRequest:
    target_url: str


@dataclass(frozen=True)
class SegmentRequest:
    target_url: str


def _require_target(query, name: str) -> str:
    value = query.get(name, '').strip()
    if not value:
        raise BadRequest(f"Missing value for '{name}' parameter")
    parsed = urlparse(value)
    if parsed.scheme.lower() not in ('http', 'https') or not parsed.netloc:
        raise BadRequest(f"'{name}' must be an absolute http(s) URL")
    return value


def classify_request(query, path: str):
    """Classifies a request by its query parameters: 'url' first, then 'variant', else master."""
    if 'url' in query:
        return SegmentRequest(_require_target(query, 'url'))
    if 'variant' in query:
        return VariantRequest(_require_target(query, 'variant'))
    segments = [segment for segment in path.split('/') if segment]
    identifier = segments[0] if segments else ''
    if identifier.lower().endswith('.m3u8'):
        identifier = identifier[:-len('.m3u8')]
    return MasterRequest(identifier)


class LiveProxy:
    """Serves upstream live broadcasts as HLS, rewriting every playlist to route through this server"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.extractor = YouTubeExtractor(settings)
        self.rewriter = PlaylistRewriter(settings)
        self.session = None

    async def _get_session(self):
        if self.session is None or self.session.closed:
            timeout = ClientTimeout(
                total=None,
                connect=self.settings.segment_connect_timeout,
                sock_read=self.settings.segment_read_timeout,
            )
            self.session = create_session(self.settings.proxies, timeout, purpose="segment")
        return self.session

    @staticmethod
    def _proxy_base(request, path: str = None) -> str:
        # Honour the scheme and host seen by the client when behind a reverse proxy.
        scheme = request.headers.get('X-Forwarded-Proto', request.scheme)
        host = request.headers.get('X-Forwarded-Host', request.host)
        return f"{scheme}://{host}{path if path is not None else request.rel_url.raw_path}"

    def _error_response(self, error: Exception) -> web.Response:
        if isinstance(error, BadRequest):
            return web.Response(text=f"{error}\n\n{USAGE}", status=400, headers=CORS_HEADERS)
        if isinstance(error, StreamNotFound):
            logger.warning(f"Stream not found: {error.reason} ({error.diagnostic})")
            headers = dict(CORS_HEADERS)
            headers['X-Upstream-Diagnostic'] = error.diagnostic
            return web.Response(text=error.reason, status=404, headers=headers)
        if isinstance(error, UpstreamError):
            logger.error(f"❌ Upstream error: {error}")
            return web.Response(text=f"Upstream error: {error}", status=502, headers=CORS_HEADERS)
        logger.exception(f"Error in proxy request: {error}")
        return web.Response(text=str(error), status=500, headers=CORS_HEADERS)

    async def handle_request(self, request):
        """Single entry point: classifies the request and serves a master, variant or segment."""
        try:
            proxy_request = classify_request(request.query, request.path)
            if isinstance(proxy_request, SegmentRequest):
                return await self._proxy_segment(request, proxy_request.target_url)
            if isinstance(proxy_request, VariantRequest):
                return await self._serve_variant(request, proxy_request.target_url)
            if not proxy_request.identifier:
                return web.Response(text=USAGE, headers=CORS_HEADERS)
            return await self._serve_master(request, proxy_request.identifier)
        except web.HTTPException:
            raise
        except Exception as e:
            return self._error_response(e)

    async def _serve_master(self, request, identifier: str, proxy_base: str = None):
        logger.info(f"Master playlist request for: {identifier}")
        result = await self.extractor.extract(identifier)
        rewritten = await self.rewriter.rewrite_playlist(
            result["destination_url"], proxy_base or self._proxy_base(request), MASTER_PARAMETER
        )
        headers = dict(CORS_HEADERS)
        headers['Content-Type'] = HLS_CONTENT_TYPE
        headers['Cache-Control'] = NO_CACHE
        return web.Response(body=rewritten.encode('utf-8'), headers=headers)

    async def _serve_variant(self, request, target_url: str):
        logger.info(f"Variant playlist request for: {target_url}")
        rewritten = await self.rewriter.rewrite_playlist(
            target_url, self._proxy_base(request), VARIANT_PARAMETER
        )
        headers = dict(CORS_HEADERS)
        headers['Content-Type'] = HLS_CONTENT_TYPE
        return web.Response(body=rewritten.encode('utf-8'), headers=headers)

    @staticmethod
    def _forwarded_headers(resp):
        headers = resp.headers.copy()
        for name in list(headers.keys()):
            lower = name.lower()
            if lower in HOP_BY_HOP_HEADERS or lower.startswith('access-control-'):
                headers.popall(name, None)
        headers.update(CORS_HEADERS)
        headers['Access-Control-Expose-Headers'] = 'Content-Length, Content-Range, Accept-Ranges'
        return headers

    async def _proxy_segment(self, request, target_url: str):
        """Streams an upstream resource back as it arrives, forwarding any Range header."""
        headers = {'User-Agent': self.settings.identity.desktop_user_agent}
        if 'Range' in request.headers:
            headers['Range'] = request.headers['Range']

        session = await self._get_session()
        method = 'HEAD' if request.method == 'HEAD' else 'GET'
        response = None
        try:
            # Raw bytes are forwarded, so Content-Encoding and Content-Length stay truthful.
            async with session.request(method, target_url, headers=headers, auto_decompress=False) as resp:
                logger.debug(f"Segment {target_url} -> HTTP {resp.status}")
                response = web.StreamResponse(
                    status=resp.status,
                    reason=resp.reason,
                    headers=self._forwarded_headers(resp)
                )
                await response.prepare(request)

                if method == 'GET':
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        await response.write(chunk)

                await response.write_eof()
                return response
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionResetError) as e:
            if response is not None and response.prepared:
                # Headers are already on the wire; nothing left to report to the client.
                logger.warning(f"⚠️ Segment stream interrupted for {target_url}: {e!r}")
                return response
            raise UpstreamError(f"Segment fetch failed for {target_url}: {e!r}") from e

    async def handle_legacy_api(self, request):
        """Direct delivery: /api?v=ID&type=m3u8 serves the master playlist, otherwise redirects to an MP4."""
        if 'url' in request.query or 'variant' in request.query:
            return await self.handle_request(request)

        video_id = request.query.get('v', '').strip()
        if not video_id:
            return web.Response(text=LEGACY_USAGE, status=400, headers=CORS_HEADERS)

        try:
            if request.query.get('type', '').lower() == 'm3u8':
                master_path = '/' + urllib.parse.quote(video_id, safe='@')
                return await self._serve_master(request, video_id, self._proxy_base(request, master_path))
            if not is_video_id(video_id):
                video_id = await self.extractor.resolve_channel(video_id)
            mp4_url = await self.extractor.find_mp4_url(video_id)
        except Exception as e:
            return self._error_response(e)

        logger.info(f"Redirecting {video_id} to MP4 stream")
        raise web.HTTPTemporaryRedirect(mp4_url, headers=CORS_HEADERS)

    async def handle_options(self, request):
        """Handles OPTIONS requests for CORS"""
        headers = dict(CORS_HEADERS)
        headers['Access-Control-Allow-Headers'] = 'Range, Content-Type'
        headers['Access-Control-Max-Age'] = '86400'
        return web.Response(headers=headers)

    async def handle_api_info(self, request):
        """API endpoint that returns server information in JSON format."""
        info = {
            "proxy": "Live HLS Proxy",
            "version": "1.0.0",
            "upstream": self.settings.upstream_base_url,
            "extraction_methods": list(self.settings.extraction_methods),
            "proxy_config": {
                "global": f"{len(self.settings.proxies)} proxies loaded",
            },
            "endpoints": {
                "/{identifier}": "Master playlist for a video id, @handle or channel id",
                "/?variant=<URL>": "Variant playlist, rewritten for segment proxying",
                "/?url=<URL>": "Segment proxy with Range support",
                "/api": "Direct delivery - ?v=<id>&type=m3u8|mp4",
                "/api/info": "JSON endpoint with server information",
            },
        }
        return web.json_response(info, headers=CORS_HEADERS)

    async def cleanup(self):
        """Resource cleanup"""
        await self.extractor.close()
        await self.rewriter.close()
        if self.session and not self.session.closed:
            await self.session.close()


# --- Startup Logic ---
def create_app(settings: Settings = None):
    """Creates and configures the aiohttp application."""
    settings = settings or load_settings()
    if settings.proxies:
        logger.info(f"🌍 Loaded {len(settings.proxies)} global proxies.")
    proxy = LiveProxy(settings)

    app = web.Application()

    app.router.add_get('/api/info', proxy.handle_api_info)
    app.router.add_get('/api', proxy.handle_legacy_api)
    app.router.add_get('/{tail:.*}', proxy.handle_request)

    # Generic OPTIONS handler for CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    async def cleanup_handler(app):
        await proxy.cleanup()
    app.on_cleanup.append(cleanup_handler)

    return app


def main():
    """Main function to start the server."""
    settings = load_settings()
    print("🚀 Starting Live HLS Proxy...")
    print(f"📡 Server available at: http://localhost:{settings.port}")
    print("🔗 Endpoints:")
    print("   • /<video_id | @handle | channel_id> - Master playlist")
    print("   • /?variant=<URL> - Variant playlist")
    print("   • /?url=<URL> - Segment proxy")
    print("   • /api?v=<id>&type=m3u8|mp4 - Direct delivery")
    print("=" * 50)

    web.run_app(
        create_app(settings),
        host=settings.host,
        port=settings.port
    )


if __name__ == '__main__':
    main()
