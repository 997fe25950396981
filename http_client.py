import logging
import random

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector
from aiohttp_proxy import ProxyConnector

logger = logging.getLogger(__name__)


def create_session(proxies, timeout: ClientTimeout, purpose: str = "upstream") -> ClientSession:
    """Creates a ClientSession, routed through a random proxy from the list when one is configured."""
    proxy = random.choice(proxies) if proxies else None
    if proxy:
        logger.info(f"🔗 Using proxy {proxy} for the {purpose} session.")
        connector = ProxyConnector.from_url(proxy)
    else:
        connector = TCPConnector(
            limit=100, limit_per_host=20,
            keepalive_timeout=60, enable_cleanup_closed=True,
            use_dns_cache=True
        )
    # Upstream cookies must not carry over from one caller's request to the next.
    return ClientSession(
        timeout=timeout, connector=connector,
        cookie_jar=aiohttp.DummyCookieJar()
    )
