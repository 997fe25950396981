import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

# Pre-accepted consent so EU egress does not land on the consent interstitial.
CONSENT_COOKIE = "CONSENT=YES+cb.20210328-17-p0.en+FX+634; SOCS=CAI"

IOS_CLIENT_VERSION = "19.45.4"
IOS_DEVICE_MODEL = "iPhone16,2"
IOS_OS_VERSION = "18.1.0.22B83"

EXTRACTION_METHODS = ("innertube", "watch_page")


def parse_proxies(proxies_str: str) -> list:
    """Parses a comma-separated proxy string."""
    proxies_str = (proxies_str or "").strip()
    if proxies_str:
        return [p.strip() for p in proxies_str.split(',') if p.strip()]
    return []


@dataclass(frozen=True)
class ClientIdentity:
    """Spoofed client identities sent upstream."""

    desktop_user_agent: str = DESKTOP_USER_AGENT
    consent_cookie: str = CONSENT_COOKIE
    mobile_client_name: str = "IOS"
    mobile_client_id: str = "5"
    mobile_client_version: str = IOS_CLIENT_VERSION
    mobile_device_model: str = IOS_DEVICE_MODEL
    mobile_os_version: str = IOS_OS_VERSION

    @property
    def mobile_user_agent(self) -> str:
        os_tag = "_".join(self.mobile_os_version.split(".")[:3])
        return (
            f"com.google.ios.youtube/{self.mobile_client_version} "
            f"({self.mobile_device_model}; U; CPU iOS {os_tag} like Mac OS X;)"
        )

    def desktop_headers(self, with_consent: bool = False) -> dict:
        headers = {
            "User-Agent": self.desktop_user_agent,
            "Accept-Language": "en-US,en;q=0.9",
        }
        if with_consent:
            headers["Cookie"] = self.consent_cookie
        return headers

    def mobile_headers(self) -> dict:
        return {
            "User-Agent": self.mobile_user_agent,
            "X-YouTube-Client-Name": self.mobile_client_id,
            "X-YouTube-Client-Version": self.mobile_client_version,
        }

    def mobile_context(self) -> dict:
        return {
            "client": {
                "clientName": self.mobile_client_name,
                "clientVersion": self.mobile_client_version,
                "deviceMake": "Apple",
                "deviceModel": self.mobile_device_model,
                "osName": "iPhone",
                "osVersion": self.mobile_os_version,
                "hl": "en",
                "gl": "US",
            }
        }


@dataclass(frozen=True)
class Settings:
    upstream_base_url: str = "https://www.youtube.com"
    identity: ClientIdentity = field(default_factory=ClientIdentity)
    extraction_methods: Tuple[str, ...] = EXTRACTION_METHODS
    proxies: Tuple[str, ...] = ()
    manifest_timeout: float = 8.0
    segment_connect_timeout: float = 10.0
    segment_read_timeout: float = 30.0
    host: str = "0.0.0.0"
    port: int = 7860

    def __post_init__(self):
        unknown = [m for m in self.extraction_methods if m not in EXTRACTION_METHODS]
        if unknown:
            raise ValueError(f"Unknown extraction method(s): {', '.join(unknown)}")
        if not self.extraction_methods:
            raise ValueError("At least one extraction method is required")

    @property
    def upstream_root(self) -> str:
        return self.upstream_base_url.rstrip('/')


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    value = environ.get(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Builds Settings from the environment (after .env has been loaded)."""
    env = os.environ if environ is None else environ

    methods = tuple(
        m.strip().lower() for m in env.get("EXTRACTION_METHODS", "").split(',') if m.strip()
    ) or EXTRACTION_METHODS

    identity = ClientIdentity()
    client_version = env.get("YT_CLIENT_VERSION", "").strip()
    if client_version:
        identity = ClientIdentity(mobile_client_version=client_version)

    port = env.get("PORT", "").strip()
    try:
        port = int(port) if port else 7860
    except ValueError:
        raise ValueError(f"PORT must be an integer, got {port!r}") from None

    return Settings(
        upstream_base_url=env.get("UPSTREAM_BASE_URL", "").strip() or "https://www.youtube.com",
        identity=identity,
        extraction_methods=methods,
        proxies=tuple(parse_proxies(env.get("GLOBAL_PROXY", ""))),
        manifest_timeout=_float_env(env, "MANIFEST_TIMEOUT", 8.0),
        segment_connect_timeout=_float_env(env, "SEGMENT_CONNECT_TIMEOUT", 10.0),
        segment_read_timeout=_float_env(env, "SEGMENT_READ_TIMEOUT", 30.0),
        host=env.get("HOST", "").strip() or "0.0.0.0",
        port=port,
    )
