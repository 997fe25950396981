"""Tests for environment-driven settings."""

import pytest

from config import ClientIdentity, Settings, load_settings, parse_proxies


def test_defaults_without_environment():
    settings = load_settings({})

    assert settings.upstream_base_url == "https://www.youtube.com"
    assert settings.extraction_methods == ("innertube", "watch_page")
    assert settings.proxies == ()
    assert settings.manifest_timeout == 8.0
    assert settings.port == 7860


def test_environment_overrides():
    settings = load_settings({
        "UPSTREAM_BASE_URL": "http://stand-in.local/",
        "EXTRACTION_METHODS": " watch_page , innertube ",
        "GLOBAL_PROXY": "socks5://10.0.0.1:1080, http://10.0.0.2:3128,",
        "MANIFEST_TIMEOUT": "3.5",
        "YT_CLIENT_VERSION": "20.01.1",
        "PORT": "8080",
    })

    assert settings.upstream_root == "http://stand-in.local"
    assert settings.extraction_methods == ("watch_page", "innertube")
    assert settings.proxies == ("socks5://10.0.0.1:1080", "http://10.0.0.2:3128")
    assert settings.manifest_timeout == 3.5
    assert settings.identity.mobile_client_version == "20.01.1"
    assert settings.port == 8080


@pytest.mark.parametrize("environ", [
    {"EXTRACTION_METHODS": "innertube,scraper"},
    {"MANIFEST_TIMEOUT": "soon"},
    {"PORT": "eighty"},
])
def test_invalid_values_fail_at_startup(environ):
    with pytest.raises(ValueError):
        load_settings(environ)


def test_settings_require_an_extraction_method():
    with pytest.raises(ValueError):
        Settings(extraction_methods=())


def test_parse_proxies_ignores_blanks():
    assert parse_proxies("") == []
    assert parse_proxies(" a , ,b ") == ["a", "b"]


def test_identity_headers():
    identity = ClientIdentity()

    assert identity.mobile_user_agent == (
        "com.google.ios.youtube/19.45.4 (iPhone16,2; U; CPU iOS 18_1_0 like Mac OS X;)"
    )
    assert identity.mobile_headers()["X-YouTube-Client-Name"] == "5"
    assert "Cookie" not in identity.desktop_headers()
    assert identity.desktop_headers(with_consent=True)["Cookie"] == identity.consent_cookie
