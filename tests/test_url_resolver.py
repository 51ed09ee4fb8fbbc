"""Tests for URL normalisation and SSRF validation.

Run: pytest tests/test_url_resolver.py -v
Markers: scraper
"""
import socket

import pytest

from pricing.errors import InvalidURL
from pricing.url_resolver import (
    normalize_and_validate,
    normalize_url,
    resolve_reference,
    site_root,
    validate_url,
)

pytestmark = [pytest.mark.scraper]


# ═══════════════════════════════════════════════════════════════
# normalize_url
# ═══════════════════════════════════════════════════════════════

class TestNormalizeUrl:

    def test_adds_https_scheme(self):
        assert normalize_url("acme.io/pricing") == "https://acme.io/pricing"

    def test_adds_root_path(self):
        assert normalize_url("https://acme.io") == "https://acme.io/"

    def test_trims_whitespace(self):
        assert normalize_url("  http://acme.io/plans  ") == "http://acme.io/plans"

    def test_keeps_query(self):
        assert normalize_url("https://acme.io/pricing?ref=nav") == "https://acme.io/pricing?ref=nav"

    def test_empty(self):
        assert normalize_url("") == ""
        assert normalize_url("   ") == ""
        assert normalize_url(None) == ""

    def test_other_scheme_left_for_validation(self):
        assert normalize_url("ftp://acme.io/file").startswith("ftp://")


# ═══════════════════════════════════════════════════════════════
# validate_url
# ═══════════════════════════════════════════════════════════════

class TestValidateUrl:
    """URL-SSRF: only public http(s) targets pass."""

    def test_public_host_passes(self):
        validate_url("https://acme.io/pricing")

    def test_public_ip_literal_passes(self):
        validate_url("http://93.184.216.34/")

    @pytest.mark.parametrize("url", ["ftp://acme.io/", "file:///etc/passwd", "javascript:alert(1)"])
    def test_rejects_other_schemes(self, url):
        with pytest.raises(InvalidURL, match="http/https"):
            validate_url(url)

    def test_rejects_missing_host(self):
        with pytest.raises(InvalidURL, match="missing host"):
            validate_url("https:///pricing")

    def test_rejects_localhost(self):
        with pytest.raises(InvalidURL, match="localhost"):
            validate_url("http://LOCALHOST:8080/admin")

    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/",
        "http://10.1.2.3/",
        "http://192.168.0.10/",
        "http://172.16.5.5/",
        "http://169.254.169.254/latest/meta-data/",
        "http://[::1]/",
    ])
    def test_rejects_internal_ip_literals(self, url):
        with pytest.raises(InvalidURL, match="private/internal"):
            validate_url(url)

    def test_rejects_host_resolving_to_private_address(self, public_dns):
        public_dns["intranet.acme.io"] = ["10.0.0.5"]
        with pytest.raises(InvalidURL, match="resolves to a private/internal address"):
            validate_url("https://intranet.acme.io/pricing")

    def test_rejects_when_any_address_is_internal(self, public_dns):
        public_dns["mixed.acme.io"] = ["93.184.216.34", "127.0.0.1"]
        with pytest.raises(InvalidURL):
            validate_url("https://mixed.acme.io/")

    def test_rejects_unresolvable_host(self, monkeypatch):
        def _fail(hostname):
            raise socket.gaierror("Name or service not known")

        monkeypatch.setattr("pricing.url_resolver._resolve_host", _fail)
        with pytest.raises(InvalidURL, match="could not resolve host"):
            validate_url("https://does-not-exist.invalid/")

    def test_reason_attribute(self):
        with pytest.raises(InvalidURL) as exc_info:
            validate_url("http://localhost/")
        assert exc_info.value.reason == "localhost not allowed"


class TestNormalizeAndValidate:

    def test_returns_normalized(self):
        assert normalize_and_validate("acme.io") == "https://acme.io/"

    def test_empty_without_default(self):
        with pytest.raises(InvalidURL, match="empty URL"):
            normalize_and_validate("  ")

    def test_empty_uses_default(self):
        assert normalize_and_validate("", default="https://acme.io/") == "https://acme.io/"

    def test_invalid_after_normalizing(self):
        with pytest.raises(InvalidURL):
            normalize_and_validate("127.0.0.1/admin")


# ═══════════════════════════════════════════════════════════════
# Link helpers
# ═══════════════════════════════════════════════════════════════

class TestLinkHelpers:

    def test_site_root(self):
        assert site_root("https://acme.io:8443/pricing?x=1") == "https://acme.io:8443"

    def test_resolve_relative(self):
        assert resolve_reference("https://acme.io/en/", "plans") == "https://acme.io/en/plans"
        assert resolve_reference("https://acme.io/en/", "/pricing") == "https://acme.io/pricing"

    def test_resolve_strips_fragment(self):
        assert resolve_reference("https://acme.io/", "/pricing#teams") == "https://acme.io/pricing"

    @pytest.mark.parametrize("href", ["", "#plans", "mailto:sales@acme.io", "javascript:void(0)", "tel:123"])
    def test_resolve_ignores_non_pages(self, href):
        assert resolve_reference("https://acme.io/", href) == ""

    def test_resolve_absolute(self):
        assert resolve_reference("https://acme.io/", "https://billing.acme.io/plans") == \
            "https://billing.acme.io/plans"
