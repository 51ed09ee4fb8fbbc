"""URL normalisation and validation for user-supplied pricing targets.

Fetch targets are fully user-controlled, so every URL is checked before any
network call: only http(s), and the host must not be (or resolve to) a
loopback, private, link-local or otherwise internal address.
"""
import ipaddress
import logging
import socket
from urllib.parse import urljoin, urlparse, urlunparse

from pricing.errors import InvalidURL

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOSTNAMES = ("localhost", "0.0.0.0", "localhost.localdomain", "ip6-localhost")


def normalize_url(raw_url):
    """Trim, default to https:// and make sure the path is at least "/".

    Returns "" for empty or unparseable input.
    """
    raw_url = (raw_url or "").strip()
    if not raw_url:
        return ""

    if not raw_url.lower().startswith(("http://", "https://")) and "://" not in raw_url:
        raw_url = "https://" + raw_url

    try:
        parsed = urlparse(raw_url)
    except ValueError:
        return ""

    if not parsed.path:
        parsed = parsed._replace(path="/")
    return urlunparse(parsed)


def _is_forbidden_ip(ip):
    return (ip.is_private or ip.is_loopback or ip.is_link_local
            or ip.is_reserved or ip.is_multicast or ip.is_unspecified)


def _resolve_host(hostname):
    """Return every address the hostname resolves to."""
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def validate_url(url):
    """Raise InvalidURL if *url* is not a safe public http(s) target.

    Hostnames are resolved and every resolved address is checked, so a
    public name pointing at 127.0.0.1 or 169.254.169.254 is rejected too.
    """
    try:
        parsed = urlparse(url or "")
    except ValueError:
        raise InvalidURL("invalid URL format")

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidURL("only http/https URLs allowed")

    try:
        hostname = parsed.hostname
    except ValueError:
        raise InvalidURL("invalid URL format")
    if not hostname:
        raise InvalidURL("missing host")

    hostname = hostname.lower().rstrip(".")
    if hostname in BLOCKED_HOSTNAMES:
        raise InvalidURL("localhost not allowed")

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        ip = None

    if ip is not None:
        if _is_forbidden_ip(ip):
            raise InvalidURL("private/internal IPs not allowed")
        return

    try:
        addresses = _resolve_host(hostname)
    except (socket.gaierror, UnicodeError) as e:
        logger.info("Host %s did not resolve: %s", hostname, e)
        raise InvalidURL(f"could not resolve host {hostname}")

    for address in addresses:
        # Strip IPv6 zone ids ("fe80::1%eth0")
        if _is_forbidden_ip(ipaddress.ip_address(address.split("%", 1)[0])):
            raise InvalidURL(f"host {hostname} resolves to a private/internal address")


def normalize_and_validate(raw_url, default=None):
    """Normalise then validate. Returns the normalised URL or raises InvalidURL."""
    url = normalize_url(raw_url)
    if not url:
        if not default:
            raise InvalidURL("empty URL")
        url = default
    validate_url(url)
    return url


def site_root(url):
    """Return scheme://host for *url*."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def resolve_reference(base_url, href):
    """Resolve a (possibly relative) link against *base_url*.

    Returns "" for links that do not lead to an http(s) page
    (mailto:, tel:, javascript:, bare fragments).
    """
    href = (href or "").strip()
    if not href or href.startswith("#"):
        return ""
    try:
        resolved = urljoin(base_url, href)
        parsed = urlparse(resolved)
    except ValueError:
        return ""
    if parsed.scheme not in ALLOWED_SCHEMES or not parsed.netloc:
        return ""
    return urlunparse(parsed._replace(fragment=""))
