"""Static page fetching and content segmentation for pricing pages.

A fetched page is split into three channels for the extractor:
  - visible text: what a browser renders by default
  - hidden text: markup that exists but is hidden (aria-hidden, display:none,
    inactive tab panels). Alternate billing states are often pre-rendered
    here, which saves a browser pass.
  - script data: hydration islands (__NEXT_DATA__, window.__NUXT__) and
    ld+json blocks, which often carry exact structured pricing.

Also holds the HTTP helpers used by pricing-page discovery.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List

import requests
from bs4 import BeautifulSoup, CData, Comment, Declaration, Doctype, NavigableString, ProcessingInstruction, Tag

from config import HTTP_TIMEOUT, MAX_REDIRECTS, MAX_RESPONSE_SIZE, USER_AGENT
from pricing.errors import FetchError, InvalidURL
from pricing.url_resolver import resolve_reference, site_root, validate_url

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

# Common pricing page paths, most likely first
COMMON_PRICING_PATHS = [
    "/pricing",
    "/plans",
    "/billing",
    "/upgrade",
    "/subscribe",
    "/pro",
    "/premium",
]

# Keywords to look for in homepage links
PRICING_LINK_KEYWORDS = [
    "pricing", "price", "plan", "plans", "billing",
    "upgrade", "subscribe", "signup", "membership",
    "pro", "premium", "enterprise",
]

MAX_DISCOVERY_CANDIDATES = 5

_REDIRECT_CODES = (301, 302, 303, 307, 308)
_CHUNK_SIZE = 64 * 1024

_SKIP_TAGS = {"script", "style", "noscript", "head", "meta", "link", "template", "svg"}
_HIDDEN_STYLE_RE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)
_HIDDEN_DATA_STATES = ("inactive", "hidden")
_NON_TEXT_STRINGS = (Comment, CData, Declaration, Doctype, ProcessingInstruction)

# Script payload caps (characters)
NEXT_DATA_MAX = 50_000
LD_JSON_MAX = 10_000
NUXT_DATA_MAX = 50_000
SCRIPT_BLOB_KEEP = 5_000

_NUXT_RE = re.compile(r"window\.__NUXT__\s*=\s*(\{[\s\S]*\})\s*;?\s*$")
_PRICING_JSON_MARKERS = (
    '"price"', '"pricing"', '"plans"', '"subscription"',
    '"monthly"', '"yearly"', '"annual"', '"billing"',
)


@dataclass
class PageSegments:
    visible_text: str = ""
    hidden_text: str = ""
    script_data: str = ""
    links: List[str] = field(default_factory=list)


@dataclass
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    html: str
    visible_text: str
    hidden_text: str
    script_data: str
    truncated: bool = False


# ── HTTP ─────────────────────────────────────────────────────

def _read_capped(response, limit):
    """Read at most *limit* bytes of the body. Returns (bytes, truncated)."""
    chunks = []
    size = 0
    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
        if not chunk:
            continue
        chunk = chunk[:limit - size]
        chunks.append(chunk)
        size += len(chunk)
        if size >= limit:
            return b"".join(chunks), True
    return b"".join(chunks), False


def _decode(body, encoding):
    try:
        return body.decode(encoding or "utf-8", errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def fetch_html(url, timeout=HTTP_TIMEOUT, max_bytes=MAX_RESPONSE_SIZE):
    """GET *url* with a browser user agent, validating every redirect hop.

    Returns (final_url, html, truncated).

    Raises:
        FetchError: timeout, transport error, too many redirects, non-200.
        InvalidURL: a redirect points at a forbidden host.
    """
    current = url
    for _hop in range(MAX_REDIRECTS + 1):
        try:
            response = requests.get(
                current, headers=HEADERS, timeout=timeout,
                stream=True, allow_redirects=False,
            )
        except requests.Timeout:
            raise FetchError(f"timeout after {timeout}s")
        except requests.RequestException as e:
            raise FetchError(f"request failed: {e}")

        try:
            if response.status_code in _REDIRECT_CODES and "Location" in response.headers:
                target = resolve_reference(current, response.headers["Location"])
                if not target:
                    raise FetchError("redirect to a non-http location")
                validate_url(target)
                logger.debug("Following redirect %s -> %s", current, target)
                current = target
                continue

            if response.status_code != 200:
                raise FetchError(f"HTTP {response.status_code}")

            body, truncated = _read_capped(response, max_bytes)
            if truncated:
                logger.warning("Response from %s capped at %d bytes", current, max_bytes)
            return current, _decode(body, response.encoding), truncated
        except requests.RequestException as e:
            raise FetchError(f"failed reading body: {e}")
        finally:
            response.close()

    raise FetchError("too many redirects")


def url_exists(url, timeout=HTTP_TIMEOUT):
    """Probe *url* with GET (many sites reject HEAD). True for 2xx/3xx.

    Redirects are not followed: a 3xx already means the path exists.
    """
    try:
        response = requests.get(
            url, headers=HEADERS, timeout=timeout, stream=True, allow_redirects=False,
        )
    except requests.RequestException as e:
        logger.debug("url_exists request failed for %s: %s", url, e)
        return False

    try:
        status = response.status_code
        # Read a little so the connection does not hang
        for _chunk in response.iter_content(chunk_size=1024):
            break
    except requests.RequestException:
        return False
    finally:
        response.close()

    exists = 200 <= status < 400
    logger.debug("url_exists %s -> %d (exists=%s)", url, status, exists)
    return exists


def fetch_page(url, timeout=HTTP_TIMEOUT):
    """Fetch *url* and segment it into visible/hidden/script channels."""
    final_url, html, truncated = fetch_html(url, timeout=timeout)
    segments = segment_html(html)
    logger.info(
        "Fetched %s: %d visible chars, %d hidden chars, %d script chars",
        final_url, len(segments.visible_text), len(segments.hidden_text), len(segments.script_data),
    )
    return FetchedPage(
        url=url,
        final_url=final_url,
        status_code=200,
        html=html,
        visible_text=segments.visible_text,
        hidden_text=segments.hidden_text,
        script_data=segments.script_data,
        truncated=truncated,
    )


# ── Segmentation ─────────────────────────────────────────────

def _parse(html):
    return BeautifulSoup(html or "", "html.parser")


def _selected_panel_ids(soup):
    """Ids of tab panels whose controlling tab is selected.

    Returns None when no tab declares aria-controls, i.e. the markup does
    not say which panel is active.
    """
    selected = set()
    known = False
    for tab in soup.find_all(attrs={"role": "tab"}):
        controls = tab.get("aria-controls")
        if not controls:
            continue
        known = True
        if str(tab.get("aria-selected", "")).lower() == "true":
            selected.update(controls.split())
    return selected if known else None


def _is_hidden(tag, selected_panels):
    attrs = tag.attrs
    if str(attrs.get("aria-hidden", "")).lower() == "true":
        return True
    if "hidden" in attrs:
        return True
    if _HIDDEN_STYLE_RE.search(attrs.get("style") or ""):
        return True
    if attrs.get("data-state") in _HIDDEN_DATA_STATES:
        return True
    if attrs.get("role") == "tabpanel" and selected_panels is not None:
        return tag.get("id") not in selected_panels
    return False


def _collapse(parts):
    return re.sub(r"\s+", " ", " ".join(parts)).strip()


def _split_text(soup):
    """Walk the tree once, routing each text node to the visible or hidden channel."""
    selected_panels = _selected_panel_ids(soup)
    visible, hidden = [], []
    stack = [(soup, False)]
    while stack:
        node, in_hidden = stack.pop()
        if isinstance(node, Tag):
            if node.name in _SKIP_TAGS:
                continue
            if node is not soup and not in_hidden:
                in_hidden = _is_hidden(node, selected_panels)
            stack.extend((child, in_hidden) for child in reversed(list(node.children)))
        elif isinstance(node, NavigableString) and not isinstance(node, _NON_TEXT_STRINGS):
            text = node.strip()
            if text:
                (hidden if in_hidden else visible).append(text)
    return _collapse(visible), _collapse(hidden)


def _pricing_json(blob):
    """Keep a hydration blob only if it looks pricing-related, truncated."""
    lowered = blob.lower()
    if not any(marker in lowered for marker in _PRICING_JSON_MARKERS):
        return ""
    if len(blob) > SCRIPT_BLOB_KEEP:
        return blob[:SCRIPT_BLOB_KEEP] + "...[truncated]"
    return blob


def _script_data(soup):
    lines = []

    next_data = soup.find("script", id="__NEXT_DATA__")
    if next_data is not None:
        data = (next_data.string or "").strip()
        if data and len(data) < NEXT_DATA_MAX:
            blob = _pricing_json(data)
            if blob:
                lines.append("NEXT_DATA: " + blob)

    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        data = (script.string or "").strip()
        if data and len(data) < LD_JSON_MAX:
            lines.append("LD+JSON: " + data)

    for script in soup.find_all("script"):
        match = _NUXT_RE.search((script.string or "").strip())
        if match:
            data = match.group(1)
            if len(data) < NUXT_DATA_MAX:
                blob = _pricing_json(data)
                if blob:
                    lines.append("NUXT_DATA: " + blob)
            break

    return "\n".join(lines)


def segment_html(html):
    """Split raw markup into visible text, hidden text, script data and links."""
    soup = _parse(html)
    visible, hidden = _split_text(soup)
    return PageSegments(
        visible_text=visible,
        hidden_text=hidden,
        script_data=_script_data(soup),
        links=[a["href"] for a in soup.find_all("a", href=True)],
    )


def extract_visible_text(html):
    return _split_text(_parse(html))[0]


def extract_hidden_text(html):
    return _split_text(_parse(html))[1]


def extract_script_data(html):
    return _script_data(_parse(html))


def extract_links(html):
    """Every anchor href in document order."""
    return [a["href"] for a in _parse(html).find_all("a", href=True)]


# ── Discovery ────────────────────────────────────────────────

def discover_pricing_candidates(website_url):
    """Rank likely pricing-page URLs for a validated website URL.

    Common paths that respond score 100, 90, 80...; homepage links whose
    href mentions a pricing keyword score 50. Returns up to 5 URLs, best
    first.
    """
    root = site_root(website_url)
    candidates = []
    scores = {}

    logger.info("Probing common pricing paths on %s", root)
    for i, path in enumerate(COMMON_PRICING_PATHS):
        test_url = root + path
        if url_exists(test_url):
            candidates.append(test_url)
            scores[test_url] = 100 - i * 10
            logger.info("Found candidate %s (score=%d)", test_url, scores[test_url])

    try:
        _final_url, html, _truncated = fetch_html(website_url)
    except (FetchError, InvalidURL) as e:
        logger.warning("Failed to extract links from homepage %s: %s", website_url, e)
        html = ""

    for href in extract_links(html):
        href_lower = href.lower()
        if not any(keyword in href_lower for keyword in PRICING_LINK_KEYWORDS):
            continue
        full_url = resolve_reference(website_url, href)
        if full_url and full_url not in scores:
            candidates.append(full_url)
            scores[full_url] = 50
            logger.debug("Found candidate from link: %s", full_url)

    ranked = sorted(candidates, key=lambda u: -scores[u])
    return ranked[:MAX_DISCOVERY_CANDIDATES]
