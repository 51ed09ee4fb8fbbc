"""Shared test fixtures for pytest suite.

Provides fixtures for:
- tmp_db: Fresh database instance per test
- public_dns (autouse): hostnames resolve to a public address, no network
- fake_llm: scripted completion client recording every call
- fake_page: in-memory BrowserPage whose text changes when controls are clicked
- http_response: factory for mocked streaming requests responses
"""
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from pricing import browser
from pricing.errors import BrowserRenderError, LLMError
from storage.db import Database

PUBLIC_IP = "93.184.216.34"


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_db(tmp_path):
    """Create a fresh Database backed by a temp file."""
    return Database(db_path=tmp_path / "test.db")


# ---------------------------------------------------------------------------
# Network fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def public_dns(monkeypatch):
    """Resolve every hostname to a public IP. Tests override per host."""
    resolved = {}

    def _resolve(hostname):
        return resolved.get(hostname, [PUBLIC_IP])

    monkeypatch.setattr("pricing.url_resolver._resolve_host", _resolve)
    return resolved


def _make_response(body=b"", status_code=200, url="https://example.com/pricing",
                   headers=None, encoding="utf-8"):
    if isinstance(body, str):
        body = body.encode("utf-8")
    resp = MagicMock()
    resp.status_code = status_code
    resp.url = url
    resp.headers = headers or {}
    resp.encoding = encoding
    resp.iter_content.side_effect = lambda chunk_size=1024: iter(
        [body[i:i + chunk_size] for i in range(0, len(body), chunk_size)]
    )
    return resp


@pytest.fixture
def http_response():
    return _make_response


# ---------------------------------------------------------------------------
# LLM fixtures
# ---------------------------------------------------------------------------

class FakeLLM:
    """Returns queued replies in order; a queued exception is raised instead."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def complete(self, system, user):
        self.calls.append({"system": system, "user": user})
        if not self.replies:
            raise LLMError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, (dict, list)):
            return json.dumps(reply)
        return reply


@pytest.fixture
def fake_llm():
    return FakeLLM


def plan_json(name, price=None, period="monthly", snippet=None, features=None, **extra):
    """A plan entry as the model would return it."""
    data = {
        "name": name,
        "price_amount": price,
        "price_string": f"${price}/mo" if price is not None else "",
        "currency": "USD" if price is not None else "",
        "billing_period": period,
        "features": features if features is not None else ["Unlimited projects"],
        "evidence": {
            "name_snippet": name,
            "price_snippet": snippet if snippet is not None else (f"{name} ${price}/mo" if price is not None else ""),
            "billing_evidence": f"billed {period}",
        },
    }
    data.update(extra)
    return data


@pytest.fixture
def make_plan_json():
    return plan_json


# ---------------------------------------------------------------------------
# Browser fixtures
# ---------------------------------------------------------------------------

class FakePage:
    """In-memory BrowserPage.

    ``states`` maps a state name to the page text shown in that state.
    ``clicks`` maps a selector to the state it switches to (None = click
    has no visible effect); clicking an unknown selector fails.
    """

    def __init__(self, states, initial, controls=(), clicks=None, selected_tabs=None,
                 expand=(), goto_error=None, final_url=None):
        self.states = dict(states)
        self.state = initial
        self.controls = list(controls)
        self.clicks = dict(clicks or {})
        self.selected_tabs = dict(selected_tabs or {})
        self.expand = list(expand)
        self.goto_error = goto_error
        self.final_url = final_url
        self.clicked = []
        self.waits = []
        self.screenshots = []

    async def goto(self, url, timeout_ms=None):
        if self.goto_error:
            raise BrowserRenderError(self.goto_error)
        return self.final_url or url

    async def wait_for_visible(self, selector, timeout_ms=None):
        return None

    async def wait(self, seconds):
        self.waits.append(seconds)

    async def evaluate(self, script, arg=None):
        if script == browser.COLLECT_TOGGLE_CONTROLS_JS:
            return list(self.controls)
        if script == browser.SELECTED_TAB_LABELS_JS:
            return list(self.selected_tabs.get(self.state, []))
        if script == browser.TAG_EXPAND_CONTROLS_JS:
            return list(self.expand)
        return None

    async def click(self, selector, timeout_ms=None):
        self.clicked.append(selector)
        if selector not in self.clicks:
            raise BrowserRenderError(f"no element matches {selector}")
        target = self.clicks[selector]
        if target is not None:
            self.state = target

    async def inner_text(self, selector="body"):
        return self.states[self.state]

    async def inner_html(self, selector="html"):
        return f"<body><main>{self.states[self.state]}</main></body>"

    async def screenshot(self, path):
        Path(path).write_bytes(b"\x89PNG")
        self.screenshots.append(path)


@pytest.fixture
def fake_page():
    return FakePage


def control(selector, label, element="button", aria_selected=None):
    """A raw control candidate as collected from the page."""
    return {"selector": selector, "label": label, "element": element, "ariaSelected": aria_selected}


@pytest.fixture
def make_control():
    return control
