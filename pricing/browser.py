"""Headless-browser extraction for pricing pages behind a billing toggle.

DynamicExtractor walks a fixed sequence of states over a BrowserPage:

    LOAD -> EXPAND -> DETECT -> LOCATE -> SWITCH_MONTHLY -> SWITCH_YEARLY
         -> CAPTURE -> DONE

and returns one text/markup snapshot per billing mode it managed to reach.
Only LOAD is fatal; every later failure becomes a warning on the capture.

The page is reached through the small BrowserPage interface so the state
machine can be driven by a fake page in tests. PlaywrightPage adapts a
real Playwright page, and render_pricing_page() is the synchronous entry
point used by the pipeline (thread-local Chromium, one context per run).
"""
import asyncio
import json
import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import List, Optional, Protocol

from playwright.async_api import Error as PlaywrightError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from config import (
    BROWSER_DEADLINE, BROWSER_NAV_TIMEOUT_MS, DEBUG_ARTIFACTS, DEBUG_DIR,
    MAX_BROWSER_CONTEXTS, USER_AGENT,
)
from pricing.errors import BrowserRenderError, InvalidURL, PricingError
from pricing.models import (
    BILLING_MONTHLY, BILLING_UNKNOWN, BILLING_YEARLY,
    DebugArtifact, RenderCapture, Snapshot, SwitchResult, now_iso,
)
from pricing.toggle import (
    MONTHLY_CONTROL_KEYWORDS, YEARLY_CONTROL_KEYWORDS,
    detect_billing_mode, has_monthly_prices, has_yearly_prices,
    score_controls, select_toggle_controls, tab_label_matches, text_similarity,
)
from pricing.url_resolver import validate_url

logger = logging.getLogger(__name__)

SNAPSHOT_DEFAULT = "default"

LOAD_SETTLE_SECONDS = 3.0
SCROLL_BOTTOM_SETTLE_SECONDS = 1.0
SCROLL_TOP_SETTLE_SECONDS = 0.5
EXPAND_CLICK_SETTLE_SECONDS = 0.5
CLICK_SETTLE_SECONDS = 1.5
CLICK_TIMEOUT_MS = 5_000
CLICK_ATTEMPTS = 2

# Post-click word overlap below this means the page content changed
SIMILARITY_THRESHOLD = 0.95

MAX_EXPAND_CLICKS = 5
EXPAND_KEYWORDS = [
    "see all", "show more", "compare", "all features",
    "view features", "expand", "show all", "more features",
]

# ── Page scripts ─────────────────────────────────────────────
# Elements of interest are tagged with data attributes so Python can
# address them with a stable selector.

SCROLL_TO_BOTTOM_JS = "() => window.scrollTo(0, document.body.scrollHeight)"
SCROLL_TO_TOP_JS = "() => window.scrollTo(0, 0)"

TAG_EXPAND_CONTROLS_JS = """
(args) => {
  const found = [];
  const nodes = document.querySelectorAll('button, a, [role="button"], span, div');
  for (let i = 0; i < nodes.length && found.length < args.limit; i++) {
    const el = nodes[i];
    const text = (el.textContent || '').toLowerCase().trim();
    if (!text || text.length > 50) continue;
    const href = el.tagName === 'A' ? (el.getAttribute('href') || '') : '';
    if (href && !href.startsWith('#')) continue;
    if (args.keywords.some((kw) => text.includes(kw))) {
      el.setAttribute('data-expand-idx', String(i));
      found.push({selector: '[data-expand-idx="' + i + '"]', text: text});
    }
  }
  return found;
}
"""

COLLECT_TOGGLE_CONTROLS_JS = """
(args) => {
  const out = [];
  let next = 0;
  const label = (el) => (el.textContent || '').replace(/\\s+/g, ' ').trim();
  const mentions = (text) => args.keywords.some((kw) => text.toLowerCase().includes(kw));
  function clickable(el) {
    let cur = el;
    while (cur && cur !== document.body) {
      if (cur.tagName === 'BUTTON' || cur.getAttribute('role') === 'tab' || cur.tagName === 'A' ||
          cur.onclick || cur.hasAttribute('data-state') || cur.classList.contains('cursor-pointer')) {
        return cur;
      }
      cur = cur.parentElement;
    }
    return el;
  }
  function tag(el) {
    if (!el.hasAttribute('data-pricing-ctl')) el.setAttribute('data-pricing-ctl', String(next++));
    return '[data-pricing-ctl="' + el.getAttribute('data-pricing-ctl') + '"]';
  }
  document.querySelectorAll('[role="tab"]').forEach((el) => {
    out.push({selector: tag(clickable(el)), label: label(el), element: 'role-tab',
              ariaSelected: el.getAttribute('aria-selected')});
  });
  document.querySelectorAll('button, [role="button"]').forEach((el) => {
    const text = label(el);
    if (mentions(text)) {
      out.push({selector: tag(el), label: text, element: 'button',
                ariaSelected: el.getAttribute('aria-selected')});
    }
  });
  document.querySelectorAll('label, span').forEach((el) => {
    const text = label(el);
    if (text.length <= 50 && mentions(text)) {
      out.push({selector: tag(clickable(el)), label: text, element: 'label-span', ariaSelected: null});
    }
  });
  return out;
}
"""

SELECTED_TAB_LABELS_JS = """
() => Array.from(document.querySelectorAll('[role="tab"][aria-selected="true"]'))
  .map((el) => el.textContent || '')
"""


class State(Enum):
    LOAD = "load"
    EXPAND = "expand"
    DETECT = "detect"
    LOCATE = "locate"
    SWITCH_MONTHLY = "switch_monthly"
    SWITCH_YEARLY = "switch_yearly"
    CAPTURE = "capture"
    DONE = "done"


class ToggleNotVerified(PricingError):
    """A click on a billing control did not produce the target mode."""


class BrowserPage(Protocol):
    """The slice of a browser page the extractor needs."""

    async def goto(self, url: str, timeout_ms: int) -> str: ...

    async def wait_for_visible(self, selector: str, timeout_ms: int) -> None: ...

    async def wait(self, seconds: float) -> None: ...

    async def evaluate(self, script: str, arg=None): ...

    async def click(self, selector: str, timeout_ms: int) -> None: ...

    async def inner_text(self, selector: str) -> str: ...

    async def inner_html(self, selector: str) -> str: ...

    async def screenshot(self, path: str) -> None: ...


class PlaywrightPage:
    """BrowserPage over a playwright.async_api.Page.

    Playwright errors are re-raised as BrowserRenderError.
    """

    def __init__(self, page):
        self._page = page

    async def goto(self, url, timeout_ms=BROWSER_NAV_TIMEOUT_MS):
        try:
            await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightError as e:
            raise BrowserRenderError(f"navigation failed: {e}")
        return self._page.url

    async def wait_for_visible(self, selector, timeout_ms=BROWSER_NAV_TIMEOUT_MS):
        try:
            await self._page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
        except PlaywrightError as e:
            raise BrowserRenderError(f"{selector} never became visible: {e}")

    async def wait(self, seconds):
        await self._page.wait_for_timeout(seconds * 1000)

    async def evaluate(self, script, arg=None):
        try:
            return await self._page.evaluate(script, arg)
        except PlaywrightError as e:
            raise BrowserRenderError(f"script failed: {e}")

    async def click(self, selector, timeout_ms=CLICK_TIMEOUT_MS):
        try:
            await self._page.click(selector, timeout=timeout_ms)
        except PlaywrightError as e:
            raise BrowserRenderError(f"click on {selector} failed: {e}")

    async def inner_text(self, selector="body"):
        try:
            return await self._page.inner_text(selector)
        except PlaywrightError as e:
            raise BrowserRenderError(f"could not read text: {e}")

    async def inner_html(self, selector="html"):
        try:
            return await self._page.inner_html(selector)
        except PlaywrightError as e:
            raise BrowserRenderError(f"could not read markup: {e}")

    async def screenshot(self, path):
        try:
            await self._page.screenshot(path=str(path), full_page=True)
        except PlaywrightError as e:
            raise BrowserRenderError(f"screenshot failed: {e}")


class DynamicExtractor:
    """One browser run over a single pricing page.

    Not reusable: create a new instance per URL.
    """

    def __init__(self, page: BrowserPage, url: str, debug_dir=None):
        self.page = page
        self.url = url
        self.run_id = str(time.time_ns())
        self.artifact_dir: Optional[Path] = Path(debug_dir) / self.run_id if debug_dir else None

        self.states: List[str] = []
        self.warnings: List[str] = []
        self.saved_files: List[str] = []

        self.initial_text = ""
        self.initial_html = ""
        self.initial_mode = BILLING_UNKNOWN
        self.current_mode = BILLING_UNKNOWN

        self.monthly_control = None
        self.yearly_control = None
        self.snapshots = {}

        self._clicked = {BILLING_MONTHLY: False, BILLING_YEARLY: False}
        self._changed = {BILLING_MONTHLY: False, BILLING_YEARLY: False}

    async def run(self) -> RenderCapture:
        handlers = {
            State.LOAD: self._load,
            State.EXPAND: self._expand,
            State.DETECT: self._detect,
            State.LOCATE: self._locate,
            State.SWITCH_MONTHLY: self._switch_monthly,
            State.SWITCH_YEARLY: self._switch_yearly,
            State.CAPTURE: self._capture_fallback,
        }
        state = State.LOAD
        while state is not State.DONE:
            self.states.append(state.value)
            state = await handlers[state]()
        self.states.append(State.DONE.value)
        return await self._finish()

    # ── States ──────────────────────────────────────────────

    async def _load(self):
        logger.info("Loading %s in browser", self.url)
        final_url = await self.page.goto(self.url, BROWSER_NAV_TIMEOUT_MS)
        if final_url and final_url != self.url:
            try:
                validate_url(final_url)
            except InvalidURL as e:
                raise BrowserRenderError(f"redirected to a forbidden URL: {e.reason}")
        await self.page.wait_for_visible("body", BROWSER_NAV_TIMEOUT_MS)
        await self.page.wait(LOAD_SETTLE_SECONDS)
        if self.artifact_dir is not None:
            try:
                self.artifact_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning("Could not create debug dir %s: %s", self.artifact_dir, e)
                self.artifact_dir = None
        return State.EXPAND

    async def _expand(self):
        """Scroll to trigger lazy loading, then open collapsed feature lists."""
        try:
            await self.page.evaluate(SCROLL_TO_BOTTOM_JS)
            await self.page.wait(SCROLL_BOTTOM_SETTLE_SECONDS)
            await self.page.evaluate(SCROLL_TO_TOP_JS)
            await self.page.wait(SCROLL_TOP_SETTLE_SECONDS)
            buttons = await self.page.evaluate(
                TAG_EXPAND_CONTROLS_JS, {"keywords": EXPAND_KEYWORDS, "limit": MAX_EXPAND_CLICKS},
            )
        except BrowserRenderError as e:
            logger.warning("Expand step failed on %s: %s", self.url, e)
            return State.DETECT

        for button in (buttons or [])[:MAX_EXPAND_CLICKS]:
            logger.debug("Clicking expand control %r", button.get("text"))
            try:
                await self.page.click(button["selector"], CLICK_TIMEOUT_MS)
                await self.page.wait(EXPAND_CLICK_SETTLE_SECONDS)
            except BrowserRenderError as e:
                logger.debug("Expand click failed: %s", e)
        return State.DETECT

    async def _detect(self):
        self.initial_html = await self.page.inner_html("html")
        self.initial_text = await self.page.inner_text("body")
        self.initial_mode = self.current_mode = detect_billing_mode(self.initial_text)
        logger.info("Initial billing mode on %s: %s", self.url, self.initial_mode)
        return State.LOCATE

    async def _locate(self):
        try:
            candidates = await self.page.evaluate(
                COLLECT_TOGGLE_CONTROLS_JS,
                {"keywords": MONTHLY_CONTROL_KEYWORDS + YEARLY_CONTROL_KEYWORDS},
            )
        except BrowserRenderError as e:
            logger.warning("Could not enumerate toggle controls on %s: %s", self.url, e)
            candidates = []
        self.monthly_control, self.yearly_control = select_toggle_controls(score_controls(candidates))
        return State.SWITCH_MONTHLY

    async def _switch_monthly(self):
        await self._switch_and_capture(BILLING_MONTHLY, self.monthly_control)
        return State.SWITCH_YEARLY

    async def _switch_yearly(self):
        await self._switch_and_capture(BILLING_YEARLY, self.yearly_control)
        return State.CAPTURE

    async def _capture_fallback(self):
        if not self.snapshots:
            self.snapshots[SNAPSHOT_DEFAULT] = Snapshot(
                mode=SNAPSHOT_DEFAULT, text=self.initial_text, html=self.initial_html,
            )
            self.warnings.append("no_toggle_clicked")
        return State.DONE

    # ── Switching ───────────────────────────────────────────

    async def _switch_and_capture(self, target, control):
        result = await self.switch_billing_mode(target, control)
        if control is not None and result.reason != "already_in_mode":
            self._clicked[target] = True
        self._changed[target] = result.state_changed

        if result.success:
            await self._capture(target)
        elif result.reason == "no_selector":
            self.warnings.append(f"{target}_toggle_not_found")
        else:
            logger.info("%s toggle failed on %s: %s", target, self.url, result.reason)
            self.warnings.append(f"{target}_toggle_failed")

    async def switch_billing_mode(self, target, control) -> SwitchResult:
        """Switch the page to *target* and verify it took effect.

        Never clicks when the page is already in the target mode.
        """
        if self.current_mode == target:
            logger.info("Already in %s mode, skipping switch", target)
            return SwitchResult(success=True, state_changed=False, reason="already_in_mode")

        if control is None:
            return SwitchResult(success=False, state_changed=False, reason="no_selector")

        text_before = await self.page.inner_text("body")
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(CLICK_ATTEMPTS),
                retry=retry_if_exception_type(ToggleNotVerified),
                reraise=True,
            ):
                with attempt:
                    await self._click_and_verify(
                        target, control, text_before, attempt.retry_state.attempt_number,
                    )
        except ToggleNotVerified:
            return SwitchResult(success=False, state_changed=False, reason="toggle_failed_after_retries")

        self.current_mode = target
        return SwitchResult(success=True, state_changed=True)

    async def _click_and_verify(self, target, control, text_before, attempt_number):
        logger.info(
            "Switching to %s mode, attempt %d, control %r (%s)",
            target, attempt_number, control.label, control.selector,
        )
        try:
            await self.page.click(control.selector, CLICK_TIMEOUT_MS)
            await self.page.wait(CLICK_SETTLE_SECONDS)
        except BrowserRenderError as e:
            raise ToggleNotVerified(f"click failed: {e}")

        if not await self._verify_switch(target, text_before):
            raise ToggleNotVerified(f"{target} mode not observed after click")

    async def _verify_switch(self, target, text_before):
        """Any one of: content changed, matching tab selected, mode re-detected."""
        text_after = await self.page.inner_text("body")

        if text_after != text_before:
            similarity = text_similarity(text_before, text_after)
            if similarity < SIMILARITY_THRESHOLD:
                logger.debug("Text changed significantly (similarity %.2f)", similarity)
                return True

        try:
            selected = await self.page.evaluate(SELECTED_TAB_LABELS_JS)
        except BrowserRenderError:
            selected = []
        if any(tab_label_matches(label, target) for label in selected or []):
            return True

        return detect_billing_mode(text_after) == target

    # ── Capture & artifacts ─────────────────────────────────

    async def _capture(self, mode):
        html = await self.page.inner_html("html")
        text = await self.page.inner_text("body")
        self.snapshots[mode] = Snapshot(mode=mode, text=text, html=html)

        if self.artifact_dir is not None:
            self._save_artifact(f"visible_text_{mode}.txt", text)
            self._save_artifact(f"html_{mode}.html", html)
            path = self.artifact_dir / f"screenshot_{mode}.png"
            try:
                await self.page.screenshot(str(path))
                self.saved_files.append(str(path))
            except BrowserRenderError as e:
                logger.debug("Screenshot failed: %s", e)

    def _save_artifact(self, filename, content):
        path = self.artifact_dir / filename
        try:
            path.write_text(content, encoding="utf-8")
            self.saved_files.append(str(path))
        except OSError as e:
            logger.warning("Could not write debug artifact %s: %s", path, e)

    async def _finish(self) -> RenderCapture:
        try:
            final_text = await self.page.inner_text("body")
        except BrowserRenderError:
            final_text = ""

        ordered = [
            self.snapshots[mode]
            for mode in (BILLING_MONTHLY, BILLING_YEARLY, SNAPSHOT_DEFAULT)
            if mode in self.snapshots
        ]

        html_parts = [self.initial_html]
        for mode in (BILLING_YEARLY, BILLING_MONTHLY):
            if mode in self.snapshots:
                html_parts.append(self.snapshots[mode].html)

        artifact = None
        if self.artifact_dir is not None:
            monthly = self.snapshots.get(BILLING_MONTHLY)
            yearly = self.snapshots.get(BILLING_YEARLY)
            summary_path = self.artifact_dir / "artifacts.json"
            artifact = DebugArtifact(
                run_id=self.run_id,
                timestamp=now_iso(),
                url=self.url,
                states_attempted=tuple(self.states),
                monthly_tab_label=self.monthly_control.label if self.monthly_control else "",
                yearly_tab_label=self.yearly_control.label if self.yearly_control else "",
                monthly_click_attempted=self._clicked[BILLING_MONTHLY],
                yearly_click_attempted=self._clicked[BILLING_YEARLY],
                monthly_state_changed=self._changed[BILLING_MONTHLY],
                yearly_state_changed=self._changed[BILLING_YEARLY],
                found_monthly_prices=bool(monthly and has_monthly_prices(monthly.text)),
                found_yearly_prices=bool(yearly and has_yearly_prices(yearly.text)),
                selected_state_before=self.initial_mode,
                selected_state_after=detect_billing_mode(final_text),
                artifacts_path=str(self.artifact_dir),
                saved_files=tuple(self.saved_files) + (str(summary_path),),
            )
            self._save_artifact("artifacts.json", json.dumps(artifact.to_dict(), indent=2))
            logger.info("Debug artifacts saved to %s", self.artifact_dir)

        return RenderCapture(
            url=self.url,
            snapshots=tuple(ordered),
            initial_mode=self.initial_mode,
            warnings=tuple(self.warnings),
            combined_html="".join(html_parts),
            artifact=artifact,
        )


# ── Browser pool: one Chromium per worker thread ────────────

_local = threading.local()
_context_slots = threading.BoundedSemaphore(MAX_BROWSER_CONTEXTS)


def _get_or_create_loop():
    """Event loop owned by the current thread (the browser is bound to it)."""
    loop = getattr(_local, "loop", None)
    if loop is None or loop.is_closed():
        loop = asyncio.new_event_loop()
        _local.loop = loop
    return loop


async def _get_browser():
    """Get or create a reusable browser for the current thread."""
    entry = getattr(_local, "browser", None)
    if entry:
        _pw, browser = entry
        if browser.is_connected():
            return browser
        _local.browser = None

    from playwright.async_api import async_playwright
    pw = await async_playwright().start()
    browser = await pw.chromium.launch(
        headless=True,
        args=["--disable-gpu", "--disable-dev-shm-usage", "--mute-audio", "--hide-scrollbars"],
    )
    _local.browser = (pw, browser)
    return browser


async def _close_browser():
    entry = getattr(_local, "browser", None)
    _local.browser = None
    if entry:
        pw, browser = entry
        try:
            await browser.close()
        except PlaywrightError as e:
            logger.debug("Browser close failed: %s", e)
        await pw.stop()


def close_browser_sync():
    """Close the thread-local browser and its loop. Call on worker shutdown."""
    loop = getattr(_local, "loop", None)
    if loop is None or loop.is_closed():
        return
    loop.run_until_complete(_close_browser())
    loop.close()


async def _render_async(url, debug_dir):
    try:
        browser = await _get_browser()
    except PlaywrightError as e:
        raise BrowserRenderError(f"browser launch failed: {e}")

    try:
        context = await browser.new_context(user_agent=USER_AGENT)
    except PlaywrightError as e:
        raise BrowserRenderError(f"could not open browser context: {e}")
    try:
        page = await context.new_page()
        return await DynamicExtractor(PlaywrightPage(page), url, debug_dir=debug_dir).run()
    except PlaywrightError as e:
        raise BrowserRenderError(f"browser error: {e}")
    finally:
        await context.close()


def render_pricing_page(url, deadline=BROWSER_DEADLINE) -> RenderCapture:
    """Render *url* in headless Chromium and capture per-billing-mode snapshots.

    Blocks for at most *deadline* seconds once a browser slot is free;
    the browser context is torn down on expiry.

    Raises:
        BrowserRenderError: launch or navigation failed, or the deadline passed.
    """
    debug_dir = DEBUG_DIR if DEBUG_ARTIFACTS else None
    with _context_slots:
        loop = _get_or_create_loop()
        try:
            return loop.run_until_complete(
                asyncio.wait_for(_render_async(url, debug_dir), timeout=deadline)
            )
        except asyncio.TimeoutError:
            raise BrowserRenderError(f"browser render exceeded {deadline}s deadline")
