"""Orchestrator: discover, fetch, extract and persist competitor pricing plans.

extract_pricing() runs the stages strictly in sequence:

    validate URL -> static fetch -> static LLM pass -> dedupe
        -> [toggle with < 2 periods] browser render -> snapshot LLM pass

Pages whose static text is nearly empty (SPA shells) skip the static LLM
pass and go straight to the browser. Browser failures never fail the
request; the static result is returned with warnings instead.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed

from loguru import logger

from config import (
    BROWSER_RENDER_ENABLED, DEFAULT_WEBSITE, DEFAULT_WORKERS, EXTRACTION_MODEL, MIN_STATIC_TEXT_LENGTH,
)
from pricing.browser import close_browser_sync, render_pricing_page
from pricing.dedupe import deduplicate_plans, detect_billing_periods
from pricing.errors import BrowserRenderError, ExtractionFailed, FetchError, InvalidURL, LLMError
from pricing.extractor import (
    PlanExtractor, build_paste_content, build_snapshot_content, build_static_content,
)
from pricing.models import DiscoveryResult, ExtractedPlan, PricingExtractResult
from pricing.scraper import discover_pricing_candidates, extract_script_data, fetch_page
from pricing.toggle import detect_billing_toggle
from pricing.url_resolver import normalize_and_validate, normalize_url

SPA_RENDER_FAILED = "page content too short or empty (SPA site - browser render failed)"
SPA_RENDER_DISABLED = "page content too short or empty (SPA site - browser render disabled)"
NO_PLANS_FOUND = "no pricing plans found on page"
PASTE_TEXT_REQUIRED = "at least one of monthly_text or yearly_text is required"


def _unique(warnings):
    """Drop repeated warnings, keeping first occurrences in order."""
    return tuple(dict.fromkeys(w for w in warnings if w))


class PricingPipeline:
    def __init__(self, db=None, llm_client=None, renderer=render_pricing_page,
                 render_enabled=BROWSER_RENDER_ENABLED, model=None):
        self._db = db
        self._llm_client = llm_client
        self.model = model or EXTRACTION_MODEL
        self.renderer = renderer
        self.render_enabled = render_enabled

    @property
    def db(self):
        if self._db is None:
            from storage.db import Database
            self._db = Database()
        return self._db

    def _extractor(self):
        if self._llm_client is None:
            from pricing.llm import AnthropicClient
            self._llm_client = AnthropicClient(model=self.model)
        return PlanExtractor(self._llm_client)

    # ── Discovery ───────────────────────────────────────────

    def discover_pricing_page(self, website_url=None) -> DiscoveryResult:
        """Rank likely pricing pages for a website (default website if empty)."""
        try:
            url = normalize_and_validate(website_url, default=DEFAULT_WEBSITE)
        except InvalidURL as e:
            return DiscoveryResult(error=f"invalid URL: {e.reason}")

        logger.info("Discovering pricing page for {}", url)
        candidates = discover_pricing_candidates(url)
        selected = candidates[0] if candidates else None
        logger.info("Found {} pricing candidates for {}, selected {}", len(candidates), url, selected)
        return DiscoveryResult(candidates=tuple(candidates), selected=selected)

    # ── Live extraction ─────────────────────────────────────

    def extract_pricing(self, pricing_url) -> PricingExtractResult:
        try:
            url = normalize_and_validate(pricing_url)
        except InvalidURL as e:
            return PricingExtractResult(error=f"invalid URL: {e.reason}")

        try:
            page = fetch_page(url)
        except InvalidURL as e:
            return PricingExtractResult(source_url=url, error=f"invalid URL: {e.reason}")
        except FetchError as e:
            logger.warning("Static fetch failed for {}: {}", url, e)
            return PricingExtractResult(source_url=url, error=f"failed to fetch page: {e}")

        if len(page.visible_text) < MIN_STATIC_TEXT_LENGTH:
            logger.info(
                "Static content too short ({} chars), using browser render for {}",
                len(page.visible_text), url,
            )
            return self._extract_spa(url)

        try:
            extractor = self._extractor()
        except LLMError as e:
            return PricingExtractResult(source_url=url, error=f"extraction failed: {e}")

        content = build_static_content(page.visible_text, page.hidden_text, page.script_data)
        has_toggle = detect_billing_toggle(page.visible_text, page.html)

        try:
            outcome = extractor.extract_page(content, url)
        except ExtractionFailed as e:
            return PricingExtractResult(
                source_url=url, warnings=_unique(e.warnings), error=f"extraction failed: {e}",
            )

        warnings = list(outcome.warnings)
        plans = deduplicate_plans(outcome.plans)
        periods = detect_billing_periods(plans)

        needs_render = has_toggle and len(periods) < 2
        if needs_render:
            warnings.append("toggle_detected_single_period")

        if needs_render and self.render_enabled:
            logger.info("Toggle detected, attempting browser render for {}", url)
            try:
                browser_plans, browser_periods, browser_warnings = self._extract_dynamic(url)
            except BrowserRenderError as e:
                logger.warning("Browser render failed for {}: {}", url, e)
                warnings.append("browser_render_failed")
            except ExtractionFailed as e:
                logger.warning("Snapshot extraction failed for {}: {}", url, e)
                warnings.extend(e.warnings)
                warnings.append("browser_extraction_failed")
            else:
                if len(browser_plans) > len(plans) or len(browser_periods) > len(periods):
                    return PricingExtractResult(
                        plans=tuple(browser_plans),
                        source_url=url,
                        detected_periods=tuple(browser_periods),
                        needs_render=False,
                        render_used=True,
                        warnings=_unique(warnings + browser_warnings),
                    )
                logger.info("Browser pass found nothing new for {}, keeping static result", url)

        return PricingExtractResult(
            plans=tuple(plans),
            source_url=url,
            detected_periods=tuple(periods),
            needs_render=needs_render,
            render_used=False,
            warnings=_unique(warnings),
        )

    def _extract_spa(self, url):
        if not self.render_enabled:
            return PricingExtractResult(
                source_url=url, warnings=("page_content_minimal",), error=SPA_RENDER_DISABLED,
            )
        try:
            plans, periods, warnings = self._extract_dynamic(url)
        except (BrowserRenderError, ExtractionFailed, LLMError) as e:
            logger.warning("Browser render failed for SPA {}: {}", url, e)
            return PricingExtractResult(
                source_url=url,
                warnings=("page_content_minimal", "browser_render_failed"),
                error=SPA_RENDER_FAILED,
            )

        if not plans:
            return PricingExtractResult(
                source_url=url, warnings=_unique(warnings + ["no_plans_extracted"]), error=NO_PLANS_FOUND,
            )
        return PricingExtractResult(
            plans=tuple(plans),
            source_url=url,
            detected_periods=tuple(periods),
            needs_render=False,
            render_used=True,
            warnings=_unique(warnings),
        )

    def _extract_dynamic(self, url):
        """Browser render plus snapshot LLM pass.

        Returns (plans, periods, warnings).

        Raises:
            BrowserRenderError: page never loaded or deadline passed.
            ExtractionFailed: the snapshot LLM pass failed.
        """
        capture = self.renderer(url)
        content = build_snapshot_content(capture.snapshots, extract_script_data(capture.combined_html))
        outcome = self._extractor().extract_page(content, url)
        plans = deduplicate_plans(outcome.plans)
        warnings = list(capture.warnings) + list(outcome.warnings)
        return plans, detect_billing_periods(plans), warnings

    # ── Paste mode ──────────────────────────────────────────

    def extract_from_text(self, monthly_text="", yearly_text="", website_url=None) -> PricingExtractResult:
        """Extract plans from text the user copied from each billing view."""
        monthly_text = (monthly_text or "").strip()
        yearly_text = (yearly_text or "").strip()
        if not monthly_text and not yearly_text:
            return PricingExtractResult(error=PASTE_TEXT_REQUIRED)

        warnings = []
        if not monthly_text:
            warnings.append("monthly_text_empty")
        if not yearly_text:
            warnings.append("yearly_text_empty")

        website_url = normalize_url(website_url) if website_url else ""
        content = build_paste_content(monthly_text, yearly_text)
        try:
            outcome = self._extractor().extract_pasted(content, website_url or None)
        except (ExtractionFailed, LLMError) as e:
            return PricingExtractResult(
                source_url=website_url,
                warnings=_unique(warnings + getattr(e, "warnings", [])),
                error=f"extraction failed: {e}",
            )

        plans = deduplicate_plans(outcome.plans)
        return PricingExtractResult(
            plans=tuple(plans),
            source_url=website_url,
            detected_periods=tuple(detect_billing_periods(plans)),
            warnings=_unique(warnings + outcome.warnings),
        )

    # ── Persistence ─────────────────────────────────────────

    def save_plans(self, owner_id, plans, source_url="", website_url=""):
        """Replace every saved plan of *owner_id* with *plans*. Returns the count saved."""
        if not owner_id:
            raise ValueError("owner_id is required")
        records = [p if isinstance(p, ExtractedPlan) else ExtractedPlan.from_dict(p) for p in plans]
        count = self.db.replace_pricing_plans(
            owner_id, records, website_url=website_url, source_url=source_url,
        )
        logger.info("Saved {} pricing plans for owner {}", count, owner_id)
        return count

    def get_saved_plans(self, owner_id):
        return self.db.get_pricing_plans(owner_id)

    def delete_plan(self, owner_id, plan_id):
        deleted = self.db.delete_pricing_plan(owner_id, plan_id)
        if not deleted:
            logger.info("Plan {} not found for owner {}", plan_id, owner_id)
        return deleted

    # ── Batch ───────────────────────────────────────────────

    def _extract_in_worker(self, url):
        try:
            return self.extract_pricing(url)
        except Exception as e:
            logger.exception("Unexpected error extracting {}", url)
            return PricingExtractResult(source_url=url, error=f"Error: {e}")
        finally:
            if self.renderer is render_pricing_page:
                close_browser_sync()

    def extract_many(self, urls, workers=DEFAULT_WORKERS):
        """Extract several pricing pages in parallel.

        Returns: dict url -> PricingExtractResult
        """
        results = {}
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._extract_in_worker, url): url for url in urls}
            for future in as_completed(futures):
                url = futures[future]
                results[url] = future.result()
                status = "ERROR" if results[url].error else f"{len(results[url].plans)} plans"
                logger.info("Extracted {}: {}", url, status)
        return results
