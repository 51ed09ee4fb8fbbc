"""Tests for the extraction orchestrator — static/browser decisions, paste mode, persistence.

fetch_page, the renderer and the LLM are all faked; no network, no browser.

Run: pytest tests/test_pipeline.py -v
Markers: pipeline, db
"""
from unittest.mock import MagicMock, patch

import pytest

from pricing import pipeline as pipeline_module
from pricing.errors import BrowserRenderError, FetchError, InvalidURL, LLMError
from pricing.extractor import MONTHLY_SNAPSHOT_HEADER, YEARLY_SNAPSHOT_HEADER
from pricing.models import RenderCapture, Snapshot
from pricing.pipeline import (
    NO_PLANS_FOUND,
    PASTE_TEXT_REQUIRED,
    SPA_RENDER_DISABLED,
    SPA_RENDER_FAILED,
    PricingPipeline,
)
from pricing.scraper import FetchedPage

pytestmark = [pytest.mark.pipeline]

URL = "https://acme.io/pricing"

PLAIN_TEXT = (
    "Acme pricing. Starter is free for individuals and small side projects. "
    "Business costs $49 per seat with priority support, audit logs and single sign-on."
)
TOGGLE_TEXT = (
    "Pricing. Pay monthly or pay annually and save 20%. "
    "Pro $12/mo billed monthly with unlimited projects and priority support for teams."
)
SPA_TEXT = "Loading... please enable JavaScript here."


def _page(text, html=None, hidden="", script=""):
    return FetchedPage(
        url=URL,
        final_url=URL,
        status_code=200,
        html=html if html is not None else f"<main>{text}</main>",
        visible_text=text,
        hidden_text=hidden,
        script_data=script,
    )


def _capture(*modes, warnings=()):
    texts = {"monthly": "Pro $12/mo billed monthly", "yearly": "Pro $120/yr billed annually",
             "default": "Pro plan"}
    return RenderCapture(
        url=URL,
        snapshots=tuple(Snapshot(mode=m, text=texts[m], html=f"<p>{texts[m]}</p>") for m in modes),
        warnings=tuple(warnings),
    )


def _renderer(capture=None, error=None):
    renderer = MagicMock()
    if error is not None:
        renderer.side_effect = error
    else:
        renderer.return_value = capture
    return renderer


@pytest.fixture
def fetched():
    """Patch the static fetch to return the given page (or raise)."""
    patcher = None

    def _set(page=None, side_effect=None):
        nonlocal patcher
        kwargs = {"side_effect": side_effect} if side_effect is not None else {"return_value": page}
        patcher = patch.object(pipeline_module, "fetch_page", **kwargs)
        return patcher.start()

    yield _set
    if patcher is not None:
        patcher.stop()


# ═══════════════════════════════════════════════════════════════
# Discovery
# ═══════════════════════════════════════════════════════════════

class TestDiscoverPricingPage:

    def test_selects_best_candidate(self):
        with patch.object(pipeline_module, "discover_pricing_candidates",
                          return_value=["https://acme.io/pricing", "https://acme.io/plans"]) as mock_discover:
            result = PricingPipeline(llm_client=object()).discover_pricing_page("acme.io")
        mock_discover.assert_called_once_with("https://acme.io/")
        assert result.selected == "https://acme.io/pricing"
        assert result.candidates == ("https://acme.io/pricing", "https://acme.io/plans")
        assert result.error is None

    def test_default_website(self):
        with patch.object(pipeline_module, "discover_pricing_candidates", return_value=[]) as mock_discover:
            result = PricingPipeline(llm_client=object()).discover_pricing_page("")
        mock_discover.assert_called_once_with(pipeline_module.DEFAULT_WEBSITE)
        assert result.selected is None

    def test_invalid_url(self):
        result = PricingPipeline(llm_client=object()).discover_pricing_page("http://localhost:3000")
        assert result.error == "invalid URL: localhost not allowed"

    def test_homepage_redirect_to_internal_host(self):
        with patch("pricing.scraper.url_exists", side_effect=lambda url: url.endswith("/pricing")), \
                patch("pricing.scraper.fetch_html", side_effect=InvalidURL("private/internal IPs not allowed")):
            result = PricingPipeline(llm_client=object()).discover_pricing_page("https://acme.io/")
        assert result.error is None
        assert result.selected == "https://acme.io/pricing"


# ═══════════════════════════════════════════════════════════════
# Live extraction
# ═══════════════════════════════════════════════════════════════

class TestExtractPricingErrors:

    def test_invalid_url(self, fake_llm):
        llm = fake_llm()
        result = PricingPipeline(llm_client=llm).extract_pricing("ftp://acme.io/pricing")
        assert result.error == "invalid URL: only http/https URLs allowed"
        assert llm.calls == []

    def test_fetch_error(self, fake_llm, fetched):
        fetched(side_effect=FetchError("HTTP 503"))
        result = PricingPipeline(llm_client=fake_llm()).extract_pricing(URL)
        assert result.error == "failed to fetch page: HTTP 503"
        assert result.source_url == URL

    def test_static_parse_error(self, fake_llm, fetched):
        fetched(_page(PLAIN_TEXT))
        result = PricingPipeline(llm_client=fake_llm("no pricing here")).extract_pricing(URL)
        assert result.error == "extraction failed: failed to parse extraction result"
        assert result.warnings == ("parse_error",)

    def test_missing_api_key(self, fetched, monkeypatch):
        fetched(_page(PLAIN_TEXT))

        def _no_key(*args, **kwargs):
            raise LLMError("no Anthropic API key configured (set ANTHROPIC_API_KEY)")

        monkeypatch.setattr("pricing.llm.AnthropicClient", _no_key)
        result = PricingPipeline().extract_pricing(URL)
        assert result.error.startswith("extraction failed: no Anthropic API key")


class TestExtractPricingStatic:
    """PIPE-STATIC: pages without a billing toggle never start a browser."""

    def test_static_only(self, fake_llm, make_plan_json, fetched):
        fetched(_page(PLAIN_TEXT))
        llm = fake_llm({"plans": [
            make_plan_json("Starter", None, period="unknown"),
            make_plan_json("Business", 49, period="monthly"),
        ]})
        renderer = _renderer()

        result = PricingPipeline(llm_client=llm, renderer=renderer).extract_pricing(URL)

        assert result.error is None
        assert [p.name for p in result.plans] == ["Business", "Starter"]
        assert result.detected_periods == ("monthly",)
        assert result.needs_render is False
        assert result.render_used is False
        assert result.source_url == URL
        renderer.assert_not_called()
        assert PLAIN_TEXT in llm.calls[0]["user"]

    def test_static_content_includes_hidden_and_script(self, fake_llm, fetched):
        fetched(_page(PLAIN_TEXT, hidden="Business $490 per year", script='LD+JSON: {"price": 49}'))
        llm = fake_llm({"plans": []})
        PricingPipeline(llm_client=llm, renderer=_renderer()).extract_pricing(URL)
        user = llm.calls[0]["user"]
        assert "HIDDEN CONTENT" in user and "Business $490 per year" in user
        assert 'LD+JSON: {"price": 49}' in user

    def test_duplicates_merged(self, fake_llm, make_plan_json, fetched):
        fetched(_page(PLAIN_TEXT))
        llm = fake_llm({"plans": [
            make_plan_json("Business", 49, features=["SSO"]),
            make_plan_json("Business Plan", 49, features=["SSO", "Audit logs"]),
        ]})
        result = PricingPipeline(llm_client=llm, renderer=_renderer()).extract_pricing(URL)
        assert len(result.plans) == 1
        assert result.plans[0].features == ("SSO", "Audit logs")


class TestExtractPricingToggle:
    """PIPE-TOGGLE: a toggle with fewer than two periods triggers the browser."""

    def test_browser_result_adopted(self, fake_llm, make_plan_json, fetched):
        fetched(_page(TOGGLE_TEXT))
        llm = fake_llm(
            {"plans": [make_plan_json("Pro", 12, period="monthly")]},
            {"plans": [make_plan_json("Pro", 12, period="monthly"), make_plan_json("Pro", 120, period="yearly")]},
        )
        renderer = _renderer(_capture("monthly", "yearly", warnings=["yearly_toggle_failed"]))

        result = PricingPipeline(llm_client=llm, renderer=renderer).extract_pricing(URL)

        renderer.assert_called_once_with(URL)
        assert result.render_used is True
        assert result.needs_render is False
        assert result.detected_periods == ("monthly", "yearly")
        assert [(p.name, p.billing_period) for p in result.plans] == [("Pro", "monthly"), ("Pro", "yearly")]
        assert result.warnings == ("toggle_detected_single_period", "yearly_toggle_failed")

        snapshot_prompt = llm.calls[1]["user"]
        assert MONTHLY_SNAPSHOT_HEADER in snapshot_prompt
        assert YEARLY_SNAPSHOT_HEADER in snapshot_prompt

    def test_browser_render_failed(self, fake_llm, make_plan_json, fetched):
        fetched(_page(TOGGLE_TEXT))
        llm = fake_llm({"plans": [make_plan_json("Pro", 12)]})
        renderer = _renderer(error=BrowserRenderError("browser render exceeded 90s deadline"))

        result = PricingPipeline(llm_client=llm, renderer=renderer).extract_pricing(URL)

        assert result.error is None
        assert result.render_used is False
        assert result.needs_render is True
        assert [p.name for p in result.plans] == ["Pro"]
        assert result.warnings == ("toggle_detected_single_period", "browser_render_failed")

    def test_browser_extraction_failed(self, fake_llm, make_plan_json, fetched):
        fetched(_page(TOGGLE_TEXT))
        llm = fake_llm({"plans": [make_plan_json("Pro", 12)]}, LLMError("API timeout"))
        renderer = _renderer(_capture("monthly", "yearly"))

        result = PricingPipeline(llm_client=llm, renderer=renderer).extract_pricing(URL)

        assert result.render_used is False
        assert result.warnings == ("toggle_detected_single_period", "llm_error", "browser_extraction_failed")

    def test_browser_found_nothing_new(self, fake_llm, make_plan_json, fetched):
        fetched(_page(TOGGLE_TEXT))
        reply = {"plans": [make_plan_json("Pro", 12)]}
        llm = fake_llm(reply, reply)
        renderer = _renderer(_capture("monthly"))

        result = PricingPipeline(llm_client=llm, renderer=renderer).extract_pricing(URL)

        assert len(llm.calls) == 2
        assert result.render_used is False
        assert result.needs_render is True
        assert result.warnings == ("toggle_detected_single_period",)

    def test_render_disabled_flags_needs_render(self, fake_llm, make_plan_json, fetched):
        fetched(_page(TOGGLE_TEXT))
        renderer = _renderer()
        result = PricingPipeline(
            llm_client=fake_llm({"plans": [make_plan_json("Pro", 12)]}),
            renderer=renderer, render_enabled=False,
        ).extract_pricing(URL)

        renderer.assert_not_called()
        assert result.needs_render is True
        assert result.warnings == ("toggle_detected_single_period",)

    def test_both_periods_static_skips_browser(self, fake_llm, make_plan_json, fetched):
        fetched(_page(TOGGLE_TEXT, hidden="Pro $120/yr billed annually"))
        llm = fake_llm({"plans": [make_plan_json("Pro", 12), make_plan_json("Pro", 120, period="yearly")]})
        renderer = _renderer()

        result = PricingPipeline(llm_client=llm, renderer=renderer).extract_pricing(URL)

        renderer.assert_not_called()
        assert result.needs_render is False
        assert result.detected_periods == ("monthly", "yearly")


class TestExtractPricingSpa:
    """PIPE-SPA: near-empty static text goes straight to the browser."""

    def test_spa_rendered_without_static_pass(self, fake_llm, make_plan_json, fetched):
        fetched(_page(SPA_TEXT))
        llm = fake_llm({"plans": [make_plan_json("Pro", 12), make_plan_json("Pro", 120, period="yearly")]})
        renderer = _renderer(_capture("monthly", "yearly"))

        result = PricingPipeline(llm_client=llm, renderer=renderer).extract_pricing(URL)

        assert len(llm.calls) == 1
        assert MONTHLY_SNAPSHOT_HEADER in llm.calls[0]["user"]
        assert result.render_used is True
        assert result.detected_periods == ("monthly", "yearly")
        assert result.error is None

    def test_spa_render_failed(self, fake_llm, fetched):
        fetched(_page(SPA_TEXT))
        llm = fake_llm()
        result = PricingPipeline(
            llm_client=llm, renderer=_renderer(error=BrowserRenderError("navigation failed")),
        ).extract_pricing(URL)

        assert result.error == SPA_RENDER_FAILED
        assert result.warnings == ("page_content_minimal", "browser_render_failed")
        assert llm.calls == []

    def test_spa_render_disabled(self, fake_llm, fetched):
        fetched(_page(SPA_TEXT))
        renderer = _renderer()
        result = PricingPipeline(llm_client=fake_llm(), renderer=renderer, render_enabled=False).extract_pricing(URL)

        renderer.assert_not_called()
        assert result.error == SPA_RENDER_DISABLED
        assert result.warnings == ("page_content_minimal",)

    def test_spa_no_plans(self, fake_llm, fetched):
        fetched(_page(SPA_TEXT))
        result = PricingPipeline(
            llm_client=fake_llm({"plans": []}), renderer=_renderer(_capture("default")),
        ).extract_pricing(URL)

        assert result.error == NO_PLANS_FOUND
        assert "no_plans_extracted" in result.warnings


# ═══════════════════════════════════════════════════════════════
# Paste mode
# ═══════════════════════════════════════════════════════════════

class TestExtractFromText:
    """PIPE-PASTE: user-pasted text for either billing view."""

    def test_requires_some_text(self, fake_llm):
        llm = fake_llm()
        result = PricingPipeline(llm_client=llm).extract_from_text("  ", "")
        assert result.error == PASTE_TEXT_REQUIRED
        assert llm.calls == []

    def test_monthly_only(self, fake_llm, make_plan_json):
        llm = fake_llm({"plans": [make_plan_json("Pro", 12, period="unknown")]})
        result = PricingPipeline(llm_client=llm).extract_from_text(monthly_text="Pro $12 billed monthly")

        assert result.error is None
        assert result.plans[0].billing_period == "monthly"
        assert result.detected_periods == ("monthly",)
        assert result.warnings == ("yearly_text_empty",)
        assert MONTHLY_SNAPSHOT_HEADER in llm.calls[0]["user"]
        assert YEARLY_SNAPSHOT_HEADER not in llm.calls[0]["user"]

    def test_both_views(self, fake_llm, make_plan_json):
        llm = fake_llm({"plans": [make_plan_json("Pro", 12), make_plan_json("Pro", 120, period="yearly")]})
        result = PricingPipeline(llm_client=llm).extract_from_text(
            monthly_text="Pro $12/mo", yearly_text="Pro $120/yr", website_url="acme.io",
        )
        assert result.source_url == "https://acme.io/"
        assert result.detected_periods == ("monthly", "yearly")
        assert result.warnings == ()
        assert "user-pasted text from https://acme.io/" in llm.calls[0]["user"]

    def test_llm_failure(self, fake_llm):
        result = PricingPipeline(llm_client=fake_llm(LLMError("rate limited"))).extract_from_text(
            yearly_text="Pro $120/yr",
        )
        assert result.error.startswith("extraction failed")
        assert result.warnings == ("monthly_text_empty", "llm_error")


# ═══════════════════════════════════════════════════════════════
# Persistence
# ═══════════════════════════════════════════════════════════════

@pytest.mark.db
class TestSavedPlans:

    def test_save_and_get(self, tmp_db, make_plan_json):
        pipeline = PricingPipeline(db=tmp_db, llm_client=object())
        count = pipeline.save_plans(
            "competitor-1",
            [make_plan_json("Pro", 12), {"plan_name": "Team", "price_amount": 30, "billing_period": "annual"}],
            source_url=URL, website_url="https://acme.io/",
        )
        assert count == 2

        saved = pipeline.get_saved_plans("competitor-1")
        assert sorted(p.plan.name for p in saved) == ["Pro", "Team"]
        assert {p.source_url for p in saved} == {URL}
        team = next(p for p in saved if p.plan.name == "Team")
        assert team.plan.billing_period == "yearly"

    def test_save_replaces(self, tmp_db, make_plan_json):
        pipeline = PricingPipeline(db=tmp_db, llm_client=object())
        pipeline.save_plans("competitor-1", [make_plan_json("Pro", 12), make_plan_json("Team", 30)])
        pipeline.save_plans("competitor-1", [make_plan_json("Enterprise", None)])
        assert [p.plan.name for p in pipeline.get_saved_plans("competitor-1")] == ["Enterprise"]

    def test_owner_required(self, tmp_db):
        with pytest.raises(ValueError):
            PricingPipeline(db=tmp_db, llm_client=object()).save_plans("", [])

    def test_delete(self, tmp_db, make_plan_json):
        pipeline = PricingPipeline(db=tmp_db, llm_client=object())
        pipeline.save_plans("competitor-1", [make_plan_json("Pro", 12)])
        plan_id = pipeline.get_saved_plans("competitor-1")[0].id

        assert pipeline.delete_plan("competitor-2", plan_id) is False
        assert pipeline.delete_plan("competitor-1", plan_id) is True
        assert pipeline.get_saved_plans("competitor-1") == []


# ═══════════════════════════════════════════════════════════════
# Batch
# ═══════════════════════════════════════════════════════════════

class TestExtractMany:

    def test_results_per_url(self, fake_llm, make_plan_json, fetched):
        good = "https://acme.io/pricing"
        bad = "https://broken.io/pricing"

        def _fetch(url):
            if url == bad:
                raise FetchError("HTTP 500")
            return _page(PLAIN_TEXT)

        fetched(side_effect=_fetch)
        llm = fake_llm({"plans": [make_plan_json("Business", 49)]})
        results = PricingPipeline(llm_client=llm, renderer=_renderer()).extract_many([good, bad], workers=2)

        assert set(results) == {good, bad}
        assert results[bad].error == "failed to fetch page: HTTP 500"
        assert [p.name for p in results[good].plans] == ["Business"]
