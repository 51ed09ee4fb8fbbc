"""LLM extraction of pricing plans from page content or pasted text.

Builds the prompt content (static channels, or labelled billing-mode
snapshots), calls the completion client once, and turns the JSON reply
into ExtractedPlan records. Fields without evidence are nulled, never
guessed.
"""
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from json_repair import loads as repair_loads
from pydantic import ValidationError

from pricing.errors import ExtractionFailed, LLMError
from pricing.models import (
    BILLING_MONTHLY, BILLING_YEARLY, ExtractedPlan, LLMPlan, LLMReply, Snapshot,
)

logger = logging.getLogger(__name__)

PAGE_CONTENT_LIMIT = 15_000
PASTE_CONTENT_LIMIT = 50_000
TRUNCATION_MARKER = "\n...[truncated]"

MONTHLY_SNAPSHOT_HEADER = "=== SNAPSHOT: MONTHLY BILLING MODE ==="
YEARLY_SNAPSHOT_HEADER = "=== SNAPSHOT: YEARLY/ANNUAL BILLING MODE ==="
DEFAULT_SNAPSHOT_HEADER = "=== SNAPSHOT: DEFAULT STATE (no toggle clicked) ==="
HIDDEN_SECTION_HEADER = "--- HIDDEN CONTENT (may contain alternate billing) ---"
SCRIPT_SECTION_HEADER = "--- SCRIPT DATA ---"

_SNAPSHOT_NOTES = {
    ("browser", BILLING_MONTHLY): "(This snapshot was captured after clicking the monthly billing toggle)",
    ("browser", BILLING_YEARLY): "(This snapshot was captured after clicking the yearly/annual billing toggle)",
    ("paste", BILLING_MONTHLY): "(User-pasted text for monthly billing view)",
    ("paste", BILLING_YEARLY): "(User-pasted text for yearly billing view)",
}

_JSON_SHAPE = """{
  "plans": [
    {
      "name": "Plan Name",
      "price_amount": 19.00,
      "price_string": "$19/mo",
      "currency": "USD",
      "price_frequency": "per_month",
      "billing_period": "monthly",
      "monthly_equivalent_amount": null,
      "annual_billed_amount": null,
      "included_units": [
        {"name": "credits", "amount": 7500, "unit": "per seat per month", "raw_text": "7,500 credits/seat/month"}
      ],
      "features": ["Feature 1", "Feature 2"],
      "evidence": {
        "name_snippet": "exact text where the plan name appears",
        "price_snippet": "exact text showing the price AND billing period",
        "units_snippet": "exact text showing included units",
        "billing_evidence": "exact text proving the billing period"
      }
    }
  ],
  "detected_billing_options": ["monthly", "yearly"],
  "warnings": []
}"""

PAGE_SYSTEM_PROMPT = f"""You are a pricing data extraction specialist. Extract pricing plan information from website content.

The content may contain up to TWO SNAPSHOTS of the same page: one captured in monthly billing mode and one in yearly billing mode. Extract plans from each snapshot separately.

STRICT RULES:
1. ONLY extract information that is EXPLICITLY present in the content.
2. If a field is not found, use null. NEVER guess or invent a name, price, unit or feature.
3. EVIDENCE IS REQUIRED: every extracted value needs an exact text snippet copied from the content.
4. If the billing period cannot be proven from the content, set billing_period to "unknown" and add a warning.
5. If no features are visible for a plan, return an empty features array and add the warning "features_not_visible_for_<plan name>".

SNAPSHOT HANDLING:
- Plans under "SNAPSHOT: MONTHLY BILLING MODE" have billing_period "monthly".
- Plans under "SNAPSHOT: YEARLY/ANNUAL BILLING MODE" have billing_period "yearly".
- The snapshot label is authoritative even if the text inside it is ambiguous.
- Create SEPARATE entries for the same plan in different billing modes. Duplicates are merged afterwards, so include both versions.

BILLING PERIOD DISTINCTION (CRITICAL):
- A MONTHLY plan is paid every month: "billed monthly", "/mo", "per month".
- A YEARLY plan is paid once per year: "billed annually", "billed yearly", "/yr", "per year".
- A yearly plan often shows a per-month equivalent such as "$10/mo billed annually". That is a YEARLY plan with monthly_equivalent_amount 10 and annual_billed_amount 120. Do not report it as a monthly plan.

Output ONLY valid JSON in exactly this format:
{_JSON_SHAPE}

EXAMPLE:
Monthly snapshot "Pro $12/mo billed monthly" -> billing_period "monthly", price_amount 12
Yearly snapshot "Pro $8/mo billed annually" -> billing_period "yearly", monthly_equivalent_amount 8, annual_billed_amount 96

ALSO:
- Currency: $ = USD, € = EUR, £ = GBP.
- Always fill billing_evidence.
- If pricing requires a login or "contact sales", add "pricing_gated" to warnings."""

PASTE_SYSTEM_PROMPT = f"""You are a pricing data extraction specialist. Extract pricing plan information from text a user copied from a pricing page.

The pasted text is the ONLY source of truth.

STRICT RULES:
1. ONLY extract information that is EXPLICITLY present in the pasted text.
2. If a field is not found, use null. NEVER guess or invent data.
3. EVIDENCE IS REQUIRED: every extracted value needs an exact snippet from the pasted text.
4. The text is pre-labelled with its billing mode. Use the label to set billing_period.

SNAPSHOT HANDLING:
- Plans from the "SNAPSHOT: MONTHLY BILLING MODE" section have billing_period "monthly".
- Plans from the "SNAPSHOT: YEARLY/ANNUAL BILLING MODE" section have billing_period "yearly".
- Create SEPARATE entries for the same plan in different billing modes.
- A yearly price shown as a monthly equivalent ("$10/mo billed annually") is billing_period "yearly", monthly_equivalent_amount 10, annual_billed_amount 120.

Output ONLY valid JSON in exactly this format:
{_JSON_SHAPE}

ALSO:
- Extract from both sections when both are provided.
- Currency: $ = USD, € = EUR, £ = GBP.
- If features are not in the pasted text, return an empty array and add a warning."""


@dataclass
class ExtractionOutcome:
    """Plans from one LLM pass, plus the warnings raised while parsing them."""
    plans: Tuple[ExtractedPlan, ...] = ()
    warnings: List[str] = field(default_factory=list)
    detected_billing_options: List[str] = field(default_factory=list)


# ── Content builders ─────────────────────────────────────────

def build_static_content(visible_text, hidden_text="", script_data=""):
    parts = [visible_text or ""]
    if hidden_text:
        parts.append(f"\n\n{HIDDEN_SECTION_HEADER}\n{hidden_text}")
    if script_data:
        parts.append(f"\n\n{SCRIPT_SECTION_HEADER}\n{script_data}")
    return "".join(parts)


def _snapshot_header(mode):
    if mode == BILLING_MONTHLY:
        return MONTHLY_SNAPSHOT_HEADER
    if mode == BILLING_YEARLY:
        return YEARLY_SNAPSHOT_HEADER
    return DEFAULT_SNAPSHOT_HEADER


def build_snapshot_content(snapshots, script_data="", source="browser"):
    """Label each snapshot with its billing mode so the model can attribute plans.

    *source* is "browser" or "paste" and only changes the provenance note.
    """
    parts = []
    for snapshot in snapshots:
        if not snapshot.text:
            continue
        parts.append(_snapshot_header(snapshot.mode) + "\n")
        note = _SNAPSHOT_NOTES.get((source, snapshot.mode))
        if note:
            parts.append(note + "\n\n")
        parts.append(snapshot.text + "\n\n")
    if script_data:
        parts.append(f"\n\n{SCRIPT_SECTION_HEADER}\n{script_data}")
    return "".join(parts)


def build_paste_content(monthly_text="", yearly_text=""):
    snapshots = [
        Snapshot(mode=BILLING_MONTHLY, text=monthly_text or ""),
        Snapshot(mode=BILLING_YEARLY, text=yearly_text or ""),
    ]
    return build_snapshot_content(snapshots, source="paste")


def truncate(content, limit):
    if len(content) > limit:
        return content[:limit] + TRUNCATION_MARKER
    return content


def single_snapshot_mode(content):
    """The billing mode of the only labelled snapshot in *content*, if exactly one."""
    has_monthly = MONTHLY_SNAPSHOT_HEADER in content
    has_yearly = YEARLY_SNAPSHOT_HEADER in content
    if has_monthly and not has_yearly:
        return BILLING_MONTHLY
    if has_yearly and not has_monthly:
        return BILLING_YEARLY
    return None


# ── Reply parsing ────────────────────────────────────────────

def strip_code_fences(text):
    text = (text or "").strip()
    if text.startswith("```json"):
        text = text[len("```json"):]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_reply(text) -> LLMReply:
    """Parse the model's reply into an LLMReply.

    Raises:
        ExtractionFailed: with the "parse_error" warning when the reply is
            not an object carrying a "plans" array.
    """
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except ValueError:
        logger.info("Reply is not valid JSON, attempting repair")
        data = repair_loads(cleaned)

    if not isinstance(data, dict) or not isinstance(data.get("plans"), list):
        logger.warning("Failed to parse extraction reply: %.200s", cleaned)
        raise ExtractionFailed("failed to parse extraction result", ["parse_error"])

    try:
        return LLMReply.model_validate(data)
    except ValidationError as e:
        logger.warning("Extraction reply failed validation: %s", e)
        raise ExtractionFailed("failed to parse extraction result", ["parse_error"])


def _strip_unproven_price(plan):
    return dataclasses.replace(
        plan,
        price_amount=None,
        price_string="",
        monthly_equivalent_amount=None,
        annual_billed_amount=None,
    )


def build_plans(reply, forced_period=None) -> ExtractionOutcome:
    """Validate each reply plan and apply the evidence rules."""
    plans = []
    warnings = list(reply.warnings)

    for raw in reply.plans:
        if not isinstance(raw, dict):
            warnings.append("invalid_plan_dropped")
            continue
        try:
            plan = LLMPlan.model_validate(raw).to_plan()
        except ValidationError as e:
            logger.debug("Dropping invalid plan %r: %s", raw.get("name"), e)
            warnings.append("invalid_plan_dropped")
            continue

        if not plan.name:
            logger.debug("Dropping plan without a name")
            continue

        has_price = plan.price_amount is not None or bool(plan.price_string)
        if has_price and not plan.evidence.price_snippet.strip():
            logger.info("Plan %r has a price but no price evidence, clearing it", plan.name)
            plan = _strip_unproven_price(plan)
            warnings.append("price_without_evidence")

        if plan.included_units and not plan.evidence.units_snippet.strip():
            logger.info("Plan %r lists included units but no units evidence, clearing them", plan.name)
            plan = dataclasses.replace(plan, included_units=())
            warnings.append("units_without_evidence")

        if forced_period and plan.billing_period != forced_period:
            plan = dataclasses.replace(plan, billing_period=forced_period)

        plans.append(plan)

    if plans and not any(p.features for p in plans):
        warnings.append("features_not_visible")

    return ExtractionOutcome(
        plans=tuple(plans),
        warnings=warnings,
        detected_billing_options=list(reply.detected_billing_options),
    )


# ── Extractor ────────────────────────────────────────────────

class PlanExtractor:
    """Runs one LLM pass per call. Never retries the completion."""

    def __init__(self, client):
        self.client = client

    def extract_page(self, content, source_url) -> ExtractionOutcome:
        content = truncate(content, PAGE_CONTENT_LIMIT)
        user = (
            "Extract pricing information from this page. "
            "You may receive multiple snapshots for different billing modes.\n\n"
            f"Source URL: {source_url}\n\n"
            f"Page Content:\n{content}"
        )
        return self._run(PAGE_SYSTEM_PROMPT, user, content)

    def extract_pasted(self, content, website_url=None) -> ExtractionOutcome:
        content = truncate(content, PASTE_CONTENT_LIMIT)
        source = f"user-pasted text from {website_url}" if website_url else "user-pasted text"
        user = (
            f"Extract pricing information from this {source}.\n\n"
            "The user copied and pasted this pricing text. Extract ONLY what is explicitly written.\n\n"
            f"Pasted Content:\n{content}"
        )
        return self._run(PASTE_SYSTEM_PROMPT, user, content)

    def _run(self, system, user, content):
        try:
            reply_text = self.client.complete(system, user)
        except LLMError as e:
            logger.error("LLM extraction call failed: %s", e)
            raise ExtractionFailed(f"LLM call failed: {e}", ["llm_error"])

        outcome = build_plans(parse_reply(reply_text), forced_period=single_snapshot_mode(content))
        logger.info("LLM pass extracted %d plans (%d warnings)", len(outcome.plans), len(outcome.warnings))
        return outcome
