"""Billing-toggle heuristics: detection, mode classification and control scoring.

Everything here is a pure function over text or plain dicts, so the
browser extractor stays thin and the heuristics are testable without a
browser.
"""
import logging
import re
from typing import List, Optional, Tuple

from pricing.models import BILLING_MONTHLY, BILLING_UNKNOWN, BILLING_YEARLY, ToggleControl

logger = logging.getLogger(__name__)

# Phrases that suggest a monthly/yearly switch exists on the page
TOGGLE_INDICATORS = [
    "pay monthly", "pay annually", "monthly", "yearly", "annual",
    "billed monthly", "billed annually", "billed yearly",
    "save", "per month", "per year", "/mo", "/yr",
    "switch to annual", "switch to monthly",
]

# Markup idioms for segmented controls and switches
TOGGLE_MARKUP_IDIOMS = ['role="tablist"', 'role="tab"', "toggle", "switch"]

MONTHLY_SIGNALS = ["/mo", "per month", "monthly", "billed monthly", "/month"]
YEARLY_SIGNALS = [
    "/yr", "per year", "annually", "billed annually", "yearly",
    "billed yearly", "/year", "save",
]

# Keywords used to score candidate toggle controls
MONTHLY_CONTROL_KEYWORDS = ["monthly", "month", "/mo", "per month", "mo", "pay monthly"]
YEARLY_CONTROL_KEYWORDS = [
    "yearly", "annual", "annually", "year", "/yr", "per year",
    "pay annually", "billed annually", "save",
]

ROLE_TAB_BONUS = 15
MAX_CONTROL_LABEL = 50

# A price quoted per period counts three times as much as a loose signal
PRICE_PATTERN_WEIGHT = 3
_MONTHLY_PRICE_RE = re.compile(r"[$€£]\d+(?:\.\d{2})?\s*/\s*mo")
_YEARLY_PRICE_RE = re.compile(r"[$€£]\d+(?:\.\d{2})?\s*/\s*(?:yr|year)")

_WS_RE = re.compile(r"\s+")


def detect_billing_toggle(visible_text, raw_html):
    """True when the page likely offers a monthly/yearly billing switch."""
    raw_html = raw_html or ""
    content = ((visible_text or "") + " " + raw_html).lower()

    hits = sum(1 for indicator in TOGGLE_INDICATORS if indicator in content)
    has_idiom = any(idiom in raw_html for idiom in TOGGLE_MARKUP_IDIOMS)

    return hits >= 2 or (hits >= 1 and has_idiom)


def billing_signal_counts(text) -> Tuple[int, int]:
    """(monthly, yearly) weighted signal counts for *text*."""
    lowered = (text or "").lower()
    monthly = sum(lowered.count(signal) for signal in MONTHLY_SIGNALS)
    yearly = sum(lowered.count(signal) for signal in YEARLY_SIGNALS)
    monthly += len(_MONTHLY_PRICE_RE.findall(lowered)) * PRICE_PATTERN_WEIGHT
    yearly += len(_YEARLY_PRICE_RE.findall(lowered)) * PRICE_PATTERN_WEIGHT
    return monthly, yearly


def detect_billing_mode(text):
    """Classify rendered text as monthly, yearly or unknown (tie)."""
    monthly, yearly = billing_signal_counts(text)
    if monthly > yearly:
        return BILLING_MONTHLY
    if yearly > monthly:
        return BILLING_YEARLY
    return BILLING_UNKNOWN


def has_monthly_prices(text):
    lowered = (text or "").lower()
    return any(signal in lowered for signal in MONTHLY_SIGNALS)


def has_yearly_prices(text):
    lowered = (text or "").lower()
    return any(signal in lowered for signal in YEARLY_SIGNALS)


def text_similarity(text1, text2):
    """Word-overlap ratio between two texts.

    Identical texts give 1.0; if either side has no words, 0.0.
    """
    if text1 == text2:
        return 1.0

    words1 = (text1 or "").lower().split()
    words2 = (text2 or "").lower().split()
    if not words1 or not words2:
        return 0.0

    vocabulary = set(words1)
    matches = sum(1 for w in words2 if w in vocabulary)
    return matches / (len(words1) + len(words2) - matches)


def _normalize_label(text):
    return _WS_RE.sub(" ", (text or "").lower()).strip()


def score_text(text, keywords):
    """+10 for every keyword the label contains, +20 more on an exact match."""
    normalized = _normalize_label(text)
    score = 0
    for keyword in keywords:
        if keyword in normalized:
            score += 10
            if normalized == keyword:
                score += 20
    return score


def score_controls(candidates) -> List[ToggleControl]:
    """Score raw control candidates collected from the page.

    Each candidate is a dict with ``selector``, ``label``, ``element``
    (role-tab | button | label-span) and optionally ``ariaSelected``.
    Tabs are always kept; buttons and labels only when they mention a
    billing keyword, and labels only when short.
    """
    controls = []
    for raw in candidates or []:
        if not isinstance(raw, dict) or not raw.get("selector"):
            continue
        label = (raw.get("label") or "").strip()
        element = raw.get("element") or "button"
        if element == "label-span" and len(label) > MAX_CONTROL_LABEL:
            continue

        monthly = score_text(label, MONTHLY_CONTROL_KEYWORDS)
        yearly = score_text(label, YEARLY_CONTROL_KEYWORDS)
        if element != "role-tab" and not (monthly or yearly):
            continue

        controls.append(ToggleControl(
            selector=raw["selector"],
            label=label,
            element=element,
            monthly_score=monthly,
            yearly_score=yearly,
            aria_selected=raw.get("ariaSelected"),
        ))
    return controls


def select_toggle_controls(controls) -> Tuple[Optional[ToggleControl], Optional[ToggleControl]]:
    """Pick the best monthly and the best yearly control independently.

    A control only competes for the direction where its score is strictly
    higher; role="tab" elements get a bonus. Ties keep the earlier control.
    """
    best_monthly, best_yearly = None, None
    monthly_top, yearly_top = 0, 0

    for control in controls:
        bonus = ROLE_TAB_BONUS if control.element == "role-tab" else 0
        if control.monthly_score > control.yearly_score:
            score = control.monthly_score + bonus
            if score > monthly_top:
                best_monthly, monthly_top = control, score
        elif control.yearly_score > control.monthly_score:
            score = control.yearly_score + bonus
            if score > yearly_top:
                best_yearly, yearly_top = control, score

    logger.debug(
        "Toggle controls: monthly=%r (score=%d), yearly=%r (score=%d)",
        best_monthly.label if best_monthly else None, monthly_top,
        best_yearly.label if best_yearly else None, yearly_top,
    )
    return best_monthly, best_yearly


def tab_label_matches(label, target):
    """Whether a selected tab's label names the *target* billing mode."""
    lowered = (label or "").lower()
    if target == BILLING_MONTHLY:
        return "month" in lowered or "/mo" in lowered
    if target == BILLING_YEARLY:
        return "year" in lowered or "annual" in lowered
    return False
