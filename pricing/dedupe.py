"""Deduplicate and merge plans extracted across passes and snapshots."""
import dataclasses
import logging
import re
from typing import Iterable, List

from pricing.models import BILLING_UNKNOWN, ExtractedPlan, PlanEvidence

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")
_PRICE_TOKEN_RE = re.compile(r"[\d,]+\.?\d*")
_NAME_SUFFIXES = (" plan", " tier")


def _canonical_name(name):
    name = _WS_RE.sub(" ", (name or "").strip().lower())
    for suffix in _NAME_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name


def _price_key(plan):
    if plan.price_amount is not None and plan.price_amount > 0:
        return f"{plan.price_amount:.2f}"
    match = _PRICE_TOKEN_RE.search(plan.price_string or "")
    if not match:
        return ""
    token = match.group(0).replace(",", "")
    try:
        return f"{float(token):.2f}"
    except ValueError:
        return ""


def canonical_plan_key(plan: ExtractedPlan) -> str:
    """``name|billing|price`` identity used to spot the same plan twice.

    "Pro Plan", " pro " and "PRO tier" share a name; $12 and "$12.00/mo"
    share a price.
    """
    billing = (plan.billing_period or "").lower() or BILLING_UNKNOWN
    return f"{_canonical_name(plan.name)}|{billing}|{_price_key(plan)}"


def _merge_evidence(existing: PlanEvidence, new: PlanEvidence, units_from_new: bool) -> PlanEvidence:
    changes = {}
    if len(new.price_snippet) > len(existing.price_snippet):
        changes["price_snippet"] = new.price_snippet
    if new.units_snippet and (units_from_new or not existing.units_snippet):
        changes["units_snippet"] = new.units_snippet
    for attr in ("name_snippet", "billing_evidence"):
        if not getattr(existing, attr) and getattr(new, attr):
            changes[attr] = getattr(new, attr)
    return dataclasses.replace(existing, **changes)


def merge_plans(existing: ExtractedPlan, new: ExtractedPlan) -> ExtractedPlan:
    """Combine two records of the same plan into a new, richer one.

    Longer lists win, the longer price snippet wins, and missing values
    and snippets are backfilled from *new*. The units snippet follows the
    units list it proves.
    """
    changes = {}
    if len(new.features) > len(existing.features):
        changes["features"] = new.features
    if len(new.included_units) > len(existing.included_units):
        changes["included_units"] = new.included_units

    evidence = _merge_evidence(existing.evidence, new.evidence, "included_units" in changes)
    if evidence != existing.evidence:
        changes["evidence"] = evidence

    for attr in ("price_amount", "monthly_equivalent_amount", "annual_billed_amount"):
        if getattr(existing, attr) is None and getattr(new, attr) is not None:
            changes[attr] = getattr(new, attr)
    for attr in ("price_string", "currency", "price_frequency"):
        if not getattr(existing, attr) and getattr(new, attr):
            changes[attr] = getattr(new, attr)

    return dataclasses.replace(existing, **changes)


def deduplicate_plans(plans: Iterable[ExtractedPlan]) -> List[ExtractedPlan]:
    """Merge plans sharing a canonical key; sort by name then billing period."""
    plans = list(plans)
    merged = {}
    for plan in plans:
        key = canonical_plan_key(plan)
        if key in merged:
            merged[key] = merge_plans(merged[key], plan)
        else:
            merged[key] = plan

    result = sorted(merged.values(), key=lambda p: (p.name, p.billing_period))
    if len(result) != len(plans):
        logger.info("Deduplicated %d plans to %d unique plans", len(plans), len(result))
    return result


def detect_billing_periods(plans: Iterable[ExtractedPlan]) -> List[str]:
    """Sorted distinct billing periods, ignoring unknown."""
    return sorted({p.billing_period for p in plans if p.billing_period and p.billing_period != BILLING_UNKNOWN})
