"""Records produced by the extraction pipeline, and pydantic models for LLM replies.

Plan records are frozen dataclasses: every pass (static, per-snapshot,
pasted text) creates fresh instances and later stages only merge two of
them into a new one, so evidence stays attributable to its source.

The pydantic models validate the raw JSON the model sends back before it
is turned into ExtractedPlan instances.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

BILLING_MONTHLY = "monthly"
BILLING_YEARLY = "yearly"
BILLING_UNKNOWN = "unknown"
BILLING_PERIODS = (BILLING_MONTHLY, BILLING_YEARLY, BILLING_UNKNOWN)

_PERIOD_ALIASES = {
    "monthly": BILLING_MONTHLY,
    "month": BILLING_MONTHLY,
    "per_month": BILLING_MONTHLY,
    "yearly": BILLING_YEARLY,
    "year": BILLING_YEARLY,
    "annual": BILLING_YEARLY,
    "annually": BILLING_YEARLY,
    "per_year": BILLING_YEARLY,
}

_NUMBER_RE = re.compile(r"-?\d[\d,]*(?:\.\d+)?")


def normalize_billing_period(value) -> str:
    """Map free-form billing labels onto monthly / yearly / unknown."""
    if not value or not isinstance(value, str):
        return BILLING_UNKNOWN
    return _PERIOD_ALIASES.get(value.strip().lower(), BILLING_UNKNOWN)


def parse_amount(value) -> Optional[float]:
    """Coerce a model-supplied amount (number or "$1,200.00") to float, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _NUMBER_RE.search(value)
        if match:
            try:
                return float(match.group(0).replace(",", ""))
            except ValueError:
                return None
    return None


# ---------------------------------------------------------------------------
# Plan records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IncludedUnit:
    """A quantified allowance such as "7,500 credits/seat/month"."""
    name: str
    amount: Optional[float] = None
    unit: str = ""
    raw_text: str = ""


@dataclass(frozen=True)
class PlanEvidence:
    """Verbatim snippets proving each extracted field."""
    name_snippet: str = ""
    price_snippet: str = ""
    units_snippet: str = ""
    billing_evidence: str = ""


@dataclass(frozen=True)
class ExtractedPlan:
    """One pricing tier as derived from a single source."""
    name: str
    price_amount: Optional[float] = None
    price_string: str = ""
    currency: str = ""
    price_frequency: str = ""
    billing_period: str = BILLING_UNKNOWN
    monthly_equivalent_amount: Optional[float] = None
    annual_billed_amount: Optional[float] = None
    included_units: Tuple[IncludedUnit, ...] = ()
    features: Tuple[str, ...] = ()
    evidence: PlanEvidence = field(default_factory=PlanEvidence)

    def to_dict(self):
        d = asdict(self)
        d["included_units"] = [asdict(u) for u in self.included_units]
        d["features"] = list(self.features)
        return d

    @classmethod
    def from_dict(cls, data):
        evidence = data.get("evidence") or {}
        return cls(
            name=data.get("name") or data.get("plan_name") or "",
            price_amount=parse_amount(data.get("price_amount")),
            price_string=data.get("price_string") or "",
            currency=data.get("currency") or "",
            price_frequency=data.get("price_frequency") or "",
            billing_period=normalize_billing_period(data.get("billing_period")),
            monthly_equivalent_amount=parse_amount(data.get("monthly_equivalent_amount")),
            annual_billed_amount=parse_amount(data.get("annual_billed_amount")),
            included_units=tuple(
                IncludedUnit(
                    name=u.get("name") or "",
                    amount=parse_amount(u.get("amount")),
                    unit=u.get("unit") or "",
                    raw_text=u.get("raw_text") or "",
                )
                for u in (data.get("included_units") or [])
            ),
            features=tuple(data.get("features") or ()),
            evidence=PlanEvidence(
                name_snippet=evidence.get("name_snippet") or "",
                price_snippet=evidence.get("price_snippet") or "",
                units_snippet=evidence.get("units_snippet") or "",
                billing_evidence=evidence.get("billing_evidence") or "",
            ),
        )


# ---------------------------------------------------------------------------
# Browser-side records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToggleControl:
    """A DOM control that might switch the billing mode."""
    selector: str
    label: str
    element: str  # role-tab | button | label-span
    monthly_score: int = 0
    yearly_score: int = 0
    aria_selected: Optional[str] = None


@dataclass(frozen=True)
class SwitchResult:
    success: bool
    state_changed: bool
    reason: str = ""


@dataclass(frozen=True)
class Snapshot:
    """Rendered text and markup of the page under one billing mode."""
    mode: str  # monthly | yearly | default
    text: str
    html: str = ""


@dataclass(frozen=True)
class DebugArtifact:
    """Diagnostics for one browser run. Built once when the run ends."""
    run_id: str
    timestamp: str
    url: str
    states_attempted: Tuple[str, ...] = ()
    monthly_tab_label: str = ""
    yearly_tab_label: str = ""
    monthly_click_attempted: bool = False
    yearly_click_attempted: bool = False
    monthly_state_changed: bool = False
    yearly_state_changed: bool = False
    found_monthly_prices: bool = False
    found_yearly_prices: bool = False
    selected_state_before: str = BILLING_UNKNOWN
    selected_state_after: str = BILLING_UNKNOWN
    artifacts_path: str = ""
    saved_files: Tuple[str, ...] = ()

    def to_dict(self):
        d = asdict(self)
        d["states_attempted"] = list(self.states_attempted)
        d["saved_files"] = list(self.saved_files)
        return d


@dataclass(frozen=True)
class RenderCapture:
    """Output of one browser run: the snapshots to send to the model."""
    url: str
    snapshots: Tuple[Snapshot, ...]
    initial_mode: str = BILLING_UNKNOWN
    warnings: Tuple[str, ...] = ()
    combined_html: str = ""
    artifact: Optional[DebugArtifact] = None


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PricingExtractResult:
    """Terminal output of one extraction invocation."""
    plans: Tuple[ExtractedPlan, ...] = ()
    source_url: str = ""
    detected_periods: Tuple[str, ...] = ()
    needs_render: bool = False
    render_used: bool = False
    warnings: Tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def ok(self):
        return self.error is None

    def to_dict(self):
        d = {
            "plans": [p.to_dict() for p in self.plans],
            "source_url": self.source_url,
            "detected_periods": list(self.detected_periods),
            "needs_render": self.needs_render,
            "render_used": self.render_used,
            "warnings": list(self.warnings),
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class DiscoveryResult:
    candidates: Tuple[str, ...] = ()
    selected: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self):
        d = {"pricing_candidates": list(self.candidates), "selected_pricing_url": self.selected}
        if self.error:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class SavedPlan:
    """A plan row as persisted by the document store."""
    id: int
    owner_id: str
    website_url: str
    source_url: str
    extracted_at: str
    plan: ExtractedPlan

    def to_dict(self):
        d = self.plan.to_dict()
        d.update({
            "id": self.id,
            "owner_id": self.owner_id,
            "website_url": self.website_url,
            "source_url": self.source_url,
            "extracted_at": self.extracted_at,
        })
        return d


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# LLM reply models
# ---------------------------------------------------------------------------

class LLMIncludedUnit(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    amount: Optional[float] = None
    unit: str = ""
    raw_text: str = ""

    @field_validator("name", "unit", "raw_text", mode="before")
    @classmethod
    def coerce_strings(cls, v):
        return "" if v is None else str(v)

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v):
        return parse_amount(v)


class LLMEvidence(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name_snippet: str = ""
    price_snippet: str = ""
    units_snippet: str = ""
    billing_evidence: str = ""

    @field_validator(
        "name_snippet", "price_snippet", "units_snippet", "billing_evidence", mode="before",
    )
    @classmethod
    def coerce_strings(cls, v):
        return "" if v is None else str(v)


class LLMPlan(BaseModel):
    """One entry of the model's "plans" array."""
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    price_amount: Optional[float] = None
    price_string: str = ""
    currency: str = ""
    price_frequency: str = ""
    billing_period: str = BILLING_UNKNOWN
    monthly_equivalent_amount: Optional[float] = None
    annual_billed_amount: Optional[float] = None
    included_units: List[LLMIncludedUnit] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    evidence: LLMEvidence = Field(default_factory=LLMEvidence)

    @field_validator("name", "price_string", "currency", "price_frequency", mode="before")
    @classmethod
    def coerce_strings(cls, v):
        return "" if v is None else str(v)

    @field_validator("price_amount", mode="before")
    @classmethod
    def coerce_price(cls, v):
        return parse_amount(v)

    @field_validator("monthly_equivalent_amount", "annual_billed_amount", mode="before")
    @classmethod
    def coerce_derived_amounts(cls, v):
        # 0 means "not shown" for the derived amounts
        amount = parse_amount(v)
        return amount if amount else None

    @field_validator("billing_period", mode="before")
    @classmethod
    def coerce_period(cls, v):
        return normalize_billing_period(v)

    @field_validator("included_units", mode="before")
    @classmethod
    def coerce_units(cls, v):
        if not isinstance(v, list):
            return []
        return [u for u in v if isinstance(u, dict)]

    @field_validator("features", mode="before")
    @classmethod
    def coerce_features(cls, v):
        if not isinstance(v, list):
            return []
        return [f.strip() for f in v if isinstance(f, str) and f.strip()]

    @field_validator("evidence", mode="before")
    @classmethod
    def coerce_evidence(cls, v):
        return v if isinstance(v, dict) else {}

    def to_plan(self) -> ExtractedPlan:
        return ExtractedPlan(
            name=self.name.strip(),
            price_amount=self.price_amount,
            price_string=self.price_string.strip(),
            currency=self.currency.strip().upper(),
            price_frequency=self.price_frequency.strip(),
            billing_period=self.billing_period,
            monthly_equivalent_amount=self.monthly_equivalent_amount,
            annual_billed_amount=self.annual_billed_amount,
            included_units=tuple(
                IncludedUnit(name=u.name, amount=u.amount, unit=u.unit, raw_text=u.raw_text)
                for u in self.included_units
            ),
            features=tuple(self.features),
            evidence=PlanEvidence(
                name_snippet=self.evidence.name_snippet,
                price_snippet=self.evidence.price_snippet,
                units_snippet=self.evidence.units_snippet,
                billing_evidence=self.evidence.billing_evidence,
            ),
        )


class LLMReply(BaseModel):
    """Top-level JSON shape the extraction prompts ask for."""
    model_config = ConfigDict(extra="ignore")

    plans: List[Any]
    warnings: List[str] = Field(default_factory=list)
    detected_billing_options: List[str] = Field(default_factory=list)

    @field_validator("warnings", "detected_billing_options", mode="before")
    @classmethod
    def coerce_string_list(cls, v):
        if not isinstance(v, list):
            return []
        return [str(w) for w in v if w]
