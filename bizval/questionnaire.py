"""Questionnaire model: typed, versioned field table with visibility rules.

Every field carries its kind, unit, plausible range (or enum choices), an
optional industry-applicability set, and an optional condition on another
field. Visibility is evaluated from this table only; nothing downstream
branches on industry to decide whether a field may exist.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

QUESTIONNAIRE_VERSION = "2024.2"

INDUSTRIES = (
    "technology", "software", "healthcare", "finance", "manufacturing",
    "retail", "services", "real_estate", "e_commerce", "other",
)

CURRENCIES = ("USD", "EUR", "GBP", "CAD", "AUD")
DEFAULT_CURRENCY = "USD"

MANAGEMENT_DEPTH_LEVELS = ("shallow", "adequate", "strong", "exceptional")
KEY_PERSON_RISK_LEVELS = ("low", "medium", "high", "critical")

_MAX_MONEY = 1e11


@dataclass(frozen=True)
class FieldSpec:
    key: str
    kind: str  # "number" | "integer" | "enum" | "string" | "boolean"
    label: str
    required: bool = False
    unit: str | None = None
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] | None = None
    max_length: int | None = None
    industries: frozenset[str] | None = None
    condition: tuple[str, Any] | None = None  # (field key, required value)

    def applies_to(self, industry: str | None) -> bool:
        return self.industries is None or industry in self.industries

    def condition_holds(self, values: Mapping[str, Any]) -> bool:
        if self.condition is None:
            return True
        other, expected = self.condition
        return values.get(other) == expected

    def describe(self) -> dict[str, Any]:
        return {
            "key": self.key, "kind": self.kind, "label": self.label,
            "required": self.required, "unit": self.unit,
            "minimum": self.minimum, "maximum": self.maximum,
            "choices": list(self.choices) if self.choices else None,
            "industries": sorted(self.industries) if self.industries else None,
            "condition": {"field": self.condition[0], "equals": self.condition[1]} if self.condition else None,
        }


def _money(key: str, label: str, minimum: float = 0.0, **kw) -> FieldSpec:
    return FieldSpec(key, "number", label, unit="currency", minimum=minimum, maximum=_MAX_MONEY, **kw)


def _percent(key: str, label: str, **kw) -> FieldSpec:
    return FieldSpec(key, "number", label, unit="percent", minimum=0.0, maximum=100.0, **kw)


FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("industry", "enum", "Industry", required=True, choices=INDUSTRIES),
    FieldSpec("currency", "enum", "Reporting currency", choices=CURRENCIES),
    _money("annual_revenue", "Annual revenue"),
    _money("revenue_prior_year", "Revenue, prior year"),
    _money("ebitda", "EBITDA", minimum=-_MAX_MONEY),
    _money("total_debt", "Total debt"),
    FieldSpec("years_in_business", "integer", "Years in business", unit="years", minimum=0, maximum=300),
    FieldSpec("employee_count", "integer", "Employees", minimum=0, maximum=1_000_000),
    FieldSpec("customer_count", "integer", "Active customers", minimum=0, maximum=1_000_000_000),
    _percent("largest_customer_pct", "Revenue share of largest customer"),
    _percent("top5_customer_pct", "Revenue share of top 5 customers"),
    _percent("recurring_revenue_pct", "Recurring revenue share"),
    _percent("customer_retention_pct", "Annual customer retention"),
    FieldSpec("owner_hours_per_week", "number", "Owner hours per week", unit="hours", minimum=0, maximum=168),
    FieldSpec("management_depth", "enum", "Management depth", choices=MANAGEMENT_DEPTH_LEVELS),
    FieldSpec("key_person_risk", "enum", "Key person risk", choices=KEY_PERSON_RISK_LEVELS),
    FieldSpec("owns_real_estate", "boolean", "Business owns its real estate"),
    _money("real_estate_value", "Owned real estate value", condition=("owns_real_estate", True)),
    _money("ffe_value", "Furniture, fixtures & equipment value"),
    _money("inventory_value", "Inventory value",
           industries=frozenset({"retail", "manufacturing", "e_commerce"})),
    _percent("capacity_utilization_pct", "Production capacity utilization",
             industries=frozenset({"manufacturing"})),
    FieldSpec("business_description", "string", "Business description", max_length=2000),
)

FIELDS_BY_KEY: dict[str, FieldSpec] = {f.key: f for f in FIELDS}


@dataclass(frozen=True)
class IndustryContext:
    """Field table plus known industries; the validator's only lookup."""
    fields: Mapping[str, FieldSpec]
    industries: tuple[str, ...]
    version: str = QUESTIONNAIRE_VERSION

    @classmethod
    def default(cls) -> IndustryContext:
        return cls(fields=FIELDS_BY_KEY, industries=INDUSTRIES)

    def visible_fields(self, values: Mapping[str, Any]) -> list[FieldSpec]:
        """Fields a respondent with these answers is expected to see."""
        industry = values.get("industry")
        return [
            spec for spec in self.fields.values()
            if spec.applies_to(industry) and spec.condition_holds(values)
        ]


def describe_questionnaire(context: IndustryContext | None = None) -> dict[str, Any]:
    ctx = context or IndustryContext.default()
    return {
        "version": ctx.version,
        "industries": list(ctx.industries),
        "fields": [spec.describe() for spec in ctx.fields.values()],
    }
