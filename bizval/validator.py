"""Field validator: raw questionnaire answers -> NormalizedFacts.

Pure function over the answers and an ``IndustryContext``. Every problem is
collected and raised together as one ``ValidationFailure`` so the submitter
sees all offending fields at once.
"""
from __future__ import annotations

import math
from typing import Any, Mapping

from bizval.domain import NormalizedFacts
from bizval.errors import (
    INVALID_TYPE,
    MISSING_REQUIRED_FIELD,
    OUT_OF_RANGE,
    UNEXPECTED_FIELD,
    FieldIssue,
    ValidationFailure,
)
from bizval.questionnaire import DEFAULT_CURRENCY, FieldSpec, IndustryContext

# Derived fact -> answer keys it is computed from
DERIVED_SOURCES: dict[str, tuple[str, ...]] = {
    "ebitda_margin": ("ebitda", "annual_revenue"),
    "revenue_growth_rate": ("annual_revenue", "revenue_prior_year"),
    "revenue_per_employee": ("annual_revenue", "employee_count"),
    "debt_to_ebitda": ("total_debt", "ebitda"),
    "tangible_asset_value": ("real_estate_value", "ffe_value", "inventory_value"),
}


def _coerce(spec: FieldSpec, value: Any) -> tuple[Any, FieldIssue | None]:
    """Check type and range of a single value; returns (normalized, issue)."""
    if spec.kind in ("number", "integer"):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None, FieldIssue(INVALID_TYPE, spec.key, f"expected a {spec.kind}, got {type(value).__name__}")
        if not math.isfinite(value):
            return None, FieldIssue(OUT_OF_RANGE, spec.key, "value must be finite")
        if spec.kind == "integer":
            if isinstance(value, float) and not value.is_integer():
                return None, FieldIssue(INVALID_TYPE, spec.key, "expected a whole number")
            value = int(value)
        else:
            value = float(value)
        if spec.minimum is not None and value < spec.minimum:
            return None, FieldIssue(OUT_OF_RANGE, spec.key, f"must be >= {spec.minimum:g}")
        if spec.maximum is not None and value > spec.maximum:
            return None, FieldIssue(OUT_OF_RANGE, spec.key, f"must be <= {spec.maximum:g}")
        return value, None

    if spec.kind == "boolean":
        if not isinstance(value, bool):
            return None, FieldIssue(INVALID_TYPE, spec.key, "expected true or false")
        return value, None

    if not isinstance(value, str):
        return None, FieldIssue(INVALID_TYPE, spec.key, "expected a string")
    value = value.strip()
    if spec.kind == "enum":
        normalized = value.upper() if spec.key == "currency" else value.lower()
        if normalized not in (spec.choices or ()):
            return None, FieldIssue(OUT_OF_RANGE, spec.key, f"must be one of: {', '.join(spec.choices or ())}")
        return normalized, None
    if spec.max_length is not None and len(value) > spec.max_length:
        return None, FieldIssue(OUT_OF_RANGE, spec.key, f"must be at most {spec.max_length} characters")
    return value, None


def _cross_field_issues(values: Mapping[str, Any]) -> list[FieldIssue]:
    issues: list[FieldIssue] = []
    revenue = values.get("annual_revenue")
    ebitda = values.get("ebitda")
    if revenue is not None and ebitda is not None and ebitda > revenue:
        issues.append(FieldIssue(OUT_OF_RANGE, "ebitda", "EBITDA cannot exceed annual revenue"))
    largest = values.get("largest_customer_pct")
    top5 = values.get("top5_customer_pct")
    if largest is not None and top5 is not None and top5 < largest:
        issues.append(FieldIssue(
            OUT_OF_RANGE, "top5_customer_pct",
            "top 5 customer share must be at least the largest customer share",
        ))
    return issues


def derive_facts(values: Mapping[str, Any]) -> dict[str, float]:
    """Ratios from validated values; a ratio with a missing input stays absent."""
    derived: dict[str, float] = {}
    revenue = values.get("annual_revenue")
    prior = values.get("revenue_prior_year")
    ebitda = values.get("ebitda")
    employees = values.get("employee_count")
    debt = values.get("total_debt")

    if ebitda is not None and revenue:
        derived["ebitda_margin"] = ebitda / revenue
    if revenue is not None and prior:
        derived["revenue_growth_rate"] = (revenue - prior) / prior
    if revenue is not None and employees:
        derived["revenue_per_employee"] = revenue / employees
    if debt is not None and ebitda is not None and ebitda > 0:
        derived["debt_to_ebitda"] = debt / ebitda

    assets = [values[k] for k in DERIVED_SOURCES["tangible_asset_value"] if k in values]
    if assets:
        derived["tangible_asset_value"] = float(sum(assets))
    return derived


def validate(raw: Mapping[str, Any], industry_context: IndustryContext | None = None) -> NormalizedFacts:
    """Validate raw answers into NormalizedFacts or raise ValidationFailure."""
    ctx = industry_context or IndustryContext.default()
    answers = {k: v for k, v in raw.items() if v is not None}
    issues: list[FieldIssue] = []
    values: dict[str, Any] = {}

    for key in answers:
        if key not in ctx.fields:
            issues.append(FieldIssue(UNEXPECTED_FIELD, key, "unknown questionnaire field"))

    # Type/range first so visibility predicates see normalized values
    for key, spec in ctx.fields.items():
        if key not in answers:
            continue
        value, issue = _coerce(spec, answers[key])
        if issue:
            issues.append(issue)
        else:
            values[key] = value

    industry = values.get("industry")
    if industry is not None and industry not in ctx.industries:
        issues.append(FieldIssue(OUT_OF_RANGE, "industry", f"unknown industry {industry!r}"))

    for key, spec in ctx.fields.items():
        present = key in answers
        visible = spec.applies_to(industry) and spec.condition_holds(values)
        if present and not visible:
            if spec.condition is not None and not spec.condition_holds(values):
                other, expected = spec.condition
                reason = f"only allowed when {other} is {expected!r}"
            else:
                reason = f"not applicable to industry {industry!r}"
            issues.append(FieldIssue(UNEXPECTED_FIELD, key, reason))
            values.pop(key, None)
        elif spec.required and visible and not present:
            issues.append(FieldIssue(MISSING_REQUIRED_FIELD, key, "required field is missing"))

    issues.extend(_cross_field_issues(values))
    if issues:
        raise ValidationFailure(issues)

    derived = derive_facts(values)
    return NormalizedFacts(
        version=ctx.version,
        industry=values["industry"],
        currency=values.get("currency", DEFAULT_CURRENCY),
        values=values,
        derived=derived,
        derived_from={k: tuple(s for s in DERIVED_SOURCES[k] if s in values) for k in derived},
    )
