"""Tests for questionnaire validation and derived facts."""
from __future__ import annotations

import math

import pytest

from bizval.errors import (
    INVALID_TYPE,
    MISSING_REQUIRED_FIELD,
    OUT_OF_RANGE,
    UNEXPECTED_FIELD,
    ValidationFailure,
)
from bizval.questionnaire import QUESTIONNAIRE_VERSION, IndustryContext, describe_questionnaire
from bizval.validator import derive_facts, validate


def _failure(answers: dict) -> ValidationFailure:
    with pytest.raises(ValidationFailure) as exc_info:
        validate(answers)
    return exc_info.value


class TestValidAnswers:
    def test_minimal_answers(self, minimal_answers):
        facts = validate(minimal_answers)
        assert facts.industry == "services"
        assert facts.currency == "USD"
        assert facts.version == QUESTIONNAIRE_VERSION
        assert facts.get("annual_revenue") == 1_000_000.0
        assert facts.get("ebitda_margin") == pytest.approx(0.15)
        assert facts.source_fields("ebitda_margin") == ("ebitda", "annual_revenue")

    def test_enum_values_are_normalized(self):
        facts = validate({"industry": " Services ", "currency": "eur", "management_depth": "STRONG"})
        assert facts.industry == "services"
        assert facts.currency == "EUR"
        assert facts.get("management_depth") == "strong"

    def test_none_means_unanswered(self, minimal_answers):
        facts = validate({**minimal_answers, "total_debt": None, "real_estate_value": None})
        assert not facts.has("total_debt")
        assert not facts.has("debt_to_ebitda")

    def test_integer_accepts_whole_float(self):
        facts = validate({"industry": "retail", "employee_count": 12.0})
        assert facts.get("employee_count") == 12
        assert isinstance(facts.get("employee_count"), int)

    def test_facts_are_read_only(self, minimal_answers):
        facts = validate(minimal_answers)
        with pytest.raises(TypeError):
            facts.values["annual_revenue"] = 5  # type: ignore[index]


class TestRejections:
    def test_negative_revenue_out_of_range(self, minimal_answers):
        exc = _failure({**minimal_answers, "annual_revenue": -10})
        assert exc.codes_for("annual_revenue") == [OUT_OF_RANGE]

    def test_percent_above_hundred(self):
        exc = _failure({"industry": "services", "largest_customer_pct": 150})
        assert exc.codes_for("largest_customer_pct") == [OUT_OF_RANGE]

    def test_nan_is_out_of_range_not_clamped(self):
        exc = _failure({"industry": "services", "annual_revenue": math.nan})
        assert exc.codes_for("annual_revenue") == [OUT_OF_RANGE]

    def test_string_for_number_is_invalid_type(self):
        exc = _failure({"industry": "services", "annual_revenue": "1M"})
        assert exc.codes_for("annual_revenue") == [INVALID_TYPE]

    def test_bool_for_number_is_invalid_type(self):
        exc = _failure({"industry": "services", "ebitda": True})
        assert exc.codes_for("ebitda") == [INVALID_TYPE]

    def test_fractional_integer_is_invalid_type(self):
        exc = _failure({"industry": "services", "employee_count": 3.5})
        assert exc.codes_for("employee_count") == [INVALID_TYPE]

    def test_unknown_enum_choice(self):
        exc = _failure({"industry": "services", "key_person_risk": "extreme"})
        assert exc.codes_for("key_person_risk") == [OUT_OF_RANGE]

    def test_unknown_industry(self):
        exc = _failure({"industry": "mining"})
        assert OUT_OF_RANGE in exc.codes_for("industry")

    def test_unknown_key_is_rejected_not_ignored(self):
        exc = _failure({"industry": "services", "favourite_colour": "blue"})
        assert exc.codes_for("favourite_colour") == [UNEXPECTED_FIELD]

    def test_missing_industry(self):
        exc = _failure({"annual_revenue": 100_000})
        assert exc.codes_for("industry") == [MISSING_REQUIRED_FIELD]

    def test_description_too_long(self):
        exc = _failure({"industry": "services", "business_description": "x" * 2001})
        assert exc.codes_for("business_description") == [OUT_OF_RANGE]

    def test_all_issues_reported_together(self):
        exc = _failure({
            "industry": "services",
            "annual_revenue": -1,
            "largest_customer_pct": "lots",
            "bogus": 1,
        })
        assert set(exc.fields) == {"annual_revenue", "largest_customer_pct", "bogus"}


class TestVisibility:
    def test_real_estate_value_requires_ownership(self):
        exc = _failure({"industry": "services", "real_estate_value": 500_000})
        assert exc.codes_for("real_estate_value") == [UNEXPECTED_FIELD]

    def test_real_estate_value_rejected_when_not_owned(self):
        exc = _failure({"industry": "services", "owns_real_estate": False, "real_estate_value": 500_000})
        assert exc.codes_for("real_estate_value") == [UNEXPECTED_FIELD]

    def test_real_estate_value_accepted_when_owned(self):
        facts = validate({"industry": "services", "owns_real_estate": True, "real_estate_value": 500_000})
        assert facts.get("real_estate_value") == 500_000.0

    def test_absent_conditional_field_is_not_missing(self):
        facts = validate({"industry": "services", "owns_real_estate": True})
        assert not facts.has("real_estate_value")

    def test_inventory_only_for_stock_holding_industries(self):
        exc = _failure({"industry": "services", "inventory_value": 50_000})
        assert exc.codes_for("inventory_value") == [UNEXPECTED_FIELD]
        facts = validate({"industry": "retail", "inventory_value": 50_000})
        assert facts.get("inventory_value") == 50_000.0

    def test_capacity_utilization_only_for_manufacturing(self):
        exc = _failure({"industry": "software", "capacity_utilization_pct": 70})
        assert exc.codes_for("capacity_utilization_pct") == [UNEXPECTED_FIELD]
        facts = validate({"industry": "manufacturing", "capacity_utilization_pct": 70})
        assert facts.get("capacity_utilization_pct") == 70.0

    def test_visible_fields_follow_answers(self):
        ctx = IndustryContext.default()
        services = {spec.key for spec in ctx.visible_fields({"industry": "services"})}
        owned = {spec.key for spec in ctx.visible_fields({"industry": "manufacturing", "owns_real_estate": True})}
        assert "real_estate_value" not in services
        assert "inventory_value" not in services
        assert {"real_estate_value", "inventory_value", "capacity_utilization_pct"} <= owned

    def test_describe_questionnaire(self):
        payload = describe_questionnaire()
        assert payload["version"] == QUESTIONNAIRE_VERSION
        by_key = {f["key"]: f for f in payload["fields"]}
        assert by_key["industry"]["required"] is True
        assert by_key["real_estate_value"]["condition"] == {"field": "owns_real_estate", "equals": True}


class TestCrossField:
    def test_ebitda_cannot_exceed_revenue(self):
        exc = _failure({"industry": "services", "annual_revenue": 100_000, "ebitda": 200_000})
        assert exc.codes_for("ebitda") == [OUT_OF_RANGE]

    def test_top5_below_largest(self):
        exc = _failure({"industry": "services", "largest_customer_pct": 40, "top5_customer_pct": 30})
        assert exc.codes_for("top5_customer_pct") == [OUT_OF_RANGE]

    def test_negative_ebitda_allowed(self):
        facts = validate({"industry": "services", "annual_revenue": 100_000, "ebitda": -20_000})
        assert facts.get("ebitda_margin") == pytest.approx(-0.2)


class TestDerivedFacts:
    def test_growth_and_per_employee(self):
        derived = derive_facts({"annual_revenue": 1_100_000, "revenue_prior_year": 1_000_000, "employee_count": 10})
        assert derived["revenue_growth_rate"] == pytest.approx(0.1)
        assert derived["revenue_per_employee"] == pytest.approx(110_000)

    def test_zero_denominators_leave_ratio_absent(self):
        derived = derive_facts({"annual_revenue": 0, "ebitda": 0, "revenue_prior_year": 0, "employee_count": 0})
        assert derived == {}

    def test_debt_to_ebitda_needs_positive_ebitda(self):
        assert "debt_to_ebitda" not in derive_facts({"total_debt": 100, "ebitda": -5})
        assert derive_facts({"total_debt": 100, "ebitda": 50})["debt_to_ebitda"] == pytest.approx(2.0)

    def test_tangible_assets_trace_present_sources_only(self):
        facts = validate({"industry": "services", "owns_real_estate": True,
                          "real_estate_value": 300_000, "ffe_value": 50_000})
        assert facts.get("tangible_asset_value") == 350_000.0
        assert facts.source_fields("tangible_asset_value") == ("real_estate_value", "ffe_value")
