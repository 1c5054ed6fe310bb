"""Valuation methodologies.

Each methodology is an independent strategy over the same NormalizedFacts:
``applicable(facts)`` is a hard gate, ``estimate(facts)`` returns a
MethodologyEstimate with its own confidence. Methodologies never see each
other's output.

To add a methodology:
1. Subclass ``Methodology`` and set ``methodology_id`` and ``basis``
2. Implement ``applicable()`` and ``estimate()``
3. Append it in ``default_methodologies()``
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any

from bizval.benchmarks import BenchmarkTable, IndustryBenchmark, MultipleBand
from bizval.domain import MethodologyEstimate, NormalizedFacts

CONFIDENCE_FLOOR = 0.2

KEY_PERSON_ADJUSTMENT = {"low": 1.05, "medium": 1.0, "high": 0.9, "critical": 0.8}
MANAGEMENT_DEPTH_ADJUSTMENT = {"shallow": 0.9, "adequate": 1.0, "strong": 1.05, "exceptional": 1.1}
ASSET_HEAVY_INDUSTRIES = frozenset({"manufacturing", "real_estate", "retail"})


def log_calibration(value: float, low: float, high: float, floor: float = CONFIDENCE_FLOOR) -> float:
    """1.0 inside [low, high]; decays with log-distance outside, never below floor."""
    if low <= value <= high:
        return 1.0
    if value <= 0:
        return floor
    distance = math.log(value / high) if value > high else math.log(low / value)
    return max(floor, 1.0 / (1.0 + distance))


def linear_calibration(value: float, low: float, high: float, floor: float = CONFIDENCE_FLOOR) -> float:
    """Like log_calibration, for ranges that span zero (growth rates)."""
    if low <= value <= high:
        return 1.0
    width = high - low
    distance = (value - high) / width if value > high else (low - value) / width
    return max(floor, 1.0 / (1.0 + distance))


def growth_adjustment(growth: float) -> float:
    if growth > 0.30:
        return 1.3
    if growth > 0.15:
        return 1.15
    if growth < 0:
        return 0.8
    return 1.0


class Methodology(ABC):
    """Base class for valuation methodologies."""

    methodology_id: str = ""
    basis: str = ""
    base_confidence: float = 0.5
    optional_facts: tuple[str, ...] = ()

    def __init__(self, benchmarks: BenchmarkTable):
        self.benchmarks = benchmarks

    def benchmark(self, facts: NormalizedFacts) -> IndustryBenchmark | None:
        return self.benchmarks.get(facts.industry)

    @abstractmethod
    def applicable(self, facts: NormalizedFacts) -> bool:
        """Whether the facts carry enough in-range input for an estimate."""

    @abstractmethod
    def estimate(self, facts: NormalizedFacts) -> MethodologyEstimate:
        """Compute the estimate; only called when applicable() is true."""

    def base_for(self, facts: NormalizedFacts) -> float:
        return self.base_confidence

    def _confidence(self, facts: NormalizedFacts, calibration: float) -> float:
        completeness = facts.completeness(self.optional_facts)
        raw = self.base_for(facts) * (0.7 + 0.3 * completeness) * calibration
        return max(0.0, min(1.0, raw))

    def _result(self, facts: NormalizedFacts, basis_value: float, multiple: float,
                calibration: float, diag: dict[str, Any]) -> MethodologyEstimate:
        return MethodologyEstimate(
            methodology_id=self.methodology_id,
            point_value=basis_value * multiple,
            confidence=self._confidence(facts, calibration),
            applicable=True,
            basis=self.basis,
            basis_value=basis_value,
            multiple=multiple,
            diag={**diag, "calibration": calibration,
                  "completeness": facts.completeness(self.optional_facts)},
            base_confidence=self.base_for(facts),
        )


class RevenueMultiple(Methodology):
    """Industry revenue multiple adjusted for growth, recurrence and maturity."""

    methodology_id = "revenue_multiple"
    basis = "annual_revenue"
    base_confidence = 0.55
    optional_facts = ("revenue_growth_rate", "recurring_revenue_pct", "years_in_business")
    calibration_range = (250_000.0, 50_000_000.0)

    def _band(self, facts: NormalizedFacts) -> MultipleBand | None:
        bench = self.benchmark(facts)
        return bench.revenue_multiple if bench else None

    def applicable(self, facts: NormalizedFacts) -> bool:
        return self._band(facts) is not None and (facts.get("annual_revenue") or 0) > 0

    def estimate(self, facts: NormalizedFacts) -> MethodologyEstimate:
        band = self._band(facts)
        revenue = facts.get("annual_revenue")
        multiple = band.median
        growth = facts.get("revenue_growth_rate")
        if growth is not None:
            multiple *= growth_adjustment(growth)
        recurring = facts.get("recurring_revenue_pct")
        if recurring is not None:
            multiple *= 1.0 + (recurring / 100.0) * 0.3
        years = facts.get("years_in_business")
        if years is not None:
            if years < 2:
                multiple *= 0.8
            elif years > 10:
                multiple *= 1.1
        clipped = band.clip(multiple)
        calibration = log_calibration(revenue, *self.calibration_range)
        return self._result(facts, revenue, clipped, calibration, {
            "band_median": band.median, "raw_multiple": multiple,
        })


class EbitdaMultiple(Methodology):
    """Industry EBITDA multiple adjusted for growth and risk concentration."""

    methodology_id = "ebitda_multiple"
    basis = "ebitda"
    base_confidence = 0.75
    optional_facts = (
        "annual_revenue", "revenue_growth_rate", "key_person_risk",
        "management_depth", "largest_customer_pct",
    )
    margin_range = (0.03, 0.45)

    def _band(self, facts: NormalizedFacts) -> MultipleBand | None:
        bench = self.benchmark(facts)
        return bench.ebitda_multiple if bench else None

    def applicable(self, facts: NormalizedFacts) -> bool:
        return self._band(facts) is not None and (facts.get("ebitda") or 0) > 0

    def estimate(self, facts: NormalizedFacts) -> MethodologyEstimate:
        band = self._band(facts)
        ebitda = facts.get("ebitda")
        multiple = band.median
        growth = facts.get("revenue_growth_rate")
        if growth is not None:
            multiple *= growth_adjustment(growth)
        multiple *= KEY_PERSON_ADJUSTMENT.get(facts.get("key_person_risk"), 1.0)
        multiple *= MANAGEMENT_DEPTH_ADJUSTMENT.get(facts.get("management_depth"), 1.0)
        largest = facts.get("largest_customer_pct")
        if largest is not None:
            if largest > 50:
                multiple *= 0.8
            elif largest > 25:
                multiple *= 0.9
        clipped = band.clip(multiple)
        margin = facts.get("ebitda_margin")
        calibration = log_calibration(margin, *self.margin_range) if margin is not None else 1.0
        return self._result(facts, ebitda, clipped, calibration, {
            "band_median": band.median, "raw_multiple": multiple,
        })


class CapitalizedEarnings(Methodology):
    """Income approach: normalized cash flow capitalized at (r - g)."""

    methodology_id = "capitalized_earnings"
    basis = "ebitda"
    base_confidence = 0.65
    optional_facts = ("total_debt", "customer_retention_pct", "recurring_revenue_pct")
    cash_conversion = 0.75
    max_growth = 0.05
    min_growth = -0.05
    growth_range = (-0.10, 0.30)

    def applicable(self, facts: NormalizedFacts) -> bool:
        bench = self.benchmark(facts)
        return (
            bench is not None and bench.discount_rate is not None
            and (facts.get("ebitda") or 0) > 0
            and facts.has("revenue_growth_rate")
            and facts.has("years_in_business")
        )

    def estimate(self, facts: NormalizedFacts) -> MethodologyEstimate:
        bench = self.benchmark(facts)
        ebitda = facts.get("ebitda")
        growth = facts.get("revenue_growth_rate")
        years = facts.get("years_in_business")
        rate = bench.discount_rate
        if years < 2:
            rate += 0.03
        elif years < 5:
            rate += 0.02
        elif years > 15:
            rate -= 0.01
        g = max(self.min_growth, min(self.max_growth, growth))
        if rate - g <= 0:
            raise ValueError(f"discount rate {rate:.3f} does not exceed growth {g:.3f}")
        multiple = self.cash_conversion * (1.0 + g) / (rate - g)
        calibration = linear_calibration(growth, *self.growth_range)
        return self._result(facts, ebitda, multiple, calibration, {
            "discount_rate": rate, "capitalization_growth": g,
        })


class AssetBased(Methodology):
    """Adjusted net tangible assets; requires owned real estate or FF&E."""

    methodology_id = "asset_based"
    basis = "net_asset_value"
    base_confidence = 0.55
    optional_facts = ("total_debt", "inventory_value", "annual_revenue")
    intensity_range = (0.1, 3.0)

    def base_for(self, facts: NormalizedFacts) -> float:
        return 0.8 if facts.industry in ASSET_HEAVY_INDUSTRIES else self.base_confidence

    def _net_assets(self, facts: NormalizedFacts) -> float:
        return (facts.get("tangible_asset_value") or 0.0) - (facts.get("total_debt") or 0.0)

    def applicable(self, facts: NormalizedFacts) -> bool:
        has_hard_assets = (facts.get("real_estate_value") or 0) > 0 or (facts.get("ffe_value") or 0) > 0
        return has_hard_assets and self._net_assets(facts) > 0

    def estimate(self, facts: NormalizedFacts) -> MethodologyEstimate:
        net = self._net_assets(facts)
        revenue = facts.get("annual_revenue")
        calibration = 1.0
        if revenue:
            calibration = log_calibration(facts.get("tangible_asset_value") / revenue, *self.intensity_range)
        return self._result(facts, net, 1.0, calibration, {
            "tangible_asset_value": facts.get("tangible_asset_value"),
        })


def default_methodologies(benchmarks: BenchmarkTable) -> list[Methodology]:
    """Registry order; also the order contributing estimates are reported in."""
    return [
        RevenueMultiple(benchmarks),
        EbitdaMultiple(benchmarks),
        CapitalizedEarnings(benchmarks),
        AssetBased(benchmarks),
    ]
