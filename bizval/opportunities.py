"""Opportunity generator: benchmark gaps priced against the valuation.

For every tracked driver with a present fact and an industry benchmark, the
gap between the two is converted into a relative uplift of the dominant
methodology's basis and priced at that methodology's multiple. The result
is a deterministic, fully ranked list; callers apply tier caps.

The same gaps, scored 0-100 per driver and averaged per category, give the
financial, operational and market health scores.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from bizval.benchmarks import BenchmarkTable, IndustryBenchmark
from bizval.config import EngineSettings
from bizval.domain import NormalizedFacts, Opportunity, ValuationResult
from bizval.questionnaire import FIELDS_BY_KEY, KEY_PERSON_RISK_LEVELS, MANAGEMENT_DEPTH_LEVELS

CATEGORY_ORDER = {"financial": 0, "operational": 1, "market": 2}

DERIVED_RELIABILITY = 0.85
SELF_ASSESSED_RELIABILITY = 0.8
REPORTED_RELIABILITY = 1.0

ORDINAL_LEVELS: dict[str, tuple[str, ...]] = {
    "management_depth": MANAGEMENT_DEPTH_LEVELS,
    "key_person_risk": KEY_PERSON_RISK_LEVELS,
}


@dataclass(frozen=True)
class Driver:
    key: str
    category: str
    fact: str
    higher_is_better: bool
    uplift: Callable[[float, float], float]  # (gap, current) -> relative basis uplift
    template: str


DRIVERS: tuple[Driver, ...] = (
    Driver("ebitda_margin", "financial", "ebitda_margin", True,
           lambda gap, cur: gap / max(cur, 0.01),
           "Raise EBITDA margin from {current:.1%} toward the industry benchmark of {benchmark:.1%}"),
    Driver("recurring_revenue", "financial", "recurring_revenue_pct", True,
           lambda gap, cur: gap / 100.0 * 0.5,
           "Grow recurring revenue from {current:.0f}% toward {benchmark:.0f}% of sales"),
    Driver("leverage", "financial", "debt_to_ebitda", False,
           lambda gap, cur: gap * 0.03,
           "Reduce debt from {current:.1f}x EBITDA toward {benchmark:.1f}x"),
    Driver("management_depth", "operational", "management_depth", True,
           lambda gap, cur: gap * 0.05,
           "Strengthen the management team from {current} toward {benchmark}"),
    Driver("owner_dependency", "operational", "owner_hours_per_week", False,
           lambda gap, cur: gap / max(cur, 1.0) * 0.2,
           "Reduce owner involvement from {current:.0f} toward {benchmark:.0f} hours per week"),
    Driver("key_person_risk", "operational", "key_person_risk", False,
           lambda gap, cur: gap * 0.04,
           "Lower key person risk from {current} toward {benchmark}"),
    Driver("capacity_utilization", "operational", "capacity_utilization_pct", True,
           lambda gap, cur: gap / 100.0 * 0.5,
           "Raise capacity utilization from {current:.0f}% toward {benchmark:.0f}%"),
    Driver("customer_concentration", "market", "largest_customer_pct", False,
           lambda gap, cur: gap / 100.0 * 0.5,
           "Diversify revenue: largest customer is {current:.0f}% of sales versus {benchmark:.0f}% typical"),
    Driver("customer_retention", "market", "customer_retention_pct", True,
           lambda gap, cur: gap / 100.0 * 0.4,
           "Improve customer retention from {current:.0f}% toward {benchmark:.0f}%"),
    Driver("revenue_growth", "market", "revenue_growth_rate", True,
           lambda gap, cur: gap,
           "Accelerate revenue growth from {current:.1%} toward {benchmark:.1%} a year"),
)


def _numeric(fact: str, value):
    """Ordinal facts are compared by their level index."""
    levels = ORDINAL_LEVELS.get(fact)
    if levels is None:
        return float(value)
    return float(levels.index(value))


def _display(fact: str, numeric: float):
    levels = ORDINAL_LEVELS.get(fact)
    if levels is None:
        return numeric
    return levels[max(0, min(len(levels) - 1, int(round(numeric))))]


def measure_drivers(facts: NormalizedFacts, bench: IndustryBenchmark) -> list[tuple[Driver, float, float, float]]:
    """(driver, current, target, gap) for every driver with a fact and a target.

    A positive gap means the business trails the benchmark.
    """
    measured = []
    for driver in DRIVERS:
        if not facts.has(driver.fact):
            continue
        target = bench.drivers.get(driver.fact)
        if target is None:
            continue
        current = _numeric(driver.fact, facts.get(driver.fact))
        gap = target - current if driver.higher_is_better else current - target
        measured.append((driver, current, target, gap))
    return measured


def fact_reliability(facts: NormalizedFacts, fact: str) -> float:
    if fact in facts.derived:
        return DERIVED_RELIABILITY
    spec = FIELDS_BY_KEY.get(fact)
    if spec is not None and spec.kind == "enum":
        return SELF_ASSESSED_RELIABILITY
    return REPORTED_RELIABILITY


def _priority_key(opp: Opportunity) -> tuple:
    return (-opp.priority_score, -opp.impact_mid, CATEGORY_ORDER[opp.category], opp.driver)


def generate(
    facts: NormalizedFacts,
    valuation: ValuationResult | None,
    benchmarks: BenchmarkTable,
    settings: EngineSettings | None = None,
) -> list[Opportunity]:
    """Full ranked opportunity list; empty when there is no valuation."""
    if valuation is None or valuation.central <= 0:
        return []
    cfg = settings or EngineSettings()
    bench = benchmarks.get(facts.industry)
    if bench is None:
        return []

    dominant = valuation.dominant
    low_ratio = valuation.low / valuation.central
    high_ratio = valuation.high / valuation.central

    results: list[Opportunity] = []
    for driver, current, target, gap in measure_drivers(facts, bench):
        if gap <= 0:
            continue
        uplift = min(cfg.max_uplift, max(0.0, driver.uplift(gap, current)))
        if uplift <= 0:
            continue

        mid = dominant.basis_value * uplift * dominant.multiple
        gap_confidence = dominant.confidence * fact_reliability(facts, driver.fact) * bench.reliability
        priority = round(min(1.0, mid / valuation.central) * gap_confidence, 6)
        shown_current = _display(driver.fact, current)
        shown_target = _display(driver.fact, target)
        results.append(Opportunity(
            category=driver.category,
            driver=driver.key,
            description=driver.template.format(current=shown_current, benchmark=shown_target),
            estimated_impact_low=mid * low_ratio,
            estimated_impact_high=mid * high_ratio,
            priority_score=priority,
            gap_confidence=gap_confidence,
            based_on_facts=frozenset(facts.source_fields(driver.fact)),
            current_value=shown_current,
            benchmark_value=shown_target,
        ))

    results.sort(key=_priority_key)
    return results


# ---------------------------------------------------------------------------
# Health scores
# ---------------------------------------------------------------------------


def driver_score(current: float, target: float, gap: float) -> float:
    """0-100; 100 at or beyond the benchmark, falling with the relative gap."""
    if gap <= 0:
        return 100.0
    scale = max(abs(current), abs(target))
    if scale == 0:
        return 100.0
    return round(100.0 * (1.0 - min(1.0, gap / scale)), 1)


def health_scores(facts: NormalizedFacts, benchmarks: BenchmarkTable) -> dict | None:
    """Per-category health from the same driver gaps opportunities are priced on.

    Returns None for an industry without benchmarks. A category with no
    measured driver scores None and is left out of the overall score.
    """
    bench = benchmarks.get(facts.industry)
    if bench is None:
        return None
    by_category: dict[str, dict[str, float]] = {c: {} for c in CATEGORY_ORDER}
    for driver, current, target, gap in measure_drivers(facts, bench):
        by_category[driver.category][driver.key] = driver_score(current, target, gap)

    categories = {}
    for category, drivers in by_category.items():
        score = round(sum(drivers.values()) / len(drivers), 1) if drivers else None
        categories[category] = {"score": score, "drivers": drivers}
    scored = [c["score"] for c in categories.values() if c["score"] is not None]
    return {
        "overall": round(sum(scored) / len(scored), 1) if scored else None,
        "categories": categories,
    }
