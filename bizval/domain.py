"""Domain types flowing between validator, methodologies, reconciler and generator.

These are frozen dataclasses: facts are immutable once produced for an
evaluation, and estimates/results are produced fresh on every run.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


@dataclass(frozen=True)
class NormalizedFacts:
    """Validated, unit-consistent projection of a questionnaire response.

    Attributes:
        version: Questionnaire version the answers were validated against
        industry: Industry code
        currency: Reporting currency of every money value
        values: Validated answers (absent keys are unanswered or not visible)
        derived: Ratios computed from validated values only
        derived_from: For each derived key, the answer keys it was computed from
    """
    version: str
    industry: str
    currency: str
    values: Mapping[str, Any]
    derived: Mapping[str, float] = field(default_factory=dict)
    derived_from: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))
        object.__setattr__(self, "derived", MappingProxyType(dict(self.derived)))
        object.__setattr__(self, "derived_from", MappingProxyType(dict(self.derived_from)))

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.values:
            return self.values[key]
        return self.derived.get(key, default)

    def has(self, key: str) -> bool:
        return key in self.values or key in self.derived

    def present(self, keys) -> list[str]:
        return [k for k in keys if self.has(k)]

    def completeness(self, keys) -> float:
        keys = list(keys)
        if not keys:
            return 1.0
        return len(self.present(keys)) / len(keys)

    def source_fields(self, key: str) -> tuple[str, ...]:
        """Answer keys a fact ultimately rests on."""
        if key in self.derived_from:
            return self.derived_from[key]
        return (key,)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "industry": self.industry,
            "currency": self.currency,
            "values": dict(self.values),
            "derived": dict(self.derived),
            "derived_from": {k: list(v) for k, v in self.derived_from.items()},
        }


@dataclass(frozen=True)
class MethodologyEstimate:
    """Output of one methodology run.

    ``point_value`` is always ``basis_value * multiple`` so that opportunity
    impacts can be priced on the same basis the valuation used.

    ``confidence`` is calibrated to how far the inputs sit from the
    methodology's sweet spot. ``base_confidence`` is the methodology's prior
    for this industry. It does not move with the financial inputs and is
    what the reconciler weights by.
    """
    methodology_id: str
    point_value: float
    confidence: float
    applicable: bool
    basis: str
    basis_value: float
    multiple: float
    diag: Mapping[str, Any] = field(default_factory=dict)
    base_confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "methodology_id": self.methodology_id,
            "point_value": self.point_value,
            "confidence": self.confidence,
            "base_confidence": self.base_confidence,
            "applicable": self.applicable,
            "basis": self.basis,
            "basis_value": self.basis_value,
            "multiple": self.multiple,
            "diag": dict(self.diag),
        }


@dataclass(frozen=True)
class ValuationResult:
    low: float
    central: float
    high: float
    aggregate_confidence: float
    contributing_estimates: tuple[MethodologyEstimate, ...]
    weights: tuple[float, ...] = ()

    @property
    def dominant(self) -> MethodologyEstimate:
        """Estimate with the largest reconciliation weight (first wins ties)."""
        if not self.weights:
            return self.contributing_estimates[0]
        best = max(range(len(self.weights)), key=lambda i: (self.weights[i], -i))
        return self.contributing_estimates[best]

    def to_dict(self) -> dict[str, Any]:
        return {
            "low": self.low,
            "central": self.central,
            "high": self.high,
            "aggregate_confidence": self.aggregate_confidence,
            "dominant_methodology": self.dominant.methodology_id,
            "contributing_estimates": [
                {**e.to_dict(), "weight": w}
                for e, w in zip(self.contributing_estimates, self.weights or [None] * len(self.contributing_estimates))
            ],
        }


@dataclass(frozen=True)
class Opportunity:
    category: str  # financial | operational | market
    driver: str
    description: str
    estimated_impact_low: float
    estimated_impact_high: float
    priority_score: float
    gap_confidence: float
    based_on_facts: frozenset[str]
    current_value: Any = None
    benchmark_value: Any = None

    @property
    def impact_mid(self) -> float:
        return (self.estimated_impact_low + self.estimated_impact_high) / 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "driver": self.driver,
            "description": self.description,
            "estimated_impact_low": self.estimated_impact_low,
            "estimated_impact_high": self.estimated_impact_high,
            "priority_score": self.priority_score,
            "gap_confidence": self.gap_confidence,
            "based_on_facts": sorted(self.based_on_facts),
            "current_value": self.current_value,
            "benchmark_value": self.benchmark_value,
        }
