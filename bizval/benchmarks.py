"""Industry benchmark table: multiples, discount rates and per-driver targets.

The table is a read-only lookup passed explicitly into methodologies and the
opportunity generator. It is refreshed out-of-band (YAML file) and never
mutated at runtime, so tests can substitute a fixed table.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from bizval.config import get_settings, load_yaml

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MultipleBand:
    low: float
    median: float
    high: float

    def clip(self, value: float) -> float:
        return max(self.low, min(self.high, value))

    def contains(self, value: float) -> bool:
        return self.low <= value <= self.high


@dataclass(frozen=True)
class IndustryBenchmark:
    industry: str
    revenue_multiple: MultipleBand | None = None
    ebitda_multiple: MultipleBand | None = None
    discount_rate: float | None = None
    reliability: float = 0.65
    drivers: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "drivers", MappingProxyType(dict(self.drivers)))


class BenchmarkTable:
    """Read-only mapping of industry code -> IndustryBenchmark."""

    def __init__(self, industries: Mapping[str, IndustryBenchmark]):
        self._industries = MappingProxyType(dict(industries))

    def get(self, industry: str | None) -> IndustryBenchmark | None:
        if industry is None:
            return None
        return self._industries.get(industry)

    def driver_benchmark(self, industry: str | None, driver_fact: str) -> float | None:
        bench = self.get(industry)
        if bench is None:
            return None
        return bench.drivers.get(driver_fact)

    @property
    def industries(self) -> list[str]:
        return sorted(self._industries)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> BenchmarkTable:
        entries: dict[str, IndustryBenchmark] = {}
        for code, raw in (payload.get("industries") or {}).items():
            if not isinstance(raw, dict):
                log.warning("Skipping malformed benchmark entry for %r", code)
                continue
            entries[code] = IndustryBenchmark(
                industry=code,
                revenue_multiple=_band(raw.get("revenue_multiple")),
                ebitda_multiple=_band(raw.get("ebitda_multiple")),
                discount_rate=raw.get("discount_rate"),
                reliability=float(raw.get("reliability", 0.65)),
                drivers={k: float(v) for k, v in (raw.get("drivers") or {}).items()},
            )
        return cls(entries)

    @classmethod
    def from_yaml(cls, path: Path) -> BenchmarkTable:
        return cls.from_mapping(load_yaml(path))

    @classmethod
    def default(cls) -> BenchmarkTable:
        return cls.from_mapping(DEFAULT_BENCHMARKS)


def _band(value: Any) -> MultipleBand | None:
    if not value:
        return None
    low, median, high = (float(v) for v in value)
    return MultipleBand(low, median, high)


# ---------------------------------------------------------------------------
# Default table
# ---------------------------------------------------------------------------

# Driver targets shared by every industry unless overridden below.
# management_depth / key_person_risk are ordinal indexes into the
# questionnaire's level tuples.
_COMMON_DRIVERS: dict[str, float] = {
    "largest_customer_pct": 15.0,
    "customer_retention_pct": 85.0,
    "owner_hours_per_week": 40.0,
    "management_depth": 2.0,
    "key_person_risk": 1.0,
    "debt_to_ebitda": 2.5,
    "revenue_growth_rate": 0.08,
    "recurring_revenue_pct": 30.0,
}


def _drivers(**overrides: float) -> dict[str, float]:
    return {**_COMMON_DRIVERS, **overrides}


DEFAULT_BENCHMARKS: dict[str, Any] = {
    "industries": {
        "technology": {
            "revenue_multiple": [2.0, 4.5, 12.0], "ebitda_multiple": [8.0, 15.0, 25.0],
            "discount_rate": 0.225, "reliability": 0.70,
            "drivers": _drivers(ebitda_margin=0.20, recurring_revenue_pct=50.0, revenue_growth_rate=0.15),
        },
        "software": {
            "revenue_multiple": [3.0, 6.0, 15.0], "ebitda_multiple": [10.0, 20.0, 35.0],
            "discount_rate": 0.225, "reliability": 0.65,
            "drivers": _drivers(ebitda_margin=0.25, recurring_revenue_pct=70.0, revenue_growth_rate=0.20,
                                customer_retention_pct=90.0),
        },
        "healthcare": {
            "revenue_multiple": [1.5, 3.0, 8.0], "ebitda_multiple": [6.0, 12.0, 20.0],
            "discount_rate": 0.185, "reliability": 0.80,
            "drivers": _drivers(ebitda_margin=0.15),
        },
        "finance": {
            "revenue_multiple": [1.0, 2.5, 6.0], "ebitda_multiple": [5.0, 10.0, 18.0],
            "discount_rate": 0.205, "reliability": 0.75,
            "drivers": _drivers(ebitda_margin=0.25, recurring_revenue_pct=50.0),
        },
        "manufacturing": {
            "revenue_multiple": [0.8, 1.5, 3.0], "ebitda_multiple": [4.0, 8.0, 15.0],
            "discount_rate": 0.195, "reliability": 0.85,
            "drivers": _drivers(ebitda_margin=0.12, recurring_revenue_pct=20.0, capacity_utilization_pct=85.0,
                                debt_to_ebitda=3.0),
        },
        "retail": {
            "revenue_multiple": [0.5, 1.2, 2.5], "ebitda_multiple": [3.0, 6.0, 12.0],
            "discount_rate": 0.215, "reliability": 0.75,
            "drivers": _drivers(ebitda_margin=0.08, recurring_revenue_pct=10.0, largest_customer_pct=5.0),
        },
        "services": {
            "revenue_multiple": [1.0, 2.0, 4.0], "ebitda_multiple": [4.0, 8.0, 15.0],
            "discount_rate": 0.205, "reliability": 0.70,
            "drivers": _drivers(ebitda_margin=0.18),
        },
        "real_estate": {
            "revenue_multiple": [2.0, 4.0, 8.0], "ebitda_multiple": [8.0, 15.0, 25.0],
            "discount_rate": 0.175, "reliability": 0.90,
            "drivers": _drivers(ebitda_margin=0.35, recurring_revenue_pct=80.0, debt_to_ebitda=5.0),
        },
        "e_commerce": {
            "revenue_multiple": [1.5, 3.0, 8.0], "ebitda_multiple": [6.0, 12.0, 20.0],
            "discount_rate": 0.225, "reliability": 0.60,
            "drivers": _drivers(ebitda_margin=0.10, revenue_growth_rate=0.15, largest_customer_pct=5.0),
        },
    },
}


@lru_cache(maxsize=1)
def get_benchmarks() -> BenchmarkTable:
    """Benchmark table configured for this process (YAML file or built-in default)."""
    path = get_settings().benchmark_file
    if path is not None and Path(path).exists():
        log.info("Loading benchmark table from %s", path)
        return BenchmarkTable.from_yaml(Path(path))
    return BenchmarkTable.default()
