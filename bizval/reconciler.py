"""Reconcile independent methodology estimates into one ValuationResult."""
from __future__ import annotations

import math
from typing import Sequence

from bizval.config import EngineSettings
from bizval.domain import MethodologyEstimate, ValuationResult


def reconcile(
    estimates: Sequence[MethodologyEstimate],
    settings: EngineSettings | None = None,
) -> ValuationResult | None:
    """Blend of applicable estimates weighted by methodology base confidence.

    The band widens with disagreement between methodologies (weighted
    standard deviation) and never narrows below a floor proportional to the
    central value. Weights never depend on calibrated confidence, so with a
    fixed set of contributing methodologies the central value moves in the
    same direction as every point value. Aggregate confidence is the
    weighted calibrated confidence, discounted when fewer than the
    target number of methodologies contributed.

    Returns None when there is nothing to reconcile.
    """
    cfg = settings or EngineSettings()
    usable = [e for e in estimates if e.applicable]
    if not usable:
        return None

    total = sum(e.base_confidence for e in usable)
    if total > 0:
        weights = [e.base_confidence / total for e in usable]
    else:
        weights = [1.0 / len(usable)] * len(usable)

    central = sum(w * e.point_value for w, e in zip(weights, usable))
    variance = sum(w * (e.point_value - central) ** 2 for w, e in zip(weights, usable))
    spread = math.sqrt(variance)

    single = len(usable) == 1
    floor = cfg.single_methodology_band if single else cfg.min_band
    half_width = max(spread, floor * central)
    low = max(0.0, central - half_width)
    high = central + half_width

    mean_confidence = sum(w * e.confidence for w, e in zip(weights, usable))
    coverage = min(1.0, len(usable) / cfg.target_methodology_count) ** cfg.coverage_exponent
    confidence = mean_confidence * coverage
    if single:
        confidence = min(confidence, cfg.single_methodology_confidence_ceiling)
    confidence = max(0.0, min(1.0, confidence))

    return ValuationResult(
        low=low,
        central=central,
        high=high,
        aggregate_confidence=confidence,
        contributing_estimates=tuple(usable),
        weights=tuple(weights),
    )
