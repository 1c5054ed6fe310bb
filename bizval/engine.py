"""Evaluation pipeline: answers -> facts -> estimates -> valuation -> opportunities.

Nothing here touches the database; ``services`` persists what ``evaluate``
returns. Methodologies run concurrently, each bounded by a timeout, and a
methodology that raises or times out is excluded from the run rather than
failing the evaluation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from bizval.benchmarks import BenchmarkTable, get_benchmarks
from bizval.config import EngineSettings, get_settings
from bizval.domain import MethodologyEstimate, NormalizedFacts, Opportunity, ValuationResult
from bizval.errors import InsufficientDataError, MethodologyFailure
from bizval.methodologies import Methodology, default_methodologies
from bizval.opportunities import generate, health_scores
from bizval.questionnaire import IndustryContext
from bizval.reconciler import reconcile
from bizval.validator import validate

log = logging.getLogger(__name__)

NOT_APPLICABLE = "not_applicable"
FAILED = "failed"
TIMEOUT = "timeout"


@dataclass
class EngineResult:
    facts: NormalizedFacts
    valuation: ValuationResult | None
    opportunities: list[Opportunity] = field(default_factory=list)
    excluded: list[dict[str, str]] = field(default_factory=list)
    data_confidence: float = 0.0
    health: dict[str, Any] | None = None

    @property
    def insufficient_data(self) -> bool:
        return self.valuation is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "facts": self.facts.to_dict(),
            "insufficient_data": self.insufficient_data,
            "valuation": self.valuation.to_dict() if self.valuation else None,
            "data_confidence": self.data_confidence,
            "excluded_methodologies": list(self.excluded),
            "opportunities": [o.to_dict() for o in self.opportunities],
            "health": self.health,
        }


# ---------------------------------------------------------------------------
# Completeness
# ---------------------------------------------------------------------------


def check_completeness(facts: NormalizedFacts, settings: EngineSettings) -> None:
    """Raise InsufficientDataError unless the essential-field threshold is met."""
    essential = settings.essential_fields
    missing = [k for k in essential if not facts.has(k)]
    present = len(essential) - len(missing)
    has_basis = any(facts.has(k) for k in settings.financial_basis_fields)
    if present < settings.min_essential_fields or not has_basis:
        raise InsufficientDataError(missing)


def data_confidence(facts: NormalizedFacts, context: IndustryContext) -> float:
    """Share of the fields visible to this respondent that were answered."""
    visible = context.visible_fields(facts.values)
    if not visible:
        return 0.0
    answered = sum(1 for spec in visible if spec.key in facts.values)
    return round(answered / len(visible), 4)


# ---------------------------------------------------------------------------
# Methodology fan-out
# ---------------------------------------------------------------------------


async def _run_one(methodology: Methodology, facts: NormalizedFacts, timeout: float) -> MethodologyEstimate:
    try:
        return await asyncio.wait_for(asyncio.to_thread(methodology.estimate, facts), timeout)
    except asyncio.TimeoutError:
        raise
    except Exception as exc:
        raise MethodologyFailure(methodology.methodology_id, str(exc)) from exc


async def run_methodologies(
    facts: NormalizedFacts,
    methodologies: Sequence[Methodology],
    timeout: float,
) -> tuple[list[MethodologyEstimate], list[dict[str, str]]]:
    """Run every applicable methodology concurrently.

    Returns (estimates in registry order, exclusions).
    """
    excluded: list[dict[str, str]] = []
    runnable: list[Methodology] = []
    for m in methodologies:
        try:
            ok = m.applicable(facts)
        except Exception as exc:
            log.warning("Applicability check for %s failed: %s", m.methodology_id, exc)
            excluded.append({"methodology_id": m.methodology_id, "reason": FAILED, "detail": str(exc)})
            continue
        if ok:
            runnable.append(m)
        else:
            excluded.append({"methodology_id": m.methodology_id, "reason": NOT_APPLICABLE, "detail": ""})

    outcomes = await asyncio.gather(
        *(_run_one(m, facts, timeout) for m in runnable),
        return_exceptions=True,
    )

    estimates: list[MethodologyEstimate] = []
    for m, outcome in zip(runnable, outcomes):
        if isinstance(outcome, asyncio.TimeoutError):
            log.warning("Methodology %s timed out after %.1fs", m.methodology_id, timeout)
            excluded.append({"methodology_id": m.methodology_id, "reason": TIMEOUT, "detail": f"{timeout}s"})
        elif isinstance(outcome, BaseException):
            log.warning("Methodology %s failed: %s", m.methodology_id, outcome)
            excluded.append({"methodology_id": m.methodology_id, "reason": FAILED, "detail": str(outcome)})
        else:
            estimates.append(outcome)
    return estimates, excluded


# ---------------------------------------------------------------------------
# Full evaluation
# ---------------------------------------------------------------------------


async def evaluate(
    answers: Mapping[str, Any],
    benchmarks: BenchmarkTable | None = None,
    settings: EngineSettings | None = None,
    context: IndustryContext | None = None,
    methodologies: Sequence[Methodology] | None = None,
) -> EngineResult:
    """Validate and value one questionnaire response.

    Raises:
        ValidationFailure: any answer is malformed, out of range or not visible.
        InsufficientDataError: the completeness threshold is not met.
    """
    cfg = settings or get_settings().engine
    table = benchmarks or get_benchmarks()
    ctx = context or IndustryContext.default()

    facts = validate(answers, ctx)
    check_completeness(facts, cfg)

    registry = methodologies if methodologies is not None else default_methodologies(table)
    estimates, excluded = await run_methodologies(facts, registry, cfg.methodology_timeout_seconds)
    valuation = reconcile(estimates, cfg)
    if valuation is None:
        log.info("No applicable methodology for industry %s; flagging insufficient data", facts.industry)
    opportunities = generate(facts, valuation, table, cfg)

    return EngineResult(
        facts=facts,
        valuation=valuation,
        opportunities=opportunities,
        excluded=excluded,
        data_confidence=data_confidence(facts, ctx),
        health=health_scores(facts, table),
    )
