"""Evaluation lifecycle: shared business logic for the API and CLI.

Every mutating operation checks ownership, does its work in the caller's
session and commits once; a failed commit is rolled back and surfaced as a
retryable CascadeTransactionFailure so no partial aggregate is ever visible.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bizval.benchmarks import BenchmarkTable
from bizval.config import EngineSettings, get_settings
from bizval.engine import EngineResult, evaluate
from bizval.errors import (
    OUT_OF_RANGE,
    CascadeTransactionFailure,
    EvaluationNotFound,
    EvaluationStateError,
    FieldIssue,
    NotOwner,
    ValidationFailure,
)
from bizval.models import Evaluation, EvaluationOpportunity, ImprovementProgress
from bizval.opportunities import CATEGORY_ORDER
from bizval.utils import json_dump, json_parse, utcnow

log = logging.getLogger(__name__)

PROGRESS_STATUSES = ("pending", "in_progress", "done")

STATE_COMPUTED = "computed"
STATE_SUPERSEDED = "superseded"
STATE_SOFT_DELETED = "soft_deleted"

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _commit(session: Session, what: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.error("Transaction failed while %s: %s", what, exc)
        raise CascadeTransactionFailure(f"Could not persist {what}; no changes were saved") from exc


def _authorize(ev: Evaluation, actor_id: str, elevated: bool) -> None:
    if not elevated and ev.owner_id != actor_id:
        raise NotOwner(ev.id, actor_id)


def _load(session: Session, evaluation_id: int) -> Evaluation:
    ev = session.get(Evaluation, evaluation_id)
    if ev is None:
        raise EvaluationNotFound("Evaluation", evaluation_id)
    return ev


def _build_evaluation(owner_id: str, answers: Mapping[str, Any], result: EngineResult) -> Evaluation:
    facts = result.facts
    valuation = result.valuation
    ev = Evaluation(
        owner_id=owner_id,
        version=1,
        questionnaire_version=facts.version,
        industry=facts.industry,
        currency=facts.currency,
        created_at=utcnow(),
        answers_json=json_dump(dict(answers)),
        facts_json=json_dump(facts.to_dict()),
        insufficient_data=result.insufficient_data,
        data_confidence=result.data_confidence,
        excluded_json=json_dump(result.excluded),
        health_json=json_dump(result.health),
    )
    if valuation is not None:
        ev.valuation_low = valuation.low
        ev.valuation_central = valuation.central
        ev.valuation_high = valuation.high
        ev.methodology_confidence = valuation.aggregate_confidence
        ev.dominant_methodology = valuation.dominant.methodology_id
        ev.estimates_json = json_dump(valuation.to_dict()["contributing_estimates"])
    for rank, opp in enumerate(result.opportunities, start=1):
        ev.opportunities.append(EvaluationOpportunity(
            rank=rank,
            category=opp.category,
            driver=opp.driver,
            description=opp.description,
            impact_low=opp.estimated_impact_low,
            impact_high=opp.estimated_impact_high,
            priority_score=opp.priority_score,
            gap_confidence=opp.gap_confidence,
            based_on_json=json_dump(sorted(opp.based_on_facts)),
            current_value=json_dump(opp.current_value),
            benchmark_value=json_dump(opp.benchmark_value),
        ))
    return ev


def merge_answers(prior: Mapping[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay updates on prior answers; a None value removes the key."""
    merged = dict(prior)
    for key, value in updates.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Mutating operations
# ---------------------------------------------------------------------------


async def create_evaluation(
    session: Session,
    owner_id: str,
    answers: Mapping[str, Any],
    *,
    benchmarks: BenchmarkTable | None = None,
    settings: EngineSettings | None = None,
) -> Evaluation:
    """Validate, value and persist a new evaluation.

    Raises ValidationFailure or InsufficientDataError before anything is
    written; CascadeTransactionFailure if the commit fails.
    """
    result = await evaluate(answers, benchmarks=benchmarks, settings=settings)
    ev = _build_evaluation(owner_id, answers, result)
    session.add(ev)
    _commit(session, "evaluation")
    log.info("Created evaluation %d for %s (insufficient_data=%s)", ev.id, owner_id, ev.insufficient_data)
    return ev


async def re_evaluate(
    session: Session,
    prior_id: int,
    answers: Mapping[str, Any],
    actor_id: str,
    elevated: bool = False,
    merge: bool = True,
    *,
    benchmarks: BenchmarkTable | None = None,
    settings: EngineSettings | None = None,
) -> Evaluation:
    """Create a successor of ``prior_id``; the prior row is never touched."""
    prior = _load(session, prior_id)
    _authorize(prior, actor_id, elevated)
    if prior.deleted_at is not None:
        raise EvaluationStateError(f"Evaluation {prior_id} is deleted and cannot be re-evaluated")

    prior_answers = json_parse(prior.answers_json, {})
    combined = merge_answers(prior_answers, answers) if merge else {k: v for k, v in answers.items() if v is not None}
    owner_id, version = prior.owner_id, prior.version + 1

    result = await evaluate(combined, benchmarks=benchmarks, settings=settings)
    ev = _build_evaluation(owner_id, combined, result)
    ev.version = version
    ev.supersedes_id = prior_id
    session.add(ev)
    _commit(session, "re-evaluation")
    log.info("Re-evaluated %d -> %d (version %d) by %s", prior_id, ev.id, version, actor_id)
    return ev


def soft_delete(session: Session, evaluation_id: int, actor_id: str, elevated: bool = False) -> Evaluation:
    """Mark an evaluation, its opportunities and its progress rows deleted."""
    ev = _load(session, evaluation_id)
    _authorize(ev, actor_id, elevated)
    if ev.deleted_at is not None:
        raise EvaluationStateError(f"Evaluation {evaluation_id} is already deleted")

    now = utcnow()
    ev.deleted_at = now
    ev.deleted_by = actor_id
    for opp in ev.opportunities:
        if opp.deleted_at is None:
            opp.deleted_at = now
    for row in list_progress(session, evaluation_id):
        row.deleted_at = now
    _commit(session, "soft delete")
    log.info("Soft-deleted evaluation %d by %s", evaluation_id, actor_id)
    return ev


def record_progress(
    session: Session,
    evaluation_id: int,
    opportunity_id: int,
    status: str,
    actor_id: str,
    observed_impact: float | None = None,
    elevated: bool = False,
) -> ImprovementProgress:
    """Upsert the progress row for one opportunity of a live evaluation."""
    if status not in PROGRESS_STATUSES:
        raise ValidationFailure([FieldIssue(
            OUT_OF_RANGE, "status", f"must be one of: {', '.join(PROGRESS_STATUSES)}",
        )])
    ev = _load(session, evaluation_id)
    _authorize(ev, actor_id, elevated)
    if ev.deleted_at is not None:
        raise EvaluationStateError(f"Evaluation {evaluation_id} is deleted")
    opp = session.get(EvaluationOpportunity, opportunity_id)
    if opp is None or opp.evaluation_id != evaluation_id or opp.deleted_at is not None:
        raise EvaluationNotFound("Opportunity", opportunity_id)

    row = session.execute(
        select(ImprovementProgress).where(
            ImprovementProgress.evaluation_id == evaluation_id,
            ImprovementProgress.opportunity_id == opportunity_id,
        )
    ).scalar_one_or_none()
    if row is None:
        row = ImprovementProgress(opportunity_id=opportunity_id)
        ev.progress.append(row)

    now = utcnow()
    row.status = status
    row.completed_at = now if status == "done" else None
    if observed_impact is not None:
        row.observed_impact = observed_impact
    row.updated_at = now
    row.updated_by = actor_id
    _commit(session, "progress update")
    log.info("Progress for evaluation %d opportunity %d set to %s", evaluation_id, opportunity_id, status)
    return row


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_evaluation(session: Session, evaluation_id: int, include_deleted: bool = False) -> Evaluation:
    ev = _load(session, evaluation_id)
    if ev.deleted_at is not None and not include_deleted:
        raise EvaluationNotFound("Evaluation", evaluation_id)
    return ev


def list_evaluations(session: Session, owner_id: str, include_deleted: bool = False) -> list[Evaluation]:
    stmt = select(Evaluation).where(Evaluation.owner_id == owner_id)
    if not include_deleted:
        stmt = stmt.where(Evaluation.deleted_at.is_(None))
    return list(session.execute(stmt.order_by(Evaluation.id)).scalars().all())


def has_live_successor(session: Session, evaluation_id: int) -> bool:
    stmt = select(Evaluation.id).where(
        Evaluation.supersedes_id == evaluation_id,
        Evaluation.deleted_at.is_(None),
    ).limit(1)
    return session.execute(stmt).first() is not None


def latest_evaluations(session: Session, owner_id: str) -> list[Evaluation]:
    """Live evaluations of an owner that no live evaluation supersedes."""
    live = list_evaluations(session, owner_id)
    superseded = {ev.supersedes_id for ev in live if ev.supersedes_id is not None}
    return [ev for ev in live if ev.id not in superseded]


def evaluation_history(session: Session, evaluation_id: int) -> list[dict[str, Any]]:
    """Lineage from the root evaluation to ``evaluation_id``, oldest first.

    Each step carries the change in central value against the previous step
    so progress over time can be reported.
    """
    chain: list[Evaluation] = []
    seen: set[int] = set()
    current: Evaluation | None = get_evaluation(session, evaluation_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        chain.append(current)
        current = session.get(Evaluation, current.supersedes_id) if current.supersedes_id else None
    chain.reverse()

    history: list[dict[str, Any]] = []
    previous: float | None = None
    for ev in chain:
        central = ev.valuation_central
        delta = central - previous if central is not None and previous is not None else None
        history.append({
            "id": ev.id,
            "version": ev.version,
            "created_at": ev.created_at.isoformat() if ev.created_at else None,
            "state": evaluation_state(session, ev),
            "valuation_central": central,
            "central_delta": delta,
            "methodology_confidence": ev.methodology_confidence,
            "data_confidence": ev.data_confidence,
        })
        if central is not None:
            previous = central
    return history


def list_progress(session: Session, evaluation_id: int, include_deleted: bool = False) -> list[ImprovementProgress]:
    stmt = select(ImprovementProgress).where(ImprovementProgress.evaluation_id == evaluation_id)
    if not include_deleted:
        stmt = stmt.where(ImprovementProgress.deleted_at.is_(None))
    return list(session.execute(stmt.order_by(ImprovementProgress.id)).scalars().all())


# ---------------------------------------------------------------------------
# Progress analytics and projection
# ---------------------------------------------------------------------------


def _live_opportunities(ev: Evaluation) -> list[EvaluationOpportunity]:
    return [o for o in ev.opportunities if o.deleted_at is None]


def progress_analytics(session: Session, evaluation_id: int, recent_limit: int = 10) -> dict[str, Any]:
    """Completion counts, touched categories, observed impact and recent completions."""
    ev = get_evaluation(session, evaluation_id)
    opportunities = _live_opportunities(ev)
    by_id = {o.id: o for o in opportunities}
    rows = [p for p in list_progress(session, evaluation_id) if p.opportunity_id in by_id]
    counts = {status: 0 for status in PROGRESS_STATUSES}
    for row in rows:
        counts[row.status] += 1
    counts["pending"] = len(opportunities) - counts["in_progress"] - counts["done"]

    touched = {by_id[p.opportunity_id].category for p in rows if p.status != "pending"}
    done = sorted(
        (p for p in rows if p.status == "done" and p.completed_at is not None),
        key=lambda p: (p.completed_at, p.id),
        reverse=True,
    )
    observed = [p.observed_impact for p in rows if p.observed_impact is not None]
    total = len(opportunities)
    return {
        "evaluation_id": evaluation_id,
        "total": total,
        "completed": counts["done"],
        "in_progress": counts["in_progress"],
        "pending": counts["pending"],
        "progress_pct": round(100.0 * counts["done"] / total, 1) if total else 0.0,
        "active_categories": sorted(touched, key=lambda c: CATEGORY_ORDER.get(c, len(CATEGORY_ORDER))),
        "observed_impact_total": sum(observed),
        "recent_completions": [
            {
                "opportunity_id": p.opportunity_id,
                "driver": by_id[p.opportunity_id].driver,
                "category": by_id[p.opportunity_id].category,
                "completed_at": p.completed_at.isoformat(),
                "observed_impact": p.observed_impact,
            }
            for p in done[:recent_limit]
        ],
    }


def projected_valuation(session: Session, evaluation_id: int) -> dict[str, Any]:
    """Central value plus the impact midpoints of opportunities not yet done.

    The projection's confidence is the evaluation's methodology confidence
    scaled by the impact-weighted gap confidence of the pending opportunities.
    Raises EvaluationStateError when the evaluation has no valuation.
    """
    ev = get_evaluation(session, evaluation_id)
    if ev.insufficient_data or ev.valuation_central is None:
        raise EvaluationStateError(f"Evaluation {evaluation_id} has no valuation to project from")

    statuses = {p.opportunity_id: p for p in list_progress(session, evaluation_id)}
    pending: list[EvaluationOpportunity] = []
    realized = 0.0
    for opp in _live_opportunities(ev):
        row = statuses.get(opp.id)
        if row is not None and row.status == "done":
            realized += row.observed_impact or 0.0
        else:
            pending.append(opp)

    mids = [(o.impact_low + o.impact_high) / 2 for o in pending]
    increase = sum(mids)
    if increase > 0:
        gap_confidence = sum(m * o.gap_confidence for m, o in zip(mids, pending)) / increase
    else:
        gap_confidence = 1.0
    central = ev.valuation_central
    return {
        "evaluation_id": evaluation_id,
        "current_valuation": central,
        "projected_increase": increase,
        "projected_valuation": central + increase,
        "projected_increase_pct": round(100.0 * increase / central, 2) if central else 0.0,
        "pending_count": len(pending),
        "realized_impact": realized,
        "confidence": round((ev.methodology_confidence or 0.0) * gap_confidence, 4),
    }


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def evaluation_state(session: Session, ev: Evaluation) -> str:
    if ev.deleted_at is not None:
        return STATE_SOFT_DELETED
    if has_live_successor(session, ev.id):
        return STATE_SUPERSEDED
    return STATE_COMPUTED


def opportunity_summary(opp: EvaluationOpportunity, status: str | None = None) -> dict[str, Any]:
    return {
        "id": opp.id, "rank": opp.rank, "category": opp.category, "driver": opp.driver,
        "description": opp.description,
        "estimated_impact_low": opp.impact_low, "estimated_impact_high": opp.impact_high,
        "priority_score": opp.priority_score, "gap_confidence": opp.gap_confidence,
        "based_on_facts": json_parse(opp.based_on_json, []),
        "current_value": json_parse(opp.current_value, None),
        "benchmark_value": json_parse(opp.benchmark_value, None),
        "status": status or "pending",
    }


def progress_summary(row: ImprovementProgress) -> dict[str, Any]:
    return {
        "id": row.id, "evaluation_id": row.evaluation_id, "opportunity_id": row.opportunity_id,
        "status": row.status,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
        "observed_impact": row.observed_impact,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        "updated_by": row.updated_by,
        "deleted": row.deleted_at is not None,
    }


def evaluation_summary(session: Session, ev: Evaluation) -> dict[str, Any]:
    valuation = None
    if not ev.insufficient_data:
        valuation = {
            "low": ev.valuation_low, "central": ev.valuation_central, "high": ev.valuation_high,
            "aggregate_confidence": ev.methodology_confidence,
            "dominant_methodology": ev.dominant_methodology,
        }
    return {
        "id": ev.id, "owner_id": ev.owner_id, "version": ev.version,
        "questionnaire_version": ev.questionnaire_version,
        "industry": ev.industry, "currency": ev.currency,
        "supersedes_id": ev.supersedes_id,
        "created_at": ev.created_at.isoformat() if ev.created_at else None,
        "deleted_at": ev.deleted_at.isoformat() if ev.deleted_at else None,
        "state": evaluation_state(session, ev),
        "insufficient_data": ev.insufficient_data,
        "valuation": valuation,
        "data_confidence": ev.data_confidence,
    }


def evaluation_detail(
    session: Session,
    ev: Evaluation,
    tier: str | None = None,
    settings: EngineSettings | None = None,
) -> dict[str, Any]:
    """Full snapshot: summary plus answers, estimates, exclusions and opportunities."""
    base = evaluation_summary(session, ev)
    statuses = {p.opportunity_id: p.status for p in list_progress(session, ev.id)}
    include_deleted = ev.deleted_at is not None
    opportunities = [
        opportunity_summary(o, statuses.get(o.id))
        for o in ev.opportunities
        if include_deleted or o.deleted_at is None
    ]
    base.update({
        "answers": json_parse(ev.answers_json, {}),
        "facts": json_parse(ev.facts_json, {}),
        "estimates": json_parse(ev.estimates_json, []),
        "excluded_methodologies": json_parse(ev.excluded_json, []),
        "health": json_parse(ev.health_json, None),
        "opportunities": cap_opportunities(opportunities, tier, settings),
        "opportunity_count": len(opportunities),
    })
    return base


def cap_opportunities(
    items: list[Any],
    tier: str | None,
    settings: EngineSettings | None = None,
) -> list[Any]:
    """Trim a ranked list to the tier's cap; unknown or missing tiers are uncapped."""
    if not tier:
        return list(items)
    cfg = settings or get_settings().engine
    cap = cfg.opportunity_caps.get(tier)
    if cap is None:
        return list(items)
    return list(items[:cap])
