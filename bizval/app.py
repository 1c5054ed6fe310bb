from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from sqlalchemy.orm import Session

from bizval import services
from bizval.benchmarks import BenchmarkTable, get_benchmarks
from bizval.config import EngineSettings, get_settings
from bizval.db import init_db, session_generator
from bizval.errors import (
    CascadeTransactionFailure,
    EngineError,
    EvaluationNotFound,
    EvaluationStateError,
    InsufficientDataError,
    NotOwner,
    ValidationFailure,
)
from bizval.questionnaire import describe_questionnaire
from bizval.schemas import (
    EvaluationCreate,
    EvaluationDetail,
    EvaluationOut,
    HistoryEntry,
    ProgressAnalytics,
    ProgressOut,
    ProgressUpdate,
    ProjectedValuation,
    ReEvaluateRequest,
)

log = logging.getLogger(__name__)

ELEVATED_ROLES = frozenset({"admin", "support"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="bizval",
    version="0.1.0",
    description=(
        "Business valuation and improvement-opportunity API. "
        "Submit questionnaire answers, get a valuation range with confidence "
        "and a ranked list of value drivers to work on. "
        "Callers are identified by the X-Actor-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Questionnaire", "description": "Field table and visibility rules."},
        {"name": "Evaluations", "description": "Create, re-evaluate, read and delete evaluations."},
        {"name": "Progress", "description": "Track work on improvement opportunities."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    id: str
    role: str = "owner"
    tier: str | None = None

    @property
    def elevated(self) -> bool:
        return self.role in ELEVATED_ROLES


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def current_actor(
    x_actor_id: str | None = Header(None),
    x_actor_role: str | None = Header(None),
    x_actor_tier: str | None = Header(None),
) -> Actor:
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(401, "Missing X-Actor-Id header")
    role = (x_actor_role or "owner").strip().lower()
    tier = x_actor_tier.strip().lower() if x_actor_tier else None
    return Actor(id=x_actor_id.strip(), role=role, tier=tier)


def benchmark_table() -> BenchmarkTable:
    return get_benchmarks()


def engine_settings() -> EngineSettings:
    return get_settings().engine


def _http_error(exc: EngineError) -> HTTPException:
    if isinstance(exc, ValidationFailure):
        return HTTPException(422, {"message": str(exc), "issues": [i.to_dict() for i in exc.issues]})
    if isinstance(exc, InsufficientDataError):
        return HTTPException(422, {"message": str(exc), "missing_fields": exc.missing_fields})
    if isinstance(exc, NotOwner):
        return HTTPException(403, str(exc))
    if isinstance(exc, EvaluationNotFound):
        return HTTPException(404, str(exc))
    if isinstance(exc, EvaluationStateError):
        return HTTPException(409, str(exc))
    if isinstance(exc, CascadeTransactionFailure):
        return HTTPException(503, str(exc))
    return HTTPException(500, str(exc))


def _readable(session: Session, evaluation_id: int, actor: Actor, include_deleted: bool = False):
    try:
        ev = services.get_evaluation(session, evaluation_id, include_deleted=include_deleted)
    except EvaluationNotFound as exc:
        raise _http_error(exc) from exc
    if not actor.elevated and ev.owner_id != actor.id:
        raise _http_error(NotOwner(ev.id, actor.id))
    return ev


# ---------------------------------------------------------------------------
# Routes: Questionnaire
# ---------------------------------------------------------------------------


@app.get("/api/questionnaire", tags=["Questionnaire"], summary="Describe the questionnaire fields")
async def questionnaire():
    return describe_questionnaire()


# ---------------------------------------------------------------------------
# Routes: Evaluations
# ---------------------------------------------------------------------------


@app.post("/api/evaluations", response_model=EvaluationDetail, status_code=201,
          tags=["Evaluations"], summary="Create an evaluation from questionnaire answers")
async def create_evaluation(
    body: EvaluationCreate,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
    benchmarks: BenchmarkTable = Depends(benchmark_table),
    settings: EngineSettings = Depends(engine_settings),
):
    try:
        ev = await services.create_evaluation(
            session, actor.id, body.answers, benchmarks=benchmarks, settings=settings,
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    return services.evaluation_detail(session, ev, actor.tier, settings)


@app.get("/api/evaluations", response_model=list[EvaluationOut],
         tags=["Evaluations"], summary="List evaluations")
async def list_evaluations(
    owner_id: str | None = Query(None, description="Only elevated roles may list another owner"),
    include_deleted: bool = Query(False),
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    owner = owner_id or actor.id
    if owner != actor.id and not actor.elevated:
        raise HTTPException(403, "Cannot list another owner's evaluations")
    return [services.evaluation_summary(session, ev)
            for ev in services.list_evaluations(session, owner, include_deleted=include_deleted)]


@app.get("/api/evaluations/latest", response_model=list[EvaluationOut],
         tags=["Evaluations"], summary="Latest live evaluation of each lineage")
async def latest_evaluations(
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    return [services.evaluation_summary(session, ev)
            for ev in services.latest_evaluations(session, actor.id)]


@app.get("/api/evaluations/{evaluation_id}", response_model=EvaluationDetail,
         tags=["Evaluations"], summary="Get one evaluation snapshot")
async def get_evaluation(
    evaluation_id: int,
    include_deleted: bool = Query(False),
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
    settings: EngineSettings = Depends(engine_settings),
):
    ev = _readable(session, evaluation_id, actor, include_deleted=include_deleted)
    return services.evaluation_detail(session, ev, actor.tier, settings)


@app.post("/api/evaluations/{evaluation_id}/reevaluate", response_model=EvaluationDetail, status_code=201,
          tags=["Evaluations"], summary="Create a successor evaluation with updated answers")
async def reevaluate(
    evaluation_id: int,
    body: ReEvaluateRequest,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
    benchmarks: BenchmarkTable = Depends(benchmark_table),
    settings: EngineSettings = Depends(engine_settings),
):
    try:
        ev = await services.re_evaluate(
            session, evaluation_id, body.answers, actor.id,
            elevated=actor.elevated, merge=body.merge,
            benchmarks=benchmarks, settings=settings,
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    return services.evaluation_detail(session, ev, actor.tier, settings)


@app.delete("/api/evaluations/{evaluation_id}", tags=["Evaluations"], summary="Soft-delete an evaluation")
async def delete_evaluation(
    evaluation_id: int,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    try:
        ev = services.soft_delete(session, evaluation_id, actor.id, elevated=actor.elevated)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "id": ev.id, "deleted_at": ev.deleted_at.isoformat()}


@app.get("/api/evaluations/{evaluation_id}/history", response_model=list[HistoryEntry],
         tags=["Evaluations"], summary="Lineage with central-value deltas")
async def history(
    evaluation_id: int,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    _readable(session, evaluation_id, actor)
    return services.evaluation_history(session, evaluation_id)


# ---------------------------------------------------------------------------
# Routes: Progress
# ---------------------------------------------------------------------------


@app.get("/api/evaluations/{evaluation_id}/progress", response_model=list[ProgressOut],
         tags=["Progress"], summary="List improvement progress")
async def list_progress(
    evaluation_id: int,
    include_deleted: bool = Query(False),
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    _readable(session, evaluation_id, actor, include_deleted=include_deleted)
    return [services.progress_summary(p)
            for p in services.list_progress(session, evaluation_id, include_deleted=include_deleted)]


@app.put("/api/evaluations/{evaluation_id}/opportunities/{opportunity_id}/progress",
         response_model=ProgressOut, tags=["Progress"], summary="Record progress on an opportunity")
async def update_progress(
    evaluation_id: int,
    opportunity_id: int,
    body: ProgressUpdate,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    try:
        row = services.record_progress(
            session, evaluation_id, opportunity_id, body.status, actor.id,
            observed_impact=body.observed_impact, elevated=actor.elevated,
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    return services.progress_summary(row)


@app.get("/api/evaluations/{evaluation_id}/progress/analytics", response_model=ProgressAnalytics,
         tags=["Progress"], summary="Completion counts and observed impact")
async def progress_analytics(
    evaluation_id: int,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    _readable(session, evaluation_id, actor)
    return services.progress_analytics(session, evaluation_id)


@app.get("/api/evaluations/{evaluation_id}/projection", response_model=ProjectedValuation,
         tags=["Progress"], summary="Valuation if pending opportunities are realized")
async def projection(
    evaluation_id: int,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
):
    _readable(session, evaluation_id, actor)
    try:
        return services.projected_valuation(session, evaluation_id)
    except EngineError as exc:
        raise _http_error(exc) from exc


def main():
    import uvicorn
    uvicorn.run("bizval.app:app", host="127.0.0.1", port=8000, reload=False)


if __name__ == "__main__":
    main()
