"""Pydantic request/response schemas for the bizval API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator


class EvaluationCreate(BaseModel):
    answers: dict[str, Any]


class ReEvaluateRequest(BaseModel):
    answers: dict[str, Any] = {}
    merge: bool = True


class ProgressUpdate(BaseModel):
    status: str
    observed_impact: float | None = None

    @field_validator("status")
    @classmethod
    def _normalize_status(cls, v: str) -> str:
        return v.strip().lower()


class ValuationOut(BaseModel):
    low: float
    central: float
    high: float
    aggregate_confidence: float
    dominant_methodology: str | None = None


class OpportunityOut(BaseModel):
    id: int
    rank: int
    category: str
    driver: str
    description: str
    estimated_impact_low: float
    estimated_impact_high: float
    priority_score: float
    gap_confidence: float
    based_on_facts: list[str] = []
    current_value: Any = None
    benchmark_value: Any = None
    status: str = "pending"


class EvaluationOut(BaseModel):
    id: int
    owner_id: str
    version: int
    questionnaire_version: str
    industry: str
    currency: str
    supersedes_id: int | None = None
    created_at: str | None = None
    deleted_at: str | None = None
    state: str
    insufficient_data: bool
    valuation: ValuationOut | None = None
    data_confidence: float


class EvaluationDetail(EvaluationOut):
    answers: dict[str, Any] = {}
    facts: dict[str, Any] = {}
    estimates: list[dict[str, Any]] = []
    excluded_methodologies: list[dict[str, str]] = []
    health: dict[str, Any] | None = None
    opportunities: list[OpportunityOut] = []
    opportunity_count: int = 0


class HistoryEntry(BaseModel):
    id: int
    version: int
    created_at: str | None = None
    state: str
    valuation_central: float | None = None
    central_delta: float | None = None
    methodology_confidence: float | None = None
    data_confidence: float


class ProgressOut(BaseModel):
    id: int
    evaluation_id: int
    opportunity_id: int
    status: str
    completed_at: str | None = None
    observed_impact: float | None = None
    updated_at: str | None = None
    updated_by: str
    deleted: bool = False


class CompletionOut(BaseModel):
    opportunity_id: int
    driver: str
    category: str
    completed_at: str
    observed_impact: float | None = None


class ProgressAnalytics(BaseModel):
    evaluation_id: int
    total: int
    completed: int
    in_progress: int
    pending: int
    progress_pct: float
    active_categories: list[str] = []
    observed_impact_total: float = 0.0
    recent_completions: list[CompletionOut] = []


class ProjectedValuation(BaseModel):
    evaluation_id: int
    current_valuation: float
    projected_increase: float
    projected_valuation: float
    projected_increase_pct: float
    pending_count: int
    realized_impact: float
    confidence: float
