from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Evaluation(Base):
    """One immutable valuation snapshot; only the soft-delete columns ever change."""
    __tablename__ = "evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    questionnaire_version: Mapped[str] = mapped_column(String(20), nullable=False)
    industry: Mapped[str] = mapped_column(String(50), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    # Not unique: two re-evaluations of one prior may both exist
    supersedes_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("evaluations.id"), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(200), nullable=True)

    answers_json: Mapped[str] = mapped_column(Text, default="{}")
    facts_json: Mapped[str] = mapped_column(Text, default="{}")
    insufficient_data: Mapped[bool] = mapped_column(Boolean, default=False)
    valuation_low: Mapped[float | None] = mapped_column(Float, nullable=True)
    valuation_central: Mapped[float | None] = mapped_column(Float, nullable=True)
    valuation_high: Mapped[float | None] = mapped_column(Float, nullable=True)
    methodology_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    data_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    dominant_methodology: Mapped[str | None] = mapped_column(String(50), nullable=True)
    estimates_json: Mapped[str] = mapped_column(Text, default="[]")
    excluded_json: Mapped[str] = mapped_column(Text, default="[]")
    health_json: Mapped[str] = mapped_column(Text, default="null")

    opportunities: Mapped[list[EvaluationOpportunity]] = relationship(
        "EvaluationOpportunity", back_populates="evaluation",
        order_by="EvaluationOpportunity.rank",
    )
    progress: Mapped[list[ImprovementProgress]] = relationship(
        "ImprovementProgress", back_populates="evaluation",
    )


class EvaluationOpportunity(Base):
    __tablename__ = "evaluation_opportunities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    evaluation_id: Mapped[int] = mapped_column(Integer, ForeignKey("evaluations.id"), nullable=False, index=True)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)  # financial | operational | market
    driver: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    impact_low: Mapped[float] = mapped_column(Float, nullable=False)
    impact_high: Mapped[float] = mapped_column(Float, nullable=False)
    priority_score: Mapped[float] = mapped_column(Float, nullable=False)
    gap_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    based_on_json: Mapped[str] = mapped_column(Text, default="[]")
    current_value: Mapped[str | None] = mapped_column(String(100), nullable=True)
    benchmark_value: Mapped[str | None] = mapped_column(String(100), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    evaluation: Mapped[Evaluation] = relationship("Evaluation", back_populates="opportunities")


class ImprovementProgress(Base):
    __tablename__ = "improvement_progress"
    __table_args__ = (UniqueConstraint("evaluation_id", "opportunity_id", name="uq_progress_opportunity"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    evaluation_id: Mapped[int] = mapped_column(Integer, ForeignKey("evaluations.id"), nullable=False, index=True)
    opportunity_id: Mapped[int] = mapped_column(Integer, ForeignKey("evaluation_opportunities.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending | in_progress | done
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    observed_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_by: Mapped[str] = mapped_column(String(200), default="")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    evaluation: Mapped[Evaluation] = relationship("Evaluation", back_populates="progress")
