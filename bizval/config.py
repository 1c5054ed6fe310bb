from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_home() -> Path:
    override = os.getenv("BIZVAL_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


class EngineSettings(BaseModel):
    # Completeness gate applied before any methodology work
    essential_fields: list[str] = Field(default_factory=lambda: [
        "industry", "annual_revenue", "ebitda", "years_in_business",
        "employee_count", "customer_count", "largest_customer_pct", "owner_hours_per_week",
    ])
    min_essential_fields: int = 8
    financial_basis_fields: list[str] = Field(default_factory=lambda: ["annual_revenue", "ebitda"])

    # Reconciliation
    target_methodology_count: int = 3
    coverage_exponent: float = 0.5
    single_methodology_confidence_ceiling: float = 0.5
    single_methodology_band: float = 0.25
    min_band: float = 0.10

    methodology_timeout_seconds: float = 2.0

    # Opportunity generation
    max_uplift: float = 1.0
    opportunity_caps: dict[str, int] = Field(default_factory=lambda: {"free": 3})


class Settings(BaseModel):
    home: Path = Field(default_factory=_resolve_home)
    data_dir: Path = Field(default_factory=lambda: _resolve_home() / "data")
    database_path: Path = Field(default_factory=lambda: _resolve_home() / "data" / "bizval.db")
    benchmark_file: Path | None = None
    engine: EngineSettings = Field(default_factory=EngineSettings)

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def _config_file() -> Path:
    override = os.getenv("BIZVAL_CONFIG", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_home() / "config" / "bizval.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings(**load_yaml(_config_file()))
    settings.ensure_directories()
    return settings
