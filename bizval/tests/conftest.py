from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker

from bizval.benchmarks import BenchmarkTable
from bizval.config import EngineSettings
from bizval.db import build_engine

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    return build_engine("sqlite:///:memory:")


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


# ---------------------------------------------------------------------------
# Fixtures: engine inputs
# ---------------------------------------------------------------------------


@pytest.fixture()
def benchmarks() -> BenchmarkTable:
    return BenchmarkTable.default()


@pytest.fixture()
def engine_settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture()
def minimal_answers() -> dict:
    """The essential fields only, for a services business that rents its premises."""
    return {
        "industry": "services",
        "annual_revenue": 1_000_000,
        "ebitda": 150_000,
        "years_in_business": 6,
        "employee_count": 8,
        "customer_count": 40,
        "largest_customer_pct": 10,
        "owner_hours_per_week": 40,
        "owns_real_estate": False,
    }


@pytest.fixture()
def full_answers() -> dict:
    return {
        "industry": "services",
        "currency": "USD",
        "annual_revenue": 2_000_000,
        "revenue_prior_year": 1_800_000,
        "ebitda": 300_000,
        "total_debt": 400_000,
        "years_in_business": 12,
        "employee_count": 15,
        "customer_count": 120,
        "largest_customer_pct": 30,
        "top5_customer_pct": 55,
        "recurring_revenue_pct": 20,
        "customer_retention_pct": 80,
        "owner_hours_per_week": 60,
        "management_depth": "adequate",
        "key_person_risk": "high",
        "owns_real_estate": True,
        "real_estate_value": 800_000,
        "ffe_value": 150_000,
    }
