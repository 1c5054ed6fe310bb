"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database shared through StaticPool.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bizval.benchmarks import BenchmarkTable
from bizval.config import EngineSettings, get_settings
from bizval.db import build_engine

OWNER = {"X-Actor-Id": "owner-1"}
STRANGER = {"X-Actor-Id": "owner-2"}
ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = build_engine("sqlite:///:memory:", poolclass=StaticPool)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database and the built-in benchmark table."""
    _, TestSession = test_db
    monkeypatch.setenv("BIZVAL_HOME", str(tmp_path))
    monkeypatch.delenv("BIZVAL_CONFIG", raising=False)
    get_settings.cache_clear()
    from bizval.app import app, benchmark_table, db_session, engine_settings

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[benchmark_table] = lambda: BenchmarkTable.default()
    app.dependency_overrides[engine_settings] = lambda: EngineSettings()
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()
    get_settings.cache_clear()


def _create(client, answers, headers=OWNER) -> dict:
    resp = client.post("/api/evaluations", json={"answers": answers}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestQuestionnaire:
    def test_describe(self, client):
        resp = client.get("/api/questionnaire")
        assert resp.status_code == 200
        keys = [f["key"] for f in resp.json()["fields"]]
        assert keys[0] == "industry"
        assert "real_estate_value" in keys


class TestEvaluationEndpoints:
    def test_requires_actor(self, client, minimal_answers):
        resp = client.post("/api/evaluations", json={"answers": minimal_answers})
        assert resp.status_code == 401

    def test_create(self, client, minimal_answers):
        data = _create(client, minimal_answers)
        assert data["owner_id"] == "owner-1"
        assert data["state"] == "computed"
        assert data["insufficient_data"] is False
        val = data["valuation"]
        assert val["low"] <= val["central"] <= val["high"]
        assert 0 <= val["aggregate_confidence"] <= 1
        assert 0 < data["data_confidence"] < 1
        assert [e["methodology_id"] for e in data["estimates"]] == ["revenue_multiple", "ebitda_multiple"]
        assert data["opportunities"][0]["driver"] == "ebitda_margin"
        assert data["health"]["categories"]["financial"]["drivers"] == {"ebitda_margin": 83.3}

    def test_validation_error(self, client):
        resp = client.post("/api/evaluations", json={"answers": {"industry": "services", "bogus": 1}},
                           headers=OWNER)
        assert resp.status_code == 422
        issues = resp.json()["detail"]["issues"]
        assert issues == [{"code": "unexpected_field", "field": "bogus", "message": "unknown questionnaire field"}]

    def test_insufficient_data(self, client):
        resp = client.post("/api/evaluations", json={"answers": {"industry": "services", "employee_count": 3}},
                           headers=OWNER)
        assert resp.status_code == 422
        assert "annual_revenue" in resp.json()["detail"]["missing_fields"]

    def test_free_tier_sees_three_opportunities(self, client, full_answers):
        data = _create(client, full_answers, headers={**OWNER, "X-Actor-Tier": "free"})
        assert len(data["opportunities"]) == 3
        assert data["opportunity_count"] > 3

    def test_get_and_ownership(self, client, minimal_answers):
        ev_id = _create(client, minimal_answers)["id"]
        assert client.get(f"/api/evaluations/{ev_id}", headers=OWNER).status_code == 200
        assert client.get(f"/api/evaluations/{ev_id}", headers=STRANGER).status_code == 403
        assert client.get(f"/api/evaluations/{ev_id}", headers=ADMIN).status_code == 200
        assert client.get("/api/evaluations/9999", headers=OWNER).status_code == 404

    def test_list_and_latest(self, client, minimal_answers):
        first = _create(client, minimal_answers)["id"]
        resp = client.post(f"/api/evaluations/{first}/reevaluate", json={"answers": {"ebitda": 170_000}},
                           headers=OWNER)
        assert resp.status_code == 201
        second = resp.json()
        assert second["supersedes_id"] == first
        assert second["version"] == 2

        listed = client.get("/api/evaluations", headers=OWNER).json()
        assert [e["id"] for e in listed] == [first, second["id"]]
        assert listed[0]["state"] == "superseded"

        latest = client.get("/api/evaluations/latest", headers=OWNER).json()
        assert [e["id"] for e in latest] == [second["id"]]

        assert client.get("/api/evaluations", params={"owner_id": "owner-1"}, headers=STRANGER).status_code == 403
        assert len(client.get("/api/evaluations", params={"owner_id": "owner-1"}, headers=ADMIN).json()) == 2

    def test_reevaluate_not_owner(self, client, minimal_answers):
        ev_id = _create(client, minimal_answers)["id"]
        resp = client.post(f"/api/evaluations/{ev_id}/reevaluate", json={"answers": {}}, headers=STRANGER)
        assert resp.status_code == 403

    def test_history(self, client, minimal_answers):
        first = _create(client, minimal_answers)["id"]
        second = client.post(f"/api/evaluations/{first}/reevaluate", json={"answers": {"ebitda": 170_000}},
                             headers=OWNER).json()["id"]
        history = client.get(f"/api/evaluations/{second}/history", headers=OWNER).json()
        assert [h["id"] for h in history] == [first, second]
        assert history[1]["central_delta"] > 0

    def test_soft_delete(self, client, full_answers):
        ev = _create(client, full_answers)
        ev_id, opp_id = ev["id"], ev["opportunities"][0]["id"]
        client.put(f"/api/evaluations/{ev_id}/opportunities/{opp_id}/progress",
                   json={"status": "in_progress"}, headers=OWNER)

        assert client.delete(f"/api/evaluations/{ev_id}", headers=STRANGER).status_code == 403
        resp = client.delete(f"/api/evaluations/{ev_id}", headers=OWNER)
        assert resp.status_code == 200
        assert resp.json()["ok"] is True

        assert client.get(f"/api/evaluations/{ev_id}", headers=OWNER).status_code == 404
        kept = client.get(f"/api/evaluations/{ev_id}", params={"include_deleted": True}, headers=OWNER)
        assert kept.status_code == 200
        assert kept.json()["state"] == "soft_deleted"

        progress = client.get(f"/api/evaluations/{ev_id}/progress", params={"include_deleted": True},
                              headers=OWNER).json()
        assert len(progress) == 1 and progress[0]["deleted"] is True

        assert client.delete(f"/api/evaluations/{ev_id}", headers=OWNER).status_code == 409
        resp = client.post(f"/api/evaluations/{ev_id}/reevaluate", json={"answers": {}}, headers=OWNER)
        assert resp.status_code == 409


class TestProgressEndpoints:
    def test_record_and_list(self, client, full_answers):
        ev = _create(client, full_answers)
        ev_id, opp_id = ev["id"], ev["opportunities"][0]["id"]

        resp = client.put(f"/api/evaluations/{ev_id}/opportunities/{opp_id}/progress",
                          json={"status": "DONE", "observed_impact": 12_500}, headers=OWNER)
        assert resp.status_code == 200
        row = resp.json()
        assert row["status"] == "done"
        assert row["completed_at"] is not None
        assert row["updated_by"] == "owner-1"

        listed = client.get(f"/api/evaluations/{ev_id}/progress", headers=OWNER).json()
        assert [p["opportunity_id"] for p in listed] == [opp_id]

        detail = client.get(f"/api/evaluations/{ev_id}", headers=OWNER).json()
        assert detail["opportunities"][0]["status"] == "done"

    def test_bad_status(self, client, full_answers):
        ev = _create(client, full_answers)
        resp = client.put(f"/api/evaluations/{ev['id']}/opportunities/{ev['opportunities'][0]['id']}/progress",
                          json={"status": "someday"}, headers=OWNER)
        assert resp.status_code == 422

    def test_unknown_opportunity(self, client, full_answers):
        ev = _create(client, full_answers)
        resp = client.put(f"/api/evaluations/{ev['id']}/opportunities/9999/progress",
                          json={"status": "done"}, headers=OWNER)
        assert resp.status_code == 404

    def test_analytics(self, client, full_answers):
        ev = _create(client, full_answers)
        ev_id, opp_id = ev["id"], ev["opportunities"][0]["id"]
        client.put(f"/api/evaluations/{ev_id}/opportunities/{opp_id}/progress",
                   json={"status": "done", "observed_impact": 8_000}, headers=OWNER)

        resp = client.get(f"/api/evaluations/{ev_id}/progress/analytics", headers=OWNER)
        assert resp.status_code == 200
        stats = resp.json()
        assert stats["completed"] == 1
        assert stats["total"] == ev["opportunity_count"]
        assert stats["observed_impact_total"] == 8_000
        assert stats["recent_completions"][0]["opportunity_id"] == opp_id
        assert client.get(f"/api/evaluations/{ev_id}/progress/analytics", headers=STRANGER).status_code == 403

    def test_projection(self, client, full_answers, minimal_answers):
        ev = _create(client, full_answers)
        resp = client.get(f"/api/evaluations/{ev['id']}/projection", headers=OWNER)
        assert resp.status_code == 200
        projection = resp.json()
        assert projection["current_valuation"] == ev["valuation"]["central"]
        assert projection["projected_valuation"] > projection["current_valuation"]
        assert projection["pending_count"] == ev["opportunity_count"]

        flagged = _create(client, {**minimal_answers, "industry": "other"})
        assert client.get(f"/api/evaluations/{flagged['id']}/projection", headers=OWNER).status_code == 409
