from __future__ import annotations

import json
import logging

import pytest
import yaml
from typer.testing import CliRunner

from bizval.cli import SQL_LOGGER, app
from bizval.config import get_settings


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    monkeypatch.setenv("BIZVAL_HOME", str(tmp_path))
    get_settings.cache_clear()
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger(SQL_LOGGER).setLevel(logging.NOTSET)
    get_settings.cache_clear()


def _invoke(tmp_path, *args):
    runner = CliRunner()
    return runner.invoke(app, ["--home", str(tmp_path), "--json", *args])


def test_evaluate_prints_valuation(tmp_path, full_answers) -> None:
    answers = tmp_path / "answers.json"
    answers.write_text(json.dumps(full_answers), encoding="utf-8")

    result = _invoke(tmp_path, "evaluate", str(answers), "--tier", "free")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["insufficient_data"] is False
    assert payload["valuation"]["low"] <= payload["valuation"]["central"] <= payload["valuation"]["high"]
    assert len(payload["opportunities"]) == 3


def test_evaluate_reads_yaml(tmp_path, minimal_answers) -> None:
    answers = tmp_path / "answers.yaml"
    answers.write_text(yaml.safe_dump(minimal_answers), encoding="utf-8")

    result = _invoke(tmp_path, "evaluate", str(answers))

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    ids = [e["methodology_id"] for e in payload["valuation"]["contributing_estimates"]]
    assert ids == ["revenue_multiple", "ebitda_multiple"]


def test_evaluate_insufficient_data(tmp_path) -> None:
    answers = tmp_path / "answers.json"
    answers.write_text(json.dumps({"industry": "retail", "employee_count": 4}), encoding="utf-8")

    result = _invoke(tmp_path, "evaluate", str(answers))

    assert result.exit_code == 2
    payload = json.loads(result.stdout)
    assert payload["error"] == "insufficient_data"
    assert "ebitda" in payload["missing_fields"]


def test_evaluate_validation_failure(tmp_path) -> None:
    answers = tmp_path / "answers.json"
    answers.write_text(json.dumps({"industry": "retail", "annual_revenue": -5}), encoding="utf-8")

    result = _invoke(tmp_path, "evaluate", str(answers))

    assert result.exit_code == 2
    payload = json.loads(result.stdout)
    assert payload["issues"][0]["field"] == "annual_revenue"


def test_init_db_and_empty_list(tmp_path) -> None:
    result = _invoke(tmp_path, "init-db")
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["database"].endswith("bizval.db")
    assert (tmp_path / "data" / "bizval.db").exists()

    result = _invoke(tmp_path, "list", "nobody")
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == []


@pytest.mark.parametrize("flags,root_level,sql_level", [
    ([], logging.WARNING, logging.WARNING),
    (["-v"], logging.INFO, logging.WARNING),
    (["-vvv"], logging.DEBUG, logging.INFO),
])
def test_verbosity_levels(tmp_path, flags, root_level, sql_level) -> None:
    result = _invoke(tmp_path, *flags, "init-db")
    assert result.exit_code == 0, result.output
    assert logging.getLogger().level == root_level
    assert logging.getLogger(SQL_LOGGER).level == sql_level


def test_evaluate_table_output(tmp_path, full_answers) -> None:
    answers = tmp_path / "answers.json"
    answers.write_text(json.dumps(full_answers), encoding="utf-8")

    result = CliRunner().invoke(app, ["--home", str(tmp_path), "evaluate", str(answers)])

    assert result.exit_code == 0, result.output
    assert "Central" in result.output
    assert "Health: operational" in result.output
    assert "Improvement opportunities" in result.output
