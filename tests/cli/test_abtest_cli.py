import json
import textwrap
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from src.cli.main import abtest
from src.cli.utils.output import format_table
from src.cli.utils.yaml_loader import (
    YamlValidationError,
    parse_experiment_file,
    validate_test_definition,
)

EXPERIMENTS_YAML = textwrap.dedent(
    """
    config:
      default_minimum_sample_size: 30
      minimum_test_duration_days: 0
    tests:
      - id: latency_test
        name: Latency comparison
        type: model
        variants:
          - id: A
            weight: 0.5
            config: {model: model-a}
            simulation: {mean: 200, stddev: 20}
          - id: B
            weight: 0.5
            config: {model: model-b}
            simulation: {mean: 150, stddev: 20}
        metrics:
          primary: latency_ms
          higher_is_better: false
        max_duration_days: 14
    """
)


def _write(tmp_path, content, name="experiments.yaml"):
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


# ============================================================================
# YAML読み込み
# ============================================================================


def test_parse_experiment_file():
    experiment = parse_experiment_file(yaml.safe_load(EXPERIMENTS_YAML))
    assert experiment.config.default_minimum_sample_size == 30
    [definition] = experiment.tests
    assert definition.test_id == "latency_test"
    assert definition.metrics == {"primary": "latency_ms", "higher_is_better": False}
    assert definition.simulations["B"].mean == 150.0
    assert all("simulation" not in v for v in definition.variants)
    assert definition.create_kwargs()["max_duration"].days == 14


def test_metrics_shorthand():
    definition = validate_test_definition(
        {"name": "t", "variants": [{"id": "A", "weight": 1.0}], "metrics": "score"}
    )
    assert definition.metrics == {"primary": "score"}


@pytest.mark.parametrize(
    "data",
    [
        {"variants": [], "metrics": "score"},
        {"name": "t", "variants": "A", "metrics": "score"},
        {"name": "t", "variants": [{"id": "A"}], "metrics": "score"},
        {"name": "t", "variants": [{"id": "A", "weight": "half"}], "metrics": "score"},
        {"name": "t", "variants": [{"id": "A", "weight": 1.0}], "metrics": {}},
        {"name": "t", "type": "layout", "variants": [{"id": "A", "weight": 1.0}], "metrics": "score"},
        {
            "name": "t",
            "variants": [{"id": "A", "weight": 1.0, "simulation": {"mean": 1, "stddev": -1}}],
            "metrics": "score",
        },
    ],
)
def test_invalid_definitions(data):
    with pytest.raises(YamlValidationError):
        validate_test_definition(data)


def test_unknown_config_key():
    with pytest.raises(YamlValidationError, match="config"):
        parse_experiment_file({"config": {"max_tests": 1}, "tests": [{}]})


def test_format_table():
    table = format_table(["ID", "名前"], [["A", "control"], ["B", "treatment"]])
    lines = table.splitlines()
    assert lines[0].startswith("ID")
    assert lines[1].startswith("---")
    assert "treatment" in lines[3]


# ============================================================================
# validate
# ============================================================================


def test_validate_ok(runner, tmp_path):
    path = _write(tmp_path, EXPERIMENTS_YAML)
    result = runner.invoke(abtest, ["validate", path])
    assert result.exit_code == 0
    assert "latency_test" in result.output
    assert "OK" in result.output


def test_validate_reports_invalid_weights(runner, tmp_path):
    content = EXPERIMENTS_YAML.replace("weight: 0.5\n        config: {model: model-b}", "weight: 0.6\n        config: {model: model-b}")
    path = _write(tmp_path, content)
    result = runner.invoke(abtest, ["validate", path, "--json"])
    assert result.exit_code == 1
    report = json.loads(result.output)
    assert report[0]["valid"] is False
    assert "sum to 1.0" in report[0]["error"]


def test_validate_schema_error(runner, tmp_path):
    path = _write(tmp_path, "tests:\n  - name: broken\n")
    result = runner.invoke(abtest, ["validate", path])
    assert result.exit_code == 1
    assert "必須フィールド" in result.output


# ============================================================================
# simulate
# ============================================================================


def test_simulate_json(runner, tmp_path):
    path = _write(tmp_path, EXPERIMENTS_YAML)
    result = runner.invoke(abtest, ["simulate", path, "--users", "400", "--seed", "1", "--json"])
    assert result.exit_code == 0, result.output

    [summary] = json.loads(result.output)
    assert summary["test"]["status"] == "running"
    assert summary["assignments"] == 400
    assert summary["results"] == 400
    analysis = summary["analysis"]
    assert analysis["comparison"]["winner"] == "B"
    assert analysis["recommendation"] == "stop_winner"


def test_simulate_apply_stop(runner, tmp_path):
    path = _write(tmp_path, EXPERIMENTS_YAML)
    result = runner.invoke(
        abtest, ["simulate", path, "--users", "400", "--seed", "1", "--apply-stop"]
    )
    assert result.exit_code == 0, result.output
    assert "(completed)" in result.output
    assert "stop_winner" in result.output


def test_simulate_is_reproducible(runner, tmp_path):
    path = _write(tmp_path, EXPERIMENTS_YAML)
    args = ["simulate", path, "--users", "100", "--seed", "3", "--json"]
    first = json.loads(runner.invoke(abtest, args).output)
    second = json.loads(runner.invoke(abtest, args).output)
    assert first[0]["analysis"]["variants"] == second[0]["analysis"]["variants"]


def test_missing_file(runner, tmp_path):
    result = runner.invoke(abtest, ["simulate", str(tmp_path / "missing.yaml")])
    assert result.exit_code != 0


def test_bundled_example_is_valid(runner):
    path = Path(__file__).resolve().parents[2] / "examples" / "experiments.yaml"
    result = runner.invoke(abtest, ["validate", str(path)])
    assert result.exit_code == 0, result.output
    assert "model_latency" in result.output
    assert "prompt_rating" in result.output
