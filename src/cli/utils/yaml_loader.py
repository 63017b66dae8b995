"""YAML loading and minimal schema validation for experiment definition files."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import yaml

from src.config.ab_testing_config import ABTestingConfig

VALID_TEST_TYPES = {"model", "prompt", "parameter", "feature"}


class YamlValidationError(ValueError):
    """YAML schema validation error."""


@dataclass
class VariantSimulation:
    """Simulated outcome distribution of one variant."""

    mean: float
    stddev: float


@dataclass
class ExperimentDefinition:
    """One experiment definition loaded from YAML."""

    name: str
    variants: List[Dict[str, Any]]
    metrics: Dict[str, Any]
    test_id: Optional[str] = None
    test_type: str = "model"
    description: str = ""
    targeting: Dict[str, Any] = field(default_factory=dict)
    max_duration: Optional[timedelta] = None
    created_by: str = ""
    simulations: Dict[str, VariantSimulation] = field(default_factory=dict)

    def create_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ABTestingEngine.create_test."""
        return {
            "name": self.name,
            "variants": self.variants,
            "metrics": self.metrics,
            "test_type": self.test_type,
            "description": self.description,
            "targeting": self.targeting,
            "max_duration": self.max_duration,
            "created_by": self.created_by,
            "test_id": self.test_id,
        }


@dataclass
class ExperimentFile:
    """Parsed experiment definition file."""

    config: ABTestingConfig
    tests: List[ExperimentDefinition]
    segments: List[str] = field(default_factory=list)


def load_yaml(path: str) -> Dict[str, Any]:
    """Load YAML file and return data."""
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise YamlValidationError(f"YAMLの構文エラー: {e}") from e
    if not isinstance(data, dict):
        raise YamlValidationError("YAMLのルートはオブジェクトである必要があります")
    return data


def load_experiment_file(path: str) -> ExperimentFile:
    """Load and validate an experiment definition file."""
    return parse_experiment_file(load_yaml(path))


def parse_experiment_file(data: Dict[str, Any]) -> ExperimentFile:
    """Validate experiment file data and build typed definitions."""
    config_data = data.get("config") or {}
    if not isinstance(config_data, dict):
        raise YamlValidationError("config はオブジェクトで指定してください")
    try:
        config = ABTestingConfig.from_dict(config_data)
    except (TypeError, ValueError) as e:
        raise YamlValidationError(f"config が不正です: {e}") from e

    tests = data.get("tests")
    if not isinstance(tests, list) or not tests:
        raise YamlValidationError("tests は1件以上の配列で指定してください")

    simulation = data.get("simulation") or {}
    if not isinstance(simulation, dict):
        raise YamlValidationError("simulation はオブジェクトで指定してください")
    segments = simulation.get("segments") or []
    if not isinstance(segments, list) or not all(isinstance(s, str) for s in segments):
        raise YamlValidationError("simulation.segments は文字列配列で指定してください")

    return ExperimentFile(
        config=config,
        tests=[validate_test_definition(item) for item in tests],
        segments=segments,
    )


def validate_test_definition(data: Dict[str, Any]) -> ExperimentDefinition:
    """Validate one experiment definition (structure only).

    Semantic rules such as weight sums are enforced by the engine itself.
    """
    if not isinstance(data, dict):
        raise YamlValidationError("tests の要素はオブジェクトで指定してください")
    _require_fields(data, ["name", "variants", "metrics"])

    if not isinstance(data["name"], str) or not data["name"]:
        raise YamlValidationError("name は文字列で指定してください")

    test_type = data.get("type", "model")
    if test_type not in VALID_TEST_TYPES:
        raise YamlValidationError("type は model/prompt/parameter/feature のいずれかです")

    variants = data["variants"]
    if not isinstance(variants, list) or not variants:
        raise YamlValidationError("variants は配列で指定してください")

    normalized_variants = []
    simulations: Dict[str, VariantSimulation] = {}
    for item in variants:
        if not isinstance(item, dict):
            raise YamlValidationError("variants の要素はオブジェクトで指定してください")
        _require_fields(item, ["id", "weight"])
        if not isinstance(item["weight"], (int, float)) or isinstance(item["weight"], bool):
            raise YamlValidationError(f"variants.weight は数値で指定してください: {item['id']}")
        if "config" in item and item["config"] is not None and not isinstance(item["config"], dict):
            raise YamlValidationError("variants.config はオブジェクトで指定してください")

        variant = {k: v for k, v in item.items() if k != "simulation"}
        variant["id"] = str(variant["id"])
        normalized_variants.append(variant)

        sim = item.get("simulation")
        if sim is not None:
            simulations[variant["id"]] = _parse_simulation(variant["id"], sim)

    metrics = data["metrics"]
    if isinstance(metrics, str):
        metrics = {"primary": metrics}
    if not isinstance(metrics, dict) or not metrics.get("primary"):
        raise YamlValidationError("metrics.primary は文字列で指定してください")

    targeting = data.get("targeting") or {}
    if not isinstance(targeting, dict):
        raise YamlValidationError("targeting はオブジェクトで指定してください")

    max_duration = None
    if data.get("max_duration_days") is not None:
        days = data["max_duration_days"]
        if not isinstance(days, (int, float)) or days <= 0:
            raise YamlValidationError("max_duration_days は正の数値で指定してください")
        max_duration = timedelta(days=days)

    return ExperimentDefinition(
        name=data["name"],
        variants=normalized_variants,
        metrics=metrics,
        test_id=str(data["id"]) if data.get("id") is not None else None,
        test_type=test_type,
        description=data.get("description") or "",
        targeting=targeting,
        max_duration=max_duration,
        created_by=data.get("created_by") or "",
        simulations=simulations,
    )


def _parse_simulation(variant_id: str, data: Any) -> VariantSimulation:
    if not isinstance(data, dict):
        raise YamlValidationError(f"simulation はオブジェクトで指定してください: {variant_id}")
    _require_fields(data, ["mean"])
    mean = data["mean"]
    stddev = data.get("stddev", 1.0)
    if not isinstance(mean, (int, float)) or not isinstance(stddev, (int, float)) or stddev < 0:
        raise YamlValidationError(
            f"simulation.mean / stddev は数値（stddev >= 0）で指定してください: {variant_id}"
        )
    return VariantSimulation(mean=float(mean), stddev=float(stddev))


def _require_fields(data: Dict[str, Any], fields_: List[str]) -> None:
    missing = [name for name in fields_ if name not in data]
    if missing:
        raise YamlValidationError(f"必須フィールドが不足しています: {', '.join(missing)}")
