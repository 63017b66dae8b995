#!/usr/bin/env python3
from __future__ import annotations
"""
A/Bテストエンジン CLI メインエントリーポイント

YAMLで定義した実験を Pythonコードを書かずに検証・シミュレーションするための CLI。

使用例:
    abtest validate experiments.yaml
    abtest simulate experiments.yaml --users 2000 --seed 42 --elapsed-days 8
"""

import logging
import random
import sys
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import click

from src.ab_testing.engine import ABTestingEngine
from src.ab_testing.exceptions import ABTestingError
from src.cli.utils.output import echo_analysis, echo_json, echo_table
from src.cli.utils.yaml_loader import (
    ExperimentFile,
    YamlValidationError,
    load_experiment_file,
)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.version_option(version="1.0.0", prog_name="abtest")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    help="ログレベル",
)
def abtest(log_level: str):
    """
    A/Bテストエンジン CLI

    実験定義（YAML）の検証と、合成データによるシミュレーションを行います。
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_or_exit(path: str) -> ExperimentFile:
    try:
        return load_experiment_file(path)
    except YamlValidationError as e:
        click.echo(f"[エラー] 実験定義が不正です: {e}", err=True)
        sys.exit(1)


@abtest.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="JSON形式で出力")
def validate(file: str, as_json: bool):
    """実験定義ファイルを検証する（テストの作成まで行い、開始はしない）"""
    experiment = _load_or_exit(file)
    engine = ABTestingEngine(experiment.config)

    report: List[Dict[str, Any]] = []
    for definition in experiment.tests:
        try:
            test = engine.create_test(**definition.create_kwargs())
            report.append({"name": definition.name, "test_id": test.id, "valid": True, "error": None})
        except ABTestingError as e:
            report.append({"name": definition.name, "test_id": definition.test_id, "valid": False, "error": str(e)})
    engine.shutdown()

    if as_json:
        echo_json(report)
    else:
        rows = [
            [item["name"], item["test_id"] or "-", "OK" if item["valid"] else "NG", item["error"] or ""]
            for item in report
        ]
        echo_table(["名前", "テストID", "結果", "エラー"], rows)

    if not all(item["valid"] for item in report):
        sys.exit(1)


@abtest.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--users", type=click.IntRange(min=1), default=1000, show_default=True, help="シミュレーションするユーザー数")
@click.option("--seed", type=int, default=None, help="乱数シード（再現用）")
@click.option(
    "--elapsed-days",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="分析時点でのテスト経過日数",
)
@click.option("--apply-stop", is_flag=True, help="停止ルールを満たしたテストを停止する")
@click.option("--json", "as_json", is_flag=True, help="JSON形式で出力")
def simulate(
    file: str,
    users: int,
    seed: Optional[int],
    elapsed_days: float,
    apply_stop: bool,
    as_json: bool,
):
    """合成ユーザーで実験を実行し、統計分析の結果を表示する

    各バリアントの結果値は simulation.mean / simulation.stddev の正規分布から生成する。
    simulation を持たないバリアントに割り当てられたユーザーは結果を記録しない。
    """
    experiment = _load_or_exit(file)
    rng = random.Random(seed)

    now = datetime.now()
    clock_state = {"now": now}
    engine = ABTestingEngine(experiment.config, clock=lambda: clock_state["now"])

    try:
        tests = []
        for definition in experiment.tests:
            test = engine.create_test(**definition.create_kwargs())
            engine.start_test(test.id)
            tests.append((test, definition))

        for i in range(users):
            user_id = f"user_{i}"
            context: Dict[str, Any] = {}
            if experiment.segments:
                context["userSegment"] = experiment.segments[i % len(experiment.segments)]

            for test, definition in tests:
                assignment = engine.assign_user(user_id, test.id, context=context)
                if assignment is None:
                    continue
                sim = definition.simulations.get(assignment.variant_id)
                if sim is None:
                    continue
                engine.record_result(
                    test.id,
                    user_id,
                    test.metrics.primary,
                    rng.gauss(sim.mean, sim.stddev),
                    context=context,
                )

        clock_state["now"] = now + timedelta(days=elapsed_days)
        if apply_stop:
            engine.scheduler.run_once()

        summaries = [engine.get_test_summary(test.id) for test, _ in tests]
    except ABTestingError as e:
        click.echo(f"[エラー] シミュレーションに失敗しました: {e}", err=True)
        sys.exit(1)
    finally:
        engine.shutdown()

    if as_json:
        echo_json([summary.to_dict() for summary in summaries])
        return

    for summary in summaries:
        click.echo(f"\n[{summary.test.id}] {summary.test.name} ({summary.test.status.value})")
        click.echo(f"割り当て: {summary.assignments}件, 結果: {summary.results}件")
        if summary.analysis is not None:
            echo_analysis(summary.analysis)


if __name__ == "__main__":
    abtest()
