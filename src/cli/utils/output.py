"""Output formatting helpers for the abtest CLI."""

from __future__ import annotations

import json
from typing import Any, Iterable, List, Optional, Sequence

import click

from src.ab_testing.models import Comparison, StatisticalAnalysis


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Format rows as a left-aligned table with padded columns."""
    rows_list: List[List[str]] = [[str(cell) for cell in row] for row in rows]
    widths = [len(str(h)) for h in headers]
    for row in rows_list:
        for idx, cell in enumerate(row):
            if idx < len(widths):
                widths[idx] = max(widths[idx], len(cell))

    def _line(cells: Sequence[Any]) -> str:
        return "  ".join(str(cell).ljust(widths[i]) for i, cell in enumerate(cells)).rstrip()

    header_line = _line(headers)
    return "\n".join([header_line, "-" * len(header_line)] + [_line(r) for r in rows_list])


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    click.echo(format_table(headers, rows))


def echo_json(data: Any) -> None:
    """Echo JSON with UTF-8 characters preserved (datetimes as strings)."""
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def analysis_rows(analysis: StatisticalAnalysis) -> List[List[str]]:
    """Per-variant table rows: id, n, mean, std, confidence interval."""
    rows = []
    for stats in analysis.variants:
        ci = stats.confidence_interval
        rows.append([
            stats.variant_id,
            str(stats.sample_size),
            f"{stats.mean:.4f}",
            f"{stats.standard_deviation:.4f}",
            f"[{ci.lower:.4f}, {ci.upper:.4f}]",
        ])
    return rows


def describe_comparison(comparison: Optional[Comparison]) -> str:
    if comparison is None:
        return "比較: データ不足（分散ゼロまたはサンプル不足）"
    verdict = "有意" if comparison.is_significant else "有意差なし"
    winner = comparison.winner or "-"
    return (
        f"比較: {comparison.treatment} vs {comparison.baseline} "
        f"t={comparison.t_statistic:.3f} p={comparison.p_value:.4f} "
        f"d={comparison.effect_size:.3f} ({verdict}, 勝者: {winner})"
    )


def echo_analysis(analysis: StatisticalAnalysis) -> None:
    """Echo a human-readable analysis block."""
    click.echo(f"メトリクス: {analysis.metric}")
    echo_table(["バリアント", "件数", "平均", "標準偏差", "信頼区間"], analysis_rows(analysis))
    click.echo(describe_comparison(analysis.comparison))
    click.echo(f"推奨: {analysis.recommendation.value}")
