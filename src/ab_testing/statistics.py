# 統計分析
"""
A/Bテストの統計分析モジュール

処理フロー:
    主要メトリクスの結果をバリアントごとにグループ化
        ↓
    バリアントごとに n・平均・標本標準偏差（n-1）・信頼区間を計算
        ↓
    2バリアントとも最小サンプル数を満たす場合は t検定（scipy.stats.ttest_ind, 等分散）
        ↓
    停止ルールで推奨事項（continue / stop_winner / stop_no_winner）を決定

信頼区間の臨界値は大標本近似の3点テーブル（2.576 / 1.96 / 1.645）を使う。
p値は t分布による正確な値で、|t| に対して単調減少する。
サンプル不足・分散ゼロは例外にせず、比較なし（None）と continue に縮退する。
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from scipy import stats

from src.ab_testing.models import (
    ABTest,
    ABTestResult,
    Comparison,
    ConfidenceInterval,
    Recommendation,
    StatisticalAnalysis,
    VariantStatistics,
)

logger = logging.getLogger(__name__)

# 有意差なしで停止するまでの最低実施期間
DEFAULT_MINIMUM_TEST_DURATION = timedelta(days=7)

# 平均の大きさに対する相対値。これ以下の併合標準偏差は丸め誤差とみなす
ZERO_VARIANCE_TOLERANCE = 1e-12


def critical_value(alpha: float) -> float:
    """有意水準に対応する臨界値（大標本近似）"""
    if alpha <= 0.01:
        return 2.576
    if alpha <= 0.05:
        return 1.96
    return 1.645


def sample_standard_deviation(values: Sequence[float]) -> float:
    """標本標準偏差（n-1 で割る、n<2 なら 0）"""
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((x - mean) ** 2 for x in values) / (len(values) - 1)
    return variance ** 0.5


def confidence_interval(
    mean: float,
    std: float,
    n: int,
    alpha: float,
) -> ConfidenceInterval:
    """平均の信頼区間

    n < 2 の場合は幅ゼロの区間 [mean, mean] を返す。
    """
    level = 1.0 - alpha
    if n < 2:
        return ConfidenceInterval(lower=mean, upper=mean, level=level)
    margin = critical_value(alpha) * (std / math.sqrt(n))
    return ConfidenceInterval(lower=mean - margin, upper=mean + margin, level=level)


def pooled_standard_deviation(
    n1: int,
    std1: float,
    n2: int,
    std2: float,
) -> float:
    """2群の併合標準偏差"""
    if n1 + n2 <= 2:
        return 0.0
    pooled_variance = (
        (n1 - 1) * std1 ** 2 + (n2 - 1) * std2 ** 2
    ) / (n1 + n2 - 2)
    return math.sqrt(pooled_variance)


def required_sample_size(effect_size: float, alpha: float = 0.05, power: float = 0.8) -> int:
    """バリアントあたりの必要サンプル数を見積もる

    両側検定、正規近似: n = 2 * ((z_{1-α/2} + z_{power}) / d)^2

    Args:
        effect_size: 検出したい効果量（標準化された平均差）
        alpha: 有意水準
        power: 検出力

    Raises:
        ValueError: effect_size が0、または alpha/power が範囲外の場合
    """
    if effect_size == 0:
        raise ValueError("effect_size must be non-zero")
    if not 0.0 < alpha < 1.0 or not 0.0 < power < 1.0:
        raise ValueError("alpha and power must be in (0, 1)")

    z_alpha = stats.norm.ppf(1.0 - alpha / 2.0)
    z_beta = stats.norm.ppf(power)
    n = 2.0 * ((z_alpha + z_beta) / abs(effect_size)) ** 2
    return int(math.ceil(float(n)))


class StatisticalAnalyzer:
    """統計分析クラス

    テスト定義と結果のスナップショットから StatisticalAnalysis を導出する。
    状態を持たず、同じ入力には同じ出力を返す（analysis_date を除く）。

    使用例:
        analyzer = StatisticalAnalyzer()
        analysis = analyzer.analyze(test, results, now=datetime.now())
        if analysis.recommendation.is_stop:
            ...

    Attributes:
        minimum_test_duration: 有意差なしで停止するまでの最低実施期間
    """

    def __init__(self, minimum_test_duration: timedelta = DEFAULT_MINIMUM_TEST_DURATION):
        self.minimum_test_duration = minimum_test_duration

    def analyze(
        self,
        test: ABTest,
        results: Sequence[ABTestResult],
        now: Optional[datetime] = None,
        metric: Optional[str] = None,
    ) -> StatisticalAnalysis:
        """テストを分析

        Args:
            test: テスト定義
            results: テストの結果（他メトリクスを含んでよい）
            now: 現在時刻（経過時間の計算用）
            metric: 分析するメトリクス。Noneの場合は主要メトリクス。

        Returns:
            StatisticalAnalysis
        """
        now = now or datetime.now()
        metric_name = metric or test.metrics.primary
        alpha = test.metrics.significance_level or 0.05
        min_samples = test.metrics.minimum_sample_size or 1

        grouped = self._group_values(test, results, metric_name)

        variant_stats = [
            self.compute_variant_statistics(variant_id, values, alpha)
            for variant_id, values in grouped.items()
        ]

        comparison: Optional[Comparison] = None
        if len(variant_stats) == 2 and all(
            vs.sample_size >= min_samples for vs in variant_stats
        ):
            variant_ids = list(grouped.keys())
            comparison = self.compare(
                baseline=variant_stats[0],
                baseline_values=grouped[variant_ids[0]],
                treatment=variant_stats[1],
                treatment_values=grouped[variant_ids[1]],
                alpha=alpha,
                higher_is_better=test.metrics.higher_is_better,
            )

        recommendation = self.recommend(test, variant_stats, comparison, now)

        return StatisticalAnalysis(
            test_id=test.id,
            metric=metric_name,
            variants=variant_stats,
            comparison=comparison,
            recommendation=recommendation,
            analysis_date=now,
        )

    def compute_variant_statistics(
        self,
        variant_id: str,
        values: Sequence[float],
        alpha: float,
    ) -> VariantStatistics:
        """バリアントの統計を計算"""
        n = len(values)
        mean = sum(values) / n if n > 0 else 0.0
        std = sample_standard_deviation(values)
        return VariantStatistics(
            variant_id=variant_id,
            sample_size=n,
            mean=mean,
            standard_deviation=std,
            confidence_interval=confidence_interval(mean, std, n, alpha),
        )

    def compare(
        self,
        baseline: VariantStatistics,
        baseline_values: Sequence[float],
        treatment: VariantStatistics,
        treatment_values: Sequence[float],
        alpha: float,
        higher_is_better: bool = True,
    ) -> Optional[Comparison]:
        """2バリアントを t検定で比較

        併合標準偏差が0（両群とも分散ゼロ）またはサンプルが2未満の場合は None。
        定数値の合計で生じる丸め誤差程度の標準偏差も分散ゼロとして扱う。
        """
        if baseline.sample_size < 2 or treatment.sample_size < 2:
            return None

        pooled_std = pooled_standard_deviation(
            baseline.sample_size,
            baseline.standard_deviation,
            treatment.sample_size,
            treatment.standard_deviation,
        )
        scale = max(1.0, abs(baseline.mean), abs(treatment.mean))
        if pooled_std <= ZERO_VARIANCE_TOLERANCE * scale:
            logger.debug(
                f"分散ゼロのため比較をスキップ: "
                f"{baseline.variant_id} vs {treatment.variant_id}"
            )
            return None

        # treatment - baseline の向きで t を計算
        t_stat, p_value = stats.ttest_ind(treatment_values, baseline_values)
        t_stat = float(t_stat)
        p_value = float(p_value)
        is_significant = p_value < alpha
        effect_size = (treatment.mean - baseline.mean) / pooled_std

        winner = None
        if is_significant:
            treatment_better = (
                treatment.mean > baseline.mean
                if higher_is_better
                else treatment.mean < baseline.mean
            )
            winner = treatment.variant_id if treatment_better else baseline.variant_id

        return Comparison(
            baseline=baseline.variant_id,
            treatment=treatment.variant_id,
            t_statistic=t_stat,
            p_value=p_value,
            is_significant=is_significant,
            effect_size=effect_size,
            confidence_level=1.0 - alpha,
            winner=winner,
        )

    def recommend(
        self,
        test: ABTest,
        variant_stats: List[VariantStatistics],
        comparison: Optional[Comparison],
        now: datetime,
    ) -> Recommendation:
        """停止ルールを評価

        評価順:
            (a) 最大期間を超過 → 有意なら stop_winner、そうでなければ stop_no_winner
            (b) 最小サンプル数未満のバリアントがある → continue
            (c) 有意差あり → stop_winner
            (d) 最低実施期間未満 → continue
            (e) それ以外 → stop_no_winner
        """
        is_significant = bool(comparison and comparison.is_significant)
        elapsed = test.duration.elapsed(now)

        max_duration = test.duration.max_duration
        if max_duration is not None and elapsed > max_duration:
            return (
                Recommendation.STOP_WINNER
                if is_significant
                else Recommendation.STOP_NO_WINNER
            )

        min_samples = test.metrics.minimum_sample_size or 1
        if any(vs.sample_size < min_samples for vs in variant_stats):
            return Recommendation.CONTINUE

        if is_significant:
            return Recommendation.STOP_WINNER

        if elapsed < self.minimum_test_duration:
            return Recommendation.CONTINUE

        return Recommendation.STOP_NO_WINNER

    def _group_values(
        self,
        test: ABTest,
        results: Sequence[ABTestResult],
        metric: str,
    ) -> Dict[str, List[float]]:
        """宣言順のバリアントごとにメトリクス値をまとめる"""
        grouped: Dict[str, List[float]] = {vid: [] for vid in test.variant_ids}
        for result in results:
            if result.metric != metric:
                continue
            values = grouped.get(result.variant_id)
            if values is not None:
                values.append(float(result.value))
        return grouped
